"""
Domain services.

Each service wraps one backend area behind the shared TTL cache:
- reports_service: report CRUD, geospatial queries, photo upload
- votes_service: one anonymous vote per device
- comments_service / chat_service: discussion threads and global chat
- auth_service: OAuth session and profile
- duplicate_service: nearby-duplicate check and the submission wizard
- geolocation_service: fast fix with background accuracy upgrade
- fingerprint_service: stable device identifier
"""
