"""
Road Patrol client library.

Citizen civic-issue reporting against a hosted Supabase backend: reports with
photos, anonymous device votes, comments, global chat, realtime updates,
duplicate detection, geolocation and geocoding.

Usage:
    from roadpatrol import RoadPatrolClient

    async with RoadPatrolClient() as app:
        reports = await app.report_store.fetch_reports()
"""

from .client import RoadPatrolClient
from .core.logging import setup_logging

__all__ = ["RoadPatrolClient", "setup_logging"]
