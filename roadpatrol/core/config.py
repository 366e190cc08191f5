from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Dict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Road Patrol"
    APP_URL: str = "http://localhost:5173"

    # Supabase project - MUST be overridden via SUPABASE_URL / SUPABASE_ANON_KEY env vars
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_STORAGE_BUCKET: str = "report-photos"
    STORAGE_CACHE_CONTROL_SECONDS: int = 3600

    # OAuth sign-in
    OAUTH_PROVIDER: str = "google"
    OAUTH_REDIRECT_PATH: str = "/app"

    # Geocoding (OpenStreetMap Nominatim, no API key)
    NOMINATIM_URL: str = "https://nominatim.openstreetmap.org"
    GEOCODER_USER_AGENT: str = "Patrol/1.0"
    GEOCODER_TIMEOUT_SECONDS: float = 10.0

    # Default map center (San Francisco)
    DEFAULT_LAT: float = 37.7749
    DEFAULT_LNG: float = -122.4194

    # Local key-value storage (device id, dismissed prompts)
    LOCAL_STORAGE_PATH: str = "~/.roadpatrol/storage.json"

    # Cache TTLs (seconds)
    REPORTS_LIST_CACHE_TTL: float = 10.0
    REPORT_CACHE_TTL: float = 30.0
    MY_REPORTS_CACHE_TTL: float = 30.0
    COMMENTS_CACHE_TTL: float = 15.0
    CHAT_CACHE_TTL: float = 10.0
    PROFILE_CACHE_TTL: float = 60.0

    # Request timeouts (seconds)
    REPORT_DETAIL_TIMEOUT: float = 8.0
    MY_REPORTS_TIMEOUT: float = 6.0
    CHAT_TIMEOUT: float = 5.0
    STORE_FETCH_TIMEOUT: float = 8.0
    HTTP_TIMEOUT: float = 30.0

    # Report detail retry policy
    REPORT_DETAIL_RETRIES: int = 2
    REPORT_DETAIL_RETRY_DELAY: float = 1.0

    # Report store
    FETCH_DEBOUNCE_SECONDS: float = 5.0
    REPORTS_LIST_LIMIT: int = 100
    REPORTS_IN_BOUNDS_LIMIT: int = 500

    # Duplicate detection
    NEARBY_RADIUS_METERS: float = 50.0

    # Geolocation
    LOCATION_CACHE_SECONDS: float = 30.0
    LOCATION_ACCURACY_THRESHOLD_METERS: float = 100.0
    LOCATION_FAST_TIMEOUT: float = 3.0
    LOCATION_HIGH_ACCURACY_TIMEOUT: float = 5.0
    LOCATION_UPGRADE_TIMEOUT: float = 8.0
    LOCATION_WATCH_TIMEOUT: float = 5.0
    LOCATION_WATCH_HIGH_ACCURACY_TIMEOUT: float = 8.0

    # Photos
    MAX_PHOTO_BYTES: int = 5 * 1024 * 1024
    PHOTO_MAX_WIDTH: int = 1280
    PHOTO_JPEG_QUALITY: int = 80

    # Realtime
    REALTIME_HEARTBEAT_SECONDS: float = 30.0
    REALTIME_RECONNECT_DELAY: float = 1.0
    REALTIME_MAX_RECONNECT_DELAY: float = 30.0

    LOG_LEVEL: str = "INFO"

    @field_validator("SUPABASE_URL", "NOMINATIM_URL", "APP_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """True when a real Supabase project has been configured."""
        return bool(self.SUPABASE_ANON_KEY) and "localhost" not in self.SUPABASE_URL

    @property
    def cache_ttls(self) -> Dict[str, float]:
        """TTL per cache entity type, consumed by TTLCache."""
        return {
            "reports_list": self.REPORTS_LIST_CACHE_TTL,
            "report": self.REPORT_CACHE_TTL,
            "my_reports": self.MY_REPORTS_CACHE_TTL,
            "comments": self.COMMENTS_CACHE_TTL,
            "chat": self.CHAT_CACHE_TTL,
            "profile": self.PROFILE_CACHE_TTL,
        }

    class Config:
        case_sensitive = True
        env_file = ".env"
        extra = "ignore"


settings = Settings()
