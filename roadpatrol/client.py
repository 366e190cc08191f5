"""
Road Patrol client.

Wires the transport, cache, services and stores into one object:

    async with RoadPatrolClient(location_provider=provider) as app:
        await app.auth_store.initialize()
        await app.report_store.fetch_reports()
        subscription = await app.report_store.subscribe_to_updates()
        ...
        await subscription.release()
"""
import logging
import time
from typing import Callable, Optional

import httpx

from .core.config import Settings, settings as default_settings
from .domain.cache import TTLCache
from .domain.models import AuthEvent, Session
from .domain.services.auth_service import AuthService
from .domain.services.chat_service import ChatService
from .domain.services.comments_service import CommentsService
from .domain.services.duplicate_service import DuplicateDetector, ReportSubmission
from .domain.services.fingerprint_service import FingerprintService
from .domain.services.geolocation_service import GeolocationService
from .domain.services.interfaces import IEntropySource, ILocationProvider
from .domain.services.reports_service import ReportsService
from .domain.services.votes_service import VotesService
from .domain.stores.auth_store import AuthStore
from .domain.stores.report_store import ReportStore
from .infrastructure.geocoding import NominatimClient
from .infrastructure.local_storage import LocalStorage, PromptPreferences, SessionStorage
from .infrastructure.realtime import RealtimeClient
from .infrastructure.storage import SupabaseStorageService
from .infrastructure.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


class RoadPatrolClient:
    def __init__(
        self,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        location_provider: Optional[ILocationProvider] = None,
        local_storage: Optional[SessionStorage] = None,
        session_storage: Optional[SessionStorage] = None,
        entropy_source: Optional[IEntropySource] = None,
        realtime: Optional[RealtimeClient] = None,
        geocoder: Optional[NominatimClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or default_settings
        if not self.config.is_configured:
            logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not configured, using local defaults")

        self.supabase = SupabaseClient(
            self.config.SUPABASE_URL,
            self.config.SUPABASE_ANON_KEY,
            http_client=http_client,
            timeout=self.config.HTTP_TIMEOUT,
        )
        self.realtime = realtime or RealtimeClient(
            self.config.SUPABASE_URL,
            self.config.SUPABASE_ANON_KEY,
            heartbeat_seconds=self.config.REALTIME_HEARTBEAT_SECONDS,
            reconnect_delay=self.config.REALTIME_RECONNECT_DELAY,
            max_reconnect_delay=self.config.REALTIME_MAX_RECONNECT_DELAY,
        )
        self.geocoder = geocoder or NominatimClient(
            self.config.NOMINATIM_URL,
            self.config.GEOCODER_USER_AGENT,
            timeout=self.config.GEOCODER_TIMEOUT_SECONDS,
        )
        self.cache = TTLCache(self.config.cache_ttls, clock=clock)
        self.storage = SupabaseStorageService(
            self.supabase,
            bucket=self.config.SUPABASE_STORAGE_BUCKET,
            cache_control_seconds=self.config.STORAGE_CACHE_CONTROL_SECONDS,
        )

        self.local_storage = local_storage if local_storage is not None else LocalStorage(self.config.LOCAL_STORAGE_PATH)
        self.session_storage = session_storage if session_storage is not None else SessionStorage()
        self.prompts = PromptPreferences(self.local_storage, self.session_storage)
        self.fingerprint = FingerprintService(self.local_storage, entropy_source)

        self.reports = ReportsService(
            self.supabase, self.storage, self.cache, self.fingerprint, self.realtime, self.config
        )
        self.votes = VotesService(self.supabase, self.cache, self.fingerprint, self.realtime)
        self.comments = CommentsService(self.supabase, self.cache, self.realtime)
        self.chat = ChatService(self.supabase, self.cache, self.realtime, self.config)
        self.auth = AuthService(self.supabase, self.cache, self.config)
        self.duplicates = DuplicateDetector(self.reports, self.config.NEARBY_RADIUS_METERS)
        self.geolocation = GeolocationService(location_provider, self.config, clock=clock)

        self.report_store = ReportStore(self.reports, self.votes, self.config, clock=clock)
        self.auth_store = AuthStore(self.auth)

        self._auth_subscription = self.auth.on_auth_state_change(self._sync_realtime_token)

    def _sync_realtime_token(self, event: AuthEvent, session: Optional[Session]) -> None:
        self.realtime.access_token = session.access_token if session is not None else None

    def new_submission(self) -> ReportSubmission:
        """Fresh three-step report draft."""
        return ReportSubmission(self.reports, self.votes, self.duplicates, geocoder=self.geocoder)

    async def aclose(self) -> None:
        self._auth_subscription.unsubscribe()
        self.auth_store.close()
        await self.reports.wait_for_background_tasks()
        await self.realtime.aclose()
        await self.geocoder.aclose()
        await self.supabase.aclose()
        logger.info("Road Patrol client closed")

    async def __aenter__(self) -> "RoadPatrolClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
