"""
Geolocation Service
Fast first fix with a short-lived cache, plus a silent background upgrade when
the first fix is coarse.

Strategy:
1. Serve a cached fix younger than LOCATION_CACHE_SECONDS
2. Otherwise ask for a low-accuracy fix (short timeout, older fixes accepted)
3. If that fix is worse than LOCATION_ACCURACY_THRESHOLD_METERS, request a
   high-accuracy fix in the background; success replaces the cache, failure
   leaves it alone
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from ..models import Location
from ..results import Degraded, Outcome, Success
from .interfaces import ILocationProvider
from ...core.config import Settings, settings as default_settings
from ...core.exceptions import GeolocationError

logger = logging.getLogger(__name__)

# Seconds a low-accuracy request may reuse an earlier fix
LOW_ACCURACY_MAXIMUM_AGE = 60


def _as_geolocation_error(error: BaseException) -> GeolocationError:
    if isinstance(error, GeolocationError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return GeolocationError(GeolocationError.TIMEOUT)
    return GeolocationError(GeolocationError.UNKNOWN)


class LocationWatch:
    """Handle for a running watch; ``release()`` stops it."""

    def __init__(self, provider: ILocationProvider, watch_id: Any):
        self.provider = provider
        self.watch_id = watch_id
        self.released = False

    def release(self) -> None:
        if not self.released:
            self.released = True
            self.provider.clear_watch(self.watch_id)

    def __enter__(self) -> "LocationWatch":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class GeolocationService:
    def __init__(
        self,
        provider: Optional[ILocationProvider],
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.config = config or default_settings
        self._clock = clock
        self._cached: Optional[Location] = None
        self._cached_at = 0.0
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def is_supported(self) -> bool:
        return self.provider is not None

    def _require_provider(self) -> ILocationProvider:
        if self.provider is None:
            raise GeolocationError(GeolocationError.UNSUPPORTED)
        return self.provider

    # -- cache ----------------------------------------------------------------

    def get_cached_location(self) -> Optional[Location]:
        if self._cached is None:
            return None
        if self._clock() - self._cached_at >= self.config.LOCATION_CACHE_SECONDS:
            return None
        return self._cached

    def _store(self, location: Location) -> None:
        self._cached = location
        self._cached_at = self._clock()

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    # -- one-shot -------------------------------------------------------------

    async def _request_position(self, high_accuracy: bool, timeout: float, maximum_age: float) -> Location:
        provider = self._require_provider()
        try:
            return await asyncio.wait_for(
                provider.get_current_position(high_accuracy, timeout, maximum_age),
                timeout=timeout,
            )
        except Exception as e:
            raise _as_geolocation_error(e)

    async def get_current_location(self, force_refresh: bool = False, high_accuracy: bool = False) -> Location:
        """
        Current position, from cache when fresh.

        Raises:
            GeolocationError: permission denied, unavailable, timed out or unsupported
        """
        if not force_refresh:
            cached = self.get_cached_location()
            if cached is not None:
                return cached

        if high_accuracy:
            location = await self._request_position(True, self.config.LOCATION_HIGH_ACCURACY_TIMEOUT, 0)
        else:
            location = await self._request_position(
                False, self.config.LOCATION_FAST_TIMEOUT, LOW_ACCURACY_MAXIMUM_AGE
            )

        self._store(location)

        if (
            not high_accuracy
            and location.accuracy is not None
            and location.accuracy > self.config.LOCATION_ACCURACY_THRESHOLD_METERS
        ):
            logger.debug(f"Coarse fix ({location.accuracy:.0f}m), requesting high accuracy in background")
            task = asyncio.create_task(self._upgrade_accuracy())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        return location

    async def _upgrade_accuracy(self) -> None:
        try:
            location = await self._request_position(True, self.config.LOCATION_UPGRADE_TIMEOUT, 0)
        except GeolocationError as e:
            logger.debug(f"High-accuracy upgrade failed, keeping coarse fix: {e.message}")
            return
        self._store(location)
        logger.debug(f"Location upgraded to {location.accuracy}m accuracy")

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def acquire_location(self, high_accuracy: bool = False) -> Outcome[Location]:
        """
        Never raises: a failed fix degrades to the configured default location
        with the failure message as the reason.
        """
        try:
            return Success(await self.get_current_location(high_accuracy=high_accuracy))
        except GeolocationError as e:
            logger.warning(f"Falling back to default location: {e.message}")
            default = Location(lat=self.config.DEFAULT_LAT, lng=self.config.DEFAULT_LNG)
            return Degraded(value=default, reason=e.message)

    async def request_location_permission(self) -> Dict[str, Any]:
        """
        Returns:
            {"granted": bool, "state": str, "error": str (only when not granted)}
        """
        if self.provider is None:
            error = GeolocationError(GeolocationError.UNSUPPORTED)
            return {"granted": False, "state": "unsupported", "error": error.message}

        state = await self.provider.query_permission()
        if state == "denied":
            return {
                "granted": False,
                "state": "denied",
                "error": GeolocationError.MESSAGES[GeolocationError.PERMISSION_DENIED],
            }

        try:
            await self.get_current_location(force_refresh=True)
        except GeolocationError as e:
            denied = e.kind == GeolocationError.PERMISSION_DENIED
            return {
                "granted": False,
                "state": "denied" if denied else (state or "prompt"),
                "error": e.message,
            }
        return {"granted": True, "state": "granted"}

    # -- continuous -------------------------------------------------------------

    def watch_location(
        self,
        on_success: Callable[[Location], None],
        on_error: Optional[Callable[[GeolocationError], None]] = None,
        high_accuracy: bool = False,
    ) -> LocationWatch:
        """
        Every fix refreshes the cache before ``on_success`` is called.

        Raises:
            GeolocationError: no location provider
        """
        provider = self._require_provider()

        def handle_position(location: Location) -> None:
            self._store(location)
            on_success(location)

        def handle_error(error: Exception) -> None:
            geo_error = _as_geolocation_error(error)
            logger.warning(f"Location watch error: {geo_error.message}")
            if on_error is not None:
                on_error(geo_error)

        timeout = (
            self.config.LOCATION_WATCH_HIGH_ACCURACY_TIMEOUT
            if high_accuracy
            else self.config.LOCATION_WATCH_TIMEOUT
        )
        watch_id = provider.watch_position(
            handle_position,
            handle_error,
            high_accuracy,
            timeout,
            0 if high_accuracy else LOW_ACCURACY_MAXIMUM_AGE,
        )
        return LocationWatch(provider, watch_id)
