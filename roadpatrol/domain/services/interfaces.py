from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from ..models import Location


class ILocationProvider(ABC):
    """
    Platform positioning API (browser Geolocation, OS location service, GPS
    daemon). Failures raise GeolocationError with the matching kind.
    """

    @abstractmethod
    async def get_current_position(
        self,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> Location:
        pass

    @abstractmethod
    def watch_position(
        self,
        on_success: Callable[[Location], None],
        on_error: Callable[[Exception], None],
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> Any:
        """Start continuous updates; returns a watch id for clear_watch."""
        pass

    @abstractmethod
    def clear_watch(self, watch_id: Any) -> None:
        pass

    async def query_permission(self) -> Optional[str]:
        """'granted', 'prompt', 'denied', or None when the platform cannot tell."""
        return None


class IEntropySource(ABC):
    """Device characteristics sampled to derive a stable fingerprint."""

    @abstractmethod
    def sample(self) -> Dict[str, str]:
        pass
