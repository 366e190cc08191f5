"""
Geocoding client for OpenStreetMap Nominatim.

Free, no API key; requests carry a User-Agent identifying the application.
Lookups never raise: reverse geocoding falls back to a coordinate string and
address search falls back to an empty list.
"""
import httpx
import logging
from typing import Any, Dict, List, Optional

from ..core.config import settings
from ..domain.models import AddressParts, AddressSearchResult, GeocodeResult

logger = logging.getLogger(__name__)

MIN_SEARCH_QUERY_LENGTH = 3


def coordinates_label(lat: float, lng: float) -> str:
    return f"{lat:.6f}, {lng:.6f}"


def format_address(address: Dict[str, Any]) -> str:
    """house number, road, suburb, city/town/village, state"""
    parts = []
    if address.get("house_number"):
        parts.append(address["house_number"])
    if address.get("road"):
        parts.append(address["road"])
    if address.get("suburb"):
        parts.append(address["suburb"])
    city = address.get("city") or address.get("town") or address.get("village")
    if city:
        parts.append(city)
    if address.get("state"):
        parts.append(address["state"])
    return ", ".join(parts)


class NominatimClient:
    """Reverse and forward geocoding against Nominatim."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.NOMINATIM_URL).rstrip("/")
        self.user_agent = user_agent or settings.GEOCODER_USER_AGENT
        self.timeout = timeout or settings.GEOCODER_TIMEOUT_SECONDS
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        response = await self._http.get(
            f"{self.base_url}/{path}",
            params=params,
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    async def reverse_geocode(self, lat: float, lng: float) -> GeocodeResult:
        """
        Resolve coordinates to a human-readable address.

        Returns:
            GeocodeResult; on any failure the coordinates themselves are used
            as the address and ``address`` is None.
        """
        try:
            data = await self._get("reverse", {
                "lat": lat,
                "lon": lng,
                "format": "json",
                "addressdetails": 1,
            })
            if data.get("error"):
                raise ValueError(data["error"])

            address = data.get("address") or {}
            display_name = data.get("display_name") or coordinates_label(lat, lng)
            return GeocodeResult(
                display_name=display_name,
                formatted_address=format_address(address) or display_name,
                address=AddressParts(
                    road=address.get("road"),
                    suburb=address.get("suburb"),
                    city=address.get("city") or address.get("town") or address.get("village"),
                    state=address.get("state"),
                    postcode=address.get("postcode"),
                    country=address.get("country"),
                ),
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Reverse geocoding failed for ({lat:.6f}, {lng:.6f}): {e}")
            label = coordinates_label(lat, lng)
            return GeocodeResult(display_name=label, formatted_address=label, address=None)

    async def search_address(self, query: str, limit: int = 5) -> List[AddressSearchResult]:
        """Forward geocoding; short queries and failures yield []."""
        if not query or len(query) < MIN_SEARCH_QUERY_LENGTH:
            return []

        try:
            data = await self._get("search", {
                "q": query,
                "format": "json",
                "limit": limit,
                "addressdetails": 1,
            })
            return [
                AddressSearchResult(
                    display_name=item.get("display_name", ""),
                    lat=float(item["lat"]),
                    lng=float(item["lon"]),
                    type=item.get("type"),
                    address=item.get("address"),
                )
                for item in data
            ]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Address search failed for '{query}': {e}")
            return []

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
