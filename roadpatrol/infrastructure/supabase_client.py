"""
Supabase transport client.

Thin async wrapper over the PostgREST, GoTrue and Storage HTTP APIs of a hosted
Supabase project. Every domain service goes through a single configured
instance of this client.

Usage:
    from ..infrastructure.supabase_client import SupabaseClient

    client = SupabaseClient(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
    response = await client.table("reports").select("id, title").eq("status", "open").execute()
    rows = response.data
"""
import httpx
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import BackendError, NetworkError, RequestTimeoutError

logger = logging.getLogger(__name__)

NO_ROWS_CODE = "PGRST116"


@dataclass
class APIResponse:
    data: Any = None
    count: Optional[int] = None


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if hasattr(value, "value"):  # str Enum
        return str(value.value)
    return str(value)


def _parse_content_range(header: Optional[str]) -> Optional[int]:
    """'0-24/3573' or '*/0' -> total count."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class QueryBuilder:
    """Chainable PostgREST request for one table."""

    def __init__(self, client: "SupabaseClient", table: str):
        self._client = client
        self._table = table
        self._method: Optional[str] = None
        self._columns: Optional[str] = None
        self._filters: List[Tuple[str, str]] = []
        self._order: Optional[str] = None
        self._limit: Optional[int] = None
        self._body: Any = None
        self._count: Optional[str] = None
        self._single = False
        self._maybe_single = False

    # -- verbs --------------------------------------------------------------

    def select(self, columns: str = "*", count: Optional[str] = None, head: bool = False) -> "QueryBuilder":
        """Choose returned columns. After insert/update it only shapes the representation."""
        self._columns = "".join(columns.split())
        if self._method is None:
            self._method = "HEAD" if head else "GET"
        if count:
            self._count = count
        return self

    def insert(self, values: Any) -> "QueryBuilder":
        self._method = "POST"
        self._body = values
        return self

    def update(self, values: Dict[str, Any]) -> "QueryBuilder":
        self._method = "PATCH"
        self._body = values
        return self

    def delete(self) -> "QueryBuilder":
        self._method = "DELETE"
        return self

    # -- filters ------------------------------------------------------------

    def _filter(self, column: str, op: str, value: Any) -> "QueryBuilder":
        self._filters.append((column, f"{op}.{_format_value(value)}"))
        return self

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "neq", value)

    def lt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lt", value)

    def gte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gte", value)

    def order(self, column: str, ascending: bool = True) -> "QueryBuilder":
        self._order = f"{column}.{'asc' if ascending else 'desc'}"
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = count
        return self

    def single(self) -> "QueryBuilder":
        """Expect exactly one row; anything else is a PGRST116 error."""
        self._single = True
        return self

    def maybe_single(self) -> "QueryBuilder":
        """Expect zero or one row; zero rows yields data=None."""
        self._maybe_single = True
        return self

    # -- execution ----------------------------------------------------------

    def build_params(self) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        if self._columns:
            params.append(("select", self._columns))
        params.extend(self._filters)
        if self._order:
            params.append(("order", self._order))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        return params

    def _build_headers(self) -> Dict[str, str]:
        prefer = []
        if self._method in ("POST", "PATCH", "DELETE"):
            prefer.append("return=representation")
        if self._count:
            prefer.append(f"count={self._count}")
        return {"Prefer": ",".join(prefer)} if prefer else {}

    async def execute(self) -> APIResponse:
        method = self._method or "GET"
        response = await self._client.request(
            method,
            f"{self._client.rest_url}/{self._table}",
            params=self.build_params(),
            json=self._body,
            headers=self._build_headers(),
        )

        count = _parse_content_range(response.headers.get("content-range")) if self._count else None
        if method == "HEAD" or not response.content:
            data: Any = None if method == "HEAD" else []
        else:
            data = response.json()

        if self._single or self._maybe_single:
            rows = data if isinstance(data, list) else ([data] if data else [])
            if len(rows) > 1 or (self._single and not rows):
                raise BackendError(
                    "JSON object requested, multiple (or no) rows returned",
                    code=NO_ROWS_CODE,
                    status_code=406,
                )
            data = rows[0] if rows else None

        return APIResponse(data=data, count=count)


class SupabaseClient:
    """
    Single configured handle to the hosted backend.

    Features:
    - Table queries, inserts, updates and deletes through PostgREST
    - Remote procedure calls
    - Raw authenticated requests for the auth and storage APIs
    - Backend error objects translated to BackendError
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.rest_url = f"{self.url}/rest/v1"
        self.auth_url = f"{self.url}/auth/v1"
        self.storage_url = f"{self.url}/storage/v1"
        self.timeout = timeout
        self._access_token: Optional[str] = None
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    def set_auth(self, access_token: Optional[str]) -> None:
        """Use a user's access token for row-level security (None reverts to anon)."""
        self._access_token = access_token

    def _get_headers(self) -> Dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self._access_token or self.anon_key}",
        }

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    # supabase-js spelling
    from_ = table

    async def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> APIResponse:
        """Invoke a server-defined procedure by name."""
        response = await self.request(
            "POST",
            f"{self.rest_url}/rpc/{name}",
            json=params or {},
        )
        data = response.json() if response.content else None
        return APIResponse(data=data)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Send an authenticated request.

        Raises:
            RequestTimeoutError: request timed out
            NetworkError: transport failure
            BackendError: backend answered with an error status
        """
        request_headers = {**self._get_headers(), **(headers or {})}
        try:
            response = await self._http.request(
                method,
                url,
                params=params,
                json=json if content is None else None,
                content=content,
                headers=request_headers,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException:
            logger.error(f"{method} {url} timed out")
            raise RequestTimeoutError()
        except httpx.RequestError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise NetworkError(f"Request failed: {str(e)}")

        if response.status_code >= 400:
            raise self._to_backend_error(response)
        return response

    @staticmethod
    def _to_backend_error(response: httpx.Response) -> BackendError:
        code = None
        message = response.text[:500] if response.text else f"HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code") or body.get("error_code") or body.get("error")
            message = (
                body.get("message")
                or body.get("msg")
                or body.get("error_description")
                or message
            )
            if code is not None:
                code = str(code)
        logger.error(f"Backend error {response.status_code} ({code}): {message}")
        return BackendError(message, code=code, status_code=response.status_code)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
