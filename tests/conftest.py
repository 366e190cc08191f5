"""
Pytest fixtures for the Road Patrol client tests.

Provides an in-memory stand-in for the hosted backend (PostgREST tables,
procedures, storage and auth) mounted on httpx.MockTransport, a fake location
provider, a fixed entropy source, a manual clock, and a fully wired client.
"""
import asyncio
import io
import itertools
import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from PIL import Image

from roadpatrol.client import RoadPatrolClient
from roadpatrol.core.config import Settings
from roadpatrol.domain.models import Location
from roadpatrol.domain.services.interfaces import IEntropySource, ILocationProvider
from roadpatrol.infrastructure.geocoding import NominatimClient
from roadpatrol.infrastructure.local_storage import SessionStorage
from roadpatrol.infrastructure.realtime import RealtimeClient
from roadpatrol.utils.geo import calculate_distance
from roadpatrol.utils.images import Photo

SUPABASE_URL = "https://test.supabase.co"
ANON_KEY = "test-anon-key"


# =============================================================================
# FAKE BACKEND
# =============================================================================

def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _as_datetime(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _compare(row_value: Any, op: str, raw: str) -> bool:
    if op == "eq":
        return _fmt(row_value) == raw
    if op == "neq":
        return _fmt(row_value) != raw
    if row_value is None:
        return False
    left, right = _as_datetime(row_value), _as_datetime(raw)
    if left is None or right is None:
        try:
            left, right = float(row_value), float(raw)
        except (TypeError, ValueError):
            left, right = str(row_value), raw
    if op == "lt":
        return left < right
    if op == "gte":
        return left >= right
    raise AssertionError(f"unsupported filter op {op}")


class FakeBackend:
    """
    Enough of PostgREST, Storage and GoTrue for the client to run against.

    Failures are injected per target ("reports", "rpc:nearby_reports",
    "storage", ...) with ``fail()``; delays with ``delay()``.
    """

    UNIQUE = {"votes": ("report_id", "device_id")}

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.uploads: Dict[str, bytes] = {}
        self.upload_headers: Dict[str, Dict[str, str]] = {}
        self.rpc_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.requests: List[httpx.Request] = []
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.auth_user: Optional[Dict[str, Any]] = None
        self.geocode_address: Dict[str, str] = {"road": "Market Street", "city": "San Francisco"}
        self._failures: Dict[str, List[Tuple[int, bool]]] = defaultdict(list)
        self._delays: Dict[str, float] = {}
        self._ids = itertools.count(1)
        self._clock = datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)

    # -- seeding ------------------------------------------------------------

    def _timestamp(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.setdefault("id", f"{table[:-1] if table.endswith('s') else table}-{next(self._ids)}")
        row.setdefault("created_at", self._timestamp())
        if table == "reports":
            row.setdefault("status", "open")
            row.setdefault("priority", "medium")
            row.setdefault("vote_count", 0)
            row.setdefault("view_count", 0)
        self.tables[table].append(row)
        return row

    def add_report(self, **overrides) -> Dict[str, Any]:
        row = {
            "title": "Pothole on Main St",
            "description": "Deep pothole",
            "category": "pothole",
            "latitude": 37.7749,
            "longitude": -122.4194,
            "photo_url": f"{SUPABASE_URL}/storage/v1/object/public/report-photos/seed.jpg",
        }
        row.update(overrides)
        return self.insert("reports", row)

    def row(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.tables[table] if r.get("id") == row_id), None)

    # -- fault injection ----------------------------------------------------

    def fail(self, target: str, times: int = 1, status: int = 500, network: bool = False) -> None:
        self._failures[target].extend([(status, network)] * times)

    def delay(self, target: str, seconds: float) -> None:
        self._delays[target] = seconds

    def count_requests(self, method: str, path_suffix: str) -> int:
        return len([
            r for r in self.requests
            if r.method == method and r.url.path.endswith(path_suffix)
        ])

    # -- transport ----------------------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host != "test.supabase.co":
            target = "geocode"
        elif path.startswith("/rest/v1/rpc/"):
            target = f"rpc:{path.rsplit('/', 1)[1]}"
        elif path.startswith("/rest/v1/"):
            target = path[len("/rest/v1/"):]
        elif path.startswith("/storage/v1/"):
            target = "storage"
        else:
            target = "auth"

        if self._delays.get(target):
            await asyncio.sleep(self._delays[target])

        if self._failures[target]:
            status, network = self._failures[target].pop(0)
            if network:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(status, json={"code": "XX000", "message": f"{target} unavailable"})

        if target.startswith("rpc:"):
            return self._rpc(target[4:], request)
        if target == "storage":
            return self._storage(request)
        if target == "auth":
            return self._auth(request)
        if target == "geocode":
            return self._geocode(request)
        return self._table(target, request)

    def _filters(self, request: httpx.Request) -> Tuple[List[Tuple[str, str, str]], Dict[str, str]]:
        filters, options = [], {}
        for key, value in request.url.params.multi_items():
            if key in ("select", "order", "limit"):
                options[key] = value
            else:
                op, raw = value.split(".", 1)
                filters.append((key, op, raw))
        return filters, options

    @staticmethod
    def _matches(row: Dict[str, Any], filters) -> bool:
        return all(_compare(row.get(col), op, raw) for col, op, raw in filters)

    @staticmethod
    def _project(rows: List[Dict[str, Any]], select: Optional[str]) -> List[Dict[str, Any]]:
        if not select or select == "*":
            return [dict(r) for r in rows]
        columns = select.split(",")
        return [{c: r.get(c) for c in columns} for r in rows]

    def _table(self, table: str, request: httpx.Request) -> httpx.Response:
        filters, options = self._filters(request)
        prefer = request.headers.get("prefer", "")
        rows = self.tables[table]

        if request.method == "POST":
            body = json.loads(request.content)
            inserted = []
            for values in body if isinstance(body, list) else [body]:
                keys = self.UNIQUE.get(table)
                if keys and any(all(r.get(k) == values.get(k) for k in keys) for r in rows):
                    return httpx.Response(409, json={
                        "code": "23505",
                        "message": f'duplicate key value violates unique constraint "{table}_unique"',
                    })
                inserted.append(self.insert(table, values))
            return httpx.Response(201, json=self._project(inserted, options.get("select")))

        matched = [r for r in rows if self._matches(r, filters)]

        if request.method == "PATCH":
            for r in matched:
                r.update(json.loads(request.content))
            return httpx.Response(200, json=self._project(matched, options.get("select")))

        if request.method == "DELETE":
            self.tables[table] = [r for r in rows if r not in matched]
            return httpx.Response(200, json=self._project(matched, options.get("select")))

        if "order" in options:
            column, direction = options["order"].rsplit(".", 1)
            matched = sorted(matched, key=lambda r: _fmt(r.get(column)), reverse=direction == "desc")
        total = len(matched)
        if "limit" in options:
            matched = matched[: int(options["limit"])]

        headers = {}
        if "count=exact" in prefer:
            headers["content-range"] = f"0-{max(total - 1, 0)}/{total}" if total else "*/0"
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, json=self._project(matched, options.get("select")), headers=headers)

    def _rpc(self, name: str, request: httpx.Request) -> httpx.Response:
        params = json.loads(request.content or b"{}")
        self.rpc_calls.append((name, params))

        if name in self.rpc_handlers:
            return httpx.Response(200, json=self.rpc_handlers[name](params))

        if name in ("increment_vote_count", "decrement_vote_count", "increment_view_count"):
            row = self.row("reports", params["p_report_id"])
            if row is not None:
                column = "view_count" if name == "increment_view_count" else "vote_count"
                step = -1 if name.startswith("decrement") else 1
                row[column] = max(0, row.get(column, 0) + step)
            return httpx.Response(204)

        if name == "nearby_reports":
            found = []
            for r in self.tables["reports"]:
                if r.get("category") != params["p_category"]:
                    continue
                if params.get("exclude_resolved") and r.get("status") == "resolved":
                    continue
                distance = calculate_distance(params["lat"], params["lng"], r["latitude"], r["longitude"])
                if distance <= params["radius_meters"]:
                    found.append({**r, "distance": distance})
            return httpx.Response(200, json=sorted(found, key=lambda r: r["distance"]))

        if name == "get_reports_in_bounds":
            found = [
                r for r in self.tables["reports"]
                if params["min_lat"] <= r["latitude"] <= params["max_lat"]
                and params["min_lng"] <= r["longitude"] <= params["max_lng"]
                and (params.get("p_status") is None or r.get("status") == params["p_status"])
                and (params.get("p_category") is None or r.get("category") == params["p_category"])
            ]
            return httpx.Response(200, json=found[: params["p_limit"]])

        if name == "get_report_statistics":
            reports = self.tables["reports"]
            return httpx.Response(200, json={
                "total": len(reports),
                "open": len([r for r in reports if r.get("status") == "open"]),
            })

        return httpx.Response(404, json={"code": "PGRST202", "message": f"function {name} not found"})

    def _storage(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.split("/object/", 1)[1]
        if request.method == "POST":
            self.uploads[key] = request.content
            self.upload_headers[key] = dict(request.headers)
            return httpx.Response(200, json={"Key": key})
        if request.method == "DELETE":
            self.uploads.pop(key, None)
            return httpx.Response(200, json={"message": "Successfully deleted"})
        return httpx.Response(405)

    def _geocode(self, request: httpx.Request) -> httpx.Response:
        """Nominatim reverse lookups answer with ``geocode_address``."""
        lat, lon = request.url.params["lat"], request.url.params["lon"]
        return httpx.Response(200, json={
            "display_name": f"{self.geocode_address.get('road', '')} ({lat}, {lon})",
            "address": self.geocode_address,
        })

    def _auth(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/user"):
            if self.auth_user is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self.auth_user)
        if request.url.path.endswith("/logout"):
            return httpx.Response(204)
        return httpx.Response(404)


# =============================================================================
# FAKE PLATFORM
# =============================================================================

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedEntropySource(IEntropySource):
    def __init__(self, components: Optional[Dict[str, str]] = None):
        self.components = components or {"hostname": "test-host", "system": "Linux"}
        self.calls = 0

    def sample(self) -> Dict[str, str]:
        self.calls += 1
        return dict(self.components)


class FakeLocationProvider(ILocationProvider):
    """Answers get_current_position from a queue of Locations/exceptions."""

    def __init__(self, default: Optional[Location] = None):
        self.default = default or Location(lat=37.7749, lng=-122.4194, accuracy=20.0)
        self.responses: List[Any] = []
        self.calls: List[Tuple[bool, float, float]] = []
        self.permission: Optional[str] = None
        self.watches: Dict[int, Tuple[Callable, Callable]] = {}
        self.cleared: List[int] = []
        self._watch_ids = itertools.count(1)

    async def get_current_position(self, high_accuracy, timeout, maximum_age) -> Location:
        self.calls.append((high_accuracy, timeout, maximum_age))
        result = self.responses.pop(0) if self.responses else self.default
        if isinstance(result, BaseException):
            raise result
        return result

    def watch_position(self, on_success, on_error, high_accuracy, timeout, maximum_age):
        watch_id = next(self._watch_ids)
        self.watches[watch_id] = (on_success, on_error)
        return watch_id

    def clear_watch(self, watch_id) -> None:
        self.cleared.append(watch_id)
        self.watches.pop(watch_id, None)

    def emit(self, watch_id: int, result: Any) -> None:
        on_success, on_error = self.watches[watch_id]
        if isinstance(result, BaseException):
            on_error(result)
        else:
            on_success(result)

    async def query_permission(self) -> Optional[str]:
        return self.permission


# =============================================================================
# HELPERS
# =============================================================================

def make_jpeg(width: int = 64, height: int = 48, color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG")
    return buffer.getvalue()


def make_photo(width: int = 64, height: int = 48, filename: str = "pothole.jpg") -> Photo:
    return Photo(content=make_jpeg(width, height), filename=filename, content_type="image/jpeg")


def postgres_change(
    topic: str,
    change_type: str,
    table: str = "reports",
    record: Optional[Dict[str, Any]] = None,
    old_record: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """A Phoenix postgres_changes frame as the realtime server sends it."""
    return {
        "topic": f"realtime:{topic}",
        "event": "postgres_changes",
        "ref": None,
        "payload": {
            "data": {
                "type": change_type,
                "table": table,
                "schema": "public",
                "record": record or {},
                "old_record": old_record or {},
                "commit_timestamp": "2026-10-01T12:00:00Z",
            },
        },
    }


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config(tmp_path):
    return Settings(
        SUPABASE_URL=SUPABASE_URL,
        SUPABASE_ANON_KEY=ANON_KEY,
        APP_URL="https://roadpatrol.test",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage.json"),
        REPORT_DETAIL_RETRY_DELAY=0.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def location_provider():
    return FakeLocationProvider()


@pytest.fixture
def entropy():
    return FixedEntropySource()


@pytest.fixture
async def http_client(backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    yield client
    await client.aclose()


@pytest.fixture
async def app(config, http_client, location_provider, entropy, clock):
    """Client wired to the fake backend; realtime events are fed in by the test."""
    client = RoadPatrolClient(
        config=config,
        http_client=http_client,
        location_provider=location_provider,
        local_storage=SessionStorage(),
        session_storage=SessionStorage(),
        entropy_source=entropy,
        realtime=RealtimeClient(SUPABASE_URL, ANON_KEY, auto_connect=False),
        geocoder=NominatimClient(http_client=http_client),
        clock=clock,
    )
    yield client
    await client.aclose()
