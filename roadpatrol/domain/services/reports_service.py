"""
Reports Service
Handles all report-related backend calls behind the shared TTL cache.

Cache discipline:
- the unfiltered report list is cached for REPORTS_LIST_CACHE_TTL
- report details for REPORT_CACHE_TTL, a user's own reports for MY_REPORTS_CACHE_TTL
- every mutation invalidates the affected keys before returning
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..cache import TTLCache, REPORTS_LIST, REPORT, MY_REPORTS, DEFAULT_KEY
from ..models import (
    Bounds,
    NearbyReport,
    Profile,
    Report,
    ReportCreate,
    ReportFilters,
    ReportStatus,
    STATUS_ORDER,
)
from .fingerprint_service import FingerprintService
from ...core.config import Settings, settings as default_settings
from ...core.exceptions import BackendError, RoadPatrolError, ValidationError
from ...infrastructure.realtime import ChangeCallback, RealtimeClient, Subscription
from ...infrastructure.storage import SupabaseStorageService
from ...infrastructure.supabase_client import SupabaseClient
from ...utils.geo import is_valid_coordinates
from ...utils.images import Photo, validate_photo
from ...utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

LIST_COLUMNS = (
    "id, title, description, category, priority, status, latitude, longitude, "
    "address, photo_url, vote_count, view_count, created_at, created_by"
)
DETAIL_COLUMNS = LIST_COLUMNS + ", resolution_photo_url"
MY_REPORTS_COLUMNS = (
    "id, title, description, category, priority, status, photo_url, "
    "vote_count, view_count, created_at"
)
PROFILE_COLUMNS = "id, display_name, avatar_url, reputation_score"

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MY_REPORTS_LIMIT = 50


def validate_report_input(data: Union[ReportCreate, Dict[str, Any]]) -> ReportCreate:
    """
    Check a new report before any network call.

    Raises:
        ValidationError: first failing field, with a user-facing message
    """
    try:
        report = data if isinstance(data, ReportCreate) else ReportCreate(**data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else None
        if field == "category":
            raise ValidationError("Category is required", field="category")
        if field == "title":
            raise ValidationError("Title is required", field="title")
        if field in ("latitude", "longitude"):
            raise ValidationError("Location is required", field="location")
        raise ValidationError(f"Invalid {field or 'report'}: {first.get('msg')}", field=field)

    if not report.title:
        raise ValidationError("Title is required", field="title")
    if len(report.title) > MAX_TITLE_LENGTH:
        raise ValidationError("Title must be less than 100 characters", field="title")
    if report.description and len(report.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError("Description must be less than 500 characters", field="description")
    if not is_valid_coordinates(report.latitude, report.longitude):
        raise ValidationError("Location is required", field="location")
    return report


def _coerce_filters(filters: Union[ReportFilters, Dict[str, Any], None]) -> Optional[ReportFilters]:
    if filters is None:
        return None
    if isinstance(filters, ReportFilters):
        return filters
    return ReportFilters(**filters)


class ReportsService:
    """Report CRUD, geospatial queries and the realtime report feed."""

    def __init__(
        self,
        client: SupabaseClient,
        storage: SupabaseStorageService,
        cache: TTLCache,
        fingerprint: FingerprintService,
        realtime: Optional[RealtimeClient] = None,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.storage = storage
        self.cache = cache
        self.fingerprint = fingerprint
        self.realtime = realtime
        self.config = config or default_settings
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_report(self, data: Union[ReportCreate, Dict[str, Any]], photo: Photo) -> Report:
        """
        Upload the photo, then insert the report.

        The upload completes before the insert; a failed upload leaves no
        record behind.

        Raises:
            ValidationError: input rejected locally
            StorageError: photo upload failed
            BackendError: insert rejected
        """
        report_data = validate_report_input(data)
        if photo is None:
            raise ValidationError("Photo is required", field="photo")
        validate_photo(photo, self.config.MAX_PHOTO_BYTES)

        device_id = self.fingerprint.get_fingerprint()

        logger.info("Uploading report photo...")
        photo_url = await self.upload_report_photo(photo)

        insert_data = {
            "title": report_data.title,
            "description": report_data.description,
            "category": report_data.category.value,
            "priority": report_data.priority.value,
            "latitude": report_data.latitude,
            "longitude": report_data.longitude,
            "address": report_data.address or None,
            "photo_url": photo_url,
            "device_id": device_id,
            "created_by": report_data.created_by,
            "status": ReportStatus.OPEN.value,
            "vote_count": 0,
            "view_count": 0,
        }

        response = await self.client.table("reports").insert(insert_data).select().single().execute()
        report = Report.model_validate(response.data)

        self.cache.invalidate(REPORTS_LIST)
        if report.created_by:
            self.cache.invalidate(MY_REPORTS, report.created_by)

        logger.info(f"Report created successfully: {report.id}")
        return report

    async def upload_report_photo(self, photo: Photo) -> str:
        """Upload to the report-photos bucket and return the public URL."""
        return await self.storage.upload_image(photo.content, photo.filename, photo.content_type)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _is_default_list_query(self, filters: Optional[ReportFilters]) -> bool:
        if filters is None:
            return True
        normalized = filters.model_copy(update={"limit": None})
        return normalized.is_default() and filters.limit in (None, self.config.REPORTS_LIST_LIMIT)

    async def get_reports(
        self,
        filters: Union[ReportFilters, Dict[str, Any], None] = None,
        skip_cache: bool = False,
    ) -> List[Report]:
        """
        Newest reports first. Only the default (unfiltered) query is cached, and
        a failed default query falls back to the cached list however stale.
        """
        filters = _coerce_filters(filters)
        cacheable = self._is_default_list_query(filters)

        if cacheable and not skip_cache:
            cached = self.cache.get(REPORTS_LIST, DEFAULT_KEY)
            if cached is not None:
                return cached

        limit = (filters.limit if filters and filters.limit else None) or self.config.REPORTS_LIST_LIMIT
        query = (
            self.client.table("reports")
            .select(LIST_COLUMNS)
            .order("created_at", ascending=False)
            .limit(limit)
        )

        if filters is not None:
            if filters.status and filters.status != "all":
                query = query.eq("status", filters.status)
            if filters.category and filters.category != "all":
                query = query.eq("category", filters.category)
            if filters.priority and filters.priority != "all":
                query = query.eq("priority", filters.priority)
            if filters.exclude_resolved:
                query = query.neq("status", ReportStatus.RESOLVED.value)

        try:
            response = await query.execute()
        except RoadPatrolError as e:
            stale = self.cache.peek(REPORTS_LIST, DEFAULT_KEY) if cacheable else None
            if stale is None:
                raise
            logger.warning(f"get_reports failed, serving cached list: {e.message}")
            return stale
        reports = [Report.model_validate(row) for row in response.data or []]

        if cacheable:
            self.cache.set(REPORTS_LIST, DEFAULT_KEY, reports)
        return reports

    async def get_reports_in_bounds(
        self,
        bounds: Bounds,
        filters: Union[ReportFilters, Dict[str, Any], None] = None,
    ) -> List[Report]:
        filters = _coerce_filters(filters) or ReportFilters()
        response = await self.client.rpc("get_reports_in_bounds", {
            "min_lat": bounds.south,
            "min_lng": bounds.west,
            "max_lat": bounds.north,
            "max_lng": bounds.east,
            "p_status": filters.status if filters.status != "all" else None,
            "p_category": filters.category if filters.category != "all" else None,
            "p_limit": filters.limit or self.config.REPORTS_IN_BOUNDS_LIMIT,
        })
        return [Report.model_validate(row) for row in response.data or []]

    async def _fetch_report(self, report_id: str) -> Report:
        response = await (
            self.client.table("reports")
            .select(DETAIL_COLUMNS)
            .eq("id", report_id)
            .single()
            .execute()
        )
        report = Report.model_validate(response.data)

        if report.created_by:
            try:
                profile_response = await (
                    self.client.table("profiles")
                    .select(PROFILE_COLUMNS)
                    .eq("id", report.created_by)
                    .maybe_single()
                    .execute()
                )
                if profile_response.data:
                    report.profiles = Profile.model_validate(profile_response.data)
            except RoadPatrolError as e:
                logger.warning(f"Creator profile unavailable for report {report_id}: {e.message}")

        return report

    async def get_report_by_id(self, report_id: str, skip_cache: bool = False) -> Report:
        """
        Report detail with the creator's profile joined.

        Served from cache when fresh. Otherwise fetched with a timeout and
        retried REPORT_DETAIL_RETRIES times with a fixed delay; there is no
        stale-cache fallback. Each read bumps the view count in the background.

        Raises:
            RoadPatrolError: all attempts failed
        """
        if not skip_cache:
            cached = self.cache.get(REPORT, report_id)
            if cached is not None:
                self._schedule_view_increment(report_id)
                return cached

        retries = self.config.REPORT_DETAIL_RETRIES
        last_error: Optional[RoadPatrolError] = None

        for attempt in range(retries + 1):
            try:
                report = await with_timeout(
                    self._fetch_report(report_id), self.config.REPORT_DETAIL_TIMEOUT
                )
            except RoadPatrolError as e:
                last_error = e
                if attempt < retries:
                    logger.warning(
                        f"Loading report {report_id} failed (attempt {attempt + 1}): {e.message}. "
                        f"Retrying in {self.config.REPORT_DETAIL_RETRY_DELAY}s..."
                    )
                    await asyncio.sleep(self.config.REPORT_DETAIL_RETRY_DELAY)
                continue

            self.cache.set(REPORT, report_id, report)
            self._schedule_view_increment(report_id)
            return report

        logger.error(f"Failed to load report {report_id} after {retries + 1} attempts")
        raise last_error

    async def get_nearby_reports(
        self,
        lat: float,
        lng: float,
        category: str,
        radius: Optional[float] = None,
    ) -> List[NearbyReport]:
        """Open reports of the same category within ``radius`` meters, nearest first."""
        response = await self.client.rpc("nearby_reports", {
            "lat": lat,
            "lng": lng,
            "radius_meters": radius if radius is not None else self.config.NEARBY_RADIUS_METERS,
            "p_category": getattr(category, "value", category),
            "exclude_resolved": True,
        })
        return [NearbyReport.model_validate(row) for row in response.data or []]

    async def get_my_reports(self, user_id: Optional[str], skip_cache: bool = False) -> List[Report]:
        """
        Reports created by ``user_id``. On error or timeout the cached list
        (however stale) is returned, or [] when nothing was cached.
        """
        if not user_id:
            return []

        if not skip_cache:
            cached = self.cache.get(MY_REPORTS, user_id)
            if cached is not None:
                return cached

        query = (
            self.client.table("reports")
            .select(MY_REPORTS_COLUMNS)
            .eq("created_by", user_id)
            .order("created_at", ascending=False)
            .limit(MY_REPORTS_LIMIT)
        )
        try:
            response = await with_timeout(query.execute(), self.config.MY_REPORTS_TIMEOUT)
        except RoadPatrolError as e:
            logger.warning(f"get_my_reports failed for {user_id}: {e.message}")
            return self.cache.peek(MY_REPORTS, user_id) or []

        reports = [Report.model_validate(row) for row in response.data or []]
        self.cache.set(MY_REPORTS, user_id, reports)
        return reports

    async def get_report_statistics(self) -> Dict[str, Any]:
        response = await self.client.rpc("get_report_statistics")
        return response.data or {}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_report_status(
        self,
        report_id: str,
        status: Union[ReportStatus, str],
        photo: Optional[Photo] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Report:
        """
        Record a status change (with optional resolution photo) and update the report.

        Status only moves forward: open, in_progress, resolved. Re-applying the
        current status is allowed.

        Raises:
            ValidationError: unknown status, or a move backwards
        """
        try:
            status = ReportStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", field="status")

        current = await (
            self.client.table("reports")
            .select("status")
            .eq("id", report_id)
            .single()
            .execute()
        )
        current_status = ReportStatus(current.data["status"])
        if STATUS_ORDER[status] < STATUS_ORDER[current_status]:
            raise ValidationError(
                f"Status cannot move back from {current_status.value} to {status.value}",
                field="status",
            )

        photo_url = None
        if photo is not None and status == ReportStatus.RESOLVED:
            validate_photo(photo, self.config.MAX_PHOTO_BYTES)
            photo_url = await self.upload_report_photo(photo)

        await self.client.table("status_updates").insert({
            "report_id": report_id,
            "new_status": status.value,
            "photo_url": photo_url,
            "notes": notes,
            "updated_by": user_id,
        }).execute()

        updates: Dict[str, Any] = {
            "status": status.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if photo_url:
            updates["resolution_photo_url"] = photo_url

        response = await (
            self.client.table("reports")
            .update(updates)
            .eq("id", report_id)
            .select()
            .single()
            .execute()
        )
        report = Report.model_validate(response.data)

        self.invalidate_report(report_id, created_by=report.created_by)
        logger.info(f"Report {report_id} status -> {status.value}")
        return report

    async def increment_view_count(self, report_id: str) -> None:
        await self.client.rpc("increment_view_count", {"p_report_id": report_id})

    async def delete_report(self, report_id: str) -> None:
        await self.client.table("reports").delete().eq("id", report_id).execute()
        self.invalidate_report(report_id)
        self.cache.invalidate(MY_REPORTS)

    # ------------------------------------------------------------------
    # Cache and realtime
    # ------------------------------------------------------------------

    def invalidate_report(self, report_id: Optional[str] = None, created_by: Optional[str] = None) -> None:
        """Drop the detail entry (or all details when None), the list, and the owner's list."""
        self.cache.invalidate(REPORT, report_id)
        self.cache.invalidate(REPORTS_LIST)
        if created_by:
            self.cache.invalidate(MY_REPORTS, created_by)

    def invalidate_reports_list(self) -> None:
        self.cache.invalidate(REPORTS_LIST)

    async def subscribe_to_reports(self, callback: ChangeCallback) -> Subscription:
        if self.realtime is None:
            raise RoadPatrolError("Realtime is not configured")
        return await self.realtime.channel("reports-changes", table="reports").subscribe(callback)

    def _schedule_view_increment(self, report_id: str) -> None:
        task = asyncio.create_task(self._increment_view_count_quietly(report_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _increment_view_count_quietly(self, report_id: str) -> None:
        try:
            await self.increment_view_count(report_id)
        except RoadPatrolError as e:
            logger.warning(f"View count increment failed for {report_id}: {e.message}")

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
