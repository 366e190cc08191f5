"""
Report Store
Client-side view of the report list, the selected report and this device's
votes, kept in step with the server through realtime change events.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .base import Store
from ..models import Bounds, ChangeEvent, ChangeType, Report, ReportFilters
from ..services.reports_service import ReportsService
from ..services.votes_service import VotesService
from ...core.config import Settings, settings as default_settings
from ...core.exceptions import RoadPatrolError
from ...infrastructure.realtime import Subscription
from ...utils.timeouts import with_timeout

logger = logging.getLogger(__name__)


class ReportStoreState(BaseModel):
    reports: List[Report] = Field(default_factory=list)
    selected_report: Optional[Report] = None
    filters: ReportFilters = Field(default_factory=ReportFilters)
    voted_report_ids: Set[str] = Field(default_factory=set)
    is_loading: bool = False
    error: Optional[str] = None
    last_fetched: Optional[float] = None


class ReportStore(Store[ReportStoreState]):
    def __init__(
        self,
        reports: ReportsService,
        votes: VotesService,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(ReportStoreState())
        self.reports_service = reports
        self.votes_service = votes
        self.config = config or default_settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_reports(
        self,
        filters: Union[ReportFilters, Dict[str, Any], None] = None,
        force_refresh: bool = False,
    ) -> List[Report]:
        """
        Load the list with the current filters (plus an optional one-off patch).

        Skipped when the last fetch is younger than FETCH_DEBOUNCE_SECONDS and
        no filters were passed. On failure the existing list stays and
        ``error`` is set.
        """
        state = self.state
        if (
            not force_refresh
            and filters is None
            and state.last_fetched is not None
            and self._clock() - state.last_fetched < self.config.FETCH_DEBOUNCE_SECONDS
        ):
            return state.reports

        patch = filters.model_dump(exclude_unset=True) if isinstance(filters, ReportFilters) else (filters or {})
        merged = state.filters.model_copy(update={**patch, "limit": self.config.REPORTS_LIST_LIMIT})

        self.set_state(is_loading=True, error=None)
        try:
            reports = await with_timeout(
                self.reports_service.get_reports(merged, skip_cache=force_refresh),
                self.config.STORE_FETCH_TIMEOUT,
            )
        except RoadPatrolError as e:
            logger.error(f"Error fetching reports: {e.message}")
            self.set_state(is_loading=False, error=e.message)
            return self.state.reports
        except PydanticValidationError as e:
            logger.error(f"Malformed report in list response: {e}")
            self.set_state(is_loading=False, error="Received malformed report data")
            return self.state.reports

        self.set_state(reports=reports, is_loading=False, last_fetched=self._clock())
        return reports

    async def fetch_reports_in_bounds(self, bounds: Bounds) -> List[Report]:
        self.set_state(is_loading=True, error=None)
        try:
            reports = await with_timeout(
                self.reports_service.get_reports_in_bounds(bounds, self.state.filters),
                self.config.STORE_FETCH_TIMEOUT,
            )
        except RoadPatrolError as e:
            logger.error(f"Error fetching reports in bounds: {e.message}")
            self.set_state(is_loading=False, error=e.message)
            return self.state.reports
        except PydanticValidationError as e:
            logger.error(f"Malformed report in bounds response: {e}")
            self.set_state(is_loading=False, error="Received malformed report data")
            return self.state.reports

        self.set_state(reports=reports, is_loading=False, last_fetched=self._clock())
        return reports

    async def set_filters(self, patch: Dict[str, Any]) -> List[Report]:
        """Apply a filter patch and refetch immediately (bypasses the debounce)."""
        self.set_state(filters=self.state.filters.model_copy(update=patch), last_fetched=None)
        return await self.fetch_reports()

    async def reset_filters(self) -> List[Report]:
        self.set_state(filters=ReportFilters(), last_fetched=None)
        return await self.fetch_reports()

    # ------------------------------------------------------------------
    # Selection and local edits
    # ------------------------------------------------------------------

    def select_report(self, report: Optional[Report]) -> None:
        self.set_state(selected_report=report)

    async def load_report(self, report_id: str) -> Optional[Report]:
        """Fetch a report's detail and select it; None (with ``error`` set) on failure."""
        try:
            report = await self.reports_service.get_report_by_id(report_id)
        except RoadPatrolError as e:
            self.set_state(error=e.message)
            return None
        self.select_report(report)
        return report

    def clear_selected_report(self) -> None:
        self.set_state(selected_report=None)

    def add_report(self, report: Report) -> None:
        """Prepend a new report; a known id is replaced in place instead."""
        if any(r.id == report.id for r in self.state.reports):
            self.update_report(report)
            return
        self.set_state(reports=[report] + self.state.reports)

    def update_report(self, report: Report) -> None:
        """Replace the report with the same id, in the list and in the selection."""
        reports = [report if r.id == report.id else r for r in self.state.reports]
        selected = self.state.selected_report
        if selected is not None and selected.id == report.id:
            selected = report
        self.set_state(reports=reports, selected_report=selected)

    def remove_report(self, report_id: str) -> None:
        reports = [r for r in self.state.reports if r.id != report_id]
        selected = self.state.selected_report
        if selected is not None and selected.id == report_id:
            selected = None
        self.set_state(reports=reports, selected_report=selected)

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    async def load_voted_reports(self) -> Set[str]:
        voted = set(await self.votes_service.get_device_votes())
        self.set_state(voted_report_ids=voted)
        return voted

    def add_voted_report(self, report_id: str) -> None:
        self.set_state(voted_report_ids=self.state.voted_report_ids | {report_id})

    def remove_voted_report(self, report_id: str) -> None:
        self.set_state(voted_report_ids=self.state.voted_report_ids - {report_id})

    def is_report_voted(self, report_id: str) -> bool:
        return report_id in self.state.voted_report_ids

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    def apply_change(self, event: ChangeEvent) -> None:
        """
        Reconcile one server change. The payload is the whole row and replaces
        the cached copy with the same id. Events must be applied in delivery
        order: an UPDATE followed by a DELETE of the same id leaves it absent.
        """
        record_id = event.record_id
        try:
            if event.event_type == ChangeType.INSERT:
                self.reports_service.invalidate_reports_list()
                self.add_report(Report.model_validate(event.new))
            elif event.event_type == ChangeType.UPDATE:
                self.reports_service.invalidate_report(record_id)
                self.update_report(Report.model_validate(event.new))
            elif event.event_type == ChangeType.DELETE:
                self.reports_service.invalidate_report(record_id)
                if record_id:
                    self.remove_report(record_id)
        except PydanticValidationError as e:
            logger.warning(f"Ignoring malformed {event.event_type.value} for report {record_id}: {e}")

    async def subscribe_to_updates(self) -> Subscription:
        return await self.reports_service.subscribe_to_reports(self.apply_change)
