"""
Duplicate Detection Service
Checks for open reports of the same category near a new report's location and
drives the three-step report submission flow around that check.

Steps:
1. Photo + location
2. Details (title, category, priority, description); advancing runs the
   duplicate check and a non-empty result blocks until the user chooses
3. Confirm and submit
"""

import logging
from typing import List, Optional

from ..models import Location, NearbyReport, Report, ReportCategory, ReportCreate, ReportPriority, Vote
from ..results import Success
from .reports_service import ReportsService, validate_report_input
from .votes_service import VotesService
from ...core.config import settings
from ...core.exceptions import RoadPatrolError, ValidationError
from ...infrastructure.geocoding import NominatimClient
from ...utils.images import Photo, compress_image, extract_exif_gps, validate_photo

logger = logging.getLogger(__name__)

# Same-category open reports closer than this are treated as possible duplicates
NEARBY_RADIUS_METERS = 50

STEP_PHOTO_LOCATION = 1
STEP_DETAILS = 2
STEP_CONFIRM = 3


class DuplicateDetector:
    def __init__(self, reports: ReportsService, radius_meters: Optional[float] = None):
        self.reports = reports
        self.radius_meters = radius_meters or settings.NEARBY_RADIUS_METERS or NEARBY_RADIUS_METERS

    async def find_nearby(
        self,
        lat: float,
        lng: float,
        category,
        radius_meters: Optional[float] = None,
    ) -> List[NearbyReport]:
        """Candidates in server order (nearest first). Errors propagate."""
        return await self.reports.get_nearby_reports(
            lat, lng, category, radius=radius_meters or self.radius_meters
        )


class ReportSubmission:
    """
    State of one report being composed.

    Upvoting a duplicate ends the flow without creating a report; a failed
    duplicate check is logged and the user proceeds as if none were found.
    """

    def __init__(
        self,
        reports: ReportsService,
        votes: VotesService,
        detector: Optional[DuplicateDetector] = None,
        compress_photos: bool = True,
        geocoder: Optional[NominatimClient] = None,
    ):
        self.reports = reports
        self.votes = votes
        self.detector = detector or DuplicateDetector(reports)
        self.geocoder = geocoder
        self.compress_photos = compress_photos
        self.reset()

    def reset(self) -> None:
        self.step = STEP_PHOTO_LOCATION
        self.photo: Optional[Photo] = None
        self.location: Optional[Location] = None
        self.address: Optional[str] = None
        self.title = ""
        self.description = ""
        self.category: Optional[ReportCategory] = None
        self.priority = ReportPriority.MEDIUM
        self.duplicates: List[NearbyReport] = []
        self.is_checking_duplicates = False
        self.is_submitting = False
        self.error: Optional[str] = None
        self.created_report: Optional[Report] = None
        self.upvoted_report_id: Optional[str] = None

    # -- step 1 ---------------------------------------------------------------

    async def set_photo(self, photo: Photo) -> None:
        """
        Validate and (optionally) compress the photo. GPS coordinates embedded
        in the photo become the location, with its address looked up.

        Raises:
            ValidationError: not an image or over the size limit
        """
        validate_photo(photo)

        gps = extract_exif_gps(photo)
        self.photo = compress_image(photo) if self.compress_photos else photo

        if isinstance(gps, Success):
            logger.info("Using location from photo EXIF data")
            await self.set_location(gps.value)
        elif not gps.ok:
            logger.debug(f"No EXIF location: {gps.reason}")

    async def set_location(self, location: Location, address: Optional[str] = None) -> None:
        """Pick the location; without an explicit address it is reverse geocoded."""
        self.location = location
        self.address = address
        if address is None and self.geocoder is not None:
            result = await self.geocoder.reverse_geocode(location.lat, location.lng)
            self.address = result.formatted_address

    # -- step 2 ---------------------------------------------------------------

    def set_details(
        self,
        title: Optional[str] = None,
        description: Optional[str] = None,
        category=None,
        priority=None,
    ) -> None:
        if title is not None:
            self.title = title
        if description is not None:
            self.description = description
        if category is not None:
            self.category = ReportCategory(category)
        if priority is not None:
            self.priority = ReportPriority(priority)

    def build_report(self, created_by: Optional[str] = None) -> ReportCreate:
        """
        Raises:
            ValidationError: missing or invalid field
        """
        if self.location is None:
            raise ValidationError("Location is required", field="location")
        if self.category is None:
            raise ValidationError("Category is required", field="category")
        return validate_report_input({
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "latitude": self.location.lat,
            "longitude": self.location.lng,
            "address": self.address,
            "created_by": created_by,
        })

    def validate_step(self, step: Optional[int] = None) -> Optional[str]:
        """Error message for the step, or None when it is complete."""
        step = step or self.step
        if step == STEP_PHOTO_LOCATION:
            if self.photo is None:
                return "Please add a photo"
            if self.location is None:
                return "Please select a location"
            return None
        if step >= STEP_DETAILS:
            try:
                self.build_report()
            except ValidationError as e:
                return e.message
        return None

    async def check_duplicates(self) -> List[NearbyReport]:
        """Run the nearby check; on failure returns [] so the user is not blocked."""
        self.is_checking_duplicates = True
        try:
            self.duplicates = await self.detector.find_nearby(
                self.location.lat, self.location.lng, self.category
            )
        except RoadPatrolError as e:
            logger.warning(f"Duplicate check failed, continuing: {e.message}")
            self.duplicates = []
        finally:
            self.is_checking_duplicates = False
        return self.duplicates

    # -- navigation -------------------------------------------------------------

    async def next_step(self) -> bool:
        """Advance one step. Returns False when validation or duplicates block."""
        self.error = self.validate_step()
        if self.error:
            return False

        if self.step == STEP_DETAILS:
            duplicates = await self.check_duplicates()
            if duplicates:
                logger.info(f"Found {len(duplicates)} possible duplicates nearby")
                return False

        if self.step < STEP_CONFIRM:
            self.step += 1
        return True

    def previous_step(self) -> None:
        self.error = None
        if self.step > STEP_PHOTO_LOCATION:
            self.step -= 1

    def continue_with_new(self) -> None:
        """Dismiss the duplicates and go on to confirmation."""
        self.duplicates = []
        self.step = STEP_CONFIRM

    async def upvote_existing(self, report_id: str, user_id: Optional[str] = None) -> Vote:
        """
        Vote on the existing report instead of filing a new one.

        Raises:
            AlreadyVotedError: this device already voted on it
        """
        vote = await self.votes.vote_on_report(report_id, user_id)
        self.upvoted_report_id = report_id
        self.duplicates = []
        return vote

    # -- step 3 ---------------------------------------------------------------

    async def submit(self, user_id: Optional[str] = None) -> Report:
        """
        Raises:
            ValidationError: the draft is incomplete
            RoadPatrolError: upload or insert failed (draft is kept for retry)
        """
        if self.photo is None:
            raise ValidationError("Photo is required", field="photo")
        report_data = self.build_report(created_by=user_id)

        self.is_submitting = True
        self.error = None
        try:
            self.created_report = await self.reports.create_report(report_data, self.photo)
        except RoadPatrolError as e:
            self.error = e.message
            raise
        finally:
            self.is_submitting = False
        return self.created_report
