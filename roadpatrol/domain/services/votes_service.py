"""
Votes Service
One vote per (report, device). The device fingerprint is the voter identity,
so anonymous users can vote; user_id is attached when signed in.
"""

import logging
from typing import List, Optional

from ..cache import TTLCache, REPORT, REPORTS_LIST
from ..models import Vote
from .fingerprint_service import FingerprintService
from ...core.exceptions import AlreadyVotedError, BackendError, RoadPatrolError
from ...infrastructure.realtime import ChangeCallback, RealtimeClient, Subscription
from ...infrastructure.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


class VotesService:
    def __init__(
        self,
        client: SupabaseClient,
        cache: TTLCache,
        fingerprint: FingerprintService,
        realtime: Optional[RealtimeClient] = None,
    ):
        self.client = client
        self.cache = cache
        self.fingerprint = fingerprint
        self.realtime = realtime

    def _invalidate(self, report_id: str) -> None:
        self.cache.invalidate(REPORT, report_id)
        self.cache.invalidate(REPORTS_LIST)

    async def vote_on_report(self, report_id: str, user_id: Optional[str] = None) -> Vote:
        """
        Upvote a report from this device.

        Raises:
            AlreadyVotedError: this device already voted (pre-check or unique violation)
            BackendError: insert or counter update failed
        """
        device_id = self.fingerprint.get_fingerprint()

        if await self.check_if_voted(report_id, device_id):
            raise AlreadyVotedError()

        try:
            response = await self.client.table("votes").insert({
                "report_id": report_id,
                "device_id": device_id,
                "user_id": user_id,
            }).select().single().execute()
        except BackendError as e:
            if e.is_unique_violation:
                raise AlreadyVotedError()
            raise

        try:
            await self.client.rpc("increment_vote_count", {"p_report_id": report_id})
        finally:
            self._invalidate(report_id)

        logger.info(f"Vote recorded on report {report_id}")
        return Vote.model_validate(response.data)

    async def remove_vote(self, report_id: str) -> None:
        device_id = self.fingerprint.get_fingerprint()

        await (
            self.client.table("votes")
            .delete()
            .eq("report_id", report_id)
            .eq("device_id", device_id)
            .execute()
        )
        try:
            await self.client.rpc("decrement_vote_count", {"p_report_id": report_id})
        finally:
            self._invalidate(report_id)

    async def check_if_voted(self, report_id: str, device_id: Optional[str] = None) -> bool:
        """True when the device has a vote on the report; False on any error."""
        device_id = device_id or self.fingerprint.get_fingerprint()
        try:
            response = await (
                self.client.table("votes")
                .select("id")
                .eq("report_id", report_id)
                .eq("device_id", device_id)
                .maybe_single()
                .execute()
            )
        except RoadPatrolError as e:
            logger.warning(f"Vote check failed for report {report_id}: {e.message}")
            return False
        return response.data is not None

    async def get_vote_count(self, report_id: str) -> int:
        response = await (
            self.client.table("votes")
            .select("*", count="exact", head=True)
            .eq("report_id", report_id)
            .execute()
        )
        return response.count or 0

    async def get_user_votes(self, user_id: str) -> List[str]:
        """Report ids the signed-in user voted on."""
        response = await self.client.table("votes").select("report_id").eq("user_id", user_id).execute()
        return [row["report_id"] for row in response.data or []]

    async def get_device_votes(self) -> List[str]:
        """Report ids this device voted on ([] on error)."""
        device_id = self.fingerprint.get_fingerprint()
        try:
            response = await self.client.table("votes").select("report_id").eq("device_id", device_id).execute()
        except RoadPatrolError as e:
            logger.warning(f"Could not load device votes: {e.message}")
            return []
        return [row["report_id"] for row in response.data or []]

    async def subscribe_to_votes(self, report_id: str, callback: ChangeCallback) -> Subscription:
        if self.realtime is None:
            raise RoadPatrolError("Realtime is not configured")
        channel = self.realtime.channel(
            f"votes-{report_id}", table="votes", filter=f"report_id=eq.{report_id}"
        )
        return await channel.subscribe(callback)
