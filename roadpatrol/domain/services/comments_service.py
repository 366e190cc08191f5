"""
Comments Service
Per-report comment threads, cached per report id.
"""

import logging
from typing import Any, Dict, List, Optional

from ..cache import TTLCache, COMMENTS
from ..models import ChangeEvent, ChangeType, Comment
from ...core.exceptions import NotAuthorizedError, RoadPatrolError, ValidationError
from ...infrastructure.realtime import ChangeCallback, RealtimeClient, Subscription
from ...infrastructure.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 500
COMMENTS_LIMIT = 100
COMMENT_COLUMNS = "id, report_id, user_id, content, created_at"


def placeholder_profile(user_id: Optional[str]) -> Dict[str, Any]:
    """Profile stub shown until the real profile is loaded."""
    return {"id": user_id, "display_name": "User", "avatar_url": None}


def validate_comment_content(content: Optional[str]) -> str:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Comment cannot be empty", field="content")
    if len(content) > MAX_COMMENT_LENGTH:
        raise ValidationError("Comment cannot exceed 500 characters", field="content")
    return content


def _to_comment(row: Dict[str, Any]) -> Comment:
    return Comment.model_validate({**row, "profiles": placeholder_profile(row.get("user_id"))})


class CommentsService:
    def __init__(
        self,
        client: SupabaseClient,
        cache: TTLCache,
        realtime: Optional[RealtimeClient] = None,
    ):
        self.client = client
        self.cache = cache
        self.realtime = realtime

    async def get_comments(self, report_id: str, skip_cache: bool = False) -> List[Comment]:
        """
        Oldest first, at most 100. On error the cached thread (however stale)
        is returned, or [].
        """
        if not skip_cache:
            cached = self.cache.get(COMMENTS, report_id)
            if cached is not None:
                return cached

        try:
            response = await (
                self.client.table("comments")
                .select(COMMENT_COLUMNS)
                .eq("report_id", report_id)
                .order("created_at", ascending=True)
                .limit(COMMENTS_LIMIT)
                .execute()
            )
        except RoadPatrolError as e:
            logger.error(f"Error fetching comments for {report_id}: {e.message}")
            return self.cache.peek(COMMENTS, report_id) or []

        comments = [_to_comment(row) for row in response.data or []]
        self.cache.set(COMMENTS, report_id, comments)
        return comments

    async def add_comment(self, report_id: str, user_id: str, content: str) -> Comment:
        content = validate_comment_content(content)

        response = await self.client.table("comments").insert({
            "report_id": report_id,
            "user_id": user_id,
            "content": content,
        }).select(COMMENT_COLUMNS).single().execute()

        self.cache.invalidate(COMMENTS, report_id)
        return _to_comment(response.data)

    async def update_comment(self, comment_id: str, user_id: str, content: str) -> Comment:
        """
        Edit a comment written by ``user_id``.

        Raises:
            NotAuthorizedError: no such comment, or another user wrote it
        """
        content = validate_comment_content(content)

        response = await (
            self.client.table("comments")
            .update({"content": content})
            .eq("id", comment_id)
            .eq("user_id", user_id)
            .select(COMMENT_COLUMNS)
            .maybe_single()
            .execute()
        )
        if response.data is None:
            raise NotAuthorizedError("Not authorized to edit this comment")
        comment = _to_comment(response.data)
        self.cache.invalidate(COMMENTS, comment.report_id)
        return comment

    async def delete_comment(self, comment_id: str, user_id: str, report_id: Optional[str] = None) -> None:
        """Only the author can delete; anyone else gets NotAuthorizedError."""
        response = await (
            self.client.table("comments")
            .delete()
            .eq("id", comment_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not response.data:
            raise NotAuthorizedError("Not authorized to delete this comment")
        # Without the report id every thread is dropped
        self.cache.invalidate(COMMENTS, report_id)

    async def get_comment_count(self, report_id: str) -> int:
        try:
            response = await (
                self.client.table("comments")
                .select("*", count="exact", head=True)
                .eq("report_id", report_id)
                .execute()
            )
        except RoadPatrolError as e:
            logger.error(f"Error counting comments for {report_id}: {e.message}")
            return 0
        return response.count or 0

    async def subscribe_to_comments(self, report_id: str, callback: ChangeCallback) -> Subscription:
        """Comment changes for one report; new rows carry a placeholder profile."""
        if self.realtime is None:
            raise RoadPatrolError("Realtime is not configured")

        async def on_change(event: ChangeEvent) -> None:
            self.cache.invalidate(COMMENTS, report_id)
            if event.event_type in (ChangeType.INSERT, ChangeType.UPDATE) and event.new:
                event = event.model_copy(update={
                    "new": {**event.new, "profiles": placeholder_profile(event.new.get("user_id"))}
                })
            result = callback(event)
            if result is not None:
                await result

        channel = self.realtime.channel(
            f"comments-{report_id}", table="comments", filter=f"report_id=eq.{report_id}"
        )
        return await channel.subscribe(on_change)
