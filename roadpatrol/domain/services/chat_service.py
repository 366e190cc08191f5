"""
Chat Service
Global chat room shared by all users.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..cache import TTLCache, CHAT, DEFAULT_KEY
from ..models import ChangeEvent, ChatMessage
from ...core.config import Settings, settings as default_settings
from ...core.exceptions import NotAuthorizedError, RoadPatrolError, ValidationError
from ...infrastructure.realtime import ChangeCallback, RealtimeClient, Subscription
from ...infrastructure.supabase_client import SupabaseClient
from ...utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
DEFAULT_PAGE_SIZE = 50
ACTIVE_WINDOW = timedelta(minutes=5)
CHAT_COLUMNS = "id, user_id, username, content, created_at"


class ChatService:
    def __init__(
        self,
        client: SupabaseClient,
        cache: TTLCache,
        realtime: Optional[RealtimeClient] = None,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.cache = cache
        self.realtime = realtime
        self.config = config or default_settings

    async def get_global_messages(
        self,
        limit: int = DEFAULT_PAGE_SIZE,
        before: Optional[str] = None,
        skip_cache: bool = False,
    ) -> List[ChatMessage]:
        """
        Latest messages, returned oldest first.

        Args:
            limit: page size
            before: ISO timestamp; only messages older than this
            skip_cache: bypass a fresh cache entry

        Only the latest page at the default size is cached. On error or
        timeout that cached page (however stale) is returned for the same
        request, otherwise [].
        """
        cacheable = before is None and limit == DEFAULT_PAGE_SIZE

        if cacheable and not skip_cache:
            cached = self.cache.get(CHAT, DEFAULT_KEY)
            if cached is not None:
                return cached

        query = (
            self.client.table("global_chat")
            .select(CHAT_COLUMNS)
            .order("created_at", ascending=False)
            .limit(limit)
        )
        if before:
            query = query.lt("created_at", before)

        try:
            response = await with_timeout(query.execute(), self.config.CHAT_TIMEOUT)
        except RoadPatrolError as e:
            logger.warning(f"Chat fetch failed, serving cached messages: {e.message}")
            stale = self.cache.peek(CHAT, DEFAULT_KEY) if cacheable else None
            return stale or []

        messages = [ChatMessage.model_validate(row) for row in reversed(response.data or [])]
        if cacheable:
            self.cache.set(CHAT, DEFAULT_KEY, messages)
        return messages

    async def send_global_message(
        self,
        user_id: Optional[str],
        content: str,
        username: str = "Anonymous",
    ) -> ChatMessage:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message cannot be empty", field="content")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError("Message cannot exceed 500 characters", field="content")

        response = await self.client.table("global_chat").insert({
            "user_id": user_id,
            "username": username or "Anonymous",
            "content": content,
        }).select(CHAT_COLUMNS).single().execute()

        self.cache.invalidate(CHAT)
        return ChatMessage.model_validate(response.data)

    async def delete_global_message(self, message_id: str, user_id: str) -> None:
        """Only the sender can delete; anyone else gets NotAuthorizedError."""
        response = await (
            self.client.table("global_chat")
            .delete()
            .eq("id", message_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not response.data:
            raise NotAuthorizedError("Not authorized to delete this message")
        self.cache.invalidate(CHAT)

    async def subscribe_to_global_chat(self, callback: ChangeCallback) -> Subscription:
        if self.realtime is None:
            raise RoadPatrolError("Realtime is not configured")

        async def on_change(event: ChangeEvent) -> None:
            self.cache.invalidate(CHAT)
            result = callback(event)
            if result is not None:
                await result

        return await self.realtime.channel("global-chat", table="global_chat").subscribe(on_change)

    async def get_active_users_count(self) -> int:
        """Messages posted in the last five minutes (0 on error)."""
        since = (datetime.now(timezone.utc) - ACTIVE_WINDOW).isoformat()
        try:
            response = await (
                self.client.table("global_chat")
                .select("user_id", count="exact", head=True)
                .gte("created_at", since)
                .execute()
            )
        except RoadPatrolError as e:
            logger.error(f"Error counting active users: {e.message}")
            return 0
        return response.count or 0

    async def get_total_message_count(self) -> int:
        try:
            response = await self.client.table("global_chat").select("*", count="exact", head=True).execute()
        except RoadPatrolError as e:
            logger.error(f"Error counting messages: {e.message}")
            return 0
        return response.count or 0
