"""
Tests for comments and global chat.

Tests cover:
- Content validation and trimming
- Ordering (comments ascending, chat returned oldest first)
- Cache hits, invalidation and stale fallback on failure
- Realtime subscriptions attach placeholder profiles
- Only the author can edit or delete a comment or chat message
"""
import pytest

from roadpatrol.core.exceptions import NotAuthorizedError, ValidationError
from roadpatrol.domain.cache import CHAT, COMMENTS, DEFAULT_KEY
from roadpatrol.domain.models import ChangeType

from conftest import postgres_change


# =============================================================================
# COMMENTS
# =============================================================================

class TestComments:
    async def test_add_comment_trims_and_attaches_placeholder(self, app, backend):
        """New comments are trimmed and carry a placeholder profile."""
        comment = await app.comments.add_comment("r1", "user-1", "  Still there  ")

        assert comment.content == "Still there"
        assert comment.profiles.display_name == "User"
        assert comment.profiles.id == "user-1"
        assert backend.tables["comments"][0]["content"] == "Still there"

    @pytest.mark.parametrize("content,message", [
        ("", "Comment cannot be empty"),
        ("    ", "Comment cannot be empty"),
        ("x" * 501, "Comment cannot exceed 500 characters"),
    ])
    async def test_invalid_content(self, app, backend, content, message):
        """Empty and oversized comments never reach the backend."""
        with pytest.raises(ValidationError) as exc_info:
            await app.comments.add_comment("r1", "user-1", content)

        assert exc_info.value.message == message
        assert backend.requests == []

    async def test_comments_are_oldest_first(self, app, backend):
        """A thread lists its own comments oldest first."""
        backend.insert("comments", {"report_id": "r1", "user_id": "u", "content": "first"})
        backend.insert("comments", {"report_id": "r1", "user_id": "u", "content": "second"})
        backend.insert("comments", {"report_id": "r2", "user_id": "u", "content": "elsewhere"})

        comments = await app.comments.get_comments("r1")

        assert [c.content for c in comments] == ["first", "second"]

    async def test_cached_then_invalidated_by_add(self, app, backend):
        """A thread is cached until a comment is added."""
        await app.comments.get_comments("r1")
        await app.comments.get_comments("r1")
        assert backend.count_requests("GET", "/rest/v1/comments") == 1

        await app.comments.add_comment("r1", "u", "new")
        comments = await app.comments.get_comments("r1")

        assert [c.content for c in comments] == ["new"]
        assert backend.count_requests("GET", "/rest/v1/comments") == 2

    async def test_error_falls_back_to_stale(self, app, backend, clock):
        """A failed fetch returns the expired cached thread."""
        backend.insert("comments", {"report_id": "r1", "user_id": "u", "content": "kept"})
        await app.comments.get_comments("r1")
        clock.advance(60)
        backend.fail("comments")

        comments = await app.comments.get_comments("r1")

        assert [c.content for c in comments] == ["kept"]

    async def test_error_without_cache_is_empty(self, app, backend):
        """A failed fetch with nothing cached is empty."""
        backend.fail("comments", network=True)
        assert await app.comments.get_comments("r1") == []

    async def test_update_and_delete(self, app, backend):
        """The author can edit and delete, dropping the cached thread."""
        comment = await app.comments.add_comment("r1", "u", "typo")
        app.cache.set(COMMENTS, "r1", ["stale"])

        updated = await app.comments.update_comment(comment.id, "u", "fixed")
        assert updated.content == "fixed"
        assert app.cache.get(COMMENTS, "r1") is None

        app.cache.set(COMMENTS, "r1", ["stale"])
        await app.comments.delete_comment(comment.id, "u", "r1")
        assert backend.tables["comments"] == []
        assert app.cache.get(COMMENTS, "r1") is None

    async def test_other_user_cannot_edit(self, app, backend):
        """An edit filtered to another user's id changes nothing."""
        comment = await app.comments.add_comment("r1", "u", "original")

        with pytest.raises(NotAuthorizedError):
            await app.comments.update_comment(comment.id, "intruder", "defaced")

        assert backend.tables["comments"][0]["content"] == "original"

    async def test_other_user_cannot_delete(self, app, backend):
        """A delete filtered to another user's id leaves the comment."""
        comment = await app.comments.add_comment("r1", "u", "keep me")
        app.cache.set(COMMENTS, "r1", ["cached"])

        with pytest.raises(NotAuthorizedError):
            await app.comments.delete_comment(comment.id, "intruder", "r1")

        assert len(backend.tables["comments"]) == 1
        assert app.cache.get(COMMENTS, "r1") == ["cached"]

    async def test_comment_count(self, app, backend):
        """Comments are counted per report."""
        backend.insert("comments", {"report_id": "r1", "content": "a"})
        backend.insert("comments", {"report_id": "r1", "content": "b"})
        assert await app.comments.get_comment_count("r1") == 2

    async def test_subscription_attaches_placeholder_profile(self, app):
        """Realtime comments carry a placeholder profile and drop the cache."""
        received = []
        app.cache.set(COMMENTS, "r1", ["stale"])
        subscription = await app.comments.subscribe_to_comments("r1", received.append)

        await app.realtime.handle_message(postgres_change(
            "comments-r1", "INSERT", table="comments",
            record={"id": "c1", "report_id": "r1", "user_id": "u9", "content": "hi"},
        ))

        assert received[0].event_type == ChangeType.INSERT
        assert received[0].new["profiles"] == {"id": "u9", "display_name": "User", "avatar_url": None}
        assert app.cache.get(COMMENTS, "r1") is None
        await subscription.release()


# =============================================================================
# CHAT
# =============================================================================

class TestGlobalChat:
    async def test_send_message(self, app, backend):
        """Messages are trimmed and default to Anonymous."""
        message = await app.chat.send_global_message("u1", "  hello  ")

        assert message.content == "hello"
        assert message.username == "Anonymous"

    @pytest.mark.parametrize("content,message", [
        ("", "Message cannot be empty"),
        ("m" * 501, "Message cannot exceed 500 characters"),
    ])
    async def test_invalid_message(self, app, content, message):
        """Empty and oversized messages are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            await app.chat.send_global_message("u1", content)
        assert exc_info.value.message == message

    async def test_messages_returned_oldest_first(self, app, backend):
        """The latest page is returned oldest first."""
        for text in ("one", "two", "three"):
            backend.insert("global_chat", {"user_id": "u", "username": "Ada", "content": text})

        messages = await app.chat.get_global_messages(limit=2)

        assert [m.content for m in messages] == ["two", "three"]

    async def test_unpaginated_page_is_cached(self, app, backend):
        """The latest page is served from the cache."""
        await app.chat.get_global_messages()
        await app.chat.get_global_messages()

        assert backend.count_requests("GET", "/rest/v1/global_chat") == 1

    async def test_paginated_page_is_not_cached(self, app, backend):
        """Older pages are fetched but not cached."""
        first = backend.insert("global_chat", {"username": "a", "content": "old"})
        backend.insert("global_chat", {"username": "a", "content": "new"})

        older = await app.chat.get_global_messages(before="2026-10-01T12:00:02+00:00")

        assert [m.id for m in older] == [first["id"]]
        assert app.cache.peek(CHAT, DEFAULT_KEY) is None

    async def test_custom_limit_bypasses_cached_page(self, app, backend):
        """A page of another size is fetched fresh and not cached."""
        for text in ("one", "two", "three"):
            backend.insert("global_chat", {"username": "a", "content": text})
        await app.chat.get_global_messages()

        short = await app.chat.get_global_messages(limit=1)

        assert [m.content for m in short] == ["three"]
        assert [m.content for m in app.cache.peek(CHAT, DEFAULT_KEY)] == ["one", "two", "three"]
        assert backend.count_requests("GET", "/rest/v1/global_chat") == 2

    async def test_custom_limit_failure_does_not_serve_default_page(self, app, backend):
        """A failed page of another size is empty rather than the cached page."""
        backend.insert("global_chat", {"username": "a", "content": "cached"})
        await app.chat.get_global_messages()
        backend.fail("global_chat", network=True)

        assert await app.chat.get_global_messages(limit=10) == []

    async def test_failure_serves_cached_messages(self, app, backend, clock):
        """A failed fetch returns the cached page."""
        backend.insert("global_chat", {"username": "a", "content": "cached"})
        await app.chat.get_global_messages()
        clock.advance(30)
        backend.fail("global_chat", network=True)

        messages = await app.chat.get_global_messages()

        assert [m.content for m in messages] == ["cached"]

    async def test_timeout_serves_cached_messages(self, config, app, backend, clock):
        """A slow fetch returns the cached page."""
        config.CHAT_TIMEOUT = 0.05
        backend.insert("global_chat", {"username": "a", "content": "cached"})
        await app.chat.get_global_messages()
        clock.advance(30)
        backend.delay("global_chat", 0.5)

        messages = await app.chat.get_global_messages()

        assert [m.content for m in messages] == ["cached"]

    async def test_failure_without_cache_is_empty(self, app, backend):
        """A failed fetch with nothing cached is empty."""
        backend.fail("global_chat")
        assert await app.chat.get_global_messages() == []

    async def test_send_invalidates_cache(self, app, backend):
        """Sending drops the cached page."""
        await app.chat.get_global_messages()
        await app.chat.send_global_message("u1", "hi", username="Ada")

        messages = await app.chat.get_global_messages()

        assert [m.username for m in messages] == ["Ada"]

    async def test_delete_message(self, app, backend):
        """The sender can delete a message."""
        message = await app.chat.send_global_message("u1", "oops")
        await app.chat.delete_global_message(message.id, "u1")
        assert backend.tables["global_chat"] == []

    async def test_other_user_cannot_delete_message(self, app, backend):
        """Only the sender's id removes a chat message."""
        message = await app.chat.send_global_message("u1", "mine")

        with pytest.raises(NotAuthorizedError):
            await app.chat.delete_global_message(message.id, "u2")

        assert [m["content"] for m in backend.tables["global_chat"]] == ["mine"]

    async def test_counts(self, app, backend):
        """Messages are counted."""
        backend.insert("global_chat", {"username": "a", "content": "x"})
        backend.insert("global_chat", {"username": "b", "content": "y"})

        assert await app.chat.get_total_message_count() == 2

    async def test_counts_zero_on_error(self, app, backend):
        """Counts are zero when the backend fails."""
        backend.fail("global_chat", times=2)

        assert await app.chat.get_active_users_count() == 0
        assert await app.chat.get_total_message_count() == 0

    async def test_chat_subscription_invalidates(self, app):
        """Realtime chat messages drop the cached page."""
        received = []
        app.cache.set(CHAT, DEFAULT_KEY, ["stale"])
        await app.chat.subscribe_to_global_chat(received.append)

        await app.realtime.handle_message(postgres_change(
            "global-chat", "INSERT", table="global_chat",
            record={"id": "m1", "username": "a", "content": "hey"},
        ))

        assert len(received) == 1
        assert app.cache.peek(CHAT, DEFAULT_KEY) is None
