"""
Tests for device-based voting.

Tests cover:
- One vote per (report, device)
- Unique-violation translation when the pre-check misses
- Vote removal and counters
- Cache invalidation after voting
"""
import pytest

from roadpatrol.core.exceptions import AlreadyVotedError, BackendError
from roadpatrol.domain.cache import DEFAULT_KEY, REPORT, REPORTS_LIST


class TestVoteOnReport:
    async def test_vote_records_device_and_increments(self, app, backend):
        """A vote stores the device and bumps the counter."""
        row = backend.add_report()

        vote = await app.votes.vote_on_report(row["id"], user_id="user-1")

        assert vote.device_id == app.fingerprint.get_fingerprint()
        assert vote.user_id == "user-1"
        assert backend.row("reports", row["id"])["vote_count"] == 1
        assert ("increment_vote_count", {"p_report_id": row["id"]}) in backend.rpc_calls

    async def test_second_vote_is_rejected_and_count_unchanged(self, app, backend):
        """A second vote from the device is refused."""
        row = backend.add_report()
        await app.votes.vote_on_report(row["id"])

        with pytest.raises(AlreadyVotedError) as exc_info:
            await app.votes.vote_on_report(row["id"])

        assert exc_info.value.message == "You have already voted on this issue"
        assert backend.row("reports", row["id"])["vote_count"] == 1
        assert len(backend.tables["votes"]) == 1

    async def test_unique_violation_maps_to_already_voted(self, app, backend):
        """A unique violation on insert means already voted."""
        row = backend.add_report()
        backend.insert("votes", {"report_id": row["id"], "device_id": app.fingerprint.get_fingerprint()})
        # Pre-check fails, so the insert hits the unique constraint
        backend.fail("votes", status=500)

        with pytest.raises(AlreadyVotedError):
            await app.votes.vote_on_report(row["id"])

        assert backend.row("reports", row["id"])["vote_count"] == 0

    async def test_other_insert_errors_propagate(self, app, backend):
        """Other insert errors propagate unchanged."""
        row = backend.add_report()
        backend.fail("votes")  # pre-check
        backend.fail("votes", status=403)  # insert

        with pytest.raises(BackendError) as exc_info:
            await app.votes.vote_on_report(row["id"])

        assert not isinstance(exc_info.value, AlreadyVotedError)
        assert exc_info.value.status_code == 403

    async def test_vote_invalidates_report_caches(self, app, backend):
        """Voting drops the report and list caches."""
        row = backend.add_report()
        app.cache.set(REPORT, row["id"], "stale")
        app.cache.set(REPORTS_LIST, DEFAULT_KEY, ["stale"])

        await app.votes.vote_on_report(row["id"])

        assert app.cache.get(REPORT, row["id"]) is None
        assert app.cache.get(REPORTS_LIST) is None

    async def test_failed_counter_update_still_invalidates(self, app, backend):
        """The vote row exists even when the counter RPC fails, so caches drop."""
        row = backend.add_report()
        app.cache.set(REPORT, row["id"], "stale")
        app.cache.set(REPORTS_LIST, DEFAULT_KEY, ["stale"])
        backend.fail("rpc:increment_vote_count")

        with pytest.raises(BackendError):
            await app.votes.vote_on_report(row["id"])

        assert len(backend.tables["votes"]) == 1
        assert app.cache.get(REPORT, row["id"]) is None
        assert app.cache.get(REPORTS_LIST) is None


class TestVoteQueries:
    async def test_check_if_voted(self, app, backend):
        """A stored vote is detected."""
        row = backend.add_report()
        assert await app.votes.check_if_voted(row["id"]) is False

        await app.votes.vote_on_report(row["id"])

        assert await app.votes.check_if_voted(row["id"]) is True
        assert await app.votes.check_if_voted(row["id"], device_id="another-device") is False

    async def test_check_if_voted_false_on_error(self, app, backend):
        """A failed check reports not voted."""
        backend.fail("votes", network=True)
        assert await app.votes.check_if_voted("r1") is False

    async def test_remove_vote(self, app, backend):
        """Removing a vote deletes it and decrements the counter."""
        row = backend.add_report()
        await app.votes.vote_on_report(row["id"])

        await app.votes.remove_vote(row["id"])

        assert backend.tables["votes"] == []
        assert backend.row("reports", row["id"])["vote_count"] == 0
        assert await app.votes.check_if_voted(row["id"]) is False

    async def test_vote_count(self, app, backend):
        """Votes are counted per report."""
        backend.insert("votes", {"report_id": "r1", "device_id": "a"})
        backend.insert("votes", {"report_id": "r1", "device_id": "b"})
        backend.insert("votes", {"report_id": "r2", "device_id": "a"})

        assert await app.votes.get_vote_count("r1") == 2

    async def test_device_and_user_votes(self, app, backend):
        """Votes are listed per device and per user."""
        device = app.fingerprint.get_fingerprint()
        backend.insert("votes", {"report_id": "r1", "device_id": device, "user_id": "u1"})
        backend.insert("votes", {"report_id": "r2", "device_id": "other", "user_id": "u1"})

        assert await app.votes.get_device_votes() == ["r1"]
        assert sorted(await app.votes.get_user_votes("u1")) == ["r1", "r2"]

    async def test_device_votes_empty_on_error(self, app, backend):
        """A failed device lookup is empty."""
        backend.fail("votes")
        assert await app.votes.get_device_votes() == []
