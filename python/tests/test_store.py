"""
Tests for the interview record stores and the read-through cache.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from mockloop.cache import LEADERBOARD_PREFIX, ReadThroughCache, user_key
from mockloop.errors import StoreUnavailable
from mockloop.models import BillingEntry, Interview, InterviewStatus
from mockloop.store import InMemoryInterviewStore, JsonFileInterviewStore, mapped_store_errors
from tests.mock_data import BASE_TIME, generate_user


@pytest.fixture(params=["memory", "json"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    cache = ReadThroughCache()
    if request.param == "memory":
        return InMemoryInterviewStore(cache)
    return JsonFileInterviewStore(tmp_path / "data", cache)


def _interview(interview_id: str, user_id: str = "alice", minutes_ago: int = 0) -> Interview:
    return Interview(
        id=interview_id,
        user_id=user_id,
        created_at=BASE_TIME - timedelta(minutes=minutes_ago),
        tokens_prepaid=750,
    )


# =============================================================================
# Store contract
# =============================================================================


class TestInterviewStore:
    """Contract tests run against both store implementations."""

    @pytest.mark.asyncio
    async def test_interview_round_trip(self, store) -> None:
        await store.create_interview(_interview("i1"))

        loaded = await store.get_interview("i1")

        assert loaded is not None
        assert loaded.user_id == "alice"
        assert loaded.created_at == BASE_TIME
        assert loaded.status == InterviewStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_missing_interview_is_none(self, store) -> None:
        assert await store.get_interview("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_interview_rejected(self, store) -> None:
        await store.create_interview(_interview("i1"))
        with pytest.raises(ValueError):
            await store.create_interview(_interview("i1"))

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self, store) -> None:
        await store.create_interview(_interview("i1"))

        loaded = await store.get_interview("i1")
        loaded.code = "mutated"

        assert (await store.get_interview("i1")).code == ""

    @pytest.mark.asyncio
    async def test_update_enforces_billing_invariant(self, store) -> None:
        """Marking deducted without tokens_used is refused."""
        await store.create_interview(_interview("i1"))

        with pytest.raises(ValueError):
            await store.update_interview("i1", tokens_deducted=True)

        assert (await store.get_interview("i1")).tokens_deducted is False

    @pytest.mark.asyncio
    async def test_finalizing_update(self, store) -> None:
        await store.create_interview(_interview("i1"))

        updated = await store.update_interview(
            "i1",
            status=InterviewStatus.COMPLETED,
            ended_at=BASE_TIME,
            tokens_used=500,
            tokens_deducted=True,
        )

        assert updated.is_finalized
        assert (await store.get_interview("i1")).tokens_used == 500

    @pytest.mark.asyncio
    async def test_list_filters_by_status_and_age(self, store) -> None:
        await store.create_interview(_interview("old", minutes_ago=90))
        await store.create_interview(_interview("new", minutes_ago=10))
        await store.create_interview(_interview("older", minutes_ago=120))
        await store.update_interview(
            "older",
            status=InterviewStatus.COMPLETED,
            tokens_used=1,
            tokens_deducted=True,
        )

        stale = await store.list_interviews(
            status=InterviewStatus.ACTIVE,
            created_before=BASE_TIME - timedelta(minutes=60),
        )

        assert [i.id for i in stale] == ["old"]

    @pytest.mark.asyncio
    async def test_user_tokens(self, store) -> None:
        await store.create_user(generate_user("alice", tokens=1000))

        await store.set_user_tokens("alice", 250)

        assert await store.get_user_tokens("alice") == 250

    @pytest.mark.asyncio
    async def test_negative_balance_refused(self, store) -> None:
        await store.create_user(generate_user("alice", tokens=10))
        with pytest.raises(ValueError):
            await store.set_user_tokens("alice", -1)

    @pytest.mark.asyncio
    async def test_unknown_user_tokens(self, store) -> None:
        with pytest.raises(KeyError):
            await store.get_user_tokens("ghost")

    @pytest.mark.asyncio
    async def test_top_users_by_xp(self, store) -> None:
        await store.create_user(generate_user("a", xp=100))
        await store.create_user(generate_user("b", xp=900))
        await store.create_user(generate_user("c", xp=400))

        top = await store.list_top_users(2)

        assert [u.id for u in top] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_billing_history_per_user_oldest_first(self, store) -> None:
        later = BillingEntry(id="b2", user_id="alice", tokens=20000, created_at=BASE_TIME + timedelta(days=30))
        earlier = BillingEntry(id="b1", user_id="alice", tokens=4500, created_at=BASE_TIME)
        await store.add_billing_entry(later)
        await store.add_billing_entry(earlier)
        await store.add_billing_entry(BillingEntry(id="b3", user_id="bob", tokens=4500))

        history = await store.list_billing_history("alice")

        assert [e.id for e in history] == ["b1", "b2"]
        assert history[0].created_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_duplicate_billing_entry_rejected(self, store) -> None:
        await store.add_billing_entry(BillingEntry(id="b1", user_id="alice"))

        with pytest.raises(ValueError):
            await store.add_billing_entry(BillingEntry(id="b1", user_id="alice"))


# =============================================================================
# Cache behavior
# =============================================================================


class TestUserCache:
    """The user read path goes through the cache; balances never do."""

    @pytest.mark.asyncio
    async def test_cached_user_is_stale_until_invalidated(self) -> None:
        cache = ReadThroughCache()
        store = InMemoryInterviewStore(cache)
        await store.create_user(generate_user("alice", xp=0))
        await store.get_user("alice")

        await store.update_user("alice", xp=50)

        assert (await store.get_user("alice")).xp == 0
        assert (await store.get_user("alice", fresh=True)).xp == 50

        await store.invalidate_user_cache("alice")
        assert (await store.get_user("alice")).xp == 50

    @pytest.mark.asyncio
    async def test_balance_bypasses_cache(self) -> None:
        store = InMemoryInterviewStore(ReadThroughCache())
        await store.create_user(generate_user("alice", tokens=1000))
        await store.get_user("alice")

        await store.set_user_tokens("alice", 5)

        assert await store.get_user_tokens("alice") == 5

    @pytest.mark.asyncio
    async def test_invalidation_drops_leaderboard(self) -> None:
        cache = ReadThroughCache()
        store = InMemoryInterviewStore(cache)
        await store.create_user(generate_user("alice"))
        cache.set(f"{LEADERBOARD_PREFIX}10", ["stale"], 60)

        await store.invalidate_user_cache("alice")

        assert cache.get(f"{LEADERBOARD_PREFIX}10") is None
        assert cache.get(user_key("alice")) is None


class TestReadThroughCache:
    """Tests for ReadThroughCache."""

    @pytest.mark.asyncio
    async def test_loads_once_within_ttl(self) -> None:
        now = [0.0]
        cache = ReadThroughCache(clock=lambda: now[0])
        calls = []

        async def loader() -> str:
            calls.append(1)
            return "value"

        assert await cache.get_or_load("k", loader, 30) == "value"
        assert await cache.get_or_load("k", loader, 30) == "value"
        assert len(calls) == 1
        assert cache.hits == 1
        assert cache.misses == 1

        now[0] = 31.0
        await cache.get_or_load("k", loader, 30)
        assert len(calls) == 2

    def test_invalidate_prefix(self) -> None:
        cache = ReadThroughCache()
        cache.set("leaderboard:5", 1, 60)
        cache.set("leaderboard:10", 2, 60)
        cache.set("user:a", 3, 60)

        assert cache.invalidate_prefix("leaderboard:") == 2
        assert cache.get("user:a") == 3


# =============================================================================
# JSON store specifics
# =============================================================================


class TestJsonFileStore:
    """Persistence details of JsonFileInterviewStore."""

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path: Path) -> None:
        first = JsonFileInterviewStore(tmp_path)
        await first.create_user(generate_user("alice", tokens=321))

        second = JsonFileInterviewStore(tmp_path)

        assert await second.get_user_tokens("alice") == 321
        assert (tmp_path / "users" / "alice.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_document_is_store_unavailable(self, tmp_path: Path) -> None:
        store = JsonFileInterviewStore(tmp_path)
        (tmp_path / "interviews" / "bad.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreUnavailable):
            await store.get_interview("bad")

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path: Path) -> None:
        store = JsonFileInterviewStore(tmp_path)
        await store.create_interview(_interview("i1"))
        await store.update_interview("i1", code="x")

        assert list((tmp_path / "interviews").glob("*.tmp")) == []


class TestMappedStoreErrors:
    """Tests for mapped_store_errors()."""

    @pytest.mark.asyncio
    async def test_wraps_unexpected_errors(self) -> None:
        with pytest.raises(StoreUnavailable) as exc_info:
            async with mapped_store_errors("load leaderboard"):
                raise ConnectionError("down")

        assert "load leaderboard" in exc_info.value.message
        assert exc_info.value.error_code == "STORE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_service_errors_pass_through(self) -> None:
        with pytest.raises(StoreUnavailable) as exc_info:
            async with mapped_store_errors("load leaderboard"):
                raise StoreUnavailable("original")

        assert exc_info.value.message == "original"
