"""Tests for the request-coalescing diff cache."""

import asyncio

import pytest

from code_comments.cache import RevisionDiffCache
from code_comments.diff import DiffModel
from code_comments.git_ops import RevisionNotFoundError
from code_comments.models import BUFFER_REVISION, DiffKey

REPO = "/work/repo"
REV_A = "a" * 40
REV_B = "b" * 40


class CountingSource:
    """DiffSource that records calls and can be held or made to fail."""

    def __init__(self) -> None:
        self.calls: list[DiffKey] = []
        self.gate: asyncio.Event | None = None
        self.failures_left = 0

    async def load(self, key: DiffKey) -> DiffModel:
        self.calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RevisionNotFoundError(f"bad object {key.from_revision}")
        return DiffModel()


@pytest.fixture
def source() -> CountingSource:
    return CountingSource()


class TestCoalescing:
    """Tests for memoization and request coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self, source: CountingSource) -> None:
        """Requests for a key that is still loading await the same fetch."""
        cache = RevisionDiffCache(source)
        source.gate = asyncio.Event()

        first = asyncio.create_task(cache.get_diff(REPO, "a.py", REV_A, REV_B))
        second = asyncio.create_task(cache.get_diff(REPO, "a.py", REV_A, REV_B))
        await asyncio.sleep(0)
        assert cache.fetch_count == 1

        source.gate.set()
        model_1, model_2 = await asyncio.gather(first, second)

        assert model_1 is model_2
        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_completed_entry_is_reused(self, source: CountingSource) -> None:
        """A second request after completion does not fetch again."""
        cache = RevisionDiffCache(source)

        first = await cache.get_diff(REPO, "a.py", REV_A, REV_B)
        second = await cache.get_diff(REPO, "a.py", REV_A, REV_B)

        assert first is second
        assert cache.fetch_count == 1
        assert DiffKey(REPO, "a.py", REV_A, REV_B) in cache

    @pytest.mark.asyncio
    async def test_distinct_keys_fetch_separately(self, source: CountingSource) -> None:
        """Direction and path are part of the key."""
        cache = RevisionDiffCache(source)

        await cache.get_diff(REPO, "a.py", REV_A, REV_B)
        await cache.get_diff(REPO, "a.py", REV_B, REV_A)
        await cache.get_diff(REPO, "b.py", REV_A, REV_B)

        assert cache.fetch_count == 3
        assert len(cache) == 3

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self, source: CountingSource) -> None:
        """Other waiters still receive the result when one gives up."""
        cache = RevisionDiffCache(source)
        source.gate = asyncio.Event()

        impatient = asyncio.create_task(cache.get_diff(REPO, "a.py", REV_A, REV_B))
        patient = asyncio.create_task(cache.get_diff(REPO, "a.py", REV_A, REV_B))
        await asyncio.sleep(0)
        impatient.cancel()
        source.gate.set()

        assert isinstance(await patient, DiffModel)
        assert impatient.cancelled()
        assert cache.fetch_count == 1


class TestFailures:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, source: CountingSource) -> None:
        """A failed fetch is dropped so the next request retries."""
        cache = RevisionDiffCache(source)
        source.failures_left = 1

        with pytest.raises(RevisionNotFoundError):
            await cache.get_diff(REPO, "a.py", REV_A, REV_B)
        assert DiffKey(REPO, "a.py", REV_A, REV_B) not in cache

        model = await cache.get_diff(REPO, "a.py", REV_A, REV_B)

        assert isinstance(model, DiffModel)
        assert cache.fetch_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_waiters_all_see_failure(self, source: CountingSource) -> None:
        """Every coalesced waiter receives the error of the shared fetch."""
        cache = RevisionDiffCache(source)
        source.gate = asyncio.Event()
        source.failures_left = 1

        waiters = [asyncio.create_task(cache.get_diff(REPO, "a.py", REV_A, REV_B)) for _ in range(3)]
        await asyncio.sleep(0)
        source.gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(result, RevisionNotFoundError) for result in results)
        assert len(source.calls) == 1
        assert len(cache) == 0


class TestCapacity:
    """Tests for least recently used eviction."""

    def test_rejects_non_positive_capacity(self, source: CountingSource) -> None:
        """The cache must be able to hold at least one entry."""
        with pytest.raises(ValueError, match="max_entries"):
            RevisionDiffCache(source, max_entries=0)

    @pytest.mark.asyncio
    async def test_least_recently_used_entry_is_evicted(self, source: CountingSource) -> None:
        """Reading an entry protects it from the next eviction."""
        cache = RevisionDiffCache(source, max_entries=2)

        await cache.get_diff(REPO, "one.py", REV_A, REV_B)
        await cache.get_diff(REPO, "two.py", REV_A, REV_B)
        await cache.get_diff(REPO, "one.py", REV_A, REV_B)
        await cache.get_diff(REPO, "three.py", REV_A, REV_B)

        assert cache.keys() == [
            DiffKey(REPO, "one.py", REV_A, REV_B),
            DiffKey(REPO, "three.py", REV_A, REV_B),
        ]

    @pytest.mark.asyncio
    async def test_in_flight_entries_are_not_evicted(self, source: CountingSource) -> None:
        """Entries still loading stay available for coalescing."""
        cache = RevisionDiffCache(source, max_entries=1)
        source.gate = asyncio.Event()

        first = asyncio.create_task(cache.get_diff(REPO, "one.py", REV_A, REV_B))
        second = asyncio.create_task(cache.get_diff(REPO, "two.py", REV_A, REV_B))
        await asyncio.sleep(0)
        assert len(cache) == 2

        source.gate.set()
        await asyncio.gather(first, second)


class TestInvalidation:
    """Tests for explicit invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_buffer_only_drops_buffer_keys_of_that_file(
        self, source: CountingSource
    ) -> None:
        """Committed diffs and other files survive a buffer edit."""
        cache = RevisionDiffCache(source)
        await cache.get_diff(REPO, "a.py", REV_A, BUFFER_REVISION)
        await cache.get_diff(REPO, "a.py", BUFFER_REVISION, REV_A)
        await cache.get_diff(REPO, "a.py", REV_A, REV_B)
        await cache.get_diff(REPO, "b.py", REV_A, BUFFER_REVISION)

        assert cache.invalidate_buffer(REPO, "a.py") == 2
        assert set(cache.keys()) == {
            DiffKey(REPO, "a.py", REV_A, REV_B),
            DiffKey(REPO, "b.py", REV_A, BUFFER_REVISION),
        }

    @pytest.mark.asyncio
    async def test_invalidated_key_is_fetched_again(self, source: CountingSource) -> None:
        """After invalidation the next request reaches the source."""
        cache = RevisionDiffCache(source)
        await cache.get_diff(REPO, "a.py", REV_A, BUFFER_REVISION)
        cache.invalidate_buffer(REPO, "a.py")
        await cache.get_diff(REPO, "a.py", REV_A, BUFFER_REVISION)

        assert cache.fetch_count == 2

    @pytest.mark.asyncio
    async def test_evict_file_and_clear(self, source: CountingSource) -> None:
        """Files and repositories can be dropped wholesale."""
        cache = RevisionDiffCache(source)
        await cache.get_diff(REPO, "a.py", REV_A, REV_B)
        await cache.get_diff(REPO, "b.py", REV_A, REV_B)
        await cache.get_diff("/work/other", "a.py", REV_A, REV_B)

        assert cache.evict_file(REPO, "a.py") == 1
        assert cache.clear(REPO) == 1
        assert cache.keys() == [DiffKey("/work/other", "a.py", REV_A, REV_B)]
        assert cache.clear() == 1
        assert len(cache) == 0
