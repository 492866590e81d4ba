"""Memoizing, request-coalescing cache of DiffModels keyed by (repo, path, from, to)."""

import asyncio
from collections import OrderedDict

from code_comments.diff import DiffModel
from code_comments.log import get_logger
from code_comments.models import DiffKey
from code_comments.sources import DiffSource


class RevisionDiffCache:
    """Caches one DiffModel per DiffKey in front of a DiffSource.

    Entries are asyncio tasks, so concurrent requests for a key that is
    still being fetched await the same task instead of issuing another
    fetch. Failed fetches are dropped and retried on the next request.

    All mutation happens on the event loop thread; no locking is needed.
    """

    def __init__(self, source: DiffSource, max_entries: int = 256) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._source = source
        self._max_entries = max_entries
        self._entries: OrderedDict[DiffKey, asyncio.Task[DiffModel]] = OrderedDict()
        self.fetch_count = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[DiffKey]:
        return list(self._entries)

    async def get_diff(
        self, repo: str, path: str, from_revision: str, to_revision: str
    ) -> DiffModel:
        """
        Return the diff model for a key, fetching it at most once.

        Raises:
            Whatever the diff source raises (RevisionResolutionError,
            MalformedDiffError, ...); the failure is not cached.
        """
        key = DiffKey(repo, path, from_revision, to_revision)
        task = self._entries.get(key)
        if task is None:
            self.fetch_count += 1
            get_logger().debug("Fetching diff", key=key)
            task = asyncio.get_running_loop().create_task(self._source.load(key))
            task.add_done_callback(lambda done, key=key: self._drop_if_failed(key, done))
            self._entries[key] = task
            self._evict_over_capacity()
        else:
            self._entries.move_to_end(key)

        # Shielded so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    def _drop_if_failed(self, key: DiffKey, task: "asyncio.Task[DiffModel]") -> None:
        if task.cancelled() or task.exception() is not None:
            if self._entries.get(key) is task:
                del self._entries[key]

    def _evict_over_capacity(self) -> None:
        # In-flight entries are never evicted; they still have waiters to coalesce
        for key in list(self._entries):
            if len(self._entries) <= self._max_entries:
                return
            if self._entries[key].done():
                del self._entries[key]

    def invalidate_buffer(self, repo: str, path: str) -> int:
        """Drop entries diffing against the live buffer of a file.

        Returns:
            Number of entries removed
        """
        return self._remove(
            lambda key: key.repo == repo and key.path == path and key.involves_buffer
        )

    def evict_file(self, repo: str, path: str) -> int:
        """Drop every entry for a file (e.g. when it is closed)."""
        return self._remove(lambda key: key.repo == repo and key.path == path)

    def clear(self, repo: str | None = None) -> int:
        """Drop every entry, or every entry of one repository (e.g. after a checkout)."""
        if repo is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        return self._remove(lambda key: key.repo == repo)

    def _remove(self, predicate) -> int:
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            get_logger().debug("Invalidated cached diffs", count=len(doomed))
        return len(doomed)
