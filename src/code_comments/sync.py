"""Thread anchor synchronization.

The synchronizer keeps, for every open document, the display range of each
registered comment thread in the coordinates of the document's target
revision (a commit, or the unsaved buffer). A synchronization pass:

1. resolves the target specifier to a concrete revision
2. groups the file's threads by the revision their anchor was recorded at
3. remaps each group through one cached DiffModel (or unchanged, when the
   recorded revision already is the target)
4. publishes a DisplayRange or None per thread

Failures are scoped to one group: a missing revision or a malformed diff
leaves that group's threads without a display range and never affects the
other groups or files. Each document carries a generation counter that is
bumped whenever its target or content changes; a pass whose generation is
outdated when it finishes is discarded instead of published.
"""

import asyncio
import re
from collections.abc import Callable, Iterable

from code_comments.cache import RevisionDiffCache
from code_comments.config import SyncConfig
from code_comments.documents import LiveDocuments
from code_comments.errors import CodeCommentsError
from code_comments.log import get_logger
from code_comments.models import (
    BUFFER_REVISION,
    Anchor,
    CommentThread,
    DisplayRange,
    LineRange,
    RepositoryRevisionKey,
    ThreadState,
)
from code_comments.remap import anchor_to_base, remap_range
from code_comments.sources import ScmProvider

DisplayRangeListener = Callable[[str, DisplayRange | None], None]

# Full commit ids need no round trip to the SCM
_FULL_REVISION_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


class _ThreadEntry:
    """Synchronization bookkeeping for one registered thread."""

    def __init__(self, thread: CommentThread):
        self.thread = thread
        self.state = ThreadState.PENDING
        self.display_range: DisplayRange | None = None
        self.error: CodeCommentsError | None = None


class _Document:
    """An open document and the revision its threads are displayed against."""

    def __init__(self, repo: str, path: str, target: str):
        self.repo = repo
        self.path = path
        self.target = target
        self.generation = 0
        self.resync_task: asyncio.Task | None = None


class ThreadAnchorSynchronizer:
    """Maps comment thread anchors onto the current state of open documents.

    Args:
        cache: Diff cache owned by this synchronizer's editor instance
        scm: Source-control collaborator used to resolve revision specifiers
        config: Remapping settings (range policy)
        documents: Live buffers; when given, edits trigger invalidation and
            an automatic resync of documents displayed against their buffer
    """

    def __init__(
        self,
        cache: RevisionDiffCache,
        scm: ScmProvider,
        config: SyncConfig | None = None,
        documents: LiveDocuments | None = None,
        *,
        auto_resync: bool = True,
    ) -> None:
        self.cache = cache
        self.scm = scm
        self.config = config or SyncConfig()
        self.documents = documents
        self.auto_resync = auto_resync
        self._entries: dict[str, _ThreadEntry] = {}
        self._by_file: dict[tuple[str, str], dict[str, _ThreadEntry]] = {}
        self._documents: dict[tuple[str, str], _Document] = {}
        self._listeners: list[DisplayRangeListener] = []
        self._unsubscribe_documents: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task] = set()
        if documents is not None:
            self._unsubscribe_documents = documents.subscribe(self._on_buffer_changed)

    # ------------------------------------------------------------------
    # Thread registration
    # ------------------------------------------------------------------

    def add_thread(self, thread: CommentThread) -> None:
        """Register a thread; it and its file's other threads become pending.

        Raises:
            ValueError: If a live thread with the same id is already registered
        """
        existing = self._entries.get(thread.id)
        if existing is not None and existing.state is not ThreadState.DISPOSED:
            raise ValueError(f"Thread {thread.id} is already registered")

        entry = _ThreadEntry(thread)
        self._entries[thread.id] = entry
        file_entries = self._by_file.setdefault((thread.repo, thread.path), {})
        file_entries[thread.id] = entry
        for other in file_entries.values():
            other.state = ThreadState.PENDING

    def add_threads(self, threads: Iterable[CommentThread]) -> None:
        for thread in threads:
            self.add_thread(thread)

    def dispose_thread(self, thread_id: str) -> None:
        """Stop synchronizing a thread. Unknown or already disposed ids are ignored."""
        entry = self._entries.get(thread_id)
        if entry is None or entry.state is ThreadState.DISPOSED:
            return
        entry.state = ThreadState.DISPOSED
        entry.display_range = None
        file_entries = self._by_file.get((entry.thread.repo, entry.thread.path))
        if file_entries is not None:
            file_entries.pop(thread_id, None)

    # ------------------------------------------------------------------
    # Documents and targets
    # ------------------------------------------------------------------

    def open_document(self, repo: str, path: str, target: str = BUFFER_REVISION) -> None:
        """Start displaying a file's threads against target (a revision or the buffer)."""
        document = self._documents.get((repo, path))
        if document is None:
            self._documents[(repo, path)] = _Document(repo, path, target)
            self._mark_pending(repo, path)
        elif document.target != target:
            document.target = target
            self._invalidate_document(document)

    def set_target(self, repo: str, path: str, target: str) -> None:
        """Change the revision an open document is displayed against."""
        self.open_document(repo, path, target)

    def close_document(self, repo: str, path: str) -> None:
        """Stop displaying a file and release its cached diffs."""
        document = self._documents.pop((repo, path), None)
        if document is None:
            return
        document.generation += 1
        if document.resync_task is not None:
            document.resync_task.cancel()
        self.cache.evict_file(repo, path)

    def is_open(self, repo: str, path: str) -> bool:
        return (repo, path) in self._documents

    def notify_checkout(self, repo: str, revision: str | None = None) -> None:
        """Forget cached diffs for a repository whose checked-out revision changed."""
        get_logger().debug("Checkout changed", repo=repo, revision=revision)
        self.cache.clear(repo)
        for document in self._documents.values():
            if document.repo == repo:
                self._invalidate_document(document)

    def _invalidate_document(self, document: _Document) -> None:
        document.generation += 1
        self._mark_pending(document.repo, document.path)

    def _mark_pending(self, repo: str, path: str) -> None:
        for entry in self._by_file.get((repo, path), {}).values():
            entry.state = ThreadState.PENDING

    def _on_buffer_changed(self, repo: str, path: str) -> None:
        # Invalidate before anything can issue a request for the edited buffer
        self.cache.invalidate_buffer(repo, path)
        document = self._documents.get((repo, path))
        if document is None or document.target != BUFFER_REVISION:
            return
        self._invalidate_document(document)
        if self.auto_resync:
            self._schedule_resync(document)

    def _schedule_resync(self, document: _Document) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: threads stay pending until the next explicit sync
            return
        if document.resync_task is not None and not document.resync_task.done():
            document.resync_task.cancel()
        document.resync_task = self._spawn(loop, self.sync_document(document.repo, document.path))

    def schedule_sync_all(self) -> asyncio.Task:
        """Start synchronizing every open document in the background."""
        return self._spawn(asyncio.get_running_loop(), self.sync_all())

    def _spawn(self, loop: asyncio.AbstractEventLoop, coro) -> asyncio.Task:
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            get_logger().exception("Background synchronization failed", error)

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def sync_document(self, repo: str, path: str) -> dict[str, DisplayRange | None]:
        """
        Recompute display ranges for every live thread of an open document.

        Returns:
            Mapping of thread id to its published display range. When the pass
            was superseded by a newer target or edit, its results are not
            published and the previously published values are returned.

        Raises:
            ValueError: If the document is not open
        """
        document = self._documents.get((repo, path))
        if document is None:
            raise ValueError(f"Document is not open: {path}")

        generation = document.generation
        target = document.target
        entries = list(self._by_file.get((repo, path), {}).values())
        if not entries:
            return {}

        logger = get_logger()
        logger.debug("Synchronizing threads", path=path, target=target, threads=len(entries))

        resolved: dict[str, asyncio.Task[str]] = {}
        results: dict[str, tuple[DisplayRange | None, CodeCommentsError | None]] = {}

        try:
            target_revision = await self._resolve(repo, target, resolved)
        except CodeCommentsError as e:
            logger.warning(f"Cannot resolve target revision {target} for {path}: {e}")
            results = {entry.thread.id: (None, e) for entry in entries}
        else:
            groups: dict[RepositoryRevisionKey, list[_ThreadEntry]] = {}
            for entry in entries:
                groups.setdefault(entry.thread.revision_key, []).append(entry)
            group_results = await asyncio.gather(
                *(
                    self._remap_group(repo, path, key.revision, target_revision, group, resolved)
                    for key, group in groups.items()
                )
            )
            for group_result in group_results:
                results.update(group_result)

        if document.generation != generation or self._documents.get((repo, path)) is not document:
            logger.debug("Discarding stale synchronization", path=path, generation=generation)
        else:
            self._publish(results)

        return {
            entry.thread.id: entry.display_range
            for entry in self._by_file.get((repo, path), {}).values()
        }

    async def sync_all(self) -> dict[str, DisplayRange | None]:
        """Synchronize every open document concurrently.

        A document whose pass fails is logged and left out of the result;
        the other documents are still published.
        """
        documents = list(self._documents.values())
        merged: dict[str, DisplayRange | None] = {}
        passes = await asyncio.gather(
            *(self.sync_document(doc.repo, doc.path) for doc in documents),
            return_exceptions=True,
        )
        for document, result in zip(documents, passes):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                get_logger().exception(f"Cannot synchronize {document.path}", result)
                continue
            merged.update(result)
        return merged

    async def _resolve(self, repo: str, specifier: str, resolved: dict[str, asyncio.Task[str]]) -> str:
        if specifier == BUFFER_REVISION or _FULL_REVISION_RE.match(specifier):
            return specifier
        # Coalesce resolution of the same specifier within one pass
        task = resolved.get(specifier)
        if task is None:
            task = asyncio.ensure_future(self.scm.resolve_revision(repo, specifier))
            resolved[specifier] = task
        return await task

    async def _remap_group(
        self,
        repo: str,
        path: str,
        recorded: str,
        target_revision: str,
        entries: list[_ThreadEntry],
        resolved: dict[str, asyncio.Task[str]],
    ) -> dict[str, tuple[DisplayRange | None, CodeCommentsError | None]]:
        policy = self.config.range_policy
        try:
            base_revision = await self._resolve(repo, recorded, resolved)
            if base_revision == target_revision:
                return {
                    entry.thread.id: (DisplayRange(**entry.thread.anchor.model_dump()), None)
                    for entry in entries
                }
            model = await self.cache.get_diff(repo, path, base_revision, target_revision)
        except CodeCommentsError as e:
            get_logger().warning(
                f"Cannot remap {len(entries)} thread(s) in {path} from {recorded}: {e}",
                error=type(e).__name__,
            )
            return {entry.thread.id: (None, e) for entry in entries}

        return {
            entry.thread.id: (remap_range(model, entry.thread.anchor, policy), None)
            for entry in entries
        }

    def _publish(self, results: dict[str, tuple[DisplayRange | None, CodeCommentsError | None]]) -> None:
        for thread_id, (display_range, error) in results.items():
            entry = self._entries.get(thread_id)
            if entry is None or entry.state is ThreadState.DISPOSED:
                continue
            entry.display_range = display_range
            entry.error = error
            entry.state = ThreadState.RESOLVED
            self._fire(thread_id, display_range)

    # ------------------------------------------------------------------
    # New threads
    # ------------------------------------------------------------------

    async def create_anchor(
        self, repo: str, path: str, current_range: LineRange, base_revision: str
    ) -> tuple[str, Anchor]:
        """
        Translate a range selected on the live buffer into an anchor at base_revision.

        Args:
            repo: Repository identity
            path: Repo-relative path of an open buffer
            current_range: Selection in buffer coordinates
            base_revision: Revision the new thread will be recorded against

        Returns:
            (resolved base revision, anchor in base-revision coordinates)

        Raises:
            UnpushedRangeError: If the selection does not exist at the base revision
            RevisionResolutionError: If the base revision cannot be resolved
            DocumentNotOpenError: If the buffer is not available
        """
        revision = await self._resolve(repo, base_revision, {})
        model = await self.cache.get_diff(repo, path, BUFFER_REVISION, revision)
        return revision, anchor_to_base(model, current_range, self.config.range_policy)

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def on_display_range_changed(self, listener: DisplayRangeListener) -> Callable[[], None]:
        """Register a listener called with (thread_id, range or None) after each pass.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _fire(self, thread_id: str, display_range: DisplayRange | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(thread_id, display_range)
            except Exception as e:
                get_logger().exception(f"Display range listener failed for thread {thread_id}", e)

    def get_display_range(self, thread_id: str) -> DisplayRange | None:
        entry = self._entries.get(thread_id)
        return None if entry is None else entry.display_range

    def get_state(self, thread_id: str) -> ThreadState | None:
        entry = self._entries.get(thread_id)
        return None if entry is None else entry.state

    def get_error(self, thread_id: str) -> CodeCommentsError | None:
        """Diagnostic error attached to a thread whose last pass failed."""
        entry = self._entries.get(thread_id)
        return None if entry is None else entry.error

    def threads_for(self, repo: str, path: str) -> list[CommentThread]:
        """All live threads of a file, positioned or not (for list views)."""
        return [entry.thread for entry in self._by_file.get((repo, path), {}).values()]

    def visible_threads(self, repo: str, path: str) -> list[tuple[CommentThread, DisplayRange]]:
        """Resolved threads with a known position, ordered by position (for decorations)."""
        visible = [
            (entry.thread, entry.display_range)
            for entry in self._by_file.get((repo, path), {}).values()
            if entry.state is ThreadState.RESOLVED and entry.display_range is not None
        ]
        visible.sort(key=lambda item: (item[1].start_line, item[1].start_column))
        return visible

    def dispose(self) -> None:
        """Detach from live documents and cancel pending resyncs."""
        if self._unsubscribe_documents is not None:
            self._unsubscribe_documents()
            self._unsubscribe_documents = None
        for document in self._documents.values():
            if document.resync_task is not None:
                document.resync_task.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._listeners.clear()
