"""Wiring of the anchoring engine for one git working tree.

The CLI, the MCP server and the file watcher all operate on files checked
out on disk: the "buffer" of a file is its content on disk, and threads
come from the .comments/ sidecars. CommentWorkspace assembles the git
collaborator, the live documents, the diff cache and the synchronizer for
that setting.
"""

from pathlib import Path

from code_comments.cache import RevisionDiffCache
from code_comments.config import SyncConfig, load_config
from code_comments.documents import LiveDocuments
from code_comments.git_ops import GitScmProvider
from code_comments.log import get_logger
from code_comments.models import BUFFER_REVISION, Comment, CommentThread, DisplayRange, LineRange
from code_comments.sources import ScmDiffSource
from code_comments.storage import (
    add_reply,
    append_thread,
    find_thread,
    load_threads,
    relative_source_path,
)
from code_comments.sync import ThreadAnchorSynchronizer


class ThreadView:
    """A thread together with its current display range and diagnostics."""

    def __init__(
        self,
        thread: CommentThread,
        display_range: DisplayRange | None,
        error: Exception | None = None,
    ):
        self.thread = thread
        self.display_range = display_range
        self.error = error

    def to_dict(self) -> dict:
        return {
            "id": self.thread.id,
            "file": self.thread.path,
            "revision": self.thread.revision,
            "anchor": self.thread.anchor.model_dump(),
            "display_range": self.display_range.model_dump() if self.display_range else None,
            "error": str(self.error) if self.error else None,
            "comments": [comment.model_dump() for comment in self.thread.comments],
        }


class CommentWorkspace:
    """Comment threads of one repository, displayed against files on disk."""

    def __init__(self, project_root: Path, config: SyncConfig | None = None) -> None:
        self.project_root = project_root.resolve()
        self.repo = str(self.project_root)
        self.config = config or load_config(self.project_root)
        self.scm = GitScmProvider(
            context_lines=self.config.diff_context_lines,
            algorithm=self.config.diff_algorithm,
            timeout=self.config.git_timeout,
        )
        self.documents = LiveDocuments()
        self.cache = RevisionDiffCache(
            ScmDiffSource.for_scm(self.scm, self.documents),
            max_entries=self.config.cache_max_entries,
        )
        self.synchronizer = ThreadAnchorSynchronizer(
            self.cache, self.scm, self.config, self.documents
        )

    def relative_path(self, source_path: Path) -> str:
        return relative_source_path(source_path, self.project_root)

    def refresh_buffer(self, source_path: Path) -> str:
        """Load a file's on-disk content as its buffer; returns the repo-relative path."""
        path = self.relative_path(source_path)
        text = (self.project_root / path).read_text(encoding="utf-8")
        self.documents.set_text(self.repo, path, text)
        return path

    def open_file(self, source_path: Path, target: str = BUFFER_REVISION) -> str:
        """Register a file's stored threads and open it against target.

        Returns:
            Repo-relative path of the file
        """
        path = self.refresh_buffer(source_path)
        if not self.synchronizer.is_open(self.repo, path):
            for thread in load_threads(self.project_root / path, self.project_root):
                # Stored repo identities go stale when a clone is moved
                self.synchronizer.add_thread(thread.model_copy(update={"repo": self.repo, "path": path}))
        self.synchronizer.open_document(self.repo, path, target)
        return path

    async def display(self, source_path: Path, target: str = BUFFER_REVISION) -> list[ThreadView]:
        """Current display range of every thread stored for a file."""
        path = self.open_file(source_path, target)
        await self.synchronizer.sync_document(self.repo, path)
        return self.views(path)

    def views(self, path: str) -> list[ThreadView]:
        return [
            ThreadView(
                thread,
                self.synchronizer.get_display_range(thread.id),
                self.synchronizer.get_error(thread.id),
            )
            for thread in self.synchronizer.threads_for(self.repo, path)
        ]

    async def add_thread(
        self,
        source_path: Path,
        current_range: LineRange,
        body: str,
        author: str,
        base_revision: str | None = None,
    ) -> CommentThread:
        """
        Create and store a thread for a range of the file as it is on disk.

        The anchor is recorded against base_revision (default: the last pushed
        revision) so that collaborators who only have pushed commits can place it.

        Raises:
            UnpushedRangeError: If the range does not exist at the base revision
            RevisionResolutionError: If the base revision cannot be determined
        """
        path = self.open_file(source_path)
        if base_revision is None:
            base_revision = await self.scm.last_pushed_revision(self.repo)
        revision, anchor = await self.synchronizer.create_anchor(
            self.repo, path, current_range, base_revision
        )
        thread = CommentThread(repo=self.repo, path=path, revision=revision, anchor=anchor)
        thread.add_comment(author=author, body=body)
        sidecar_path = append_thread(self.project_root / path, self.project_root, thread)
        get_logger().debug("Stored thread", thread_id=thread.id, sidecar=str(sidecar_path))
        self.synchronizer.add_thread(thread)
        return thread

    async def show(self, thread_id: str, target: str = BUFFER_REVISION) -> ThreadView:
        """
        Look up a thread anywhere in the project and position it against target.

        Raises:
            ThreadNotFoundError: If no sidecar holds the thread
        """
        source_file, thread = find_thread(self.project_root, thread_id)
        source_path = self.project_root / source_file
        if not source_path.is_file():
            return ThreadView(thread, None, FileNotFoundError(f"Source file is missing: {source_file}"))
        for view in await self.display(source_path, target):
            if view.thread.id == thread_id:
                return view
        # Only reachable if the sidecar changed between the two reads
        return ThreadView(thread, None)

    def reply(self, thread_id: str, body: str, author: str) -> tuple[CommentThread, Comment]:
        """Append a comment to a stored thread; returns the updated thread and the comment."""
        thread, comment = add_reply(self.project_root, thread_id, author, body)
        get_logger().debug("Stored reply", thread_id=thread_id, comment_id=comment.id)
        return thread, comment

    def close(self) -> None:
        self.synchronizer.dispose()
