"""Diff sources: the collaborators that turn a DiffKey into a DiffModel.

Two strategies sit behind the same DiffSource interface:
- CommittedDiffSource asks the SCM for a unified diff between two revisions
  and parses it.
- BufferDiffSource diffs the committed content of a file against the
  unsaved text of its open buffer.
ScmDiffSource routes each key to the right one.
"""

from typing import Protocol

from code_comments.diff import DiffModel, parse_unified_diff, split_lines
from code_comments.documents import DocumentNotOpenError, LiveDocuments
from code_comments.log import get_logger
from code_comments.models import BUFFER_REVISION, DiffKey


class ScmProvider(Protocol):
    """Source-control collaborator (implemented by git_ops.GitScmProvider)."""

    async def get_diff(self, repo: str, path: str, from_revision: str, to_revision: str) -> str:
        """Unified diff of path between two revisions, with zero context lines."""
        ...

    async def resolve_revision(self, repo: str, specifier: str) -> str:
        """Concrete revision id for a symbolic specifier such as HEAD."""
        ...

    async def show_file(self, repo: str, path: str, revision: str) -> str:
        """Content of path at revision."""
        ...


class DiffSource(Protocol):
    async def load(self, key: DiffKey) -> DiffModel: ...


class CommittedDiffSource:
    """Diffs between two committed revisions, parsed from unified diff text."""

    def __init__(self, scm: ScmProvider) -> None:
        self.scm = scm

    async def load(self, key: DiffKey) -> DiffModel:
        diff_text = await self.scm.get_diff(key.repo, key.path, key.from_revision, key.to_revision)
        model = parse_unified_diff(diff_text)
        get_logger().debug(
            "Parsed committed diff",
            path=key.path,
            from_revision=key.from_revision,
            to_revision=key.to_revision,
            added=model.added_count,
            deleted=model.deleted_count,
        )
        return model


class BufferDiffSource:
    """Diffs between a committed revision and the live buffer, in either direction."""

    def __init__(self, scm: ScmProvider, documents: LiveDocuments) -> None:
        self.scm = scm
        self.documents = documents

    async def _lines_at(self, key: DiffKey, revision: str) -> list[str]:
        if revision == BUFFER_REVISION:
            lines = self.documents.get_lines(key.repo, key.path)
            if lines is None:
                raise DocumentNotOpenError(f"No open buffer for {key.path}")
            return lines
        return split_lines(await self.scm.show_file(key.repo, key.path, revision))

    async def load(self, key: DiffKey) -> DiffModel:
        before_lines = await self._lines_at(key, key.from_revision)
        after_lines = await self._lines_at(key, key.to_revision)
        model = DiffModel.from_lines(before_lines, after_lines)
        get_logger().debug(
            "Computed buffer diff",
            path=key.path,
            from_revision=key.from_revision,
            to_revision=key.to_revision,
            added=model.added_count,
            deleted=model.deleted_count,
        )
        return model


class ScmDiffSource:
    """Routes buffer keys to BufferDiffSource and everything else to CommittedDiffSource."""

    def __init__(self, committed: DiffSource, buffer: DiffSource) -> None:
        self.committed = committed
        self.buffer = buffer

    @classmethod
    def for_scm(cls, scm: ScmProvider, documents: LiveDocuments) -> "ScmDiffSource":
        return cls(CommittedDiffSource(scm), BufferDiffSource(scm, documents))

    async def load(self, key: DiffKey) -> DiffModel:
        if key.from_revision == key.to_revision:
            return DiffModel()
        if key.involves_buffer:
            return await self.buffer.load(key)
        return await self.committed.load(key)
