"""Git integration: revision resolution, per-file diffs, and file content at a revision.

Every command runs through _run_git(), which maps git failures onto the
error hierarchy below. GitScmProvider exposes the same operations as
coroutines by running the blocking subprocess calls in a worker thread, so
the event loop driving synchronization never blocks on git.
"""

import asyncio
import subprocess
from pathlib import Path

from code_comments.errors import CodeCommentsError
from code_comments.log import get_logger


class GitError(CodeCommentsError):
    """Base exception for git-related errors."""

    pass


class GitNotAvailableError(GitError):
    """Raised when git is not available in the environment."""

    pass


class RevisionResolutionError(GitError):
    """Raised when git cannot resolve a revision or produce content for it.

    Callers may retry later (for example once a fetch or clone completes);
    this module never retries on its own.
    """

    pass


class NotAGitRepositoryError(RevisionResolutionError):
    """Raised when operating outside a git repository."""

    pass


class RevisionNotFoundError(RevisionResolutionError):
    """Raised when a revision (or a path at that revision) does not exist locally.

    This is what happens when a thread was recorded on a commit of a branch
    that was later deleted, e.g. after a squash merge.
    """

    pass


# Substrings of git's stderr that identify a missing revision or path.
_NOT_FOUND_MARKERS = (
    "bad object",
    "bad revision",
    "unknown revision",
    "invalid object name",
    "needed a single revision",
    "does not exist in",
    "exists on disk, but not in",
)


def _run_git(repo: Path, args: list[str], timeout: float = 30.0) -> str:
    """Run a git command in repo and return its stdout.

    Raises:
        GitNotAvailableError: If the git executable cannot be found
        NotAGitRepositoryError: If repo is not inside a git repository
        RevisionNotFoundError: If git reports a missing revision or path
        RevisionResolutionError: For any other failure, including timeouts
    """
    logger = get_logger()
    logger.debug("Running git", args=args, cwd=str(repo))
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=repo,
            capture_output=True,
            # Content at a revision need not be UTF-8; undecodable bytes survive as surrogates
            encoding="utf-8",
            errors="surrogateescape",
            timeout=timeout,
        )
    except FileNotFoundError as e:
        if not repo.exists():
            raise NotAGitRepositoryError(f"Repository path does not exist: {repo}") from e
        raise GitNotAvailableError("Git is not available in the environment") from e
    except subprocess.TimeoutExpired as e:
        raise RevisionResolutionError(
            f"git {args[0]} timed out after {timeout:.0f} seconds in {repo}"
        ) from e
    except (subprocess.SubprocessError, OSError) as e:
        raise RevisionResolutionError(f"git {args[0]} failed in {repo}: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.strip()
        lowered = stderr.lower()
        if "not a git repository" in lowered:
            raise NotAGitRepositoryError(f"{repo} is not a git repository")
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            raise RevisionNotFoundError(f"git {' '.join(args)}: {stderr}")
        raise RevisionResolutionError(
            f"git {' '.join(args)} exited with {result.returncode}: {stderr}"
        )

    return result.stdout


def find_repo_root(path: Path, timeout: float = 30.0) -> Path:
    """Return the top-level directory of the repository containing path."""
    start = path if path.is_dir() else path.parent
    return Path(_run_git(start, ["rev-parse", "--show-toplevel"], timeout).strip())


def resolve_revision(repo: Path, specifier: str, timeout: float = 30.0) -> str:
    """
    Translate a symbolic revision (branch name, HEAD, tag, short SHA) to a full commit id.

    Raises:
        RevisionNotFoundError: If the specifier does not name a commit
    """
    # ^{commit} peels tags and rejects non-commit objects
    output = _run_git(repo, ["rev-parse", "--verify", f"{specifier}^{{commit}}"], timeout)
    revision = output.strip()
    if not revision:
        raise RevisionNotFoundError(f"Unknown revision: {specifier}")
    return revision


def get_file_diff(
    repo: Path,
    path: str,
    from_revision: str,
    to_revision: str,
    *,
    context_lines: int = 0,
    algorithm: str = "histogram",
    timeout: float = 30.0,
) -> str:
    """
    Return the unified diff of one file between two revisions.

    Zero context lines keep the diff compact; the histogram algorithm spends
    a little extra time to produce more semantically sensible hunks, which
    helps move detection.

    Args:
        repo: Repository root
        path: Repo-relative file path (POSIX separators)
        from_revision: Revision the diff starts from
        to_revision: Revision the diff ends at
        context_lines: Lines of context around each change (-U)
        algorithm: git diff algorithm (myers, minimal, patience, histogram)
        timeout: Seconds before the git call is abandoned

    Returns:
        Unified diff text (empty if the file did not change)
    """
    return _run_git(
        repo,
        [
            "diff",
            "--no-color",
            "--no-ext-diff",
            f"-U{context_lines}",
            f"--diff-algorithm={algorithm}",
            from_revision,
            to_revision,
            "--",
            path,
        ],
        timeout,
    )


def show_file(repo: Path, path: str, revision: str, timeout: float = 30.0) -> str:
    """Return the content of path at revision."""
    return _run_git(repo, ["show", f"{revision}:{path}"], timeout)


def get_remote_tracking_branches(repo: Path, timeout: float = 30.0) -> list[str]:
    """Return remote tracking branch names (e.g. origin/main, origin/feature)."""
    output = _run_git(repo, ["for-each-ref", "--format=%(refname:short)", "refs/remotes"], timeout)
    return [
        name.strip()
        for name in output.splitlines()
        # Symbolic refs such as "origin/HEAD" (shown as "origin") point at another branch
        if name.strip() and "/" in name.strip() and not name.strip().endswith("/HEAD")
    ]


def get_last_pushed_revision(repo: Path, timeout: float = 30.0) -> str:
    """
    Return the most recent commit on the current branch that is also on a remote.

    Threads are recorded against this revision so that everyone fetching the
    remote can see them. Without remote tracking branches, HEAD is used.
    """
    remotes = get_remote_tracking_branches(repo, timeout)
    if not remotes:
        return resolve_revision(repo, "HEAD", timeout)

    # Oldest commit reachable from HEAD but from none of the remotes
    oldest_unpushed = _run_git(
        repo,
        ["rev-list", "--reverse", "HEAD", *[f"^{remote}" for remote in remotes]],
        timeout,
    ).splitlines()
    if not oldest_unpushed:
        return resolve_revision(repo, "HEAD", timeout)

    # Its parent is the newest pushed commit
    return resolve_revision(repo, f"{oldest_unpushed[0].strip()}~", timeout)


class GitScmProvider:
    """Asynchronous source-control collaborator backed by the git CLI.

    Repository identities are repository root paths.
    """

    def __init__(
        self,
        *,
        context_lines: int = 0,
        algorithm: str = "histogram",
        timeout: float = 30.0,
    ) -> None:
        self.context_lines = context_lines
        self.algorithm = algorithm
        self.timeout = timeout

    async def get_diff(self, repo: str, path: str, from_revision: str, to_revision: str) -> str:
        return await asyncio.to_thread(
            get_file_diff,
            Path(repo),
            path,
            from_revision,
            to_revision,
            context_lines=self.context_lines,
            algorithm=self.algorithm,
            timeout=self.timeout,
        )

    async def resolve_revision(self, repo: str, specifier: str) -> str:
        return await asyncio.to_thread(resolve_revision, Path(repo), specifier, self.timeout)

    async def show_file(self, repo: str, path: str, revision: str) -> str:
        return await asyncio.to_thread(show_file, Path(repo), path, revision, self.timeout)

    async def last_pushed_revision(self, repo: str) -> str:
        return await asyncio.to_thread(get_last_pushed_revision, Path(repo), self.timeout)
