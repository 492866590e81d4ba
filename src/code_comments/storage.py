"""Sidecar file I/O: reading and writing .comments/*.json thread files."""

import json
import os
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

from code_comments.errors import CodeCommentsError
from code_comments.locking import file_lock, lock_path_for
from code_comments.models import Comment, CommentThread, ThreadFile


class ThreadNotFoundError(CodeCommentsError):
    """Raised when no sidecar in the project holds a thread id."""

    pass


def get_sidecar_path(source_path: Path, project_root: Path) -> Path:
    """
    Map source file path to its sidecar file path.

    The sidecar path mirrors the source tree structure under .comments/:
    - src/foo/bar.py -> .comments/src/foo/bar.py.json

    Args:
        source_path: Path to source file (absolute or relative to project_root)
        project_root: Root directory of the project

    Returns:
        Absolute path to sidecar file (.comments/<relative_path>.json)

    Raises:
        ValueError: If source_path is outside project_root
    """
    relative = relative_source_path(source_path, project_root)
    return project_root.resolve() / ".comments" / f"{relative}.json"


def relative_source_path(source_path: Path, project_root: Path) -> str:
    """
    Repo-relative POSIX path of a source file.

    Raises:
        ValueError: If source_path is outside project_root
    """
    root_abs = project_root.resolve()
    source_abs = source_path.resolve() if source_path.is_absolute() else (root_abs / source_path).resolve()
    try:
        relative = source_abs.relative_to(root_abs)
    except ValueError:
        raise ValueError(
            f"Source file is outside project root:\n  Source: {source_abs}\n  Root: {root_abs}"
        )
    return relative.as_posix()


def find_project_root(start_path: Path | None = None) -> Path:
    """
    Find the project root by looking for .git directory.

    Walks up the directory tree from start_path until finding a .git entry
    (a directory, or a file for worktrees and submodules).

    Args:
        start_path: Starting directory for search (defaults to current working directory)

    Returns:
        Absolute path to project root

    Raises:
        ValueError: If no .git entry found in any parent directory
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    if current.is_file():
        current = current.parent

    for parent in [current] + list(current.parents):
        if (parent / ".git").exists():
            return parent

    raise ValueError(
        f"No .git directory found in {start_path} or any parent directory.\n"
        "Comment threads require a git repository."
    )


def read_thread_file(path: Path) -> ThreadFile:
    """
    Read and parse a sidecar JSON file.

    Args:
        path: Path to sidecar file (.comments/*.json)

    Returns:
        Parsed and validated ThreadFile object

    Raises:
        FileNotFoundError: If sidecar file does not exist
        ValueError: If JSON is invalid or fails schema validation
    """
    if not path.exists():
        raise FileNotFoundError(f"Sidecar file not found: {path}")

    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in sidecar file {path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Failed to read sidecar file {path}: {e}") from e

    try:
        return ThreadFile.model_validate(data)
    except Exception as e:
        raise ValueError(f"Sidecar file failed schema validation: {e}") from e


def write_thread_file(path: Path, thread_file: ThreadFile) -> None:
    """
    Write a sidecar file atomically with deterministic JSON.

    Uses atomic write pattern (temp file + rename) so no partial writes are
    visible. JSON output is deterministic (sorted keys, 2-space indent,
    trailing newline) for git-friendly diffs.

    Args:
        path: Path to sidecar file (.comments/*.json)
        thread_file: ThreadFile object to serialize

    Raises:
        OSError: If write fails (permissions, disk full, etc.)
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    json_str = json.dumps(
        thread_file.model_dump(mode="json"), indent=2, sort_keys=True, ensure_ascii=False
    )
    json_str += "\n"

    # Same directory as the target so the rename stays on one filesystem
    temp_fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            f.write(json_str)
        temp_path.replace(path)
    except Exception as e:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise OSError(f"Failed to write sidecar file {path}: {e}") from e


def load_threads(source_path: Path, project_root: Path) -> list[CommentThread]:
    """Threads stored for a source file (empty if it has no sidecar)."""
    sidecar_path = get_sidecar_path(source_path, project_root)
    if not sidecar_path.exists():
        return []
    return read_thread_file(sidecar_path).threads


def update_thread_file(
    source_path: Path,
    project_root: Path,
    update_fn: Callable[[ThreadFile], None],
    timeout: float = 5.0,
) -> Path:
    """
    Read, modify and rewrite a source file's sidecar while holding its lock.

    Re-reading under the lock means concurrent writers (the CLI and the MCP
    server) never overwrite each other's threads.

    Args:
        source_path: Source file whose sidecar is updated
        project_root: Root directory of the project
        update_fn: Modifies the ThreadFile in place; a new empty one is passed
            when the sidecar does not exist yet. Raising aborts the write.
        timeout: Seconds to wait for the lock

    Returns:
        Path of the written sidecar file

    Raises:
        LockTimeout: If another writer holds the lock for longer than timeout
        ValueError: If the existing sidecar is invalid
    """
    sidecar_path = get_sidecar_path(source_path, project_root)
    with file_lock(lock_path_for(sidecar_path), timeout):
        if sidecar_path.exists():
            thread_file = read_thread_file(sidecar_path)
        else:
            thread_file = ThreadFile(source_file=relative_source_path(source_path, project_root))
        update_fn(thread_file)
        write_thread_file(sidecar_path, thread_file)
    return sidecar_path


def append_thread(source_path: Path, project_root: Path, thread: CommentThread) -> Path:
    """Add a thread to a source file's sidecar, creating the sidecar if needed."""
    return update_thread_file(
        source_path, project_root, lambda thread_file: thread_file.threads.append(thread)
    )


def iter_thread_files(project_root: Path) -> Iterator[tuple[Path, ThreadFile]]:
    """Yield (sidecar path, ThreadFile) for every readable sidecar in the project."""
    comments_dir = project_root / ".comments"
    if not comments_dir.exists():
        return
    for sidecar_path in sorted(comments_dir.rglob("*.json")):
        if not sidecar_path.is_file() or sidecar_path.name.startswith(".tmp_"):
            continue
        if sidecar_path.parent == comments_dir and sidecar_path.name == "config.json":
            continue
        try:
            yield sidecar_path, read_thread_file(sidecar_path)
        except ValueError:
            # Skip invalid sidecar files
            continue


def find_thread(project_root: Path, thread_id: str) -> tuple[str, CommentThread]:
    """
    Locate a thread by id across every sidecar of the project.

    Returns:
        (repo-relative source file, thread)

    Raises:
        ThreadNotFoundError: If no readable sidecar holds the thread
    """
    for _, thread_file in iter_thread_files(project_root):
        for thread in thread_file.threads:
            if thread.id == thread_id:
                return thread_file.source_file, thread
    raise ThreadNotFoundError(f"Thread not found: {thread_id}")


def add_reply(project_root: Path, thread_id: str, author: str, body: str) -> tuple[CommentThread, Comment]:
    """
    Append a comment to an existing thread.

    Returns:
        (updated thread, new comment)

    Raises:
        ThreadNotFoundError: If the thread does not exist
        ValueError: If author or body are invalid
    """
    source_file, _ = find_thread(project_root, thread_id)
    comment = Comment(author=author, body=body)
    updated: list[CommentThread] = []

    def append_comment(thread_file: ThreadFile) -> None:
        for thread in thread_file.threads:
            if thread.id == thread_id:
                thread.comments.append(comment)
                updated.append(thread)
                return
        # Deleted between the search and taking the lock
        raise ThreadNotFoundError(f"Thread not found: {thread_id}")

    update_thread_file(project_root / source_file, project_root, append_comment)
    return updated[0], comment
