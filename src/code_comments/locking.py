"""Exclusive file locks guarding read-modify-write of sidecar files.

The CLI and the MCP server may both add threads to the same file. Writers
take an OS-level lock on a companion ".lock" file before reading the
sidecar and hold it until the new sidecar has been renamed into place.
The sidecar itself cannot carry the lock because every write replaces it.
"""

import contextlib
import os
import sys
import time
from collections.abc import Generator
from pathlib import Path

from code_comments.errors import CodeCommentsError

try:
    import fcntl  # Unix file locking
except ImportError:
    fcntl = None  # type: ignore[assignment]

try:
    import msvcrt  # Windows file locking
except ImportError:
    msvcrt = None  # type: ignore[assignment]


class LockTimeout(CodeCommentsError):  # noqa: N818
    """Raised when a sidecar lock cannot be acquired in time."""

    pass


def lock_path_for(sidecar_path: Path) -> Path:
    """Companion lock file of a sidecar (.comments/a.py.json -> .comments/a.py.json.lock)."""
    return sidecar_path.with_name(sidecar_path.name + ".lock")


@contextlib.contextmanager
def file_lock(path: Path, timeout: float = 5.0) -> Generator[None, None, None]:
    """
    Hold an exclusive lock on path (created if missing) for the duration of the block.

    Uses flock on Unix and msvcrt.locking on Windows. Separate opens of the
    same path conflict, so the lock also serializes threads of one process.

    Raises:
        LockTimeout: If the lock is still held elsewhere after timeout seconds
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    # a+ creates the file without truncating it
    with open(path, "a+", encoding="utf-8") as lock_file:
        fd = lock_file.fileno()
        _acquire(fd, timeout)
        try:
            yield
        finally:
            _release(fd)


def _try_lock(fd: int) -> bool:
    try:
        if sys.platform == "win32":
            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    except OSError:
        if sys.platform == "win32":
            return False
        raise
    return True


def _acquire(fd: int, timeout: float) -> None:
    start_time = time.monotonic()
    while not _try_lock(fd):
        elapsed = time.monotonic() - start_time
        if elapsed >= timeout:
            raise LockTimeout(f"Failed to acquire sidecar lock after {timeout:.1f} seconds")
        # Exponential backoff, at most 100ms
        time.sleep(min(0.01 * (2 ** min(int(elapsed * 10), 10)), 0.1))


def _release(fd: int) -> None:
    if sys.platform == "win32":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
