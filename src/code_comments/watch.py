"""Watch files on disk and keep their threads' display ranges current.

Each watched file is opened against its buffer (the on-disk content). A
save reloads the buffer after a debounce period, which makes the
synchronizer invalidate the file's buffer diffs and resync it. A rewrite of
.git/HEAD (switching branches, detaching) clears the repository's cached
diffs and resyncs every watched file. Commits and resets on the current
branch only move refs/heads/<branch> and are not detected.

watchdog delivers events on its observer thread; every state change is
handed to the event loop with call_soon_threadsafe.
"""

import asyncio
from pathlib import Path
from threading import Timer

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from code_comments.log import get_logger
from code_comments.workspace import CommentWorkspace


def _event_path(path: str | bytes) -> Path:
    # src_path can be str or bytes
    return Path(path if isinstance(path, str) else path.decode("utf-8")).resolve()


class DebouncedResync(FileSystemEventHandler):
    """File system event handler that reloads watched files after a quiet period.

    Args:
        workspace: Workspace whose buffers and synchronizer are updated
        paths: Files to watch (absolute)
        loop: Event loop running the synchronizer
        debounce_seconds: Wait time after the last event for a file
    """

    def __init__(
        self,
        workspace: CommentWorkspace,
        paths: list[Path],
        loop: asyncio.AbstractEventLoop,
        debounce_seconds: float,
    ) -> None:
        self.workspace = workspace
        self.paths = {path.resolve() for path in paths}
        self.loop = loop
        self.debounce_seconds = debounce_seconds
        self.head_path = (workspace.project_root / ".git" / "HEAD").resolve()
        self.timers: dict[Path, Timer] = {}

    def _is_relevant(self, path: Path) -> bool:
        return path in self.paths or path == self.head_path

    def _handle(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        candidates = [_event_path(event.src_path)]
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            # Editors that save via rename report the watched file as the destination
            candidates.append(_event_path(dest_path))
        for path in candidates:
            if self._is_relevant(path):
                get_logger().debug("Change detected", path=str(path))
                self._schedule(path)

    def _schedule(self, path: Path) -> None:
        timer = self.timers.get(path)
        if timer is not None:
            timer.cancel()
        timer = Timer(self.debounce_seconds, self.loop.call_soon_threadsafe, args=(self._apply, path))
        timer.daemon = True
        self.timers[path] = timer
        timer.start()

    def _apply(self, path: Path) -> None:
        """Runs on the event loop thread."""
        self.timers.pop(path, None)
        if path == self.head_path:
            self.workspace.synchronizer.notify_checkout(self.workspace.repo)
            self.workspace.synchronizer.schedule_sync_all()
            return
        if not path.exists():
            get_logger().warning(f"Watched file disappeared: {path}")
            return
        try:
            self.workspace.refresh_buffer(path)
        except (OSError, UnicodeDecodeError) as e:
            get_logger().warning(f"Cannot reload {path}: {e}")

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def shutdown(self) -> None:
        """Cancel pending reloads."""
        for timer in self.timers.values():
            timer.cancel()
        self.timers.clear()


async def watch_files(
    workspace: CommentWorkspace,
    paths: list[Path],
    stop: asyncio.Event,
) -> None:
    """
    Keep the threads of paths synchronized until stop is set.

    Display range changes are reported through the workspace synchronizer's
    listeners; callers subscribe with on_display_range_changed() before
    calling this.
    """
    for path in paths:
        workspace.open_file(path)
    await workspace.synchronizer.sync_all()

    handler = DebouncedResync(
        workspace,
        paths,
        asyncio.get_running_loop(),
        workspace.config.watch_debounce_seconds,
    )
    observer = Observer()
    directories = {path.resolve().parent for path in paths}
    if handler.head_path.parent.is_dir():
        directories.add(handler.head_path.parent)
    for directory in sorted(directories):
        observer.schedule(handler, str(directory), recursive=False)

    observer.start()
    get_logger().info(f"Watching {len(paths)} file(s) for changes (Ctrl+C to stop)")
    try:
        await stop.wait()
    finally:
        handler.shutdown()
        observer.stop()
        observer.join(timeout=5)
