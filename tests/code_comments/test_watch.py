"""Tests for watching files on disk."""

import asyncio
from pathlib import Path

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from code_comments.config import SyncConfig
from code_comments.models import LineRange
from code_comments.watch import DebouncedResync, watch_files
from code_comments.workspace import CommentWorkspace

LETTERS = "A\nB\nC\nD\nE\n"
EDITED = "A\nB\nD\nZ\nE\n"


async def wait_for(predicate, timeout: float = 10.0) -> None:
    """Poll predicate on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached before timeout")
        await asyncio.sleep(0.01)


def span(workspace: CommentWorkspace, thread_id: str) -> tuple[int, int] | None:
    display_range = workspace.synchronizer.get_display_range(thread_id)
    if display_range is None:
        return None
    return display_range.start_line, display_range.end_line


@pytest.fixture
def letters(git_repo: Path, commit_file) -> Path:
    commit_file(git_repo, "letters.txt", LETTERS)
    return git_repo / "letters.txt"


@pytest.fixture
def workspace(git_repo: Path) -> CommentWorkspace:
    return CommentWorkspace(git_repo, SyncConfig(watch_debounce_seconds=0))


class TestDebouncedResync:
    """Tests for the watchdog event handler."""

    @pytest.mark.asyncio
    async def test_save_resyncs_file(self, workspace: CommentWorkspace, letters: Path) -> None:
        """A modified event reloads the buffer and moves the thread."""
        thread = await workspace.add_thread(letters, LineRange(start_line=4, end_line=5), "Hi", "alice")
        await workspace.display(letters)
        assert span(workspace, thread.id) == (4, 5)

        letters.write_text(EDITED, encoding="utf-8")
        handler = DebouncedResync(workspace, [letters], asyncio.get_running_loop(), 0)
        handler.on_modified(FileModifiedEvent(str(letters)))

        await wait_for(lambda: span(workspace, thread.id) == (3, 5))
        workspace.close()

    @pytest.mark.asyncio
    async def test_rename_onto_watched_file(self, workspace: CommentWorkspace, letters: Path) -> None:
        """Editors that save through a temporary file report the target as dest_path."""
        workspace.open_file(letters)
        handler = DebouncedResync(workspace, [letters], asyncio.get_running_loop(), 60)

        handler.on_moved(FileMovedEvent(str(letters.parent / ".letters.txt.swp"), str(letters)))

        assert list(handler.timers) == [letters.resolve()]
        handler.shutdown()
        assert handler.timers == {}

    @pytest.mark.asyncio
    async def test_irrelevant_events_are_ignored(self, workspace: CommentWorkspace, letters: Path) -> None:
        handler = DebouncedResync(workspace, [letters], asyncio.get_running_loop(), 60)

        handler.on_modified(FileModifiedEvent(str(letters.parent / "other.txt")))
        handler.on_modified(DirModifiedEvent(str(letters.parent)))

        assert handler.timers == {}

    @pytest.mark.asyncio
    async def test_rapid_events_share_one_timer(self, workspace: CommentWorkspace, letters: Path) -> None:
        """Each new event restarts the quiet period."""
        handler = DebouncedResync(workspace, [letters], asyncio.get_running_loop(), 60)

        handler.on_modified(FileModifiedEvent(str(letters)))
        first = handler.timers[letters.resolve()]
        handler.on_modified(FileModifiedEvent(str(letters)))

        assert len(handler.timers) == 1
        assert handler.timers[letters.resolve()] is not first
        handler.shutdown()

    @pytest.mark.asyncio
    async def test_head_change_notifies_checkout(
        self, workspace: CommentWorkspace, letters: Path, git_repo: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Switching branches clears the repository's diffs."""
        checkouts: list[str] = []
        monkeypatch.setattr(
            workspace.synchronizer, "notify_checkout", lambda repo, revision=None: checkouts.append(repo)
        )
        handler = DebouncedResync(workspace, [letters], asyncio.get_running_loop(), 0)

        handler.on_modified(FileModifiedEvent(str(git_repo / ".git" / "HEAD")))

        await wait_for(lambda: checkouts == [workspace.repo])
        await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_deleted_file_is_reported(self, workspace: CommentWorkspace, letters: Path, capsys) -> None:
        handler = DebouncedResync(workspace, [letters], asyncio.get_running_loop(), 0)
        letters.unlink()

        handler._apply(letters.resolve())

        assert "Watched file disappeared" in capsys.readouterr().err


class TestWatchFiles:
    """Tests for the watch loop with a real observer."""

    @pytest.mark.asyncio
    async def test_follows_saves_until_stopped(self, workspace: CommentWorkspace, letters: Path) -> None:
        thread = await workspace.add_thread(letters, LineRange(start_line=4, end_line=5), "Hi", "alice")
        changes: list[str] = []
        workspace.synchronizer.on_display_range_changed(lambda thread_id, _: changes.append(thread_id))
        stop = asyncio.Event()
        task = asyncio.create_task(watch_files(workspace, [letters], stop))
        await wait_for(lambda: span(workspace, thread.id) == (4, 5))

        ticks = 0

        def saved() -> bool:
            nonlocal ticks
            # Rewritten until the observer is running and reports it
            if ticks % 25 == 0:
                letters.write_text(EDITED, encoding="utf-8")
            ticks += 1
            return span(workspace, thread.id) == (3, 5)

        await wait_for(saved)
        stop.set()
        await task
        workspace.close()

        assert thread.id in changes
