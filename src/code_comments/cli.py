"""CLI entry point for code comment threads."""

import asyncio
import json
import sys
from pathlib import Path

import click

from code_comments import __version__
from code_comments.config import load_config
from code_comments.diff import MalformedDiffError, parse_unified_diff
from code_comments.errors import CodeCommentsError
from code_comments.git_ops import GitError
from code_comments.locking import LockTimeout
from code_comments.log import get_logger, init_logger
from code_comments.models import BUFFER_REVISION, DisplayRange, LineRange, RangePolicy
from code_comments.remap import UnpushedRangeError, remap_range
from code_comments.storage import ThreadNotFoundError, find_project_root
from code_comments.watch import watch_files
from code_comments.workspace import CommentWorkspace, ThreadView


def parse_line_range(text: str) -> LineRange:
    """
    Parse a line range option.

    Accepts "START" or "START:END" (1-indexed, inclusive).

    Raises:
        ValueError: If the text is not a valid range
    """
    parts = text.split(":")
    if len(parts) not in (1, 2):
        raise ValueError(f"Invalid line range: {text}\nExpected format: START:END (e.g., 10:15)")
    try:
        start = int(parts[0])
        end = int(parts[-1])
    except ValueError as e:
        raise ValueError(f"Invalid line range: {text}\nLine numbers must be integers (e.g., 10:15)") from e
    if start < 1 or end < start:
        raise ValueError(f"Invalid line range: {text}\nExpected 1 <= START <= END")
    return LineRange(start_line=start, end_line=end)


def format_range(display_range: DisplayRange | None) -> str:
    if display_range is None:
        return "position unknown"
    if display_range.start_line == display_range.end_line:
        return f"line {display_range.start_line}"
    return f"lines {display_range.start_line}-{display_range.end_line}"


def format_view(view: ThreadView) -> str:
    thread = view.thread
    first = thread.comments[0] if thread.comments else None
    summary = first.body.splitlines()[0] if first and first.body else ""
    author = first.author if first else "unknown"
    line = f"{thread.id}  {format_range(view.display_range)}  [{author}] {summary}"
    if view.error is not None:
        line += f"\n    ({view.error})"
    return line


def _parse_range_or_exit(text: str) -> LineRange:
    try:
        return parse_line_range(text)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _open_workspace(file_path: Path, **overrides: object) -> CommentWorkspace:
    """Locate the repository containing file_path; exits with code 2 on failure."""
    try:
        project_root = find_project_root(file_path)
        return CommentWorkspace(project_root, load_config(project_root, **overrides))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version=__version__, prog_name="code-comments")
@click.option("-v", "--verbose", is_flag=True, help="Print debug output to stderr")
def cli(verbose: bool):
    """Comment threads anchored to code that follow it across edits and commits."""
    init_logger(verbose=verbose)


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-L",
    "--lines",
    "line_range",
    metavar="START:END",
    required=True,
    help="Line range of the file as it is on disk (e.g., -L 10:15)",
)
@click.option(
    "-a",
    "--author",
    default="unknown",
    help="Author name (defaults to 'unknown')",
)
@click.option(
    "-r",
    "--revision",
    default=None,
    help="Revision to record the thread against (defaults to the last pushed commit)",
)
@click.argument("body", required=True)
def add(file_path: Path, line_range: str, author: str, revision: str | None, body: str):
    """
    Create a comment thread on a range of a file.

    The range is given in the file's current on-disk coordinates and stored
    against the base revision, so it must exist there.

    Examples:

        code-comments add src/main.py -L 42:45 "Fix this function"

        code-comments add src/main.py -L 7 --revision HEAD "Typo"
    """
    current_range = _parse_range_or_exit(line_range)
    file_path = file_path.resolve()
    workspace = _open_workspace(file_path)
    try:
        thread = asyncio.run(
            workspace.add_thread(file_path, current_range, body, author, base_revision=revision)
        )
    except UnpushedRangeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except (GitError, LockTimeout) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        workspace.close()

    anchor = thread.anchor
    click.echo(f"Created thread {thread.id}")
    click.echo(
        f"  {thread.path} lines {anchor.start_line}-{anchor.end_line} at {thread.revision[:12]}"
    )


@cli.command(name="list")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-r",
    "--revision",
    default=None,
    help="Show positions at this revision instead of the file on disk",
)
@click.option(
    "--policy",
    type=click.Choice([policy.value for policy in RangePolicy], case_sensitive=False),
    default=None,
    help="Override the configured range policy",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output as JSON instead of human-readable text",
)
def list_threads(file_path: Path, revision: str | None, policy: str | None, json_output: bool):
    """
    List a file's comment threads with their current positions.

    Threads whose code was deleted, or whose recorded revision no longer
    exists, are listed with an unknown position.

    Examples:

        code-comments list src/main.py

        code-comments list src/main.py --revision origin/main --json
    """
    file_path = file_path.resolve()
    workspace = _open_workspace(file_path, range_policy=policy.lower() if policy else None)
    try:
        views = asyncio.run(workspace.display(file_path, revision or BUFFER_REVISION))
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        workspace.close()

    if json_output:
        click.echo(json.dumps({"threads": [view.to_dict() for view in views]}, indent=2))
        return

    if not views:
        click.echo("No threads found.")
        return
    for view in views:
        click.echo(format_view(view))


@cli.command()
@click.argument("thread_id", required=True)
@click.option(
    "-r",
    "--revision",
    default=None,
    help="Show the position at this revision instead of the file on disk",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output as JSON instead of human-readable text",
)
def show(thread_id: str, revision: str | None, json_output: bool):
    """
    Display a thread with all of its comments and its current position.

    Examples:

        code-comments show 01HQABCDEFGHIJKLMNOPQRSTUV

        code-comments show --json 01HQABCDEFGHIJKLMNOPQRSTUV
    """
    workspace = _open_workspace(Path.cwd())
    try:
        view = asyncio.run(workspace.show(thread_id, revision or BUFFER_REVISION))
    except (ThreadNotFoundError, ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        workspace.close()

    if json_output:
        click.echo(json.dumps(view.to_dict(), indent=2))
        return

    thread = view.thread
    click.echo(f"Thread {thread.id}")
    click.echo(f"  {thread.path} {format_range(view.display_range)} (recorded at {thread.revision[:12]})")
    if view.error is not None:
        click.echo(f"  ({view.error})")
    for comment in thread.comments:
        click.echo("")
        click.echo(f"[{comment.author}] {comment.timestamp}")
        for line in comment.body.splitlines():
            click.echo(f"  {line}")


@cli.command()
@click.argument("thread_id", required=True)
@click.option(
    "-a",
    "--author",
    default="unknown",
    help="Author name (defaults to 'unknown')",
)
@click.argument("body", required=True)
def reply(thread_id: str, author: str, body: str):
    """
    Add a comment to an existing thread.

    Examples:

        code-comments reply 01HQABCDEFGHIJKLMNOPQRSTUV "I agree with this"

        code-comments reply --author=alice 01HQABCDEFGHIJKLMNOPQRSTUV "Fixed in PR #123"
    """
    workspace = _open_workspace(Path.cwd())
    try:
        thread, comment = workspace.reply(thread_id, body, author)
    except ThreadNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except LockTimeout as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        workspace.close()

    click.echo(f"Added comment {comment.id} to thread {thread.id}")
    click.echo(f"  {thread.path}: {len(thread.comments)} comment(s)")


@cli.command()
@click.argument("diff_file", type=click.File("r", encoding="utf-8"))
@click.option(
    "-L",
    "--lines",
    "line_range",
    metavar="START:END",
    required=True,
    help="Line range in the before-file (e.g., -L 4:5)",
)
@click.option(
    "--policy",
    type=click.Choice([policy.value for policy in RangePolicy], case_sensitive=False),
    default=RangePolicy.LENIENT.value,
    help="How moved endpoints are combined into a range",
)
def remap(diff_file, line_range: str, policy: str):
    """
    Map a line range through a unified diff.

    Prints the range in after-file coordinates, or "position unknown".
    Use - to read the diff from stdin.

    Examples:

        git diff -U0 HEAD~1 HEAD -- src/main.py | code-comments remap - -L 10:12
    """
    before = _parse_range_or_exit(line_range)
    try:
        model = parse_unified_diff(diff_file.read())
    except MalformedDiffError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    get_logger().debug("Parsed diff", added=model.added_count, deleted=model.deleted_count)
    click.echo(format_range(remap_range(model, before, RangePolicy(policy.lower()))))


@cli.command()
@click.argument(
    "file_paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def watch(file_paths: tuple[Path, ...]):
    """
    Follow files on disk and print thread positions whenever they change.

    Examples:

        code-comments watch src/main.py src/util.py
    """
    paths = [path.resolve() for path in file_paths]
    workspace = _open_workspace(paths[0])

    def report(thread_id: str, display_range: DisplayRange | None) -> None:
        click.echo(f"{thread_id}  {format_range(display_range)}")

    workspace.synchronizer.on_display_range_changed(report)

    async def run() -> None:
        await watch_files(workspace, paths, asyncio.Event())

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        get_logger().info("Shutting down watcher...")
    except (ValueError, OSError, CodeCommentsError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    finally:
        workspace.close()


if __name__ == "__main__":
    cli()
