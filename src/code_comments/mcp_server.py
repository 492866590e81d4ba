"""MCP server exposing comment thread anchoring as tools.

Agents list a file's threads at their current positions, show, add and
reply to threads, and remap line ranges through a unified diff. All tools
take JSON input and return JSON output; failures are returned as
{"error": {"code", "message"}}.
"""

import json
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field, ValidationError

from code_comments.diff import MalformedDiffError, parse_unified_diff
from code_comments.git_ops import GitError
from code_comments.locking import LockTimeout
from code_comments.models import BUFFER_REVISION, LineRange, RangePolicy
from code_comments.remap import UnpushedRangeError, remap_range
from code_comments.storage import ThreadNotFoundError, find_project_root
from code_comments.workspace import CommentWorkspace

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (VALIDATION_ERROR, FILE_NOT_FOUND, etc.)")
    message: str = Field(..., description="Human-readable error message")


def error_content(code: str, message: str) -> list[TextContent]:
    error = ErrorResponse(code=code, message=message)
    return [TextContent(type="text", text=json.dumps({"error": error.model_dump()}, indent=2))]


# ============================================================================
# Request/Response Models
# ============================================================================


class ThreadListRequest(BaseModel):
    """Request model for thread_list tool."""

    file: str = Field(..., description="Path to source file (relative or absolute)")
    revision: str | None = Field(
        default=None, description="Revision to position threads at (omit for the file on disk)"
    )


class ThreadListResponse(BaseModel):
    """Response model for thread_list tool."""

    file: str = Field(..., description="Repo-relative source file path")
    threads: list[dict[str, Any]] = Field(..., description="Threads with display ranges")


class ThreadAddRequest(BaseModel):
    """Request model for thread_add tool."""

    file: str = Field(..., description="Path to source file (relative or absolute)")
    line_start: int = Field(..., gt=0, description="Starting line number on disk (1-indexed)")
    line_end: int = Field(..., gt=0, description="Ending line number on disk (1-indexed)")
    body: str = Field(..., min_length=1, max_length=10000, description="Comment body")
    author: str = Field(default="agent", description="Author name")
    revision: str | None = Field(
        default=None, description="Base revision (omit for the last pushed commit)"
    )


class ThreadAddResponse(BaseModel):
    """Response model for thread_add tool."""

    thread_id: str = Field(..., description="Generated thread ID (ULID)")
    file: str = Field(..., description="Repo-relative source file path")
    revision: str = Field(..., description="Revision the anchor was recorded at")
    anchor: dict[str, int] = Field(..., description="Anchor in base-revision coordinates")


class ThreadShowRequest(BaseModel):
    """Request model for thread_show tool."""

    thread_id: str = Field(..., min_length=1, description="Thread ID (ULID)")
    revision: str | None = Field(
        default=None, description="Revision to position the thread at (omit for the file on disk)"
    )


class ThreadReplyRequest(BaseModel):
    """Request model for thread_reply tool."""

    thread_id: str = Field(..., min_length=1, description="Thread ID (ULID)")
    body: str = Field(..., min_length=1, max_length=10000, description="Comment body")
    author: str = Field(default="agent", description="Author name")


class ThreadReplyResponse(BaseModel):
    """Response model for thread_reply tool."""

    thread_id: str = Field(..., description="Thread the comment was added to")
    comment_id: str = Field(..., description="Generated comment ID (ULID)")
    comment_count: int = Field(..., description="Number of comments in the thread")


class RangeRemapRequest(BaseModel):
    """Request model for range_remap tool."""

    diff: str = Field(..., description="Unified diff text of a single file")
    line_start: int = Field(..., gt=0, description="Starting line in the before-file")
    line_end: int = Field(..., gt=0, description="Ending line in the before-file")
    policy: RangePolicy = Field(default=RangePolicy.LENIENT, description="lenient or strict")


class RangeRemapResponse(BaseModel):
    """Response model for range_remap tool."""

    display_range: dict[str, int] | None = Field(
        ..., description="Range in after-file coordinates, or null when unknown"
    )


# ============================================================================
# MCP Server
# ============================================================================


# Initialize MCP server
mcp = Server("code-comments")


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List all available MCP tools."""
    return [
        Tool(
            name="thread_list",
            description="List a file's comment threads with their current positions",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": {"type": "string", "description": "Path to source file"},
                    "revision": {
                        "type": "string",
                        "description": "Revision to position threads at (omit for the file on disk)",
                    },
                },
                "required": ["file"],
            },
        ),
        Tool(
            name="thread_add",
            description="Create a comment thread on a line range of a file as it is on disk",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": {"type": "string", "description": "Path to source file"},
                    "line_start": {
                        "type": "integer",
                        "description": "Starting line number (1-indexed)",
                        "minimum": 1,
                    },
                    "line_end": {
                        "type": "integer",
                        "description": "Ending line number (1-indexed)",
                        "minimum": 1,
                    },
                    "body": {"type": "string", "description": "Comment body"},
                    "author": {"type": "string", "description": "Author name", "default": "agent"},
                    "revision": {
                        "type": "string",
                        "description": "Base revision (omit for the last pushed commit)",
                    },
                },
                "required": ["file", "line_start", "line_end", "body"],
            },
        ),
        Tool(
            name="thread_show",
            description="Show one comment thread with all comments and its current position",
            inputSchema={
                "type": "object",
                "properties": {
                    "thread_id": {"type": "string", "description": "Thread ID (ULID)"},
                    "revision": {
                        "type": "string",
                        "description": "Revision to position the thread at (omit for the file on disk)",
                    },
                },
                "required": ["thread_id"],
            },
        ),
        Tool(
            name="thread_reply",
            description="Add a comment to an existing thread",
            inputSchema={
                "type": "object",
                "properties": {
                    "thread_id": {"type": "string", "description": "Thread ID (ULID)"},
                    "body": {"type": "string", "description": "Comment body"},
                    "author": {"type": "string", "description": "Author name", "default": "agent"},
                },
                "required": ["thread_id", "body"],
            },
        ),
        Tool(
            name="range_remap",
            description="Map a before-file line range through a unified diff",
            inputSchema={
                "type": "object",
                "properties": {
                    "diff": {"type": "string", "description": "Unified diff text"},
                    "line_start": {"type": "integer", "minimum": 1},
                    "line_end": {"type": "integer", "minimum": 1},
                    "policy": {
                        "type": "string",
                        "enum": [policy.value for policy in RangePolicy],
                        "default": RangePolicy.LENIENT.value,
                    },
                },
                "required": ["diff", "line_start", "line_end"],
            },
        ),
    ]


@mcp.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle MCP tool calls."""
    try:
        if name == "thread_list":
            return await handle_thread_list(arguments)
        elif name == "thread_add":
            return await handle_thread_add(arguments)
        elif name == "thread_show":
            return await handle_thread_show(arguments)
        elif name == "thread_reply":
            return await handle_thread_reply(arguments)
        elif name == "range_remap":
            return await handle_range_remap(arguments)
        else:
            return error_content("UNKNOWN_TOOL", f"Unknown tool: {name}")
    except Exception as e:
        # Catch-all for unexpected errors
        return error_content("INTERNAL_ERROR", str(e))


def _open_workspace(start_path: Path) -> CommentWorkspace | list[TextContent]:
    """Workspace of the repository containing start_path, or an error payload."""
    try:
        project_root = find_project_root(start_path)
    except ValueError as e:
        return error_content("NO_GIT_REPO", str(e))

    try:
        return CommentWorkspace(project_root)
    except ValueError as e:
        return error_content("INVALID_CONFIG", str(e))


def _open_source(file: str) -> tuple[CommentWorkspace, Path] | list[TextContent]:
    """Workspace and absolute path for a tool's file argument, or an error payload."""
    cwd = Path.cwd()
    source_path = Path(file)
    if not source_path.is_absolute():
        source_path = cwd / source_path
    source_path = source_path.resolve()

    if not source_path.is_file():
        return error_content("FILE_NOT_FOUND", f"File not found: {file}")

    workspace = _open_workspace(source_path)
    if isinstance(workspace, list):
        return workspace
    return workspace, source_path


async def handle_thread_list(arguments: Any) -> list[TextContent]:
    """Handle thread_list tool call."""
    try:
        req = ThreadListRequest(**arguments)
    except ValidationError as e:
        return error_content("VALIDATION_ERROR", f"Invalid input: {e}")

    opened = _open_source(req.file)
    if isinstance(opened, list):
        return opened
    workspace, source_path = opened

    try:
        views = await workspace.display(source_path, req.revision or BUFFER_REVISION)
    except UnicodeDecodeError as e:
        return error_content("UNREADABLE_FILE", f"Source file is not valid UTF-8: {e}")
    except ValueError as e:
        return error_content("INVALID_SIDECAR", str(e))
    finally:
        workspace.close()

    response = ThreadListResponse(
        file=workspace.relative_path(source_path),
        threads=[view.to_dict() for view in views],
    )
    return [TextContent(type="text", text=json.dumps(response.model_dump(), indent=2))]


async def handle_thread_add(arguments: Any) -> list[TextContent]:
    """Handle thread_add tool call."""
    try:
        req = ThreadAddRequest(**arguments)
        current_range = LineRange(start_line=req.line_start, end_line=req.line_end)
    except ValidationError as e:
        return error_content("VALIDATION_ERROR", f"Invalid input: {e}")

    opened = _open_source(req.file)
    if isinstance(opened, list):
        return opened
    workspace, source_path = opened

    try:
        thread = await workspace.add_thread(
            source_path, current_range, req.body, req.author, base_revision=req.revision
        )
    except UnpushedRangeError as e:
        return error_content("UNPUSHED_RANGE", str(e))
    except GitError as e:
        return error_content("GIT_ERROR", str(e))
    except UnicodeDecodeError as e:
        return error_content("UNREADABLE_FILE", f"Source file is not valid UTF-8: {e}")
    except (LockTimeout, ValueError, OSError) as e:
        return error_content("WRITE_FAILED", str(e))
    finally:
        workspace.close()

    response = ThreadAddResponse(
        thread_id=thread.id,
        file=thread.path,
        revision=thread.revision,
        anchor=thread.anchor.model_dump(),
    )
    return [TextContent(type="text", text=json.dumps(response.model_dump(), indent=2))]


async def handle_thread_show(arguments: Any) -> list[TextContent]:
    """Handle thread_show tool call."""
    try:
        req = ThreadShowRequest(**arguments)
    except ValidationError as e:
        return error_content("VALIDATION_ERROR", f"Invalid input: {e}")

    workspace = _open_workspace(Path.cwd())
    if isinstance(workspace, list):
        return workspace

    try:
        view = await workspace.show(req.thread_id, req.revision or BUFFER_REVISION)
    except ThreadNotFoundError as e:
        return error_content("THREAD_NOT_FOUND", str(e))
    except UnicodeDecodeError as e:
        return error_content("UNREADABLE_FILE", f"Source file is not valid UTF-8: {e}")
    except ValueError as e:
        return error_content("INVALID_SIDECAR", str(e))
    finally:
        workspace.close()

    return [TextContent(type="text", text=json.dumps(view.to_dict(), indent=2))]


async def handle_thread_reply(arguments: Any) -> list[TextContent]:
    """Handle thread_reply tool call."""
    try:
        req = ThreadReplyRequest(**arguments)
    except ValidationError as e:
        return error_content("VALIDATION_ERROR", f"Invalid input: {e}")

    workspace = _open_workspace(Path.cwd())
    if isinstance(workspace, list):
        return workspace

    try:
        thread, comment = workspace.reply(req.thread_id, req.body, req.author)
    except ThreadNotFoundError as e:
        return error_content("THREAD_NOT_FOUND", str(e))
    except ValidationError as e:
        return error_content("VALIDATION_ERROR", f"Invalid input: {e}")
    except (LockTimeout, ValueError, OSError) as e:
        return error_content("WRITE_FAILED", str(e))
    finally:
        workspace.close()

    response = ThreadReplyResponse(
        thread_id=thread.id, comment_id=comment.id, comment_count=len(thread.comments)
    )
    return [TextContent(type="text", text=json.dumps(response.model_dump(), indent=2))]


async def handle_range_remap(arguments: Any) -> list[TextContent]:
    """Handle range_remap tool call."""
    try:
        req = RangeRemapRequest(**arguments)
        before = LineRange(start_line=req.line_start, end_line=req.line_end)
    except ValidationError as e:
        return error_content("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        model = parse_unified_diff(req.diff)
    except MalformedDiffError as e:
        return error_content("MALFORMED_DIFF", str(e))

    display_range = remap_range(model, before, req.policy)
    response = RangeRemapResponse(
        display_range=display_range.model_dump() if display_range else None
    )
    return [TextContent(type="text", text=json.dumps(response.model_dump(), indent=2))]


# ============================================================================
# Main Entry Point
# ============================================================================


async def main() -> None:
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(read_stream, write_stream, mcp.create_initialization_options())


def run_server() -> None:
    """Synchronous entry point for running the server."""
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run_server()
