"""Data models for comment threads, anchors, and remapped display ranges."""

from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, Field, field_validator, model_validator
from ulid import new as new_ulid

# Reserved revision identifier naming the unsaved content of an open buffer.
BUFFER_REVISION = "<buffer>"


def utc_now() -> str:
    """Current time as an ISO 8601 UTC string with a "Z" suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _validate_utc_timestamp(v: str) -> str:
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if dt.tzinfo is None or dt.tzinfo.utcoffset(None) != timezone.utc.utcoffset(None):
            raise ValueError("Timestamp must be in UTC timezone")
        return v
    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid ISO 8601 UTC timestamp: {v}") from e


def _validate_ulid(v: str) -> str:
    if len(v) != 26:
        raise ValueError(f"ULID must be exactly 26 characters, got {len(v)}")
    return v


class ThreadState(str, Enum):
    """Synchronization state of a registered thread."""

    PENDING = "pending"  # Anchor known, display range not computed for the current target
    RESOLVED = "resolved"  # Display range computed (defined or None)
    DISPOSED = "disposed"  # Unsubscribed from recomputation


class RangePolicy(str, Enum):
    """How remapped endpoints are combined into a range."""

    LENIENT = "lenient"  # Accept whenever both endpoints resolve in order
    STRICT = "strict"  # Moved endpoints must form a contiguous block of the original length


class LineRange(BaseModel, frozen=True):
    """A line/column range; lines and columns are 1-indexed, end is inclusive."""

    start_line: int = Field(..., ge=1)
    start_column: int = Field(default=1, ge=1)
    end_line: int = Field(..., ge=1)
    end_column: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def validate_order(self) -> "LineRange":
        """Validate that the end position is not before the start position."""
        if self.end_line < self.start_line:
            raise ValueError(
                f"end_line ({self.end_line}) must be >= start_line ({self.start_line})"
            )
        if self.end_line == self.start_line and self.end_column < self.start_column:
            raise ValueError(
                f"end_column ({self.end_column}) must be >= start_column ({self.start_column}) "
                "on a single-line range"
            )
        return self

    @property
    def line_span(self) -> int:
        """Number of lines covered by the range."""
        return self.end_line - self.start_line + 1

    def format(self) -> str:
        """Human-readable "start:col-end:col" form."""
        return f"{self.start_line}:{self.start_column}-{self.end_line}:{self.end_column}"


class Anchor(LineRange, frozen=True):
    """Range a thread was created against, in the coordinates of its recorded revision.

    Anchors record history, not current truth: they are never mutated after
    the thread is created.
    """


class DisplayRange(LineRange, frozen=True):
    """Where a thread currently appears, in the coordinates of the target revision."""


class RepositoryRevisionKey(BaseModel, frozen=True):
    """A (repository, revision) pair."""

    repo: str = Field(..., min_length=1)
    revision: str = Field(..., min_length=1)


class DiffKey(NamedTuple):
    """Cache key identifying one diff of one file between two revisions."""

    repo: str
    path: str
    from_revision: str
    to_revision: str

    @property
    def involves_buffer(self) -> bool:
        return BUFFER_REVISION in (self.from_revision, self.to_revision)


class Comment(BaseModel):
    """A single comment within a thread."""

    id: str = Field(default_factory=lambda: str(new_ulid()))
    author: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=10000)
    timestamp: str = Field(default_factory=utc_now)

    @field_validator("id")
    @classmethod
    def validate_ulid(cls, v: str) -> str:
        """Validate that id is a valid ULID (26 characters)."""
        return _validate_ulid(v)

    @field_validator("timestamp")
    @classmethod
    def validate_utc_timestamp(cls, v: str) -> str:
        """Validate that timestamp is valid ISO 8601 UTC format."""
        return _validate_utc_timestamp(v)


class CommentThread(BaseModel):
    """A discussion thread anchored to a range of a file at a recorded revision."""

    id: str = Field(default_factory=lambda: str(new_ulid()))
    repo: str = Field(..., min_length=1, description="Repository identity (root path)")
    path: str = Field(..., min_length=1, description="Repo-relative path (POSIX separators)")
    revision: str = Field(..., min_length=1, description="Revision the anchor was recorded at")
    anchor: Anchor
    comments: list[Comment] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)

    @field_validator("id")
    @classmethod
    def validate_ulid(cls, v: str) -> str:
        """Validate that id is a valid ULID (26 characters)."""
        return _validate_ulid(v)

    @field_validator("created_at")
    @classmethod
    def validate_utc_timestamp(cls, v: str) -> str:
        """Validate that created_at is valid ISO 8601 UTC format."""
        return _validate_utc_timestamp(v)

    @field_validator("revision")
    @classmethod
    def validate_recorded_revision(cls, v: str) -> str:
        """Threads must be recorded against a committed revision."""
        if v == BUFFER_REVISION:
            raise ValueError("Threads cannot be recorded against an unsaved buffer")
        return v

    @property
    def revision_key(self) -> RepositoryRevisionKey:
        return RepositoryRevisionKey(repo=self.repo, revision=self.revision)

    def add_comment(self, author: str, body: str, timestamp: str | None = None) -> Comment:
        """Add a new comment to the thread.

        Args:
            author: Name or identifier of the comment author
            body: Comment text content
            timestamp: Optional override timestamp (uses current UTC time if None)

        Returns:
            The newly created Comment object
        """
        comment = Comment(author=author, body=body, timestamp=timestamp or utc_now())
        self.comments.append(comment)
        return comment


class ThreadFile(BaseModel):
    """Root structure for a sidecar JSON file holding a file's threads."""

    source_file: str = Field(..., description="Repo-relative path to source file (POSIX separators)")
    schema_version: str = Field(default="1.0")
    threads: list[CommentThread] = Field(default_factory=list)
