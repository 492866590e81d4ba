"""Line-level diff model with move-detection indices.

A DiffModel is built either by parsing a unified diff (git diff -U0 output)
or by diffing two line sequences directly (committed content against an
unsaved buffer). Both produce the same structure:

- edits: ordered LineEdit records for added (+1) and deleted (-1) lines
- added_exact: added line content -> LineEdit, or AMBIGUOUS_MOVE when the
  content was added more than once
- added_trimmed: same, keyed by whitespace-trimmed content
- deleted_by_line: before-file line number -> deleted LineEdit

Context lines are not recorded; the range remapper reconstructs unchanged
lines from the running offset of the edits before them.
"""

import difflib
import re
from collections.abc import Sequence
from enum import Enum
from typing import Literal, NamedTuple

from pydantic import BaseModel, Field

from code_comments.errors import CodeCommentsError


class MalformedDiffError(CodeCommentsError):
    """Raised when diff text violates the hunk-header or line-marker grammar."""

    def __init__(self, message: str, line_number: int | None = None, line: str | None = None):
        self.line_number = line_number
        self.line = line
        if line_number is not None:
            message = f"{message} (diff line {line_number}: {line!r})"
        super().__init__(message)


class LineEdit(BaseModel, frozen=True):
    """One added or deleted line of a diff.

    For added lines, before_line is the before-file line the addition is
    inserted in front of. For deleted lines, after_line is the after-file
    line at which the deletion happened.
    """

    before_line: int = Field(..., ge=1)
    after_line: int = Field(..., ge=1)
    content: str
    line_delta: Literal[1, -1]


class _AmbiguousMove(Enum):
    """Index marker for content added more than once."""

    AMBIGUOUS_MOVE = "ambiguous"

    def __repr__(self) -> str:
        return "AMBIGUOUS_MOVE"


AMBIGUOUS_MOVE = _AmbiguousMove.AMBIGUOUS_MOVE

IndexEntry = LineEdit | _AmbiguousMove


class MatchKind(str, Enum):
    """Outcome of looking a line up in an added-line index."""

    NO_MATCH = "no_match"
    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"


class MoveLookup(NamedTuple):
    """Tri-state lookup result; edit is only set for UNIQUE matches."""

    kind: MatchKind
    edit: LineEdit | None = None


NO_MATCH = MoveLookup(MatchKind.NO_MATCH)
AMBIGUOUS = MoveLookup(MatchKind.AMBIGUOUS)


# "@@ -12,3 +14,5 @@ optional section heading"
HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class HunkHeader(NamedTuple):
    before_start: int
    before_count: int
    after_start: int
    after_count: int


def split_lines(text: str) -> list[str]:
    r"""
    Split text into lines the way git and editors count them.

    Only "\n" ends a line (a trailing "\r" is dropped). Unlike str.splitlines(),
    form feeds, vertical tabs and Unicode separators stay inside their line.
    """
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_hunk_header(line: str) -> HunkHeader:
    """Parse a hunk header such as "@@ -1,3 +2,4 @@".

    Omitted counts default to 1.

    Raises:
        MalformedDiffError: If the header does not match the unified diff grammar
    """
    match = HUNK_HEADER_RE.match(line)
    if match is None:
        raise MalformedDiffError(f"Invalid hunk header: {line!r}")
    before_start, before_count, after_start, after_count = match.groups()
    return HunkHeader(
        before_start=int(before_start),
        before_count=int(before_count) if before_count is not None else 1,
        after_start=int(after_start),
        after_count=int(after_count) if after_count is not None else 1,
    )


class DiffModel:
    """Added/deleted lines of a single-file diff plus move-detection indices."""

    def __init__(self) -> None:
        self.edits: list[LineEdit] = []
        self.added_exact: dict[str, IndexEntry] = {}
        self.added_trimmed: dict[str, IndexEntry] = {}
        self.deleted_by_line: dict[int, LineEdit] = {}

    def __repr__(self) -> str:
        return (
            f"DiffModel(added={self.added_count}, deleted={self.deleted_count}, "
            f"edits={len(self.edits)})"
        )

    @property
    def is_empty(self) -> bool:
        return not self.edits

    @property
    def added_count(self) -> int:
        return sum(1 for edit in self.edits if edit.line_delta == 1)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_by_line)

    def add_line(self, before_line: int, after_line: int, content: str) -> LineEdit:
        """Record an added line and index it for move detection."""
        edit = LineEdit(before_line=before_line, after_line=after_line, content=content, line_delta=1)
        self.edits.append(edit)
        # A duplicated line is never a confident move target.
        _index(self.added_exact, content, edit)
        _index(self.added_trimmed, content.strip(), edit)
        return edit

    def delete_line(self, before_line: int, after_line: int, content: str) -> LineEdit:
        """Record a deleted line."""
        edit = LineEdit(before_line=before_line, after_line=after_line, content=content, line_delta=-1)
        self.edits.append(edit)
        self.deleted_by_line[before_line] = edit
        return edit

    def lookup_exact(self, content: str) -> MoveLookup:
        return _lookup(self.added_exact, content)

    def lookup_trimmed(self, content: str) -> MoveLookup:
        return _lookup(self.added_trimmed, content.strip())

    def is_deleted(self, before_line: int) -> bool:
        return before_line in self.deleted_by_line

    def line_offset(self, before_line: int) -> int:
        """Net line shift applied to a surviving before-file line.

        Sums line_delta over every edit at or before before_line. Edits are
        ordered by before_line, so the walk stops at the first edit past it.
        """
        offset = 0
        for edit in self.edits:
            if edit.before_line > before_line:
                break
            offset += edit.line_delta
        return offset

    @classmethod
    def from_lines(cls, before_lines: Sequence[str], after_lines: Sequence[str]) -> "DiffModel":
        """Build a model by diffing two line sequences.

        Used for unsaved buffers, where there is no unified diff text to parse.
        Numbering follows the same conventions as parse_unified_diff.
        """
        model = cls()
        matcher = difflib.SequenceMatcher(None, list(before_lines), list(after_lines), autojunk=False)
        for tag, b_start, b_end, a_start, a_end in matcher.get_opcodes():
            if tag == "equal":
                continue
            # Deletions first, then additions, as a unified diff hunk lists them
            for offset in range(b_end - b_start):
                model.delete_line(b_start + offset + 1, a_start + 1, before_lines[b_start + offset])
            for offset in range(a_end - a_start):
                model.add_line(b_end + 1, a_start + offset + 1, after_lines[a_start + offset])
        return model


def _index(index: dict[str, IndexEntry], key: str, edit: LineEdit) -> None:
    if key in index:
        index[key] = AMBIGUOUS_MOVE
    else:
        index[key] = edit


def _lookup(index: dict[str, IndexEntry], key: str) -> MoveLookup:
    entry = index.get(key)
    if entry is None:
        return NO_MATCH
    if entry is AMBIGUOUS_MOVE:
        return AMBIGUOUS
    return MoveLookup(MatchKind.UNIQUE, entry)


def parse_unified_diff(diff_text: str) -> DiffModel:
    """Parse a single-file unified diff into a DiffModel.

    Everything before the first hunk header (diff --git, index, ---, +++)
    is skipped. Diffs are expected to carry zero lines of context, but
    context lines are tolerated.

    Args:
        diff_text: Unified diff text, as produced by git diff -U0

    Returns:
        DiffModel with edits and lookup indices populated. Empty text yields
        an empty model.

    Raises:
        MalformedDiffError: If a hunk header cannot be parsed or a hunk line
            has no recognized marker
    """
    model = DiffModel()
    before_line = 0
    after_line = 0
    in_hunk = False

    for line_number, line in enumerate(split_lines(diff_text), start=1):
        if line.startswith("@@"):
            try:
                hunk = parse_hunk_header(line)
            except MalformedDiffError as e:
                raise MalformedDiffError("Invalid hunk header", line_number, line) from e
            # A zero count names the line before the hunk: "-3,0" inserts after line 3.
            before_line = hunk.before_start if hunk.before_count > 0 else hunk.before_start + 1
            after_line = hunk.after_start if hunk.after_count > 0 else hunk.after_start + 1
            in_hunk = True
            continue

        if not in_hunk:
            continue

        if not line:
            # Blank context line whose leading space was stripped
            before_line += 1
            after_line += 1
            continue

        marker, content = line[0], line[1:]
        if marker == "+":
            model.add_line(before_line, after_line, content)
            after_line += 1
        elif marker == "-":
            model.delete_line(before_line, after_line, content)
            before_line += 1
        elif marker == " ":
            before_line += 1
            after_line += 1
        elif marker == "\\":
            # "\ No newline at end of file"
            continue
        else:
            raise MalformedDiffError("Unrecognized diff line marker", line_number, line)

    return model
