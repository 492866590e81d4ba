"""Range remapping through a DiffModel.

Lines that survive the diff are shifted by the net offset of the edits
before them. Deleted lines are looked up among the added lines (exact
content first, then whitespace-trimmed content) to detect code that moved;
a duplicated match disqualifies the move, because attaching a comment to
the wrong copy is worse than showing no position at all.
"""

from enum import Enum
from typing import NamedTuple

from code_comments.diff import DiffModel, MatchKind
from code_comments.errors import CodeCommentsError
from code_comments.models import Anchor, DisplayRange, LineRange, RangePolicy


class UnpushedRangeError(CodeCommentsError):
    """Raised when a new thread's range does not exist at the base revision."""

    pass


class RemapKind(str, Enum):
    MAPPED = "mapped"  # Line survived, shifted by the running offset
    MOVED = "moved"  # Line deleted but its content reappeared once elsewhere
    UNRESOLVABLE = "unresolvable"  # Line gone, no confident replacement


class LineRemap(NamedTuple):
    """Result of remapping a single before-file line."""

    kind: RemapKind
    line: int | None = None

    @property
    def resolved(self) -> bool:
        return self.kind is not RemapKind.UNRESOLVABLE


UNRESOLVABLE = LineRemap(RemapKind.UNRESOLVABLE)


def remap_line(model: DiffModel, before_line: int) -> LineRemap:
    """Map one before-file line number to the after-file.

    Args:
        model: Diff from the line's revision to the target revision
        before_line: 1-indexed line number in the before-file

    Returns:
        MAPPED with the shifted line, MOVED with the line the content moved
        to, or UNRESOLVABLE
    """
    deleted = model.deleted_by_line.get(before_line)
    if deleted is None:
        return LineRemap(RemapKind.MAPPED, before_line + model.line_offset(before_line))

    match = model.lookup_exact(deleted.content)
    if match.kind is not MatchKind.UNIQUE:
        match = model.lookup_trimmed(deleted.content)
    if match.kind is MatchKind.UNIQUE and match.edit is not None:
        return LineRemap(RemapKind.MOVED, match.edit.after_line)

    return UNRESOLVABLE


def remap_range(
    model: DiffModel,
    anchor: LineRange,
    policy: RangePolicy = RangePolicy.LENIENT,
) -> DisplayRange | None:
    """Map a before-coordinate range to after-coordinates.

    Start and end lines are remapped independently and columns carry over
    unchanged. A range whose interior was partly deleted is still accepted
    as long as both endpoints resolve.

    Args:
        model: Diff from the anchor's revision to the target revision
        anchor: Range in before-coordinates
        policy: LENIENT accepts any in-order pair of resolved endpoints;
            STRICT only accepts moved endpoints that form a contiguous block
            of the original length

    Returns:
        The remapped range, or None if either endpoint is unresolvable or the
        remapped endpoints are out of order
    """
    if model.is_empty:
        return DisplayRange(**anchor.model_dump())

    start = remap_line(model, anchor.start_line)
    if not start.resolved:
        return None
    end = remap_line(model, anchor.end_line) if anchor.end_line != anchor.start_line else start
    if not end.resolved:
        return None

    assert start.line is not None and end.line is not None
    if start.line > end.line:
        return None
    if start.line == end.line and anchor.start_column > anchor.end_column:
        return None

    if policy is RangePolicy.STRICT and RemapKind.MOVED in (start.kind, end.kind):
        both_moved = start.kind is RemapKind.MOVED and end.kind is RemapKind.MOVED
        if not both_moved or end.line - start.line != anchor.end_line - anchor.start_line:
            return None

    return DisplayRange(
        start_line=start.line,
        start_column=anchor.start_column,
        end_line=end.line,
        end_column=anchor.end_column,
    )


def anchor_to_base(
    reverse_model: DiffModel,
    current_range: LineRange,
    policy: RangePolicy = RangePolicy.LENIENT,
) -> Anchor:
    """Express a range drawn on current content in base-revision coordinates.

    Args:
        reverse_model: Diff from the current content back to the base revision
        current_range: Range selected on the current content

    Returns:
        Anchor in base-revision coordinates

    Raises:
        UnpushedRangeError: If the range has no counterpart at the base revision
            (for example, the lines were added locally and never pushed)
    """
    remapped = remap_range(reverse_model, current_range, policy)
    if remapped is None:
        raise UnpushedRangeError(
            f"Lines {current_range.start_line}-{current_range.end_line} do not exist "
            "at the base revision; commit and push them before commenting"
        )
    return Anchor(**remapped.model_dump())
