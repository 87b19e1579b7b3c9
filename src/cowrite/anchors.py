"""Anchor helpers - re-anchoring, annotation, and edit application on plain text.

Everything here is pure: functions take content strings and comments and
return new values. The store decides when to call them and owns mutation.

Re-anchoring is an exact search. A comment's ``selected_text`` is
searched verbatim in a window around its last known offset; if it is not
there the comment is left where it was (orphaned). There is no fuzzy
matching and no retry with a wider window.
"""

from typing import NamedTuple

from cowrite.models import Comment

DEFAULT_SEARCH_WINDOW = 200


class OutOfRange(ValueError):  # noqa: N818
    """Raised when an edit references a span outside the current content."""

    pass


class Position(NamedTuple):
    """Zero-based line/column location in a text."""

    line: int
    column: int


def search_bounds(offset: int, length: int, content_length: int, window: int = DEFAULT_SEARCH_WINDOW) -> tuple[int, int]:
    """Return the ``[start, end)`` slice searched when re-anchoring, clamped to the content."""
    start = max(0, offset - window)
    end = min(content_length, offset + length + window)
    return start, max(start, end)


def find_anchor(comment: Comment, new_content: str, window: int = DEFAULT_SEARCH_WINDOW) -> int | None:
    """Locate a comment's selected text in ``new_content`` near its last offset.

    Args:
        comment: Range-anchored comment (non-empty selected_text)
        new_content: File content after the edit
        window: Characters searched on each side of the old span

    Returns:
        Absolute offset of the first match in the window, or None if the
        text is not found there (or the comment is a whole-file comment).
    """
    if comment.is_whole_file:
        return None

    start, end = search_bounds(comment.offset, comment.length, len(new_content), window)
    idx = new_content.find(comment.selected_text, start, end)
    if idx == -1:
        return None
    return idx


def format_marker(comment: Comment) -> str:
    return f'[COMMENT #{comment.id}: "{comment.comment}"]'


def annotate_content(content: str, comments: list[Comment]) -> str:
    """Insert ``[COMMENT #id: "text"]`` markers into file content.

    Range comments get their marker right after the anchored span. Markers
    are inserted from the highest offset down so earlier offsets stay
    valid. Whole-file comments are listed at the top, one per line.

    Args:
        content: Current file content
        comments: Comments anchored to this file

    Returns:
        Annotated text
    """
    whole_file = [c for c in comments if c.is_whole_file]
    ranged = sorted((c for c in comments if not c.is_whole_file), key=lambda c: c.offset, reverse=True)

    result = content
    for c in ranged:
        end = min(c.offset + c.length, len(result))
        result = result[:end] + " " + format_marker(c) + result[end:]

    if whole_file:
        header = "".join(f"{format_marker(c)}\n" for c in whole_file)
        result = header + result

    return result


def apply_edit(content: str, offset: int, length: int, new_text: str) -> str:
    """Replace ``content[offset:offset + length]`` with ``new_text``.

    Raises:
        OutOfRange: If the span does not lie within ``content``
    """
    if offset < 0 or length < 0 or offset + length > len(content):
        raise OutOfRange(
            f"Edit span [{offset}, {offset + length}) is outside content of length {len(content)}"
        )
    return content[:offset] + new_text + content[offset + length :]


def offset_to_position(content: str, offset: int) -> Position:
    """Convert a character offset to a zero-based (line, column) pair.

    Offsets past the end are clamped to the end of the content.
    """
    offset = max(0, min(offset, len(content)))
    line = content.count("\n", 0, offset)
    line_start = content.rfind("\n", 0, offset) + 1
    return Position(line=line, column=offset - line_start)
