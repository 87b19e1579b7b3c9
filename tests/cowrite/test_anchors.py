"""Tests for anchor search, annotation and edit helpers."""

import pytest

from cowrite.anchors import (
    OutOfRange,
    annotate_content,
    apply_edit,
    find_anchor,
    format_marker,
    offset_to_position,
    search_bounds,
)
from cowrite.models import Comment


def make_comment(offset: int, text: str, body: str = "note", comment_id: str = "c1") -> Comment:
    return Comment(id=comment_id, file="/p/a.txt", offset=offset, length=len(text), selected_text=text, comment=body)


# ============================================================================
# Re-anchoring
# ============================================================================


class TestFindAnchor:
    def test_text_shifted_by_insert(self):
        comment = make_comment(10, "hello")
        new_content = "PREFIX" + "0123456789hello world"

        assert find_anchor(comment, new_content) == 16

    def test_unchanged_position(self):
        content = "0123456789hello world"
        assert find_anchor(make_comment(10, "hello"), content) == 10

    def test_text_removed_returns_none(self):
        assert find_anchor(make_comment(10, "hello"), "0123456789HELLO world") is None

    def test_first_match_in_window_wins(self):
        content = "hello hello"
        assert find_anchor(make_comment(6, "hello"), content) == 0

    def test_match_outside_window_ignored(self):
        content = "x" * 500 + "needle"
        comment = make_comment(0, "needle")

        assert find_anchor(comment, content, window=200) is None
        assert find_anchor(comment, content, window=500) == 500

    def test_whole_file_comment_never_anchored(self):
        comment = Comment(file="/p/a.txt", comment="overall")
        assert find_anchor(comment, "anything") is None

    def test_offset_beyond_new_content(self):
        comment = make_comment(900, "tail")
        assert find_anchor(comment, "short tail") is None
        assert find_anchor(comment, "tail" + "y" * 800) is None
        assert find_anchor(comment, "z" * 750 + "tail") == 750


def test_search_bounds_clamped():
    assert search_bounds(10, 5, 1000, 200) == (0, 215)
    assert search_bounds(500, 5, 520, 200) == (300, 520)
    assert search_bounds(900, 5, 10, 200) == (700, 700)


# ============================================================================
# Annotation
# ============================================================================


class TestAnnotate:
    def test_single_marker_after_span(self):
        content = "Hello world, this is a test file."
        comment = make_comment(6, "world", body="Change this", comment_id="c1")

        result = annotate_content(content, [comment])

        assert result == 'Hello world [COMMENT #c1: "Change this"], this is a test file.'

    def test_multiple_markers_keep_positions(self):
        content = "alpha beta gamma"
        first = make_comment(0, "alpha", body="one", comment_id="a")
        second = make_comment(11, "gamma", body="two", comment_id="b")

        result = annotate_content(content, [first, second])

        assert result == 'alpha [COMMENT #a: "one"] beta gamma [COMMENT #b: "two"]'

    def test_whole_file_comments_as_header(self):
        whole = Comment(id="w", file="/p/a.txt", comment="Tone is off")

        result = annotate_content("body\n", [whole])

        assert result == '[COMMENT #w: "Tone is off"]\nbody\n'

    def test_no_comments_returns_content(self):
        assert annotate_content("plain", []) == "plain"

    def test_span_past_end_is_clamped(self):
        comment = make_comment(3, "defgh", comment_id="x")
        assert annotate_content("abcde", [comment]) == 'abcde [COMMENT #x: "note"]'

    def test_marker_uses_full_id(self):
        comment = make_comment(0, "a", comment_id="01HQABCDEFGHIJKLMNOPQRSTUV")
        assert "01HQABCDEFGHIJKLMNOPQRSTUV" in format_marker(comment)


# ============================================================================
# Edits and positions
# ============================================================================


def test_apply_edit_replaces_span():
    assert apply_edit("Hello world", 6, 5, "there") == "Hello there"


def test_apply_edit_insert_and_delete():
    assert apply_edit("abc", 1, 0, "X") == "aXbc"
    assert apply_edit("abc", 0, 3, "") == ""


@pytest.mark.parametrize("offset,length", [(-1, 1), (2, 5), (4, 0)])
def test_apply_edit_out_of_range(offset, length):
    with pytest.raises(OutOfRange):
        apply_edit("abc", offset, length, "x")


def test_offset_to_position():
    content = "line one\nline two\nthree"

    assert offset_to_position(content, 0) == (0, 0)
    assert offset_to_position(content, 9) == (1, 0)
    assert offset_to_position(content, 14) == (1, 5)
    assert offset_to_position(content, 10_000) == (2, 5)


def test_marker_follows_selected_span():
    content = "Hello world, this is a test file."
    comment = make_comment(6, "world", body="Should be uppercase", comment_id="01HZX")

    result = annotate_content(content, [comment])

    marker = result.index('[COMMENT #01HZX: "Should be uppercase"]')
    assert result.startswith("Hello world")
    assert marker > result.index("world")
