from __future__ import annotations

import pytest

from ge.errors import BlockMarkerError
from ge.tools.blocks import apply_block


def test_replaces_block_body_between_markers() -> None:
    text = "start\n# BEGIN\nold\n# END\nend\n"

    assert apply_block(text, "# BEGIN", "# END", "new") == "start\n# BEGIN\nnew\n# END\nend\n"


def test_body_inherits_marker_indentation() -> None:
    text = "def f():\n    # BEGIN\n    old\n    # END\n    return 1\n"

    updated = apply_block(text, "# BEGIN", "# END", "x = 1\ny = 2")

    assert updated == "def f():\n    # BEGIN\n    x = 1\n    y = 2\n    # END\n    return 1\n"


def test_insert_fills_empty_block_and_refuses_populated_one() -> None:
    assert apply_block("# BEGIN\n# END\n", "# BEGIN", "# END", "x", mode="insert") == "# BEGIN\nx\n# END\n"

    with pytest.raises(BlockMarkerError):
        apply_block("# BEGIN\nkept\n# END\n", "# BEGIN", "# END", "x", mode="insert")


def test_missing_markers_raise() -> None:
    with pytest.raises(BlockMarkerError):
        apply_block("# BEGIN\nbody\n", "# BEGIN", "# END", "x")
    with pytest.raises(BlockMarkerError):
        apply_block("body\n# END\n", "# BEGIN", "# END", "x")
    with pytest.raises(BlockMarkerError):
        apply_block("body\n", "", "# END", "x")


def test_unchanged_body_returns_none() -> None:
    assert apply_block("# BEGIN\nsame\n# END\n", "# BEGIN", "# END", "same") is None


def test_body_follows_document_newline() -> None:
    text = "# BEGIN\r\nold\r\n# END\r\n"

    assert apply_block(text, "# BEGIN", "# END", "new", newline="\r\n") == "# BEGIN\r\nnew\r\n# END\r\n"
