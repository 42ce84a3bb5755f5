from __future__ import annotations

import textwrap

import pytest

from ge.errors import HunkMismatch, PatchFormatError
from ge.tools.diffing import compute_edit_script
from ge.tools.encoding import split_lines
from ge.tools.patch import (
    FileEdit,
    apply_file_edit,
    apply_hunks,
    build_hunks,
    invert_file_edit,
    invert_hunks,
    parse_unified_diff,
    render_file_edit,
)

SIMPLE_PATCH = textwrap.dedent(
    """\
    --- a/f.txt
    +++ b/f.txt
    @@ -1,3 +1,3 @@
     a
    -b
    +B
     c
    """
)


def test_parse_and_apply_simple_patch() -> None:
    (edit,) = parse_unified_diff(SIMPLE_PATCH)

    assert edit.kind == "modify"
    assert edit.target_path.as_posix() == "f.txt"
    assert apply_file_edit(edit, ["a\n", "b\n", "c\n"]) == ["a\n", "B\n", "c\n"]


def test_hunk_reanchors_within_the_offset_window() -> None:
    (edit,) = parse_unified_diff(SIMPLE_PATCH)
    lines = split_lines("x\ny\nz\na\nb\nc\n")

    assert "".join(apply_file_edit(edit, lines)) == "x\ny\nz\na\nB\nc\n"


def test_nearest_offset_wins_and_earlier_line_breaks_ties() -> None:
    (edit,) = parse_unified_diff(
        textwrap.dedent(
            """\
            --- a/f.txt
            +++ b/f.txt
            @@ -3,1 +3,1 @@
            -k
            +K
            """
        )
    )
    # "k" sits both one line above and one line below its recorded position.
    lines = split_lines("0\nk\nx\nk\n")

    assert "".join(apply_file_edit(edit, lines)) == "0\nK\nx\nk\n"


def test_drift_beyond_the_window_is_positional() -> None:
    (edit,) = parse_unified_diff(SIMPLE_PATCH)
    lines = split_lines("".join(f"pad{index}\n" for index in range(20)) + "a\nb\nc\n")

    with pytest.raises(HunkMismatch) as excinfo:
        apply_file_edit(edit, lines, max_offset=10)

    error = excinfo.value
    assert error.drift == "positional"
    assert error.expected_line == 1
    assert error.nearest_line == 21
    assert error.details["path"] == "f.txt"


def test_changed_context_is_contextual_drift() -> None:
    (edit,) = parse_unified_diff(SIMPLE_PATCH)

    with pytest.raises(HunkMismatch) as excinfo:
        apply_file_edit(edit, split_lines("a\nq\nc\n"))

    assert excinfo.value.drift == "contextual"
    assert excinfo.value.nearest_line == 1
    assert excinfo.value.details["matched_lines"] == 2


@pytest.mark.parametrize(
    "body",
    [
        "@@ -1,3 +1,3 @@\n a\n-b\n+B\n",
        "@@ -1,1 +1,1 @@\n-a\n+A\n-b\n",
        "@@ -1,1 +1,1 @@\n?a\n",
        "@@ -1,2 +1,2 @@\n a\n-b\n+B\n c\n",
    ],
)
def test_malformed_hunk_counts_are_rejected(body: str) -> None:
    with pytest.raises(PatchFormatError):
        parse_unified_diff("--- a/f.txt\n+++ b/f.txt\n" + body)


def test_format_patch_signature_is_ignored() -> None:
    patch = (
        "From 1234abcd Mon Sep 17 00:00:00 2001\n"
        "Subject: [PATCH] shout b\n"
        "\n"
        "---\n"
        " f.txt | 2 +-\n"
        "\n"
        "diff --git a/f.txt b/f.txt\n"
        "index 0000001..0000002 100644\n"
        "--- a/f.txt\n"
        "+++ b/f.txt\n"
        "@@ -1,3 +1,3 @@\n"
        " a\n"
        "-b\n"
        "+B\n"
        " c\n"
        "-- \n"
        "2.43.0\n"
    )

    (edit,) = parse_unified_diff(patch)

    assert edit.new_path == "f.txt"
    assert len(edit.hunks) == 1
    assert apply_file_edit(edit, ["a\n", "b\n", "c\n"]) == ["a\n", "B\n", "c\n"]


def test_hunk_before_header_and_empty_patch_are_rejected() -> None:
    with pytest.raises(PatchFormatError):
        parse_unified_diff("@@ -1 +1 @@\n-a\n+b\n")
    with pytest.raises(PatchFormatError):
        parse_unified_diff("just some text\n")


def test_git_headers_describe_create_delete_and_rename() -> None:
    patch = textwrap.dedent(
        """\
        diff --git a/new.txt b/new.txt
        new file mode 100644
        index 0000000..1111111
        --- /dev/null
        +++ b/new.txt
        @@ -0,0 +1,2 @@
        +hello
        +world
        diff --git a/gone.txt b/gone.txt
        deleted file mode 100644
        --- a/gone.txt
        +++ /dev/null
        @@ -1 +0,0 @@
        -bye
        diff --git a/old name.txt b/moved.txt
        similarity index 100%
        rename from old name.txt
        rename to moved.txt
        """
    )

    create, delete, rename = parse_unified_diff(patch)

    assert (create.kind, create.old_path, create.new_path) == ("create", None, "new.txt")
    assert create.new_mode == "100644"
    assert apply_file_edit(create, []) == ["hello\n", "world\n"]
    assert (delete.kind, delete.old_path, delete.new_path) == ("delete", "gone.txt", None)
    assert apply_file_edit(delete, ["bye\n"]) == []
    assert (rename.kind, rename.old_path, rename.new_path) == ("rename", "old name.txt", "moved.txt")
    assert rename.hunks == []


def test_no_newline_marker_round_trips() -> None:
    old = ["a\n", "b"]
    new = ["a\n", "c"]
    hunks = build_hunks(compute_edit_script(old, new))

    text = render_file_edit(FileEdit(old_path="f.txt", new_path="f.txt", hunks=hunks))
    assert "\\ No newline at end of file" in text

    (parsed,) = parse_unified_diff(text)
    assert apply_file_edit(parsed, old) == new


def test_built_hunks_apply_and_invert() -> None:
    old = [f"line{index}\n" for index in range(1, 31)]
    new = list(old)
    new[2] = "changed3\n"
    new.insert(15, "inserted\n")
    del new[25]

    hunks = build_hunks(compute_edit_script(old, new), context=3)

    assert len(hunks) == 3
    assert apply_hunks(hunks, old) == new
    assert apply_hunks(invert_hunks(hunks), new) == old


def test_inverting_a_file_edit_swaps_sides() -> None:
    (create,) = parse_unified_diff("--- /dev/null\n+++ b/n.txt\n@@ -0,0 +1 @@\n+x\n")

    undo = invert_file_edit(create)

    assert undo.kind == "delete"
    assert (undo.old_path, undo.new_path) == ("n.txt", None)
    assert apply_file_edit(undo, ["x\n"]) == []
    assert parse_unified_diff(render_file_edit(undo))[0].kind == "delete"


def test_added_lines_follow_the_target_newline() -> None:
    (edit,) = parse_unified_diff(SIMPLE_PATCH)

    result = apply_file_edit(edit, ["a\r\n", "b\r\n", "c\r\n"], newline="\r\n")

    assert result == ["a\r\n", "B\r\n", "c\r\n"]
