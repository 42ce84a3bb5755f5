from __future__ import annotations

from pathlib import Path

import pytest

from ge.config import EngineSettings
from ge.errors import ConfigurationError, GuardViolation, OverwriteRefused
from ge.memory.change_log import ChangeLog
from ge.memory.schema import ChangeAction
from ge.orchestrator import ApprovalDecision, EditEngine, EditPreview
from ge.structured import (
    BlockRequest,
    MatchGuards,
    RenameRequest,
    ReplaceRequest,
    WriteRequest,
    requests_from_patch,
)
from ge.tools.encoding import split_lines
from ge.tools.patch import apply_file_edit, parse_unified_diff


def _engine(root: Path) -> EditEngine:
    settings = EngineSettings(undo_dir=root / "undo", fsync=False)
    return EditEngine(settings, change_log=ChangeLog(root / "log.jsonl"))


@pytest.mark.parametrize(
    "edit_request",
    [
        ReplaceRequest(pattern="b", replacement="B"),
        ReplaceRequest(pattern="b", replacement="B", mode="regex", guards=MatchGuards(expect=1)),
    ],
    ids=["literal", "regex-expect"],
)
def test_single_line_replace_applies_and_can_be_undone(workspace: Path, edit_request: ReplaceRequest) -> None:
    target = workspace / "abc.txt"
    target.write_text("a\nb\nc\n", encoding="utf-8")
    engine = _engine(workspace)

    (outcome,) = engine.run([target], edit_request, apply=True, auto_approve=True)

    assert outcome.action is ChangeAction.APPLIED
    assert target.read_text(encoding="utf-8") == "a\nB\nc\n"
    assert outcome.preview is not None and outcome.preview.diff.hunk_count == 1
    assert outcome.record.summary == "L2"
    assert outcome.record.backup_path is not None
    assert Path(outcome.record.backup_path).read_text(encoding="utf-8") == "a\nb\nc\n"

    undo_path = Path(outcome.record.undo_path or "")
    (undo,) = parse_unified_diff(undo_path.read_text(encoding="utf-8"))
    restored = apply_file_edit(undo, split_lines(target.read_text(encoding="utf-8")))
    assert "".join(restored) == "a\nb\nc\n"

    (logged,) = engine.change_log.entries()
    assert logged.action is ChangeAction.APPLIED
    assert logged.diff_hash == outcome.preview.diff.diff_hash


def test_dry_run_writes_nothing(workspace: Path) -> None:
    target = workspace / "abc.txt"
    target.write_text("a\nb\nc\n", encoding="utf-8")
    engine = _engine(workspace)

    (outcome,) = engine.run([target], ReplaceRequest(pattern="b", replacement="B"))

    assert outcome.action is ChangeAction.DRY_RUN
    assert target.read_text(encoding="utf-8") == "a\nb\nc\n"
    assert "+B" in outcome.preview.diff.text
    assert not (workspace / "abc.txt.bak").exists()
    assert not (workspace / "undo").exists()


def test_apply_without_approval_is_rejected(workspace: Path) -> None:
    engine = _engine(workspace)

    with pytest.raises(ConfigurationError):
        engine.run([workspace / "x.txt"], ReplaceRequest(pattern="a", replacement="b"), apply=True)


def test_approval_decisions_are_honoured(workspace: Path) -> None:
    paths = []
    for name in ("one.txt", "two.txt", "three.txt", "four.txt"):
        path = workspace / name
        path.write_text("value\n", encoding="utf-8")
        paths.append(path)
    answers = iter([ApprovalDecision.SKIP, ApprovalDecision.APPLY, ApprovalDecision.QUIT])
    seen: list[str] = []

    def approve(preview: EditPreview) -> ApprovalDecision:
        seen.append(preview.path.name)
        return next(answers)

    outcomes = _engine(workspace).run(
        paths, ReplaceRequest(pattern="value", replacement="VALUE"), apply=True, approve=approve
    )

    assert seen == ["one.txt", "two.txt", "three.txt"]
    assert [outcome.action for outcome in outcomes] == [
        ChangeAction.SKIPPED,
        ChangeAction.APPLIED,
        ChangeAction.SKIPPED,
    ]
    assert [path.read_text(encoding="utf-8") for path in paths] == ["value\n", "VALUE\n", "value\n", "value\n"]


def test_apply_all_stops_prompting(workspace: Path) -> None:
    paths = []
    for name in ("one.txt", "two.txt", "three.txt"):
        path = workspace / name
        path.write_text("value\n", encoding="utf-8")
        paths.append(path)
    calls = []

    def approve(preview: EditPreview) -> ApprovalDecision:
        calls.append(preview.path.name)
        return ApprovalDecision.APPLY_ALL

    request = ReplaceRequest(pattern="value", replacement="v2")
    outcomes = _engine(workspace).run(paths, request, apply=True, approve=approve)

    assert calls == ["one.txt"]
    assert all(outcome.action is ChangeAction.APPLIED for outcome in outcomes)


def test_failures_do_not_stop_the_batch(workspace: Path) -> None:
    good = workspace / "good.txt"
    good.write_text("x\n", encoding="utf-8")
    request = ReplaceRequest(pattern="x", replacement="y", guards=MatchGuards(expect=1))

    outcomes = _engine(workspace).run(
        [workspace / "missing.txt", good], request, apply=True, auto_approve=True
    )

    assert [outcome.action for outcome in outcomes] == [ChangeAction.FAILED, ChangeAction.APPLIED]
    assert outcomes[0].record.message
    assert good.read_text(encoding="utf-8") == "y\n"

    halted = _engine(workspace).run(
        [workspace / "missing.txt", good], request, apply=True, auto_approve=True, halt_on_failure=True
    )
    assert len(halted) == 1


def test_expect_guard_failure_carries_the_miss_report(workspace: Path) -> None:
    target = workspace / "code.py"
    target.write_text("total = compute_total(items)\n", encoding="utf-8")

    (outcome,) = _engine(workspace).run(
        [target], ReplaceRequest(pattern="compute_totl", replacement="x", guards=MatchGuards(expect=1))
    )

    assert outcome.action is ChangeAction.FAILED
    assert isinstance(outcome.error, GuardViolation)
    assert outcome.miss is not None and outcome.miss.candidates[0].line == 1


def test_no_match_without_guard_is_a_no_op_with_suggestions(workspace: Path) -> None:
    target = workspace / "code.py"
    target.write_text("total = compute_total(items)\n", encoding="utf-8")

    (outcome,) = _engine(workspace).run([target], ReplaceRequest(pattern="compute_totl", replacement="x"))

    assert outcome.action is ChangeAction.NO_OP
    assert outcome.preview.reason == "no-match"
    assert outcome.miss is not None


def test_binary_files_are_skipped(workspace: Path) -> None:
    target = workspace / "blob.bin"
    target.write_bytes(b"\x00\x01binary b\x02")

    (outcome,) = _engine(workspace).run([target], ReplaceRequest(pattern="b", replacement="B"))

    assert outcome.action is ChangeAction.NO_OP
    assert outcome.preview.reason == "binary"
    assert target.read_bytes() == b"\x00\x01binary b\x02"


def test_crlf_and_bom_survive_an_edit(workspace: Path) -> None:
    target = workspace / "win.txt"
    target.write_bytes(b"\xef\xbb\xbfalpha\r\nbeta\r\n")

    request = ReplaceRequest(pattern="beta", replacement="gamma\ndelta")
    _engine(workspace).run([target], request, apply=True, auto_approve=True)

    assert target.read_bytes() == b"\xef\xbb\xbfalpha\r\ngamma\r\ndelta\r\n"


def test_case_aware_rename(workspace: Path) -> None:
    target = workspace / "version.py"
    target.write_text("VERSION = '1'\nclass Version:\n    version = VERSION\n", encoding="utf-8")

    (outcome,) = _engine(workspace).run(
        [target], RenameRequest(old="version", new="app_version"), apply=True, auto_approve=True
    )

    assert outcome.action is ChangeAction.APPLIED
    assert target.read_text(encoding="utf-8") == "APP_VERSION = '1'\nclass AppVersion:\n    app_version = APP_VERSION\n"
    assert outcome.record.metadata["matches"] == 4


def test_block_request(workspace: Path) -> None:
    target = workspace / "config.ini"
    target.write_text("[a]\n# BEGIN\nold=1\n# END\n", encoding="utf-8")

    _engine(workspace).run(
        [target], BlockRequest(start_marker="# BEGIN", end_marker="# END", body="new=2"), apply=True, auto_approve=True
    )

    assert target.read_text(encoding="utf-8") == "[a]\n# BEGIN\nnew=2\n# END\n"


def test_write_refuses_overwrite_unless_allowed(workspace: Path) -> None:
    target = workspace / "out.txt"
    target.write_text("keep\n", encoding="utf-8")
    engine = _engine(workspace)

    (refused,) = engine.run([target], WriteRequest(content="replace\n"), apply=True, auto_approve=True)
    assert refused.action is ChangeAction.FAILED
    assert isinstance(refused.error, OverwriteRefused)
    assert target.read_text(encoding="utf-8") == "keep\n"

    (allowed,) = engine.run(
        [target], WriteRequest(content="replace\n", allow_overwrite=True), apply=True, auto_approve=True
    )
    assert allowed.action is ChangeAction.APPLIED
    assert target.read_text(encoding="utf-8") == "replace\n"


def test_write_creates_new_file_with_requested_newline(workspace: Path) -> None:
    target = workspace / "new.txt"

    (outcome,) = _engine(workspace).run(
        [target], WriteRequest(content="one\ntwo\n", newline="crlf"), apply=True, auto_approve=True
    )

    assert outcome.action is ChangeAction.APPLIED
    assert target.read_bytes() == b"one\r\ntwo\r\n"
    assert outcome.record.backup_path is None


def test_identical_write_is_a_no_op(workspace: Path) -> None:
    target = workspace / "same.txt"
    target.write_text("same\n", encoding="utf-8")

    (outcome,) = _engine(workspace).run(
        [target], WriteRequest(content="same\n", allow_overwrite=True), apply=True, auto_approve=True
    )

    assert outcome.action is ChangeAction.NO_OP


def test_patch_requests_create_delete_and_rename(workspace: Path) -> None:
    (workspace / "gone.txt").write_text("bye\n", encoding="utf-8")
    (workspace / "old.txt").write_text("keep\n", encoding="utf-8")
    patch = (
        "--- /dev/null\n+++ b/made.txt\n@@ -0,0 +1,2 @@\n+hello\n+world\n"
        "--- a/gone.txt\n+++ /dev/null\n@@ -1 +0,0 @@\n-bye\n"
        "diff --git a/old.txt b/moved.txt\nsimilarity index 100%\nrename from old.txt\nrename to moved.txt\n"
    )

    outcomes = _engine(workspace).run_requests(
        requests_from_patch(patch, root=workspace), apply=True, auto_approve=True
    )

    assert [outcome.action for outcome in outcomes] == [ChangeAction.APPLIED] * 3
    assert (workspace / "made.txt").read_text(encoding="utf-8") == "hello\nworld\n"
    assert not (workspace / "gone.txt").exists()
    assert (workspace / "gone.txt.bak").read_text(encoding="utf-8") == "bye\n"
    assert (workspace / "moved.txt").read_text(encoding="utf-8") == "keep\n"
    assert not (workspace / "old.txt").exists()


def test_create_patch_over_existing_file_needs_permission(workspace: Path) -> None:
    target = workspace / "made.txt"
    target.write_text("old\n", encoding="utf-8")
    patch = "--- /dev/null\n+++ b/made.txt\n@@ -0,0 +1,2 @@\n+hello\n+world\n"
    engine = _engine(workspace)

    (refused,) = engine.run_requests(requests_from_patch(patch, root=workspace), apply=True, auto_approve=True)
    assert refused.action is ChangeAction.FAILED
    assert isinstance(refused.error, OverwriteRefused)
    assert target.read_text(encoding="utf-8") == "old\n"

    (replaced,) = engine.run_requests(
        requests_from_patch(patch, root=workspace, allow_overwrite=True), apply=True, auto_approve=True
    )
    assert replaced.action is ChangeAction.APPLIED
    assert target.read_text(encoding="utf-8") == "hello\nworld\n"
    assert (workspace / "made.txt.bak").read_text(encoding="utf-8") == "old\n"

    (undo,) = parse_unified_diff(Path(replaced.record.undo_path or "").read_text(encoding="utf-8"))
    assert "".join(apply_file_edit(undo, split_lines(target.read_text(encoding="utf-8")))) == "old\n"


def test_patch_with_drifted_hunk_fails_cleanly(workspace: Path) -> None:
    target = workspace / "f.txt"
    target.write_text("a\nq\nc\n", encoding="utf-8")
    patch = "--- a/f.txt\n+++ b/f.txt\n@@ -1,3 +1,3 @@\n a\n-b\n+B\n c\n"

    (outcome,) = _engine(workspace).run_requests(
        requests_from_patch(patch, root=workspace), apply=True, auto_approve=True
    )

    assert outcome.action is ChangeAction.FAILED
    assert outcome.record.metadata["drift"] == "contextual"
    assert target.read_text(encoding="utf-8") == "a\nq\nc\n"


def test_unknown_encoding_override_fails_before_reading(workspace: Path) -> None:
    with pytest.raises(ConfigurationError):
        EditEngine(EngineSettings(), encoding="not-a-codec")
