from __future__ import annotations

from pathlib import Path

from ge.config import load_settings
from ge.memory.change_log import ChangeLog
from ge.memory.schema import ChangeAction, ChangeRecord, LineSpan


def _record(index: int) -> ChangeRecord:
    return ChangeRecord(
        verb="replace",
        path=f"file{index}.txt",
        action=ChangeAction.APPLIED,
        applied=True,
        spans=[LineSpan(kind="modify", old_start=index, old_count=1, new_start=index, new_count=1)],
        summary=f"L{index}",
    )


def test_append_and_read_back(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "state" / "changes.jsonl")

    log.append(_record(1))
    log.extend([_record(2), _record(3)])

    entries = log.entries()
    assert [entry.path for entry in entries] == ["file1.txt", "file2.txt", "file3.txt"]
    assert entries[0].spans[0].kind == "modify"
    assert [entry.summary for entry in log.entries(limit=2)] == ["L2", "L3"]
    assert len(log) == 3


def test_rotation_keeps_only_the_newest_entries(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "changes.jsonl", max_entries=3)

    for index in range(1, 6):
        log.append(_record(index))

    assert [entry.summary for entry in log.entries()] == ["L3", "L4", "L5"]
    assert len(log.path.read_text(encoding="utf-8").splitlines()) == 3
    assert not [path for path in tmp_path.iterdir() if path.name.endswith(".tmp")]


def test_unreadable_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "changes.jsonl"
    log = ChangeLog(path)
    log.append(_record(1))
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
    log.append(_record(2))

    assert [entry.summary for entry in log.entries()] == ["L1", "L2"]


def test_missing_log_reads_as_empty(tmp_path: Path) -> None:
    assert ChangeLog(tmp_path / "nothing.jsonl").entries() == []


def test_from_settings_uses_the_resolved_config_path(tmp_path: Path) -> None:
    config = tmp_path / "conf" / "ge.yaml"
    config.parent.mkdir()
    config.write_text("engine:\n  change_log: logs/changes.jsonl\n  change_log_max_entries: 7\n", encoding="utf-8")

    log = ChangeLog.from_settings(load_settings(config))
    log.append(_record(1))

    assert log.path == config.parent.resolve() / "logs" / "changes.jsonl"
    assert log.max_entries == 7
    assert log.path.exists()
