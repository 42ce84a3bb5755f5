from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from ge.memory.schema import ChangeAction
from ge.telemetry import emit_event
from ge.utils.slug import abbreviate_slug, slugify


def test_slugify_flattens_paths() -> None:
    assert slugify("src/app/main.py") == "src_app_main.py"
    assert slugify("weird name!.txt") == "weird-name-.txt"
    assert slugify("") == "file"
    assert slugify(None, fallback="undo") == "undo"


def test_long_slugs_keep_their_tail() -> None:
    slug = slugify("deep/" * 40 + "target.py", max_length=40)

    assert len(slug) <= 40
    assert slug.endswith("target.py")
    assert abbreviate_slug("short") == "short"


def test_emit_event_logs_json(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="ge.telemetry"):
        emit_event("edit_applied", path=Path("a/b.txt"), action=ChangeAction.APPLIED, spans=("L2",))

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "edit_applied"
    assert payload["path"] == "a/b.txt"
    assert payload["action"] == "applied"
    assert payload["spans"] == ["L2"]


def test_emit_event_is_silent_below_info(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="ge.telemetry"):
        emit_event("edit_previewed", path="x")

    assert not [record for record in caplog.records if record.name == "ge.telemetry"]
