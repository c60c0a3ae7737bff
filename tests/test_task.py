from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from gitcrew.task import CORRUPTED_PREFIX, Comment, Substate, Task, TaskStatus, format_elapsed, parse_time

NOW = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)


def test_from_dict_to_dict_preserves_fields_and_unknown_keys() -> None:
    raw = {
        "id": 3,
        "namespace": "default",
        "title": "Add login",
        "description": "OAuth flow",
        "status": "in_progress",
        "substate": "idle",
        "parent_id": 1,
        "agent": "claude",
        "model": "opus",
        "base_branch": "main",
        "issue": 12,
        "started": NOW.isoformat(),
        "review_count": 2,
        "last_review_is_lgtm": False,
        "auto_fix_retry_count": 1,
        "skip_review": True,
        "labels": ["ui", "auth", "ui"],
        "comments": [{"text": "hi", "author": "me", "type": "note", "time": NOW.isoformat()}],
        "future_field": {"x": 1},
    }

    task = Task.from_dict(raw)

    assert task.status == TaskStatus.IN_PROGRESS
    assert task.substate == Substate.IDLE
    assert task.labels == ["auth", "ui"]
    assert task.started == NOW
    assert task.comments == [Comment(text="hi", author="me", type="note", time=NOW)]
    assert task.extra == {"future_field": {"x": 1}}

    out = task.to_dict()
    assert out["future_field"] == {"x": 1}
    assert out["status"] == "in_progress"
    assert out["issue"] == 12
    assert out["skip_review"] is True
    assert Task.from_dict(out) == task


def test_unknown_status_becomes_corrupted_error() -> None:
    task = Task.from_dict({"id": 4, "title": "x", "status": "paused"})

    assert task.status == TaskStatus.ERROR
    assert task.is_corrupted
    assert task.is_blocked
    assert task.block_reason.startswith(CORRUPTED_PREFIX)
    assert "paused" in task.block_reason


def test_unknown_substate_is_dropped() -> None:
    task = Task.from_dict({"id": 4, "title": "x", "status": "in_progress", "substate": "dancing"})

    assert task.substate is None


@pytest.mark.parametrize(
    ("override", "default", "expected"),
    [
        (None, False, False),
        (None, True, True),
        (True, False, True),
        (False, True, False),
    ],
)
def test_resolve_skip_review_prefers_task_override(override: bool | None, default: bool, expected: bool) -> None:
    task = Task(id=1, title="t", skip_review=override)

    assert task.resolve_skip_review(default) is expected


def test_terminal_statuses() -> None:
    assert {s for s in TaskStatus if s.is_terminal} == {TaskStatus.DONE, TaskStatus.CLOSED}


@pytest.mark.parametrize(
    ("delta", "expected"),
    [
        (timedelta(seconds=42), "42s"),
        (timedelta(minutes=3, seconds=5), "3m05s"),
        (timedelta(hours=2, minutes=7), "2h07m"),
        (timedelta(seconds=-10), "0s"),
    ],
)
def test_format_elapsed(delta: timedelta, expected: str) -> None:
    assert format_elapsed(NOW, NOW + delta) == expected


def test_format_elapsed_without_start() -> None:
    assert format_elapsed(None, NOW) == "-"


def test_parse_time_tolerates_garbage() -> None:
    assert parse_time("not a time") is None
    assert parse_time("") is None
    assert parse_time(NOW.isoformat()) == NOW
