from __future__ import annotations

from pathlib import Path

import pytest

from usermanager.audit import (
    Actor,
    JsonLinesAuditLog,
    SQLiteAuditLog,
    build_audit_log,
    describe_action,
)
from usermanager.config import AuditSettings

DAY = 24 * 3600


class Clock:
    def __init__(self, start: float = 1_700_000_000) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(params=["jsonl", "sqlite"])
def backend(request, tmp_path: Path):
    clock = Clock()
    if request.param == "jsonl":
        log = JsonLinesAuditLog(tmp_path / "logs" / "user_actions.log", clock=clock)
    else:
        log = SQLiteAuditLog(tmp_path / "user_manager.sqlite3", clock=clock)
    return log, clock


def test_records_are_returned_newest_first(backend) -> None:
    log, clock = backend
    operator = Actor(userid=1, username="Admin", ip="10.0.0.5")

    log.log_action("create", "101", actor=operator, details={"email": "jdoe@example.com"})
    clock.advance(60)
    log.log_action("password_reset", "101", actor=operator)
    clock.advance(60)
    log.log_action("create", "102", actor=operator)

    records = log.get_user_actions("101")

    assert [record.action for record in records] == ["password_reset", "create"]
    assert records[1].details == {"email": "jdoe@example.com"}
    assert records[0].author == "Admin"
    assert records[0].author_id == 1
    assert records[0].ip == "10.0.0.5"
    assert records[0].timestamp > records[1].timestamp


def test_limit_truncates_history(backend) -> None:
    log, clock = backend
    for _ in range(5):
        log.log_action("update", 7)
        clock.advance(1)

    assert len(log.get_user_actions(7, limit=3)) == 3
    assert log.get_user_actions(7, limit=0) == []


def test_unknown_user_has_no_history(backend) -> None:
    log, _ = backend
    assert log.get_user_actions("999") == []


def test_system_actor_is_default(backend) -> None:
    log, _ = backend
    record = log.log_action("deactivate", "5")

    assert record.author == "system"
    assert record.ip == "0.0.0.0"
    assert log.get_user_actions("5")[0].author == "system"


def test_purge_removes_old_records(backend) -> None:
    log, clock = backend
    log.log_action("create", "1")
    clock.advance(40 * DAY)
    log.log_action("password_reset", "1")

    assert log.purge(30) == 1
    remaining = log.get_user_actions("1")
    assert [record.action for record in remaining] == ["password_reset"]
    assert log.purge(0) == 0


def test_disabled_log_does_not_store(tmp_path: Path) -> None:
    log = JsonLinesAuditLog(tmp_path / "user_actions.log", enabled=False)
    record = log.log_action("create", "1")

    assert record.action == "create"
    assert not (tmp_path / "user_actions.log").exists()
    assert log.get_user_actions("1") == []


def test_corrupt_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "user_actions.log"
    clock = Clock()
    log = JsonLinesAuditLog(path, clock=clock)
    log.log_action("create", "1")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")
    clock.advance(5)
    log.log_action("activate", "1")

    assert [record.action for record in log.get_user_actions("1")] == ["activate", "create"]


def test_build_audit_log_selects_backend(tmp_path: Path) -> None:
    jsonl = build_audit_log(AuditSettings(backend="jsonl", path=tmp_path / "a.log"))
    sqlite = build_audit_log(AuditSettings(backend="sqlite", path=tmp_path / "a.sqlite3"))

    assert isinstance(jsonl, JsonLinesAuditLog)
    assert isinstance(sqlite, SQLiteAuditLog)


def test_action_descriptions() -> None:
    assert describe_action("password_reset") == "Password reset"
    assert describe_action("custom") == "custom"
