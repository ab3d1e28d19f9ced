"""Append-only audit trail of the actions performed through the console."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import AuditSettings
from .models import AuditRecord

logger = logging.getLogger("usermanager.audit")

SECONDS_PER_DAY = 24 * 3600

ACTION_DESCRIPTIONS = {
    "create": "User created",
    "update": "User updated",
    "delete": "User deleted",
    "activate": "User activated",
    "deactivate": "User deactivated",
    "password_reset": "Password reset",
    "login": "Signed in",
    "logout": "Signed out",
    "failed_login": "Failed sign-in",
}


def describe_action(action: str) -> str:
    return ACTION_DESCRIPTIONS.get(action, action)


@dataclass(frozen=True)
class Actor:
    """The operator responsible for an action."""

    userid: int = 0
    username: str = "system"
    ip: str = "0.0.0.0"


SYSTEM_ACTOR = Actor()


class AuditLog:
    """Common behaviour for the audit backends.

    Subclasses implement storage through ``_append``, ``_records_for`` and
    ``_delete_before``; this class stamps records, enforces the limit and
    applies the enabled switch.
    """

    def __init__(self, *, enabled: bool = True, clock: Callable[[], float] = time.time) -> None:
        self._enabled = enabled
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._enabled

    def log_action(
        self,
        action: str,
        userid: object,
        *,
        actor: Actor = SYSTEM_ACTOR,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            timestamp=int(self._clock()),
            userid=str(userid),
            action=action,
            author=actor.username,
            author_id=actor.userid,
            details=dict(details or {}),
            ip=actor.ip,
        )
        if self._enabled:
            self._append(record)
            logger.info("AUDIT: %s performed %s on user %s", actor.username, action, record.userid)
        return record

    def get_user_actions(self, userid: object, limit: int = 50) -> List[AuditRecord]:
        if limit <= 0:
            return []
        records = self._records_for(str(userid), limit)
        records.sort(key=lambda record: record.timestamp, reverse=True)
        return records[:limit]

    def purge(self, keep_days: int) -> int:
        """Delete records older than ``keep_days`` days and return how many went."""

        if keep_days <= 0:
            return 0
        cutoff = int(self._clock()) - keep_days * SECONDS_PER_DAY
        removed = self._delete_before(cutoff)
        if removed:
            logger.info("Purged %d audit record(s) older than %d day(s)", removed, keep_days)
        return removed

    def _append(self, record: AuditRecord) -> None:
        raise NotImplementedError

    def _records_for(self, userid: str, limit: int) -> List[AuditRecord]:
        raise NotImplementedError

    def _delete_before(self, cutoff: int) -> int:
        raise NotImplementedError


class JsonLinesAuditLog(AuditLog):
    """Audit log kept as one JSON object per line in a flat file."""

    def __init__(self, path: Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _append(self, record: AuditRecord) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        with self._lock, self._path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def _read_all(self) -> List[AuditRecord]:
        if not self._path.exists():
            return []
        records: List[AuditRecord] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(AuditRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError):
                    logger.warning("Skipping unreadable audit line in %s", self._path)
        return records

    def _records_for(self, userid: str, limit: int) -> List[AuditRecord]:
        return [record for record in self._read_all() if record.userid == userid]

    def _delete_before(self, cutoff: int) -> int:
        with self._lock:
            records = self._read_all()
            kept = [record for record in records if record.timestamp >= cutoff]
            removed = len(records) - len(kept)
            if removed:
                tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    for record in kept:
                        handle.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
                tmp_path.replace(self._path)
        return removed


class SQLiteAuditLog(AuditLog):
    """Audit log stored in a relational table created on first use."""

    TABLE = "user_manager_logs"

    def __init__(self, path: Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._initialized = False

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _table_exists(self, conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (self.TABLE,),
        ).fetchone()
        return row is not None

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        if self._initialized:
            return
        conn.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS {self.TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                userid TEXT NOT NULL,
                action TEXT NOT NULL,
                author TEXT NOT NULL,
                author_id INTEGER NOT NULL DEFAULT 0,
                details TEXT,
                ip TEXT NOT NULL,
                timestamp INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_{self.TABLE}_userid ON {self.TABLE}(userid);
            CREATE INDEX IF NOT EXISTS idx_{self.TABLE}_timestamp ON {self.TABLE}(timestamp);
            """
        )
        self._initialized = True

    def _append(self, record: AuditRecord) -> None:
        with self._connect() as conn:
            self._ensure_table(conn)
            conn.execute(
                f"""
                INSERT INTO {self.TABLE} (userid, action, author, author_id, details, ip, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.userid,
                    record.action,
                    record.author,
                    record.author_id,
                    json.dumps(record.details, ensure_ascii=False),
                    record.ip,
                    record.timestamp,
                ),
            )

    def _records_for(self, userid: str, limit: int) -> List[AuditRecord]:
        with self._connect() as conn:
            if not self._table_exists(conn):
                return []
            rows = conn.execute(
                f"SELECT * FROM {self.TABLE} WHERE userid = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (userid, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _delete_before(self, cutoff: int) -> int:
        with self._connect() as conn:
            if not self._table_exists(conn):
                return 0
            cursor = conn.execute(f"DELETE FROM {self.TABLE} WHERE timestamp < ?", (cutoff,))
            return cursor.rowcount

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        details: Dict[str, Any]
        raw = row["details"]
        try:
            parsed = json.loads(raw) if raw else {}
        except ValueError:
            parsed = {"message": raw}
        details = parsed if isinstance(parsed, dict) else {"message": str(parsed)}
        return AuditRecord(
            timestamp=int(row["timestamp"]),
            userid=str(row["userid"]),
            action=str(row["action"]),
            author=str(row["author"]),
            author_id=int(row["author_id"]),
            details=details,
            ip=str(row["ip"]),
        )


def build_audit_log(settings: AuditSettings, **kwargs: Any) -> AuditLog:
    if settings.backend == "sqlite":
        return SQLiteAuditLog(settings.path, enabled=settings.enabled, **kwargs)
    return JsonLinesAuditLog(settings.path, enabled=settings.enabled, **kwargs)


__all__ = [
    "ACTION_DESCRIPTIONS",
    "Actor",
    "AuditLog",
    "JsonLinesAuditLog",
    "SQLiteAuditLog",
    "SYSTEM_ACTOR",
    "build_audit_log",
    "describe_action",
]
