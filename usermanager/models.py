"""Typed views over the Zabbix objects handled by the console."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

DISABLED_GROUP_NAMES = ("Disabled", "Disabled accounts")


def _int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class UserGroup:
    usrgrpid: str
    name: str

    @staticmethod
    def from_api(data: Mapping[str, Any]) -> "UserGroup":
        return UserGroup(usrgrpid=str(data.get("usrgrpid", "")), name=str(data.get("name", "")))


@dataclass(frozen=True)
class Media:
    mediatypeid: str
    sendto: Tuple[str, ...]
    active: int = 0
    severity: int = 63
    period: str = "1-7,00:00-24:00"

    @staticmethod
    def from_api(data: Mapping[str, Any]) -> "Media":
        raw_sendto = data.get("sendto") or ()
        if isinstance(raw_sendto, str):
            sendto: Tuple[str, ...] = (raw_sendto,)
        else:
            sendto = tuple(str(item) for item in raw_sendto)
        return Media(
            mediatypeid=str(data.get("mediatypeid", "")),
            sendto=sendto,
            active=_int(data.get("active")),
            severity=_int(data.get("severity"), 63),
            period=str(data.get("period") or "1-7,00:00-24:00"),
        )


@dataclass(frozen=True)
class User:
    """A Zabbix user account as returned by ``user.get``."""

    userid: str
    username: str
    name: str = ""
    surname: str = ""
    roleid: str = ""
    groups: Tuple[UserGroup, ...] = ()
    medias: Tuple[Media, ...] = ()
    attempt_failed: int = 0
    attempt_clock: int = 0
    attempt_ip: str = ""

    @staticmethod
    def from_api(data: Mapping[str, Any]) -> "User":
        return User(
            userid=str(data.get("userid", "")),
            username=str(data.get("username", "")),
            name=str(data.get("name") or ""),
            surname=str(data.get("surname") or ""),
            roleid=str(data.get("roleid") or ""),
            groups=tuple(UserGroup.from_api(item) for item in data.get("usrgrps") or ()),
            medias=tuple(Media.from_api(item) for item in data.get("medias") or ()),
            attempt_failed=_int(data.get("attempt_failed")),
            attempt_clock=_int(data.get("attempt_clock")),
            attempt_ip=str(data.get("attempt_ip") or ""),
        )

    @property
    def fullname(self) -> str:
        combined = f"{self.name} {self.surname}".strip()
        return combined or self.username

    @property
    def email(self) -> Optional[str]:
        for media in self.medias:
            for address in media.sendto:
                if "@" in address:
                    return address
        return None

    @property
    def group_ids(self) -> List[str]:
        return [group.usrgrpid for group in self.groups]

    def is_active(self, disabled_names: Iterable[str] = DISABLED_GROUP_NAMES) -> bool:
        names = set(disabled_names)
        return not any(group.name in names for group in self.groups)

    def visible_groups(self, disabled_names: Iterable[str] = DISABLED_GROUP_NAMES) -> List[str]:
        names = set(disabled_names)
        return [group.name for group in self.groups if group.name not in names]


@dataclass(frozen=True)
class UserRow:
    """A user enriched for display in the list page."""

    user: User
    role_name: str
    is_active: bool
    groups: Tuple[str, ...]

    @property
    def fullname(self) -> str:
        return self.user.fullname

    def to_dict(self) -> Dict[str, object]:
        return {
            "userid": self.user.userid,
            "username": self.user.username,
            "fullname": self.user.fullname,
            "email": self.user.email,
            "role_name": self.role_name,
            "groups": list(self.groups),
            "is_active": self.is_active,
            "attempt_failed": self.user.attempt_failed,
        }


@dataclass(frozen=True)
class Paging:
    count: int
    total: int
    offset: int = 0
    limit: Optional[int] = None
    page: int = 1

    @property
    def pages(self) -> int:
        if not self.limit:
            return 1
        return max(1, -(-self.total // self.limit))

    @property
    def is_paginated(self) -> bool:
        return self.total > self.count


@dataclass(frozen=True)
class UserPage:
    rows: List[UserRow]
    paging: Paging


@dataclass(frozen=True)
class CreatedUser:
    userid: str
    username: str
    password: str
    email_sent: bool


@dataclass(frozen=True)
class ResetResult:
    userid: str
    username: str
    password: str
    email: Optional[str]
    email_sent: bool


@dataclass(frozen=True)
class LoginStats:
    failed_attempts: int
    last_attempt: Optional[datetime]
    last_ip: str

    @staticmethod
    def from_user(user: User) -> "LoginStats":
        last_attempt = (
            datetime.fromtimestamp(user.attempt_clock, tz=timezone.utc) if user.attempt_clock else None
        )
        return LoginStats(
            failed_attempts=user.attempt_failed,
            last_attempt=last_attempt,
            last_ip=user.attempt_ip,
        )


@dataclass(frozen=True)
class AuditRecord:
    """One entry in the audit trail."""

    timestamp: int
    userid: str
    action: str
    author: str
    details: Dict[str, Any] = field(default_factory=dict)
    ip: str = "0.0.0.0"
    author_id: int = 0

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "userid": self.userid,
            "action": self.action,
            "author": self.author,
            "author_id": self.author_id,
            "details": dict(self.details),
            "ip": self.ip,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "AuditRecord":
        details = data.get("details")
        if not isinstance(details, dict):
            details = {"message": str(details)} if details else {}
        return AuditRecord(
            timestamp=int(data["timestamp"]),
            userid=str(data["userid"]),
            action=str(data["action"]),
            author=str(data.get("author") or "system"),
            details=details,
            ip=str(data.get("ip") or "0.0.0.0"),
            author_id=_int(data.get("author_id")),
        )


__all__ = [
    "AuditRecord",
    "CreatedUser",
    "DISABLED_GROUP_NAMES",
    "LoginStats",
    "Media",
    "Paging",
    "ResetResult",
    "User",
    "UserGroup",
    "UserPage",
    "UserRow",
]
