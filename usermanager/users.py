"""User lifecycle operations on top of the Zabbix API."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .activity import activity_histogram
from .audit import SYSTEM_ACTOR, Actor, AuditLog
from .config import Settings
from .models import (
    DISABLED_GROUP_NAMES,
    AuditRecord,
    CreatedUser,
    LoginStats,
    Paging,
    ResetResult,
    User,
    UserPage,
    UserRow,
)
from .notifications import Mailer, MailDeliveryError, is_valid_email
from .passwords import generate_password
from .zabbix import MEDIA_TYPE_EMAIL, ZabbixAPI, build_media, group_payload

logger = logging.getLogger("usermanager.users")

SORTABLE_FIELDS = ("username", "name", "surname", "roleid", "attempt_clock")
SORT_ASC = "ASC"
SORT_DESC = "DESC"
UNKNOWN_ROLE = "Unknown"

USER_OUTPUT = [
    "userid",
    "username",
    "name",
    "surname",
    "roleid",
    "autologin",
    "autologout",
    "lang",
    "refresh",
    "theme",
    "rows_per_page",
    "url",
    "attempt_failed",
    "attempt_clock",
    "attempt_ip",
]
GROUP_OUTPUT = ["usrgrpid", "name"]
MEDIA_OUTPUT = ["mediatypeid", "sendto", "active", "severity", "period"]


class UserManagerError(RuntimeError):
    """Base class for lifecycle errors shown to the operator."""


class InvalidEmailError(UserManagerError):
    pass


class UserNotFoundError(UserManagerError):
    pass


@dataclass(frozen=True)
class UserStats:
    user: User
    role_name: str
    is_active: bool
    groups: Tuple[str, ...]
    login_stats: LoginStats
    history: List[AuditRecord]
    activity: Dict[str, List]


def derive_username(email: str, is_taken: Callable[[str], bool], today: date) -> str:
    """Use the local part of ``email``, suffixed with the date when it is taken."""

    username = email.split("@", 1)[0]
    if is_taken(username):
        username = f"{username}_{today.strftime('%Y%m%d')}"
    return username


def paginate(rows: Sequence[UserRow], page: int, limit: int) -> Tuple[List[UserRow], Paging]:
    total = len(rows)
    if total <= limit:
        return list(rows), Paging(count=total, total=total, limit=limit)

    last_page = -(-total // limit)
    page = min(max(page, 1), last_page)
    offset = (page - 1) * limit
    window = list(rows[offset:offset + limit])
    return window, Paging(count=len(window), total=total, offset=offset, limit=limit, page=page)


def with_disabled_group(groupids: Iterable[str], disabled_groupid: str, *, active: bool) -> List[str]:
    """Return ``groupids`` with the disabled group removed (``active``) or present once."""

    cleaned = [str(groupid) for groupid in groupids if str(groupid) != disabled_groupid]
    if not active:
        cleaned.append(disabled_groupid)
    return cleaned


def normalize_sort(field: Optional[str], order: Optional[str]) -> Tuple[str, str]:
    sortfield = field if field in SORTABLE_FIELDS else "username"
    sortorder = SORT_DESC if (order or "").strip().upper() == SORT_DESC else SORT_ASC
    return sortfield, sortorder


class UserService:
    """Create, list and maintain Zabbix users on behalf of an operator.

    Every mutating operation calls the Zabbix API first. Notification and
    audit logging follow as best-effort side effects: their failures are
    logged and never undo or fail the API change.
    """

    def __init__(
        self,
        api: ZabbixAPI,
        *,
        settings: Settings,
        audit: AuditLog,
        mailer: Mailer,
        actor: Actor = SYSTEM_ACTOR,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._api = api
        self._settings = settings
        self._audit = audit
        self._mailer = mailer
        self._actor = actor
        self._today = today

    @property
    def disabled_group_names(self) -> Tuple[str, ...]:
        names = [self._settings.ui.disabled_group, *DISABLED_GROUP_NAMES]
        return tuple(dict.fromkeys(names))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def user_groups(self) -> List[Dict[str, Any]]:
        return self._api.get_user_groups(output=GROUP_OUTPUT, sortfield="name")

    def roles(self) -> List[Dict[str, Any]]:
        return self._api.get_roles(output=["roleid", "name"], sortfield="name")

    def media_types(self) -> List[Dict[str, Any]]:
        return self._api.get_media_types(output=["mediatypeid", "name", "type"])

    def _role_names(self, roleids: Iterable[str]) -> Dict[str, str]:
        wanted = sorted({roleid for roleid in roleids if roleid})
        if not wanted:
            return {}
        roles = self._api.get_roles(output=["roleid", "name"], roleids=wanted)
        return {str(role["roleid"]): str(role["name"]) for role in roles}

    def _username_taken(self, username: str) -> bool:
        existing = self._api.get_users(filter={"username": username}, output=["userid"])
        return bool(existing)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        groups: Sequence[str],
        roleid: str,
        media_types: Sequence[str] = (),
    ) -> CreatedUser:
        email = (email or "").strip()
        if not is_valid_email(email):
            raise InvalidEmailError("Invalid email address")
        if not groups:
            raise UserManagerError("Select at least one user group")
        if not roleid:
            raise UserManagerError("Select a user role")

        username = derive_username(email, self._username_taken, self._today())
        policy = self._settings.password
        password = generate_password(policy.length, include_special=policy.include_special)

        requested_types = list(dict.fromkeys(str(mediatypeid) for mediatypeid in media_types))
        medias = [build_media(mediatypeid, email) for mediatypeid in requested_types]
        email_types = self._api.get_media_types(filter={"type": MEDIA_TYPE_EMAIL}, output=["mediatypeid"])
        if email_types:
            email_typeid = str(email_types[0]["mediatypeid"])
            if email_typeid not in requested_types:
                medias.append(build_media(email_typeid, email))

        payload: Dict[str, object] = {
            "username": username,
            "passwd": password,
            "roleid": str(roleid),
            "usrgrps": group_payload(groups),
            "medias": medias,
            "name": "",
            "surname": "",
            "autologin": 0,
            "autologout": "15m",
            "refresh": "30s",
            "rows_per_page": self._settings.ui.rows_per_page,
        }
        userid = self._api.create_user(payload)[0]
        logger.info("Created Zabbix user %s (%s) for %s", username, userid, email)

        email_sent = self._notify(self._mailer.send_credentials, email, username, password)
        self._record(
            "create",
            userid,
            {"email": email, "username": username, "email_sent": email_sent},
        )
        return CreatedUser(userid=userid, username=username, password=password, email_sent=email_sent)

    def get_user(self, userid: str) -> Optional[User]:
        users = self._api.get_users(
            userids=[str(userid)],
            output=USER_OUTPUT,
            selectUsrgrps=GROUP_OUTPUT,
            selectMedias=MEDIA_OUTPUT,
        )
        if not users:
            return None
        return User.from_api(users[0])

    def require_user(self, userid: str) -> User:
        user = self.get_user(userid)
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    def list_users(
        self,
        *,
        filter_name: str = "",
        filter_group: str = "",
        sort: str = "username",
        sortorder: str = SORT_ASC,
        page: int = 1,
    ) -> UserPage:
        sortfield, order = normalize_sort(sort, sortorder)
        options: Dict[str, object] = {
            "output": ["userid", "username", "name", "surname", "roleid", "attempt_failed", "attempt_clock"],
            "selectUsrgrps": GROUP_OUTPUT,
            "selectMedias": ["mediatypeid", "sendto"],
            "sortfield": sortfield,
            "sortorder": order,
            "limit": self._settings.ui.search_limit,
        }
        if filter_name:
            options["search"] = {"username": filter_name}
        if filter_group:
            options["usrgrpids"] = [str(filter_group)]

        users = [User.from_api(item) for item in self._api.get_users(**options)]
        role_names = self._role_names(user.roleid for user in users)
        disabled = self.disabled_group_names

        rows = [
            UserRow(
                user=user,
                role_name=role_names.get(user.roleid, UNKNOWN_ROLE),
                is_active=user.is_active(disabled),
                groups=tuple(user.visible_groups(disabled)),
            )
            for user in users
        ]
        window, paging = paginate(rows, page, self._settings.ui.rows_per_page)
        return UserPage(rows=window, paging=paging)

    def set_status(self, userid: str, active: bool) -> User:
        user = self.require_user(userid)

        group_name = self._settings.ui.disabled_group
        disabled_groups = self._api.get_user_groups(filter={"name": group_name}, output=["usrgrpid"])
        if not disabled_groups:
            raise UserManagerError(f"User group '{group_name}' does not exist")
        disabled_groupid = str(disabled_groups[0]["usrgrpid"])

        recognised = set(self.disabled_group_names)
        kept = [group.usrgrpid for group in user.groups if group.name not in recognised]
        groupids = with_disabled_group(kept, disabled_groupid, active=active)
        self._api.update_user({"userid": user.userid, "usrgrps": group_payload(groupids)})
        logger.info("%s Zabbix user %s", "Enabled" if active else "Disabled", user.username)

        email_sent = False
        if user.email:
            email_sent = self._notify(self._mailer.send_credentials, user.email, user.username, "")
        self._record(
            "activate" if active else "deactivate",
            user.userid,
            {"email": user.email, "username": user.username, "email_sent": email_sent},
        )
        return user

    def reset_password(self, userid: str) -> ResetResult:
        user = self.require_user(userid)

        policy = self._settings.password
        password = generate_password(policy.length, include_special=policy.include_special)
        self._api.update_user({"userid": user.userid, "passwd": password})
        logger.info("Reset password for Zabbix user %s", user.username)

        email_sent = False
        if user.email:
            email_sent = self._notify(self._mailer.send_password_reset, user.email, user.username, password)
        self._record(
            "password_reset",
            user.userid,
            {"email": user.email, "username": user.username, "email_sent": email_sent},
        )
        return ResetResult(
            userid=user.userid,
            username=user.username,
            password=password,
            email=user.email,
            email_sent=email_sent,
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def action_history(self, userid: str, limit: int = 50) -> List[AuditRecord]:
        try:
            return self._audit.get_user_actions(userid, limit)
        except (OSError, sqlite3.Error):
            logger.exception("Failed to read audit history for user %s", userid)
            return []

    def user_stats(self, userid: str, *, history_limit: int = 50) -> UserStats:
        user = self.require_user(userid)
        disabled = self.disabled_group_names
        history = self.action_history(user.userid, history_limit)
        return UserStats(
            user=user,
            role_name=self._role_names([user.roleid]).get(user.roleid, UNKNOWN_ROLE),
            is_active=user.is_active(disabled),
            groups=tuple(user.visible_groups(disabled)),
            login_stats=LoginStats.from_user(user),
            history=history,
            activity=activity_histogram(history),
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------
    def _notify(self, send: Callable[[str, str, str], bool], email: str, username: str, password: str) -> bool:
        try:
            return send(email, username, password)
        except MailDeliveryError as exc:
            logger.warning("Could not email %s: %s", email, exc)
            return False

    def _record(self, action: str, userid: str, details: Dict[str, object]) -> None:
        try:
            self._audit.log_action(action, userid, actor=self._actor, details=details)
        except (OSError, sqlite3.Error):
            logger.exception("Failed to write audit record %s for user %s", action, userid)


__all__ = [
    "InvalidEmailError",
    "SORTABLE_FIELDS",
    "UserManagerError",
    "UserNotFoundError",
    "UserService",
    "UserStats",
    "derive_username",
    "normalize_sort",
    "paginate",
    "with_disabled_group",
]
