from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("USERMANAGER_SESSION_SECRET", "tests-secret-key")

from usermanager.audit import JsonLinesAuditLog
from usermanager.config import AuditSettings, Settings
from usermanager.notifications import MailDeliveryError
from usermanager.zabbix import HostAPIError


class FakeZabbixAPI:
    """In-memory stand-in for the subset of the Zabbix API the console calls."""

    def __init__(self) -> None:
        self.token = None
        self.calls: List[tuple] = []
        self.accounts: Dict[str, Dict[str, Any]] = {
            "Admin": {"password": "zabbix", "userid": "1", "type": 3},
            "guest": {"password": "guest", "userid": "2", "type": 1},
        }
        self.groups = [
            {"usrgrpid": "7", "name": "Zabbix administrators"},
            {"usrgrpid": "8", "name": "Guests"},
            {"usrgrpid": "9", "name": "Disabled"},
            {"usrgrpid": "13", "name": "Operators"},
        ]
        self.roles = [
            {"roleid": "1", "name": "User role"},
            {"roleid": "2", "name": "Admin role"},
            {"roleid": "3", "name": "Super admin role"},
        ]
        self.media_types = [
            {"mediatypeid": "1", "name": "Email", "type": "0"},
            {"mediatypeid": "4", "name": "SMS", "type": "2"},
        ]
        self.users: Dict[str, Dict[str, Any]] = {}
        self._next_userid = 100

    # helpers -----------------------------------------------------------
    def add_user(self, username: str, *, groups=("13",), roleid="1", email=None, **extra) -> str:
        userid = str(self._next_userid)
        self._next_userid += 1
        medias = []
        if email:
            medias.append({"mediatypeid": "1", "sendto": [email], "active": "0", "severity": "63", "period": "1-7,00:00-24:00"})
        self.users[userid] = {
            "userid": userid,
            "username": username,
            "name": extra.get("name", ""),
            "surname": extra.get("surname", ""),
            "roleid": str(roleid),
            "attempt_failed": str(extra.get("attempt_failed", 0)),
            "attempt_clock": str(extra.get("attempt_clock", 0)),
            "attempt_ip": extra.get("attempt_ip", ""),
            "usrgrpids": [str(groupid) for groupid in groups],
            "medias": medias,
            "passwd": extra.get("passwd", ""),
        }
        return userid

    def _group_name(self, groupid: str) -> str:
        for group in self.groups:
            if group["usrgrpid"] == groupid:
                return group["name"]
        return ""

    def _render_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        rendered = {key: value for key, value in user.items() if key not in {"usrgrpids", "passwd"}}
        rendered["usrgrps"] = [
            {"usrgrpid": groupid, "name": self._group_name(groupid)} for groupid in user["usrgrpids"]
        ]
        return rendered

    # session -----------------------------------------------------------
    def with_token(self, token):
        self.token = token
        return self

    def login(self, username, password):
        self.calls.append(("user.login", username))
        account = self.accounts.get(username)
        if account is None or account["password"] != password:
            raise HostAPIError("Incorrect user name or password or account is temporarily blocked.")
        return f"session-{username}"

    def check_authentication(self, sessionid):
        username = sessionid.split("-", 1)[1]
        account = self.accounts[username]
        return {"userid": account["userid"], "username": username, "type": account["type"]}

    def logout(self):
        self.calls.append(("user.logout", self.token))
        return True

    # users -------------------------------------------------------------
    def get_users(self, **params):
        self.calls.append(("user.get", params))
        users = list(self.users.values())
        if "userids" in params:
            wanted = {str(userid) for userid in params["userids"]}
            users = [user for user in users if user["userid"] in wanted]
        if "filter" in params and "username" in params["filter"]:
            users = [user for user in users if user["username"] == params["filter"]["username"]]
        if "search" in params:
            needle = params["search"]["username"].lower()
            users = [user for user in users if needle in user["username"].lower()]
        if "usrgrpids" in params:
            wanted = set(params["usrgrpids"])
            users = [user for user in users if wanted & set(user["usrgrpids"])]
        field = params.get("sortfield", "username")
        users.sort(key=lambda user: str(user.get(field, "")), reverse=params.get("sortorder") == "DESC")
        if "limit" in params:
            users = users[: params["limit"]]
        return [self._render_user(user) for user in users]

    def create_user(self, data):
        self.calls.append(("user.create", data))
        userid = self.add_user(
            data["username"],
            groups=[group["usrgrpid"] for group in data["usrgrps"]],
            roleid=data["roleid"],
            passwd=data["passwd"],
        )
        self.users[userid]["medias"] = data["medias"]
        return [userid]

    def update_user(self, data):
        self.calls.append(("user.update", data))
        user = self.users[str(data["userid"])]
        if "usrgrps" in data:
            user["usrgrpids"] = [group["usrgrpid"] for group in data["usrgrps"]]
        if "passwd" in data:
            user["passwd"] = data["passwd"]
        return [user["userid"]]

    # lookups -----------------------------------------------------------
    def get_user_groups(self, **params):
        groups = list(self.groups)
        if "filter" in params and "name" in params["filter"]:
            groups = [group for group in groups if group["name"] == params["filter"]["name"]]
        return groups

    def get_roles(self, **params):
        roles = list(self.roles)
        if "roleids" in params:
            wanted = set(params["roleids"])
            roles = [role for role in roles if role["roleid"] in wanted]
        return roles

    def get_media_types(self, **params):
        media_types = list(self.media_types)
        if "filter" in params and "type" in params["filter"]:
            wanted = str(params["filter"]["type"])
            media_types = [media for media in media_types if media["type"] == wanted]
        return media_types


class FakeMailer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[tuple] = []

    def _send(self, kind, email, username, password):
        if self.fail:
            raise MailDeliveryError("SMTP server is not configured")
        self.sent.append((kind, email, username, password))
        return True

    def send_credentials(self, email, username, password):
        return self._send("credentials", email, username, password)

    def send_password_reset(self, email, username, password):
        return self._send("reset", email, username, password)


@pytest.fixture()
def fake_api() -> FakeZabbixAPI:
    return FakeZabbixAPI()


@pytest.fixture()
def fake_mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(audit=AuditSettings(path=tmp_path / "user_actions.log"))


@pytest.fixture()
def audit_log(settings: Settings) -> JsonLinesAuditLog:
    return JsonLinesAuditLog(settings.audit.path)
