"""JSON-RPC client for the Zabbix user-management API."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

logger = logging.getLogger("usermanager.zabbix")

MEDIA_TYPE_EMAIL = 0
MEDIA_STATUS_ACTIVE = 0
# Bitmask covering every trigger severity from "not classified" to "disaster".
MEDIA_SEVERITY_ALL = 63
MEDIA_PERIOD_ALWAYS = "1-7,00:00-24:00"

USER_TYPE_USER = 1
USER_TYPE_ADMIN = 2
USER_TYPE_SUPER_ADMIN = 3

# Methods Zabbix refuses when an authorization token is attached.
_UNAUTHENTICATED_METHODS = {"apiinfo.version", "user.login", "user.checkAuthentication"}


class HostAPIError(RuntimeError):
    """Raised when the Zabbix API rejects a call or cannot be reached."""

    def __init__(self, message: str, *, code: int | None = None, data: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


@dataclass
class _ClientConfig:
    endpoint: str
    token: Optional[str]
    timeout: float
    verify: bool


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Zabbix API URL must not be empty")
    cleaned = cleaned.rstrip("/")
    if cleaned.endswith("api_jsonrpc.php"):
        return cleaned
    return f"{cleaned}/api_jsonrpc.php"


def _extract_error_message(error: object, default: str) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        data = error.get("data")
        parts = [str(part).strip() for part in (message, data) if isinstance(part, str) and part.strip()]
        if parts:
            return " ".join(parts)
    return default


class ZabbixAPI:
    """Minimal synchronous client for the subset of the API the console uses."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        verify: bool = True,
    ) -> None:
        self._config = _ClientConfig(
            endpoint=_normalize_base_url(base_url),
            token=token.strip() if token else None,
            timeout=timeout,
            verify=verify,
        )
        self._ids = itertools.count(1)

    @property
    def endpoint(self) -> str:
        return self._config.endpoint

    @property
    def token(self) -> Optional[str]:
        return self._config.token

    def with_token(self, token: Optional[str]) -> "ZabbixAPI":
        return ZabbixAPI(
            self._config.endpoint,
            token=token,
            timeout=self._config.timeout,
            verify=self._config.verify,
        )

    def call(self, method: str, params: Optional[object] = None) -> Any:
        payload: Dict[str, object] = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else {},
            "id": next(self._ids),
        }
        headers = {"Content-Type": "application/json-rpc"}
        if self._config.token and method not in _UNAUTHENTICATED_METHODS:
            headers["Authorization"] = f"Bearer {self._config.token}"

        logger.debug("Calling Zabbix API method %s", method)
        try:
            response = httpx.post(
                self._config.endpoint,
                json=payload,
                headers=headers,
                timeout=self._config.timeout,
                verify=self._config.verify,
            )
        except httpx.RequestError as exc:
            raise HostAPIError(f"Failed to contact the Zabbix API: {exc}") from exc

        if response.status_code >= 400:
            raise HostAPIError(
                f"Zabbix API request failed with status {response.status_code}",
                code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise HostAPIError("Zabbix API returned an invalid response") from exc

        if not isinstance(data, dict):
            raise HostAPIError("Zabbix API returned an unexpected response payload")

        error = data.get("error")
        if error is not None:
            message = _extract_error_message(error, f"Zabbix API call {method} failed")
            code = error.get("code") if isinstance(error, dict) else None
            detail = error.get("data") if isinstance(error, dict) else None
            logger.warning("Zabbix API method %s failed: %s", method, message)
            raise HostAPIError(message, code=code, data=detail)

        if "result" not in data:
            raise HostAPIError("Zabbix API response was missing the result field")
        return data["result"]

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    def login(self, username: str, password: str) -> str:
        result = self.call("user.login", {"username": username, "password": password})
        if not isinstance(result, str) or not result:
            raise HostAPIError("Zabbix API did not return a session token")
        return result

    def logout(self) -> bool:
        return bool(self.call("user.logout", []))

    def check_authentication(self, sessionid: str) -> Dict[str, Any]:
        result = self.call("user.checkAuthentication", {"sessionid": sessionid})
        if not isinstance(result, dict):
            raise HostAPIError("Zabbix API returned an invalid authentication payload")
        return result

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def get_users(self, **params: object) -> List[Dict[str, Any]]:
        return list(self.call("user.get", params) or [])

    def create_user(self, data: Dict[str, object]) -> List[str]:
        result = self.call("user.create", data)
        userids = result.get("userids") if isinstance(result, dict) else None
        if not userids:
            raise HostAPIError("Zabbix API did not return the created user id")
        return [str(userid) for userid in userids]

    def update_user(self, data: Dict[str, object]) -> List[str]:
        result = self.call("user.update", data)
        userids = result.get("userids") if isinstance(result, dict) else None
        if not userids:
            raise HostAPIError("Zabbix API did not confirm the user update")
        return [str(userid) for userid in userids]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_user_groups(self, **params: object) -> List[Dict[str, Any]]:
        return list(self.call("usergroup.get", params) or [])

    def get_roles(self, **params: object) -> List[Dict[str, Any]]:
        return list(self.call("role.get", params) or [])

    def get_media_types(self, **params: object) -> List[Dict[str, Any]]:
        return list(self.call("mediatype.get", params) or [])


def build_media(mediatypeid: str, email: str) -> Dict[str, object]:
    """Notification medium sending every severity to ``email`` around the clock."""

    return {
        "mediatypeid": str(mediatypeid),
        "sendto": [email],
        "active": MEDIA_STATUS_ACTIVE,
        "severity": MEDIA_SEVERITY_ALL,
        "period": MEDIA_PERIOD_ALWAYS,
    }


def group_payload(groupids: Sequence[str]) -> List[Dict[str, str]]:
    return [{"usrgrpid": str(groupid)} for groupid in groupids]


__all__ = [
    "HostAPIError",
    "MEDIA_TYPE_EMAIL",
    "USER_TYPE_ADMIN",
    "USER_TYPE_SUPER_ADMIN",
    "USER_TYPE_USER",
    "ZabbixAPI",
    "build_media",
    "group_payload",
]
