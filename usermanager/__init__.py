"""Zabbix user manager: account lifecycle console for Zabbix administrators."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings
from .zabbix import HostAPIError, ZabbixAPI


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the management web application."""

    from .management import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "HostAPIError",
    "Settings",
    "ZabbixAPI",
    "create_app",
    "load_settings",
]
