"""Configuration management for the user manager console."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml


DEFAULT_WELCOME_SUBJECT = "Your Zabbix access has been created"
DEFAULT_WELCOME_BODY = (
    "Hello {name},\n\n"
    "Your access to the Zabbix monitoring system has been created.\n\n"
    "Sign in at {url} with the following credentials:\n\n"
    "Username: {username}\n"
    "Password: {password}\n\n"
    "For security reasons we recommend changing your password after the first sign-in.\n\n"
    "Regards,\n"
    "Monitoring Team"
)

DEFAULT_RESET_SUBJECT = "Your Zabbix password has been reset"
DEFAULT_RESET_BODY = (
    "Hello {name},\n\n"
    "Your Zabbix password has been reset.\n\n"
    "Sign in at {url} with the following credentials:\n\n"
    "Username: {username}\n"
    "Password: {password}\n\n"
    "For security reasons we recommend changing your password after the first sign-in.\n\n"
    "Regards,\n"
    "Monitoring Team"
)

AUDIT_BACKENDS = {"jsonl", "sqlite"}


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return _env_flag(str(value), default)


def _section(raw: Mapping[str, object], name: str) -> Dict[str, object]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return dict(value)


def _resolve_path(value: object, base_path: Path | None) -> Path:
    raw_path = Path(str(value)).expanduser()
    if raw_path.is_absolute() or base_path is None:
        return raw_path.resolve(strict=False)
    return (base_path / raw_path).resolve(strict=False)


@dataclass(frozen=True)
class ZabbixSettings:
    """Connection details for the Zabbix JSON-RPC API."""

    url: str = "http://localhost/zabbix"
    api_token: Optional[str] = None
    timeout: float = 30.0
    verify: bool = True
    frontend_url: Optional[str] = None

    @property
    def public_url(self) -> str:
        """URL placed in notification emails."""
        return (self.frontend_url or self.url).rstrip("/") + "/"

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "ZabbixSettings":
        url = str(data.get("url") or ZabbixSettings.url).strip()
        if not url:
            raise ValueError("Zabbix URL must not be empty")
        token = data.get("api_token")
        frontend = data.get("frontend_url")
        return ZabbixSettings(
            url=url.rstrip("/"),
            api_token=str(token) if token else None,
            timeout=float(data.get("timeout", 30.0)),
            verify=_as_bool(data.get("verify"), True),
            frontend_url=str(frontend) if frontend else None,
        )


@dataclass(frozen=True)
class SMTPSettings:
    """Outbound mail settings."""

    server: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    sender: str = "zabbix@example.com"
    sender_name: str = "Zabbix User Manager"
    use_tls: bool = True
    use_sendmail: bool = True
    helo_name: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "SMTPSettings":
        helo = data.get("helo_name")
        return SMTPSettings(
            server=str(data.get("server") or ""),
            port=int(data.get("port", 587)),
            username=str(data.get("username") or ""),
            password=str(data.get("password") or ""),
            sender=str(data.get("from") or SMTPSettings.sender),
            sender_name=str(data.get("from_name") or SMTPSettings.sender_name),
            use_tls=_as_bool(data.get("use_tls"), True),
            use_sendmail=_as_bool(data.get("use_sendmail"), True),
            helo_name=str(helo) if helo else None,
        )


@dataclass(frozen=True)
class PasswordPolicy:
    length: int = 12
    include_special: bool = True

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "PasswordPolicy":
        length = int(data.get("length", 12))
        if length < 1:
            raise ValueError("Password length must be at least 1")
        return PasswordPolicy(
            length=length,
            include_special=_as_bool(data.get("include_special"), True),
        )


@dataclass(frozen=True)
class AuditSettings:
    """Where and for how long audit records are kept."""

    enabled: bool = True
    backend: str = "jsonl"
    path: Path = field(default_factory=lambda: _default_data_dir() / "user_actions.log")
    keep_days: int = 90

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "AuditSettings":
        backend = str(data.get("backend") or "jsonl").strip().lower()
        if backend not in AUDIT_BACKENDS:
            raise ValueError(
                f"Unknown audit backend '{backend}'. Expected one of: {', '.join(sorted(AUDIT_BACKENDS))}"
            )
        raw_path = data.get("path")
        if raw_path:
            path = _resolve_path(raw_path, base_path)
        else:
            filename = "user_actions.log" if backend == "jsonl" else "user_manager.sqlite3"
            path = _default_data_dir() / filename
        return AuditSettings(
            enabled=_as_bool(data.get("enabled"), True),
            backend=backend,
            path=path,
            keep_days=int(data.get("keep_days", 90)),
        )


@dataclass(frozen=True)
class UISettings:
    search_limit: int = 1000
    rows_per_page: int = 50
    disabled_group: str = "Disabled"

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "UISettings":
        search_limit = int(data.get("search_limit", 1000))
        rows_per_page = int(data.get("rows_per_page", 50))
        if search_limit < 1 or rows_per_page < 1:
            raise ValueError("search_limit and rows_per_page must be positive")
        return UISettings(
            search_limit=search_limit,
            rows_per_page=rows_per_page,
            disabled_group=str(data.get("disabled_group") or "Disabled"),
        )


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str

    @staticmethod
    def from_dict(data: Dict[str, object], default: "EmailTemplate") -> "EmailTemplate":
        return EmailTemplate(
            subject=str(data.get("subject") or default.subject),
            body=str(data.get("body") or default.body),
        )


WELCOME_TEMPLATE = EmailTemplate(DEFAULT_WELCOME_SUBJECT, DEFAULT_WELCOME_BODY)
RESET_TEMPLATE = EmailTemplate(DEFAULT_RESET_SUBJECT, DEFAULT_RESET_BODY)


@dataclass(frozen=True)
class Settings:
    """All settings for the console, grouped by concern."""

    zabbix: ZabbixSettings = field(default_factory=ZabbixSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    password: PasswordPolicy = field(default_factory=PasswordPolicy)
    audit: AuditSettings = field(default_factory=AuditSettings)
    ui: UISettings = field(default_factory=UISettings)
    email_template: EmailTemplate = WELCOME_TEMPLATE
    reset_template: EmailTemplate = RESET_TEMPLATE

    @staticmethod
    def from_dict(raw: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        return Settings(
            zabbix=ZabbixSettings.from_dict(_section(raw, "zabbix")),
            smtp=SMTPSettings.from_dict(_section(raw, "smtp")),
            password=PasswordPolicy.from_dict(_section(raw, "password")),
            audit=AuditSettings.from_dict(_section(raw, "audit"), base_path=base_path),
            ui=UISettings.from_dict(_section(raw, "ui")),
            email_template=EmailTemplate.from_dict(_section(raw, "email_template"), WELCOME_TEMPLATE),
            reset_template=EmailTemplate.from_dict(_section(raw, "reset_template"), RESET_TEMPLATE),
        )


def _default_data_dir() -> Path:
    return (Path(__file__).resolve().parent.parent / "data").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "usermanager.yaml").resolve(strict=False)


def apply_env_overrides(settings: Settings, environ: Mapping[str, str] | None = None) -> Settings:
    """Return ``settings`` with values taken from ``USERMANAGER_*`` variables."""

    env = os.environ if environ is None else environ

    zabbix = settings.zabbix
    if env.get("USERMANAGER_ZABBIX_URL"):
        zabbix = replace(zabbix, url=env["USERMANAGER_ZABBIX_URL"].strip().rstrip("/"))
    if env.get("USERMANAGER_ZABBIX_TOKEN"):
        zabbix = replace(zabbix, api_token=env["USERMANAGER_ZABBIX_TOKEN"].strip())

    smtp = settings.smtp
    if env.get("USERMANAGER_SMTP_SERVER"):
        smtp = replace(smtp, server=env["USERMANAGER_SMTP_SERVER"].strip())
    if env.get("USERMANAGER_SMTP_USERNAME"):
        smtp = replace(smtp, username=env["USERMANAGER_SMTP_USERNAME"])
    if env.get("USERMANAGER_SMTP_PASSWORD"):
        smtp = replace(smtp, password=env["USERMANAGER_SMTP_PASSWORD"])

    audit = settings.audit
    if env.get("USERMANAGER_AUDIT_PATH"):
        audit = replace(audit, path=_resolve_path(env["USERMANAGER_AUDIT_PATH"], None))

    return replace(settings, zabbix=zabbix, smtp=smtp, audit=audit)


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from a YAML file, falling back to defaults when it is absent."""

    path = config_path or resolve_config_path(os.getenv("USERMANAGER_CONFIG"))
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        settings = Settings.from_dict(raw, base_path=path.parent)
    else:
        settings = Settings()
    return apply_env_overrides(settings)


__all__ = [
    "AuditSettings",
    "EmailTemplate",
    "PasswordPolicy",
    "SMTPSettings",
    "Settings",
    "UISettings",
    "ZabbixSettings",
    "apply_env_overrides",
    "load_settings",
    "resolve_config_path",
]
