"""Browser-based user management console for a Zabbix server."""
from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, Form, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .audit import Actor, AuditLog, build_audit_log, describe_action
from .config import Settings, load_settings
from .notifications import Mailer, build_mailer
from .security import SessionTokenCipher, client_ip
from .users import SORTABLE_FIELDS, UserManagerError, UserNotFoundError, UserService
from .zabbix import USER_TYPE_ADMIN, HostAPIError, ZabbixAPI

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
STATIC_DIR = Path(__file__).resolve().parent / "static"

logger = logging.getLogger("usermanager.management")

_SESSION_EXPIRED_MARKERS = ("re-login", "not authorized", "not authorised", "session terminated")


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("USERMANAGER_TRUSTED_PROXIES")
    if not raw:
        return "127.0.0.1"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "127.0.0.1"


def _format_timestamp(value: object) -> str:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, (int, float)) and value:
        moment = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        return "Never"
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def _page_number(raw: str) -> int:
    try:
        return max(int(raw), 1)
    except (TypeError, ValueError):
        return 1


def _is_session_expired(exc: HostAPIError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _SESSION_EXPIRED_MARKERS)


def create_app(
    *,
    settings: Optional[Settings] = None,
    api: Optional[ZabbixAPI] = None,
    audit_log: Optional[AuditLog] = None,
    mailer: Optional[Mailer] = None,
    session_secret: Optional[str] = None,
) -> FastAPI:
    """Create the user management web application."""

    if settings is None:
        settings = load_settings()

    if session_secret is None:
        session_secret = os.getenv("USERMANAGER_SESSION_SECRET")
    if not session_secret:
        raise RuntimeError(
            "USERMANAGER_SESSION_SECRET must be configured to use the management interface"
        )

    if api is None:
        api = ZabbixAPI(
            settings.zabbix.url,
            timeout=settings.zabbix.timeout,
            verify=settings.zabbix.verify,
        )
    if audit_log is None:
        audit_log = build_audit_log(settings.audit)
    if mailer is None:
        mailer = build_mailer(settings)

    cipher = SessionTokenCipher(session_secret)

    app = FastAPI(
        title="Zabbix User Manager",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.state.settings = settings
    app.state.api = api
    app.state.audit_log = audit_log
    app.state.mailer = mailer

    secure_cookie_setting = os.getenv("USERMANAGER_SESSION_SECURE")
    if secure_cookie_setting is None:
        secure_cookie = False
    else:
        secure_cookie = secure_cookie_setting.strip().lower() not in {
            "0",
            "false",
            "no",
        }

    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="usermanager_session",
        https_only=secure_cookie,
        same_site="lax",
        max_age=60 * 60 * 8,
    )

    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.globals["zabbix_url"] = settings.zabbix.public_url
    templates.env.filters["timestamp"] = _format_timestamp
    templates.env.filters["action_label"] = describe_action

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _actor(request: Request) -> Actor:
        fallback = request.client.host if request.client else None
        return Actor(
            userid=int(request.session.get("userid") or 0),
            username=str(request.session.get("username") or "system"),
            ip=client_ip(request.headers, fallback),
        )

    def _session_token(request: Request) -> Optional[str]:
        encrypted = request.session.get("zabbix_session")
        if not isinstance(encrypted, str) or not encrypted:
            return None
        token = cipher.decrypt(encrypted)
        if token is None:
            request.session.clear()
        return token

    def _service_for(request: Request) -> Optional[UserService]:
        token = _session_token(request)
        if token is None:
            return None
        return UserService(
            api.with_token(token),
            settings=settings,
            audit=audit_log,
            mailer=mailer,
            actor=_actor(request),
        )

    def _audit(action: str, userid: object, *, actor: Actor, details: Optional[Dict[str, object]] = None) -> None:
        try:
            audit_log.log_action(action, userid, actor=actor, details=details)
        except (OSError, sqlite3.Error):
            logger.exception("Failed to write audit record %s for user %s", action, userid)

    def _redirect_to_login(request: Request) -> RedirectResponse:
        return RedirectResponse(
            request.url_for("show_login"),
            status_code=status.HTTP_303_SEE_OTHER,
        )

    def _render(request: Request, name: str, context: Dict[str, object], *, status_code: int = 200):
        context.setdefault("current_user", request.session.get("username"))
        return templates.TemplateResponse(request, name, context, status_code=status_code)

    def _error_page(request: Request, message: str, status_code: int):
        return _render(
            request,
            "error.html",
            {"title": "Error", "message": message},
            status_code=status_code,
        )

    def _host_error_page(request: Request, exc: HostAPIError):
        if _is_session_expired(exc):
            request.session.clear()
            return _redirect_to_login(request)
        logger.warning("Zabbix API error while rendering %s: %s", request.url.path, exc)
        return _error_page(request, str(exc), status.HTTP_502_BAD_GATEWAY)

    def _json_result(success: bool, message: str, status_code: int = 200, **extra: object) -> JSONResponse:
        content: Dict[str, object] = {"status": success, "message": message}
        content.update(extra)
        return JSONResponse(status_code=status_code, content=content)

    def _json_auth_error() -> JSONResponse:
        return _json_result(False, "Authentication required.", status.HTTP_401_UNAUTHORIZED)

    def _json_host_error(request: Request, exc: HostAPIError) -> JSONResponse:
        if _is_session_expired(exc):
            request.session.clear()
            return _json_auth_error()
        return _json_result(False, str(exc), status.HTTP_502_BAD_GATEWAY)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.get("/", response_class=HTMLResponse)
    def root(request: Request):
        if _session_token(request) is None:
            return _redirect_to_login(request)
        return RedirectResponse(
            request.url_for("list_users"),
            status_code=status.HTTP_303_SEE_OTHER,
        )

    @app.get("/login", response_class=HTMLResponse, name="show_login")
    def login_form(request: Request):
        if _session_token(request) is not None:
            return RedirectResponse(
                request.url_for("list_users"),
                status_code=status.HTTP_303_SEE_OTHER,
            )
        error = request.session.pop("login_error", None)
        return _render(request, "login.html", {"title": "Sign in", "error": error})

    @app.post("/login", name="process_login")
    def process_login(request: Request, username: str = Form(...), password: str = Form(...)):
        cleaned_username = username.strip()
        ip = client_ip(request.headers, request.client.host if request.client else None)
        try:
            token = api.login(cleaned_username, password)
            info = api.check_authentication(token)
        except HostAPIError as exc:
            logger.info("Sign-in failed for %s: %s", cleaned_username, exc)
            _audit(
                "failed_login",
                0,
                actor=Actor(username=cleaned_username or "unknown", ip=ip),
                details={"reason": str(exc)},
            )
            request.session["login_error"] = "Invalid username or password."
            return _redirect_to_login(request)

        try:
            user_type = int(info.get("type", 0))
        except (TypeError, ValueError):
            user_type = 0
        if user_type < USER_TYPE_ADMIN:
            with suppress(HostAPIError):
                api.with_token(token).logout()
            request.session["login_error"] = "Only Zabbix administrators can manage users."
            return _redirect_to_login(request)

        userid = int(info.get("userid") or 0)
        request.session.clear()
        request.session["zabbix_session"] = cipher.encrypt(token)
        request.session["userid"] = userid
        request.session["username"] = str(info.get("username") or cleaned_username)
        request.session["user_type"] = user_type
        _audit(
            "login",
            userid,
            actor=Actor(userid=userid, username=request.session["username"], ip=ip),
        )
        return RedirectResponse(
            request.url_for("list_users"),
            status_code=status.HTTP_303_SEE_OTHER,
        )

    @app.get("/logout", name="logout")
    def logout(request: Request):
        token = _session_token(request)
        if token is not None:
            with suppress(HostAPIError):
                api.with_token(token).logout()
            _audit("logout", request.session.get("userid") or 0, actor=_actor(request))
        request.session.clear()
        return _redirect_to_login(request)

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------
    @app.get("/users", response_class=HTMLResponse, name="list_users")
    def list_users(
        request: Request,
        filter_name: str = "",
        filter_group: str = "",
        sort: str = "username",
        sortorder: str = "ASC",
        page: str = "1",
    ):
        service = _service_for(request)
        if service is None:
            return _redirect_to_login(request)

        try:
            result = service.list_users(
                filter_name=filter_name.strip(),
                filter_group=filter_group.strip(),
                sort=sort,
                sortorder=sortorder,
                page=_page_number(page),
            )
            groups = service.user_groups()
        except HostAPIError as exc:
            return _host_error_page(request, exc)

        return _render(
            request,
            "users.html",
            {
                "title": "User management",
                "messages": _consume_flash(request),
                "rows": result.rows,
                "paging": result.paging,
                "groups": groups,
                "filters": {"name": filter_name, "group": filter_group},
                "sort": sort if sort in SORTABLE_FIELDS else "username",
                "sortorder": "DESC" if sortorder.upper() == "DESC" else "ASC",
            },
        )

    @app.get("/users/create", response_class=HTMLResponse, name="create_user_form")
    def create_user_form(request: Request):
        service = _service_for(request)
        if service is None:
            return _redirect_to_login(request)

        try:
            groups = service.user_groups()
            roles = service.roles()
            media_types = service.media_types()
        except HostAPIError as exc:
            return _host_error_page(request, exc)

        return _render(
            request,
            "user_create.html",
            {
                "title": "Create user",
                "groups": groups,
                "roles": roles,
                "media_types": media_types,
            },
        )

    @app.post("/users/create", name="create_user")
    def create_user(
        request: Request,
        email: str = Form(""),
        roleid: str = Form(""),
        usrgrps: List[str] = Form([]),
        media_types: List[str] = Form([]),
    ):
        service = _service_for(request)
        if service is None:
            return _json_auth_error()

        selected_groups = [groupid for groupid in usrgrps if groupid.strip()]
        if not email.strip() or not roleid.strip() or not selected_groups:
            return _json_result(False, "Invalid form data", status.HTTP_400_BAD_REQUEST)

        try:
            created = service.create_user(
                email,
                selected_groups,
                roleid.strip(),
                [mediatypeid for mediatypeid in media_types if mediatypeid.strip()],
            )
        except HostAPIError as exc:
            return _json_host_error(request, exc)
        except UserManagerError as exc:
            return _json_result(False, str(exc), status.HTTP_400_BAD_REQUEST)

        message = "User created successfully!"
        if not created.email_sent:
            message += " The credentials email could not be sent."
        _flash(request, f"Created user {created.username}.", category="success")
        return _json_result(True, message, userid=created.userid, username=created.username)

    @app.get("/users/{userid}/stats", response_class=HTMLResponse, name="user_stats")
    def user_stats(request: Request, userid: str):
        service = _service_for(request)
        if service is None:
            return _redirect_to_login(request)

        try:
            stats = service.user_stats(userid)
        except UserNotFoundError as exc:
            return _error_page(request, str(exc), status.HTTP_404_NOT_FOUND)
        except HostAPIError as exc:
            return _host_error_page(request, exc)

        return _render(
            request,
            "user_stats.html",
            {
                "title": f"User statistics: {stats.user.username}",
                "stats": stats,
                "activity_max": max(stats.activity["data"] or [0]),
            },
        )

    # ------------------------------------------------------------------
    # JSON actions
    # ------------------------------------------------------------------
    @app.post("/users/{userid}/status", name="update_status")
    def update_status(request: Request, userid: str, active: str = Form(...)):
        service = _service_for(request)
        if service is None:
            return _json_auth_error()

        enable = active.strip().lower() in {"1", "true", "yes", "on"}
        try:
            user = service.set_status(userid, enable)
        except UserNotFoundError as exc:
            return _json_result(False, str(exc), status.HTTP_404_NOT_FOUND)
        except HostAPIError as exc:
            return _json_host_error(request, exc)
        except UserManagerError as exc:
            return _json_result(False, str(exc), status.HTTP_400_BAD_REQUEST)

        verb = "enabled" if enable else "disabled"
        return _json_result(True, f"User {user.username} {verb}.")

    @app.post("/users/{userid}/reset-password", name="reset_password")
    def reset_password(request: Request, userid: str):
        service = _service_for(request)
        if service is None:
            return _json_auth_error()

        try:
            result = service.reset_password(userid)
        except UserNotFoundError as exc:
            return _json_result(False, str(exc), status.HTTP_404_NOT_FOUND)
        except HostAPIError as exc:
            return _json_host_error(request, exc)

        if result.email_sent:
            return _json_result(
                True,
                f"Password reset. The new password was emailed to {result.email}.",
                email_sent=True,
            )
        reason = "could not be sent" if result.email else "was not sent because the user has no email address"
        return _json_result(
            True,
            f"Password reset, but the email {reason}. New password: {result.password}",
            email_sent=False,
        )

    @app.get("/users/{userid}/history", name="user_history")
    def user_history(request: Request, userid: str, limit: int = 50):
        service = _service_for(request)
        if service is None:
            return _json_auth_error()

        records = service.action_history(userid, limit)
        return JSONResponse(
            content={
                "status": True,
                "history": [
                    {**record.to_dict(), "action_text": describe_action(record.action)}
                    for record in records
                ],
            }
        )

    return app


__all__ = ["create_app"]
