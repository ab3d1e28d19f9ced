"""Command-line interface for the Zabbix user manager."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from usermanager.audit import build_audit_log
from usermanager.config import Settings, load_settings
from usermanager.notifications import build_mailer
from usermanager.users import UserManagerError, UserService
from usermanager.zabbix import HostAPIError, ZabbixAPI

logger = logging.getLogger("usermanager.main")

KNOWN_COMMANDS = {"serve", "create-user", "reset-password", "purge-audit"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Zabbix user manager utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: $USERMANAGER_CONFIG or config/usermanager.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the web console")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the console")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port for the console (default: 8080)")
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    create_parser = subparsers.add_parser("create-user", help="Create a Zabbix user and email the credentials")
    create_parser.add_argument("email", help="Email address of the new user")
    create_parser.add_argument(
        "--group",
        dest="groups",
        action="append",
        required=True,
        help="User group id (repeat for several groups)",
    )
    create_parser.add_argument("--role", required=True, help="Role id assigned to the user")
    create_parser.add_argument(
        "--media",
        dest="media_types",
        action="append",
        default=[],
        help="Media type id to attach with the user's email (repeatable)",
    )

    reset_parser = subparsers.add_parser("reset-password", help="Generate and email a new password")
    reset_parser.add_argument("userid", help="Zabbix user id")

    purge_parser = subparsers.add_parser("purge-audit", help="Delete old audit records")
    purge_parser.add_argument(
        "--keep-days",
        type=int,
        default=None,
        help="Number of days of audit history to keep (default: audit.keep_days)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]

    prefix: list[str] = []
    if args_list[:1] == ["--config"]:
        prefix, args_list = args_list[:2], args_list[2:]
    elif args_list and args_list[0].startswith("--config="):
        prefix, args_list = args_list[:1], args_list[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first not in KNOWN_COMMANDS and not any(flag in args_list for flag in ("-h", "--help")):
            args_list = ["serve", *args_list]

    return parser.parse_args([*prefix, *args_list])


def _load(config: str | None) -> Settings:
    path = Path(config).expanduser() if config else None
    return load_settings(path)


def _service(settings: Settings) -> UserService:
    token = settings.zabbix.api_token
    if not token:
        raise SystemExit(
            "A Zabbix API token is required. Set zabbix.api_token in the configuration "
            "file or the USERMANAGER_ZABBIX_TOKEN environment variable."
        )
    api = ZabbixAPI(
        settings.zabbix.url,
        token=token,
        timeout=settings.zabbix.timeout,
        verify=settings.zabbix.verify,
    )
    return UserService(
        api,
        settings=settings,
        audit=build_audit_log(settings.audit),
        mailer=build_mailer(settings),
    )


def _serve(
    *,
    settings: Settings,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from usermanager.management import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")
    if not os.getenv("USERMANAGER_SESSION_SECRET"):
        raise SystemExit("USERMANAGER_SESSION_SECRET must be set before starting the console.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting user manager on %s://%s:%s", protocol, host, port)

    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _create_user(settings: Settings, args: argparse.Namespace) -> int:
    service = _service(settings)
    try:
        created = service.create_user(args.email, args.groups, args.role, args.media_types)
    except (HostAPIError, UserManagerError) as exc:
        print(f"Failed to create user: {exc}")
        return 1

    print(f"Created user #{created.userid}: {created.username}")
    if not created.email_sent:
        print("The credentials email could not be sent. Password:", created.password)
    return 0


def _reset_password(settings: Settings, args: argparse.Namespace) -> int:
    service = _service(settings)
    try:
        result = service.reset_password(args.userid)
    except (HostAPIError, UserManagerError) as exc:
        print(f"Failed to reset password: {exc}")
        return 1

    if result.email_sent:
        print(f"Password for {result.username} reset and emailed to {result.email}.")
    elif result.email:
        print(f"Password for {result.username} reset, but the email to {result.email} could not be sent.")
        print("New password:", result.password)
    else:
        print(f"Password for {result.username} reset. No email address on file.")
        print("New password:", result.password)
    return 0


def _purge_audit(settings: Settings, args: argparse.Namespace) -> int:
    keep_days = args.keep_days if args.keep_days is not None else settings.audit.keep_days
    removed = build_audit_log(settings.audit).purge(keep_days)
    print(f"Removed {removed} audit record(s) older than {keep_days} day(s).")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = _load(args.config)

    if args.command == "serve":
        _serve(
            settings=settings,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
        return 0
    if args.command == "create-user":
        return _create_user(settings, args)
    if args.command == "reset-password":
        return _reset_password(settings, args)
    if args.command == "purge-audit":
        return _purge_audit(settings, args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
