"""Credential emails for new, re-enabled and reset accounts."""
from __future__ import annotations

import base64
import logging
import shutil
import smtplib
import ssl
import subprocess
from contextlib import suppress
from email import policy
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Callable, Optional

import email_validator
from email_validator import EmailNotValidError, validate_email

from .config import EmailTemplate, SMTPSettings

logger = logging.getLogger("usermanager.notifications")

SMTP_CONNECT_TIMEOUT = 30
SENDMAIL_TIMEOUT = 30
_SENDMAIL_FALLBACK_PATHS = ("/usr/sbin/sendmail", "/usr/lib/sendmail")

# Intranet mail commonly lives under these reserved suffixes.
INTERNAL_MAIL_DOMAINS = ("local",)
for _domain in INTERNAL_MAIL_DOMAINS:
    if _domain in email_validator.SPECIAL_USE_DOMAIN_NAMES:
        email_validator.SPECIAL_USE_DOMAIN_NAMES.remove(_domain)


class MailDeliveryError(RuntimeError):
    """Raised when a message cannot be handed to a mail server."""


def is_valid_email(address: str) -> bool:
    try:
        validate_email(
            address,
            check_deliverability=False,
            globally_deliverable=False,
            test_environment=True,
        )
    except EmailNotValidError:
        return False
    return True


def render_template(template: str, *, name: str, username: str, password: str, url: str) -> str:
    """Fill the ``{name}``, ``{username}``, ``{password}`` and ``{url}`` placeholders."""

    replacements = {
        "{name}": name,
        "{username}": username,
        "{password}": password,
        "{url}": url,
    }
    rendered = template
    for placeholder, value in replacements.items():
        rendered = rendered.replace(placeholder, value)
    return rendered


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _reply_text(reply: object) -> str:
    if isinstance(reply, bytes):
        return reply.decode("utf-8", "replace").strip()
    return str(reply).strip()


def _expect(step: str, code: int, reply: object, expected: int) -> None:
    if code != expected:
        raise MailDeliveryError(f"{step} failed: {code} {_reply_text(reply)}".strip())


class Mailer:
    """Render notification templates and deliver them.

    Delivery first hands the message to a local ``sendmail`` binary. When that
    is disabled, missing, or fails, the message goes over an SMTP dialogue in
    which every reply code is checked; any unexpected code aborts the send.
    """

    def __init__(
        self,
        settings: SMTPSettings,
        *,
        welcome_template: EmailTemplate,
        reset_template: EmailTemplate,
        login_url: str,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        sendmail_path: Optional[str] = None,
    ) -> None:
        self._settings = settings
        self._welcome = welcome_template
        self._reset = reset_template
        self._login_url = login_url
        self._smtp_factory = smtp_factory
        self._sendmail_path = sendmail_path

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def send_credentials(self, email: str, username: str, password: str) -> bool:
        return self._send_template(self._welcome, email, username, password)

    def send_password_reset(self, email: str, username: str, password: str) -> bool:
        return self._send_template(self._reset, email, username, password)

    def _send_template(self, template: EmailTemplate, email: str, username: str, password: str) -> bool:
        fields = {"name": username, "username": username, "password": password, "url": self._login_url}
        subject = render_template(template.subject, **fields)
        body = render_template(template.body, **fields)
        return self.send(email, subject, body)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = formataddr((self._settings.sender_name, self._settings.sender))
        message["To"] = to
        message["Reply-To"] = self._settings.sender
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message["X-Mailer"] = "zabbix-user-manager"
        message.set_content(body, charset="utf-8")
        return message

    def send(self, to: str, subject: str, body: str) -> bool:
        if not self._settings.server:
            raise MailDeliveryError("SMTP server is not configured")
        if not is_valid_email(to):
            raise MailDeliveryError(f"Invalid recipient address: {to}")

        message = self.build_message(to, subject, body)

        if self._settings.use_sendmail and self._deliver_sendmail(message):
            logger.info("Delivered '%s' to %s via sendmail", subject, to)
            return True

        self._deliver_smtp(to, message)
        logger.info("Delivered '%s' to %s via %s:%s", subject, to, self._settings.server, self._settings.port)
        return True

    def _resolve_sendmail(self) -> Optional[str]:
        if self._sendmail_path:
            return self._sendmail_path
        found = shutil.which("sendmail")
        if found:
            return found
        for candidate in _SENDMAIL_FALLBACK_PATHS:
            if shutil.which(candidate):
                return candidate
        return None

    def _deliver_sendmail(self, message: EmailMessage) -> bool:
        sendmail = self._resolve_sendmail()
        if sendmail is None:
            return False
        try:
            result = subprocess.run(
                [sendmail, "-t", "-i"],
                input=message.as_bytes(),
                capture_output=True,
                timeout=SENDMAIL_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("sendmail failed, falling back to SMTP: %s", exc)
            return False
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            logger.warning(
                "sendmail exited with status %s, falling back to SMTP: %s", result.returncode, stderr
            )
            return False
        return True

    def _deliver_smtp(self, to: str, message: EmailMessage) -> None:
        settings = self._settings
        client = self._smtp_factory(local_hostname=settings.helo_name, timeout=SMTP_CONNECT_TIMEOUT)
        try:
            try:
                code, reply = client.connect(settings.server, settings.port)
            except (OSError, smtplib.SMTPException) as exc:
                raise MailDeliveryError(
                    f"Failed to connect to SMTP server {settings.server}:{settings.port}: {exc}"
                ) from exc
            _expect("SMTP greeting", code, reply, 220)

            code, reply = client.ehlo()
            _expect("EHLO", code, reply, 250)

            if settings.use_tls:
                try:
                    code, reply = client.starttls(context=ssl.create_default_context())
                except smtplib.SMTPNotSupportedError as exc:
                    raise MailDeliveryError("STARTTLS failed: server does not support TLS") from exc
                _expect("STARTTLS", code, reply, 220)
                code, reply = client.ehlo()
                _expect("EHLO after STARTTLS", code, reply, 250)

            if settings.username and settings.password:
                code, reply = client.docmd("AUTH", "LOGIN")
                _expect("AUTH LOGIN", code, reply, 334)
                code, reply = client.docmd(_b64(settings.username))
                _expect("SMTP username", code, reply, 334)
                code, reply = client.docmd(_b64(settings.password))
                _expect("SMTP password", code, reply, 235)

            code, reply = client.mail(settings.sender)
            _expect("MAIL FROM", code, reply, 250)
            code, reply = client.rcpt(to)
            _expect("RCPT TO", code, reply, 250)

            try:
                code, reply = client.data(message.as_bytes(policy=policy.SMTP))
            except smtplib.SMTPDataError as exc:
                raise MailDeliveryError(
                    f"DATA failed: {exc.smtp_code} {_reply_text(exc.smtp_error)}"
                ) from exc
            _expect("Message delivery", code, reply, 250)

            with suppress(smtplib.SMTPException, OSError):
                client.quit()
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP conversation failed: {exc}") from exc
        finally:
            client.close()


def build_mailer(settings, **kwargs) -> Mailer:
    """Create a :class:`Mailer` from the application :class:`~usermanager.config.Settings`."""

    return Mailer(
        settings.smtp,
        welcome_template=settings.email_template,
        reset_template=settings.reset_template,
        login_url=settings.zabbix.public_url,
        **kwargs,
    )


__all__ = [
    "MailDeliveryError",
    "Mailer",
    "build_mailer",
    "is_valid_email",
    "render_template",
]
