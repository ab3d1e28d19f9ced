"""Security helpers for the management web interface."""
from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


class SessionTokenCipher:
    """Encrypt the Zabbix session token before it is stored in the signed cookie.

    The session cookie is signed but readable by the browser, so the host
    session id is kept in encrypted form with a key derived from the session
    secret.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("A session secret is required to protect Zabbix session tokens")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("utf-8")

    def decrypt(self, encrypted: str) -> Optional[str]:
        try:
            plaintext = self._fernet.decrypt(encrypted.encode("utf-8"))
        except (InvalidToken, ValueError):
            return None
        return plaintext.decode("utf-8")


def client_ip(headers, fallback: Optional[str]) -> str:
    """Best guess of the caller's address, honouring common proxy headers."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return fallback or "0.0.0.0"


__all__ = ["SessionTokenCipher", "client_ip"]
