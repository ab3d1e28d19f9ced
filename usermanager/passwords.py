"""Random password generation for new and reset accounts."""
from __future__ import annotations

import secrets
import string

SPECIAL_CHARACTERS = "!@#$%^&*()-_=+"
BASE_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits
PASSWORD_ALPHABET = BASE_ALPHABET + SPECIAL_CHARACTERS

DEFAULT_PASSWORD_LENGTH = 12


def password_alphabet(include_special: bool = True) -> str:
    return PASSWORD_ALPHABET if include_special else BASE_ALPHABET


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH, *, include_special: bool = True) -> str:
    """Return ``length`` characters drawn uniformly from the password alphabet."""

    if length < 1:
        raise ValueError("Password length must be at least 1")
    alphabet = password_alphabet(include_special)
    return "".join(secrets.choice(alphabet) for _ in range(length))


__all__ = [
    "BASE_ALPHABET",
    "DEFAULT_PASSWORD_LENGTH",
    "PASSWORD_ALPHABET",
    "SPECIAL_CHARACTERS",
    "generate_password",
    "password_alphabet",
]
