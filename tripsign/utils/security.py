"""Signing secrets: tokens, short codes and the one-time verification code."""
from __future__ import annotations

import secrets
from typing import Optional

import bcrypt

from tripsign.core.settings import settings

SIGNING_TOKEN_BYTES = 32
SHORT_CODE_BYTES = 4
VERIFICATION_CODE_DIGITS = 6


def generate_signing_token() -> str:
    return secrets.token_hex(SIGNING_TOKEN_BYTES)


def generate_short_code() -> str:
    return secrets.token_hex(SHORT_CODE_BYTES)


def generate_verification_code() -> str:
    return f"{secrets.randbelow(10 ** VERIFICATION_CODE_DIGITS):0{VERIFICATION_CODE_DIGITS}d}"


def hash_verification_code(code: str, *, rounds: Optional[int] = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or settings.verification_hash_rounds)
    return bcrypt.hashpw(code.strip().encode("utf-8"), salt).decode("utf-8")


def verify_verification_code(code: str | None, stored_hash: str | None) -> bool:
    """Check ``code`` against a value from hash_verification_code."""
    if not code or not stored_hash:
        return False
    try:
        return bcrypt.checkpw(code.strip().encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash.
        return False
