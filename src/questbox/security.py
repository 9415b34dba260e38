from __future__ import annotations

"""Guardian PIN checks used before sensitive mutations.

A 4-digit PIN is a low-assurance local gate, not a security boundary. Profiles
may store either the plain PIN (legacy) or a salted PBKDF2 hash produced by
`hash_pin`; both are compared in constant time.
"""

import hashlib
import hmac
import re
import secrets

from .models import Profile

PIN_PATTERN = re.compile(r"^\d{4}$")
HASH_PREFIX = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 200_000


def is_valid_pin(candidate: str | None) -> bool:
    return isinstance(candidate, str) and bool(PIN_PATTERN.match(candidate))


def is_hashed_pin(stored: str) -> bool:
    return stored.startswith(f"{HASH_PREFIX}$")


def hash_pin(pin: str, *, salt: str | None = None, iterations: int = DEFAULT_ITERATIONS) -> str:
    if not is_valid_pin(pin):
        raise ValueError("PIN must be exactly four digits.")
    salt_hex = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), bytes.fromhex(salt_hex), iterations)
    return f"{HASH_PREFIX}${iterations}${salt_hex}${digest.hex()}"


def _verify_hashed(stored: str, candidate: str) -> bool:
    try:
        _, raw_iterations, salt_hex, expected = stored.split("$", 3)
        iterations = int(raw_iterations)
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", candidate.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(digest.hex(), expected)


def verify_pin(profile: Profile, candidate: str | None) -> bool:
    if not is_valid_pin(candidate):
        return False
    if is_hashed_pin(profile.pin):
        return _verify_hashed(profile.pin, candidate)
    return hmac.compare_digest(profile.pin.encode("utf-8"), candidate.encode("utf-8"))


def require_pin(profile: Profile, candidate: str | None, action: str) -> None:
    """Raise `PermissionError` unless `candidate` matches the profile PIN."""

    if candidate is None:
        raise PermissionError(f"PIN required to {action}.")
    if not verify_pin(profile, candidate):
        raise PermissionError(f"Incorrect PIN; cannot {action}.")
