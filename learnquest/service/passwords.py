"""Salted password hashing, verification codes and the password strength policy.

Stored hashes use the format ``base64(salt):base64(key)`` where the key is a
PBKDF2-HMAC-SHA256 derivation of the password.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
from typing import List

from learnquest.logging import get_logger

logger = get_logger(__name__)

SALT_BYTES = 16
KEY_BYTES = 32
DEFAULT_ITERATIONS = 100_000
CODE_MIN = 100_000
CODE_MAX = 999_999

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
MIN_PASSWORD_LENGTH = 8
_COMMON_WORDS = ("password", "123456", "qwerty", "admin", "letmein")
_REPEATED_CHARS = re.compile(r"(.)\1{2,}")


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, iterations, dklen=KEY_BYTES
    )


def hash_password(password: str, *, iterations: int = DEFAULT_ITERATIONS) -> str:
    salt = secrets.token_bytes(SALT_BYTES)
    key = _derive(password, salt, iterations)
    return f"{base64.b64encode(salt).decode()}:{base64.b64encode(key).decode()}"


def verify_password(
    password: str, encoded: str, *, iterations: int = DEFAULT_ITERATIONS
) -> bool:
    """Check ``password`` against a stored hash. Never raises; malformed input is a mismatch."""
    if not encoded or ":" not in encoded or password is None:
        return False
    salt_b64, _, key_b64 = encoded.partition(":")
    try:
        salt = base64.b64decode(salt_b64, validate=True)
        expected = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("password_hash_malformed")
        return False
    if len(salt) != SALT_BYTES or len(expected) != KEY_BYTES:
        logger.warning("password_hash_malformed")
        return False
    actual = _derive(password, salt, iterations)
    return hmac.compare_digest(actual, expected)


def generate_verification_code() -> str:
    """Six-digit code drawn uniformly from 100000..999999."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def _has_sequence(password: str, length: int = 3) -> bool:
    lowered = password.lower()
    for i in range(len(lowered) - length + 1):
        window = lowered[i : i + length]
        if not (window.isdigit() or window.isalpha()):
            continue
        steps = {ord(b) - ord(a) for a, b in zip(window, window[1:])}
        if steps == {1}:
            return True
    return False


def password_problems(password: str) -> List[str]:
    """Return the list of strength rules ``password`` breaks (empty when strong)."""
    problems: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        problems.append("must contain an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("must contain a digit")
    if not any(c in SPECIAL_CHARACTERS for c in password):
        problems.append("must contain a special character")
    lowered = password.lower()
    if _has_sequence(password):
        problems.append("must not contain sequences like 'abc' or '123'")
    if _REPEATED_CHARS.search(password):
        problems.append("must not repeat a character three times in a row")
    if any(word in lowered for word in _COMMON_WORDS):
        problems.append("must not contain common words")
    return problems


def is_password_strong(password: str) -> bool:
    return not password_problems(password)


class PasswordHasher:
    """Hashes and verifies passwords with a fixed iteration count."""

    def __init__(self, iterations: int = DEFAULT_ITERATIONS) -> None:
        self.iterations = iterations
        # verified against unknown emails so the miss path costs the same
        self._dummy_hash = hash_password(secrets.token_urlsafe(16), iterations=iterations)

    def hash(self, password: str) -> str:
        return hash_password(password, iterations=self.iterations)

    def verify(self, password: str, encoded: str) -> bool:
        return verify_password(password, encoded, iterations=self.iterations)

    def verify_dummy(self, password: str) -> bool:
        verify_password(password, self._dummy_hash, iterations=self.iterations)
        return False

    def generate_code(self) -> str:
        return generate_verification_code()
