from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    REGULAR_USER = "RegularUser"
    INSTRUCTOR = "Instructor"
    ADMIN = "Admin"


@dataclass
class User:
    id: int
    email: str
    full_name: str
    password_hash: str
    role: UserRole = UserRole.REGULAR_USER
    is_active: bool = False
    is_deleted: bool = False
    is_system_protected: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AccountVerification:
    """A verification code issued to a user; only the newest one is authoritative."""

    id: int
    user_id: int
    code: str
    issued_at: datetime
    checked_ok: bool = False


@dataclass
class RefreshToken:
    id: int
    user_id: int
    token: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class BlacklistToken:
    """An access token revoked before its natural expiry."""

    id: int
    token: str
    expires_at: datetime
    user_id: Optional[int] = None


@dataclass
class UserVisit:
    id: int
    user_id: int
    visited_at: datetime
