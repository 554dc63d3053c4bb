from __future__ import annotations

import contextlib
import copy
import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from learnquest.logging import get_logger
from learnquest.storage.errors import ConstraintViolation
from learnquest.storage.models import (
    AccountVerification,
    BlacklistToken,
    RefreshToken,
    User,
    UserRole,
    UserVisit,
)

_TABLES = ("users", "verifications", "refresh_tokens", "blacklist", "visits")


class MemoryStore:
    """In-memory backing store used by tests and local development.

    Records are copied on the way in and out so callers must go through the
    update methods to change state, the same way they would against Postgres.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.verifications: Dict[int, AccountVerification] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.blacklist: Dict[str, BlacklistToken] = {}
        self.visits: List[UserVisit] = []
        self._ids = itertools.count(1)
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = threading.local()

    def _next_id(self) -> int:
        return next(self._ids)

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Apply every mutation in the block atomically, or none of them."""
        with self._data_lock:
            depth = getattr(self._tx_depth, "value", 0)
            if depth:
                self._tx_depth.value = depth + 1
                try:
                    yield self
                finally:
                    self._tx_depth.value = depth
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._tx_depth.value = 1
            try:
                yield self
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth.value = 0

    # users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: UserRole = UserRole.REGULAR_USER,
        is_active: bool = False,
        is_system_protected: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_id(),
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                is_system_protected=is_system_protected,
            )
            if created_at is not None:
                user.created_at = created_at
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def _update_user(self, user_id: int, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **changes)
            self.users[user_id] = updated
            return replace(updated)

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def set_user_deleted(self, user_id: int, is_deleted: bool) -> Optional[User]:
        return self._update_user(user_id, is_deleted=is_deleted)

    def update_user_role(self, user_id: int, role: UserRole) -> Optional[User]:
        return self._update_user(user_id, role=UserRole(role))

    def set_user_protected(self, user_id: int, is_system_protected: bool) -> Optional[User]:
        return self._update_user(user_id, is_system_protected=is_system_protected)

    def update_password_hash(self, user_id: int, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    # verifications ---------------------------------------------------------

    def add_verification(
        self, user_id: int, code: str, issued_at: datetime, *, checked_ok: bool = False
    ) -> AccountVerification:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            record = AccountVerification(
                id=self._next_id(),
                user_id=user_id,
                code=code,
                issued_at=issued_at,
                checked_ok=checked_ok,
            )
            self.verifications[record.id] = record
            return replace(record)

    def get_latest_verification(self, user_id: int) -> Optional[AccountVerification]:
        with self._data_lock:
            records = [v for v in self.verifications.values() if v.user_id == user_id]
            if not records:
                return None
            latest = max(records, key=lambda v: (v.issued_at, v.id))
            return replace(latest)

    def update_verification(self, verification: AccountVerification) -> AccountVerification:
        with self._data_lock:
            if verification.id not in self.verifications:
                raise ConstraintViolation(
                    "verification does not exist", {"field": "id"}
                )
            self.verifications[verification.id] = replace(verification)
            return replace(verification)

    # visits ----------------------------------------------------------------

    def record_visit(self, user_id: int, visited_at: datetime) -> UserVisit:
        with self._data_lock:
            visit = UserVisit(id=self._next_id(), user_id=user_id, visited_at=visited_at)
            self.visits.append(visit)
            return replace(visit)

    def list_visits(self, user_id: int) -> List[UserVisit]:
        with self._data_lock:
            return [replace(v) for v in self.visits if v.user_id == user_id]

    # refresh tokens --------------------------------------------------------

    def add_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                id=self._next_id(), user_id=user_id, token=token, expires_at=expires_at
            )
            self.refresh_tokens[token] = record
            return replace(record)

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        """Revoke ``token`` and return it, if it is unrevoked and unexpired."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.is_revoked or record.expires_at <= now:
                return None
            record.is_revoked = True
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [t for t, r in self.refresh_tokens.items() if r.expires_at <= now]
            for token in expired:
                del self.refresh_tokens[token]
            return len(expired)

    # blacklist -------------------------------------------------------------

    def add_blacklist_token(
        self, token: str, expires_at: datetime, user_id: Optional[int] = None
    ) -> BlacklistToken:
        with self._data_lock:
            existing = self.blacklist.get(token)
            if existing:
                return replace(existing)
            record = BlacklistToken(
                id=self._next_id(), token=token, expires_at=expires_at, user_id=user_id
            )
            self.blacklist[token] = record
            return replace(record)

    def is_token_blacklisted(self, token: str) -> bool:
        with self._data_lock:
            return token in self.blacklist

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            expired = [t for t, r in self.blacklist.items() if r.expires_at <= now]
            for token in expired:
                del self.blacklist[token]
            return len(expired)
