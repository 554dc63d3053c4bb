from __future__ import annotations

import contextlib
import threading
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'RegularUser',
        is_active BOOLEAN NOT NULL DEFAULT false,
        is_deleted BOOLEAN NOT NULL DEFAULT false,
        is_system_protected BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_verification (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        checked_ok BOOLEAN NOT NULL DEFAULT false
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS account_verification_user_idx
        ON account_verification (user_id, issued_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blacklist_token (
        id BIGSERIAL PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        user_id BIGINT REFERENCES app_user(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_visit (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        visited_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        password_hash=row["password_hash"],
        role=UserRole(row.get("role") or UserRole.REGULAR_USER),
        is_active=row.get("is_active", False),
        is_deleted=row.get("is_deleted", False),
        is_system_protected=row.get("is_system_protected", False),
        created_at=row["created_at"],
    )


def _verification_from_row(row: Dict[str, Any]) -> AccountVerification:
    return AccountVerification(
        id=row["id"],
        user_id=row["user_id"],
        code=row["code"],
        issued_at=row["issued_at"],
        checked_ok=row.get("checked_ok", False),
    )


def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        expires_at=row["expires_at"],
        is_revoked=row.get("is_revoked", False),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store for users, verification codes and tokens."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._local = threading.local()
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield the connection bound by transaction(), or a pooled one."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as pooled:
            yield pooled

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Bind one connection to this thread so every call in the block commits together."""
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                self._local.conn = conn
                try:
                    yield self
                finally:
                    self._local.conn = None

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=5)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user
                        (email, full_name, password_hash, role, is_active,
                         is_system_protected, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        email,
                        full_name,
                        password_hash,
                        UserRole(role).value,
                        is_active,
                        is_system_protected,
                        created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def _update_user(self, user_id: int, column: str, value: Any) -> Optional[User]:
        # column names come from the fixed set below, never from callers
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {column} = %s WHERE id = %s RETURNING *",
                (value, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active", is_active)

    def set_user_deleted(self, user_id: int, is_deleted: bool) -> Optional[User]:
        return self._update_user(user_id, "is_deleted", is_deleted)

    def update_user_role(self, user_id: int, role: UserRole) -> Optional[User]:
        return self._update_user(user_id, "role", UserRole(role).value)

    def set_user_protected(self, user_id: int, is_system_protected: bool) -> Optional[User]:
        return self._update_user(user_id, "is_system_protected", is_system_protected)

    def update_password_hash(self, user_id: int, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, "password_hash", password_hash)

    # verifications ---------------------------------------------------------

    def add_verification(
        self, user_id: int, code: str, issued_at: datetime, *, checked_ok: bool = False
    ) -> AccountVerification:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_verification (user_id, code, issued_at, checked_ok)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, code, issued_at, checked_ok),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return _verification_from_row(row)

    def get_latest_verification(self, user_id: int) -> Optional[AccountVerification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM account_verification
                WHERE user_id = %s
                ORDER BY issued_at DESC, id DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return _verification_from_row(row) if row else None

    def update_verification(self, verification: AccountVerification) -> AccountVerification:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account_verification
                SET code = %s, issued_at = %s, checked_ok = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    verification.code,
                    verification.issued_at,
                    verification.checked_ok,
                    verification.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("verification does not exist", {"field": "id"})
        return _verification_from_row(row)

    # visits ----------------------------------------------------------------

    def record_visit(self, user_id: int, visited_at: datetime) -> UserVisit:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO user_visit (user_id, visited_at) VALUES (%s, %s) RETURNING *",
                (user_id, visited_at),
            ).fetchone()
        return UserVisit(id=row["id"], user_id=row["user_id"], visited_at=row["visited_at"])

    def list_visits(self, user_id: int) -> List[UserVisit]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_visit WHERE user_id = %s ORDER BY visited_at",
                (user_id,),
            ).fetchall()
        return [
            UserVisit(id=r["id"], user_id=r["user_id"], visited_at=r["visited_at"])
            for r in rows
        ]

    # refresh tokens --------------------------------------------------------

    def add_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (user_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return _refresh_from_row(row)

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        """Revoke ``token`` and return it, if it is unrevoked and unexpired.

        The conditional UPDATE makes concurrent redemptions race on the row
        lock, so at most one caller gets the row back.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = true
                WHERE token = %s AND NOT is_revoked AND expires_at > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0

    # blacklist -------------------------------------------------------------

    def add_blacklist_token(
        self, token: str, expires_at: datetime, user_id: Optional[int] = None
    ) -> BlacklistToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO blacklist_token (token, expires_at, user_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (token) DO UPDATE SET expires_at = blacklist_token.expires_at
                RETURNING *
                """,
                (token, expires_at, user_id),
            ).fetchone()
        return BlacklistToken(
            id=row["id"],
            token=row["token"],
            expires_at=row["expires_at"],
            user_id=row.get("user_id"),
        )

    def is_token_blacklisted(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM blacklist_token WHERE token = %s", (token,)
            ).fetchone()
        return row is not None

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM blacklist_token WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0
