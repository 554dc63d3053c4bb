from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from learnquest.config import Settings
from learnquest.logging import get_audit_logger, get_logger
from learnquest.service.errors import InvalidOrExpiredTokenError
from learnquest.service.passwords import generate_secure_token
from learnquest.storage.models import RefreshToken, User, UserRole

if TYPE_CHECKING:
    from learnquest.storage.memory import MemoryStore
    from learnquest.storage.postgres import PostgresStore

logger = get_logger(__name__)
audit = get_audit_logger()

ACCESS_TOKEN_TYPE = "access"
VERIFY_LINK_TOKEN_TYPE = "verify"


@dataclass
class AccessToken:
    token: str
    expires_at: datetime
    jti: str


@dataclass
class TokenPair:
    access: AccessToken
    refresh: RefreshToken
    user: User


class TokenIssuer:
    """Mints and checks HS256 access tokens and opaque single-use refresh tokens."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    @property
    def default_access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    # JWT encoding ----------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, *, verify_exp: bool = True
    ) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if verify_exp and exp_ts <= self._now().timestamp():
            return None
        return payload

    # access tokens ---------------------------------------------------------

    def issue_access_token(
        self,
        user_id: int,
        email: str,
        name: str,
        role: UserRole | str,
        ttl: Optional[timedelta] = None,
    ) -> AccessToken:
        now = self._now()
        expires_at = now + (ttl or self.default_access_ttl)
        jti = str(uuid.uuid4())
        payload = {
            "sub": str(user_id),
            "email": email,
            "name": name,
            "role": UserRole(role).value,
            "jti": jti,
            "typ": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return AccessToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            jti=jti,
        )

    def validate(self, token: str) -> dict[str, Any]:
        """Return the claims of a signature-valid, unexpired, non-blacklisted access token."""
        payload = self._decode_jwt(token)
        if not payload or payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidOrExpiredTokenError()
        if self.store.is_token_blacklisted(token):
            logger.info("access_token_blacklisted", jti=payload.get("jti"))
            raise InvalidOrExpiredTokenError()
        return payload

    def revoke(self, token: str) -> bool:
        """Blacklist ``token`` until it expires. Returns False if it had already expired."""
        payload = self._decode_jwt(token, verify_exp=False)
        if not payload or payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidOrExpiredTokenError("Logout failed.")
        expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        if expires_at <= self._now():
            return False
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            user_id = None
        with self.store.transaction():
            self.store.add_blacklist_token(token, expires_at, user_id=user_id)
        audit.info("logout", user_id=user_id, jti=payload.get("jti"))
        return True

    # refresh tokens --------------------------------------------------------

    def issue_refresh_token(self, user_id: int) -> RefreshToken:
        expires_at = self._now() + timedelta(days=self.settings.refresh_token_ttl_days)
        return self.store.add_refresh_token(user_id, generate_secure_token(32), expires_at)

    def issue_token_pair(self, user: User, ttl: Optional[timedelta] = None) -> TokenPair:
        access = self.issue_access_token(user.id, user.email, user.full_name, user.role, ttl)
        with self.store.transaction():
            refresh = self.issue_refresh_token(user.id)
        return TokenPair(access=access, refresh=refresh, user=user)

    def redeem_refresh_token(self, token: str, ttl: Optional[timedelta] = None) -> TokenPair:
        """Exchange a refresh token for a new pair. Each refresh token works once."""
        now = self._now()
        user: Optional[User] = None
        refresh: Optional[RefreshToken] = None
        with self.store.transaction():
            record = self.store.consume_refresh_token(token, now)
            if record is not None:
                user = self.store.get_user(record.user_id)
                if user and not user.is_deleted and user.is_active:
                    refresh = self.issue_refresh_token(user.id)
        if record is None:
            raise InvalidOrExpiredTokenError("Invalid or expired refresh token.")
        if refresh is None or user is None:
            logger.warning("refresh_token_owner_unusable", user_id=record.user_id)
            raise InvalidOrExpiredTokenError("Invalid or expired refresh token.")
        access = self.issue_access_token(user.id, user.email, user.full_name, user.role, ttl)
        audit.info("token_refreshed", user_id=user.id)
        return TokenPair(access=access, refresh=refresh, user=user)

    # verification links ----------------------------------------------------

    def issue_verification_link_token(
        self, email: str, code: str, ttl: Optional[timedelta] = None
    ) -> str:
        now = self._now()
        ttl = ttl or timedelta(minutes=self.settings.verification_code_ttl_minutes)
        return self._encode_jwt(
            {
                "typ": VERIFY_LINK_TOKEN_TYPE,
                "email": email,
                "code": code,
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
            }
        )

    def read_verification_link_token(self, token: str) -> tuple[str, str]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("typ") != VERIFY_LINK_TOKEN_TYPE:
            raise InvalidOrExpiredTokenError("Invalid or expired verification link.")
        email, code = payload.get("email"), payload.get("code")
        if not isinstance(email, str) or not isinstance(code, str):
            raise InvalidOrExpiredTokenError("Invalid or expired verification link.")
        return email, code

    def purge_expired(self) -> int:
        now = self._now()
        with self.store.transaction():
            removed = self.store.purge_expired_blacklist(now)
            removed += self.store.purge_expired_refresh_tokens(now)
        if removed:
            logger.info("expired_tokens_purged", removed=removed)
        return removed
