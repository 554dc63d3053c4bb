from __future__ import annotations

import hmac
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Optional, Protocol
from urllib.parse import quote

from learnquest.config import Settings
from learnquest.logging import get_audit_logger, get_logger, mask_email
from learnquest.service.cookies import (
    REMEMBER_EMAIL_COOKIE,
    REMEMBER_PASSWORD_COOKIE,
    VERIFICATION_EMAIL_COOKIE,
    CookieJar,
)
from learnquest.service.email_queue import EmailQueue
from learnquest.service.errors import (
    AccountDeletedError,
    AlreadyExistsError,
    ConflictError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    InvalidOrExpiredTokenError,
    NotActivatedError,
    NotVerifiedError,
    ProtectedAccountError,
    ResendCooldownError,
    TooManyAttemptsError,
    UserNotFoundError,
    VerificationContextMissingError,
    VerificationPendingError,
    WeakPasswordError,
)
from learnquest.service.lockout import FailedLoginTracker
from learnquest.service.passwords import PasswordHasher, password_problems
from learnquest.service.tokens import TokenIssuer
from learnquest.storage.errors import ConstraintViolation
from learnquest.storage.models import AccountVerification, User, UserRole, UserVisit

logger = get_logger(__name__)
audit = get_audit_logger()


class AccountStore(Protocol):
    def transaction(self) -> ContextManager: ...

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
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]: ...

    def set_user_deleted(self, user_id: int, is_deleted: bool) -> Optional[User]: ...

    def update_password_hash(self, user_id: int, password_hash: str) -> Optional[User]: ...

    def add_verification(
        self, user_id: int, code: str, issued_at: datetime, *, checked_ok: bool = False
    ) -> AccountVerification: ...

    def get_latest_verification(self, user_id: int) -> Optional[AccountVerification]: ...

    def update_verification(
        self, verification: AccountVerification
    ) -> AccountVerification: ...

    def record_visit(self, user_id: int, visited_at: datetime) -> UserVisit: ...


@dataclass
class AuthResult:
    """Bearer token plus what the client needs to use it.

    ``refresh_token`` is None for auto-login, which only re-issues an access token.
    """

    token: str
    expires_at: datetime
    role: str
    user_id: int
    refresh_token: Optional[str] = None


def _wait_minutes(remaining: timedelta) -> int:
    return max(1, math.ceil(remaining.total_seconds() / 60))


class AccountService:
    """Signup, verification, sign-in, token refresh and password reset flows."""

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        tracker: FailedLoginTracker,
        email_queue: EmailQueue,
        tokens: TokenIssuer,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tracker = tracker
        self.email_queue = email_queue
        self.tokens = tokens
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    @property
    def _code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.verification_code_ttl_minutes)

    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/{path}?token={quote(token)}"

    def _check_password_policy(self, password: str) -> None:
        if not self.settings.enforce_password_policy:
            return
        problems = password_problems(password)
        if problems:
            raise WeakPasswordError(problems)

    def _set_verification_cookie(self, cookies: Optional[CookieJar], email: str) -> None:
        if cookies is None:
            return
        cookies.set(
            VERIFICATION_EMAIL_COOKIE,
            email,
            timedelta(minutes=self.settings.verification_cookie_minutes),
        )

    def _rotate_code(
        self, user_id: int, latest: Optional[AccountVerification]
    ) -> AccountVerification:
        """Issue a fresh code on the latest verification record, or a first record."""
        code = self.hasher.generate_code()
        now = self._now()
        if latest is None:
            return self.store.add_verification(user_id, code, now)
        latest.code = code
        latest.issued_at = now
        latest.checked_ok = False
        return self.store.update_verification(latest)

    def _code_matches(
        self,
        verification: Optional[AccountVerification],
        code: str,
        *,
        allow_consumed: bool = False,
    ) -> bool:
        if verification is None or not code:
            return False
        if verification.checked_ok and not allow_consumed:
            return False
        if self._now() - verification.issued_at > self._code_ttl:
            return False
        return hmac.compare_digest(code.encode(), verification.code.encode())

    def _require_user_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user:
            raise UserNotFoundError()
        return user

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    # signup and verification -----------------------------------------------

    async def signup(
        self,
        email: str,
        password: str,
        full_name: str = "",
        cookies: Optional[CookieJar] = None,
    ) -> User:
        """Register a new, inactive account and email it a verification code.

        A repeat signup for an unverified address re-sends a code (subject to
        the signup resend interval) and still raises, so callers should tell
        the user to check their email.
        """
        existing = self.store.get_user_by_email(email)
        if existing:
            latest = self.store.get_latest_verification(existing.id)
            if latest and latest.checked_ok:
                raise AlreadyExistsError()
            if latest:
                interval = timedelta(minutes=self.settings.signup_resend_interval_minutes)
                elapsed = self._now() - latest.issued_at
                if elapsed < interval:
                    raise ResendCooldownError(_wait_minutes(interval - elapsed))
            with self.store.transaction():
                verification = self._rotate_code(existing.id, latest)
            self.email_queue.enqueue_resend(
                existing.email, existing.full_name, verification.code
            )
            self._set_verification_cookie(cookies, existing.email)
            logger.info("signup_repeat_code_resent", user_id=existing.id)
            raise VerificationPendingError()

        self._check_password_policy(password)
        password_hash = self.hasher.hash(password)
        code = self.hasher.generate_code()
        try:
            with self.store.transaction():
                user = self.store.create_user(email, full_name, password_hash)
                self.store.add_verification(user.id, code, self._now())
        except ConstraintViolation as exc:
            # lost a race with a concurrent signup for the same address
            raise AlreadyExistsError("User already exists.") from exc

        link = self._link("verify", self.tokens.issue_verification_link_token(email, code))
        self.email_queue.enqueue_verification(email, full_name, code, link)
        self._set_verification_cookie(cookies, email)
        logger.info("signup_completed", user_id=user.id, email=mask_email(email))
        return user

    async def _complete_verification(self, email: str, code: str) -> User:
        user = self._require_user_by_email(email)
        with self.store.transaction():
            latest = self.store.get_latest_verification(user.id)
            if not self._code_matches(latest, code):
                logger.info("verification_code_rejected", user_id=user.id)
                raise InvalidOrExpiredCodeError()
            latest.checked_ok = True
            self.store.update_verification(latest)
            user = self.store.set_user_active(user.id, True) or user
        self.email_queue.enqueue_welcome(user.email, user.full_name)
        logger.info("account_verified", user_id=user.id)
        return user

    async def verify(self, code: str, cookies: CookieJar) -> User:
        email = cookies.get(VERIFICATION_EMAIL_COOKIE)
        if not email:
            raise VerificationContextMissingError()
        user = await self._complete_verification(email, code)
        cookies.delete(VERIFICATION_EMAIL_COOKIE)
        return user

    async def verify_by_link(self, token: str) -> User:
        """Verify using the signed link embedded in the verification email."""
        try:
            email, code = self.tokens.read_verification_link_token(token)
        except InvalidOrExpiredTokenError as exc:
            raise InvalidOrExpiredCodeError() from exc
        return await self._complete_verification(email, code)

    async def resend_verification(self, cookies: CookieJar) -> None:
        email = cookies.get(VERIFICATION_EMAIL_COOKIE)
        if not email:
            raise VerificationContextMissingError()
        user = self._require_user_by_email(email)
        latest = self.store.get_latest_verification(user.id)
        if latest and latest.checked_ok:
            raise AlreadyExistsError("Account is already verified.")
        if latest:
            cooldown = timedelta(minutes=self.settings.resend_cooldown_minutes)
            elapsed = self._now() - latest.issued_at
            if elapsed < cooldown:
                raise ResendCooldownError(_wait_minutes(cooldown - elapsed))
        with self.store.transaction():
            verification = self._rotate_code(user.id, latest)
        self.email_queue.enqueue_resend(user.email, user.full_name, verification.code)
        self._set_verification_cookie(cookies, user.email)
        logger.info("verification_code_resent", user_id=user.id)

    # sign-in ---------------------------------------------------------------

    def _ensure_verified(self, user: User) -> None:
        latest = self.store.get_latest_verification(user.id)
        if latest and latest.checked_ok:
            return
        with self.store.transaction():
            verification = self._rotate_code(user.id, latest)
        self.email_queue.enqueue_resend(user.email, user.full_name, verification.code)
        raise NotVerifiedError()

    def _ensure_usable(self, user: User) -> None:
        if user.is_deleted:
            raise AccountDeletedError()
        if not user.is_active:
            raise NotActivatedError()

    def _check_credentials(self, user: Optional[User], password: str) -> bool:
        if user is None:
            return self.hasher.verify_dummy(password)
        return self.hasher.verify(password, user.password_hash)

    async def sign_in(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        cookies: Optional[CookieJar] = None,
    ) -> AuthResult:
        remaining = self.tracker.remaining_lockout(email)
        if remaining is not None:
            audit.warning("auth_attempt", email=mask_email(email), outcome="locked")
            raise TooManyAttemptsError(remaining)

        user = self.store.get_user_by_email(email)
        if not self._check_credentials(user, password):
            attempts = self.tracker.record_failure(email)
            audit.warning(
                "auth_attempt", email=mask_email(email), outcome="failed", attempts=attempts
            )
            if attempts >= self.tracker.max_attempts:
                self.tracker.lock(email)
                raise TooManyAttemptsError(self.tracker.lockout_duration)
            raise InvalidCredentialsError()

        self._ensure_verified(user)
        self._ensure_usable(user)

        self.tracker.reset(email)
        if remember_me:
            ttl = timedelta(days=self.settings.remember_me_token_ttl_days)
        else:
            ttl = timedelta(minutes=self.settings.signin_token_ttl_minutes)
        with self.store.transaction():
            self.store.record_visit(user.id, self._now())
            pair = self.tokens.issue_token_pair(user, ttl)

        if remember_me and cookies is not None:
            # plaintext password in a cookie; kept for auto_login compatibility
            max_age = timedelta(days=self.settings.remember_me_cookie_days)
            cookies.set(REMEMBER_EMAIL_COOKIE, user.email, max_age)
            cookies.set(REMEMBER_PASSWORD_COOKIE, password, max_age)

        audit.info(
            "auth_attempt",
            email=mask_email(email),
            outcome="succeeded",
            user_id=user.id,
            remember_me=remember_me,
        )
        return AuthResult(
            token=pair.access.token,
            expires_at=pair.access.expires_at,
            role=user.role.value,
            user_id=user.id,
            refresh_token=pair.refresh.token,
        )

    async def refresh_token(self, token: str) -> AuthResult:
        pair = self.tokens.redeem_refresh_token(token)
        return AuthResult(
            token=pair.access.token,
            expires_at=pair.access.expires_at,
            role=pair.user.role.value,
            user_id=pair.user.id,
            refresh_token=pair.refresh.token,
        )

    async def auto_login(
        self,
        cookies: Optional[CookieJar] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> AuthResult:
        """Re-issue an access token from remember-me credentials.

        Failures here are not counted toward lockout and no visit is recorded.
        """
        if cookies is not None:
            email = email or cookies.get(REMEMBER_EMAIL_COOKIE)
            password = password or cookies.get(REMEMBER_PASSWORD_COOKIE)
        if not email or not password:
            raise InvalidCredentialsError()
        user = self.store.get_user_by_email(email)
        if not self._check_credentials(user, password):
            raise InvalidCredentialsError()
        self._ensure_verified(user)
        self._ensure_usable(user)
        access = self.tokens.issue_access_token(
            user.id,
            user.email,
            user.full_name,
            user.role,
            timedelta(minutes=self.settings.signin_token_ttl_minutes),
        )
        logger.info("auto_login_succeeded", user_id=user.id)
        return AuthResult(
            token=access.token,
            expires_at=access.expires_at,
            role=user.role.value,
            user_id=user.id,
        )

    async def logout(self, access_token: str) -> bool:
        return self.tokens.revoke(access_token)

    # password reset --------------------------------------------------------

    async def forget_password(self, email: str) -> None:
        """Email a reset code and link.

        The code is not stored; reset_password checks against the latest
        stored verification instead.
        """
        user = self._require_user_by_email(email)
        code = self.hasher.generate_code()
        link = self._link(
            "reset-password", self.tokens.issue_verification_link_token(user.email, code)
        )
        self.email_queue.enqueue_password_reset(user.email, user.full_name, code, link)
        audit.info("password_reset_requested", email=mask_email(email), user_id=user.id)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        user = self._require_user_by_email(email)
        self._check_password_policy(new_password)
        password_hash = self.hasher.hash(new_password)
        with self.store.transaction():
            latest = self.store.get_latest_verification(user.id)
            if not self._code_matches(latest, code, allow_consumed=True):
                raise InvalidOrExpiredCodeError()
            self.store.update_password_hash(user.id, password_hash)
            latest.checked_ok = True
            self.store.update_verification(latest)
        self.email_queue.enqueue_password_changed(user.email, user.full_name)
        audit.info("password_reset_completed", user_id=user.id)

    # side transitions ------------------------------------------------------

    def _notify_status(self, user: User, subject: str, body: str) -> None:
        self.email_queue.enqueue_custom(user.email, user.full_name, subject, body)

    async def deactivate(self, user_id: int) -> User:
        user = self._require_user(user_id)
        if user.is_system_protected:
            raise ProtectedAccountError()
        with self.store.transaction():
            user = self.store.set_user_active(user_id, False) or user
        self._notify_status(
            user, "Account Deactivated", "Your account has been deactivated by an administrator."
        )
        logger.info("account_deactivated", user_id=user_id)
        return user

    async def reactivate(self, user_id: int) -> User:
        user = self._require_user(user_id)
        if user.is_system_protected:
            raise ProtectedAccountError()
        with self.store.transaction():
            user = self.store.set_user_active(user_id, True) or user
        self._notify_status(user, "Account Activated", "Your account has been activated.")
        logger.info("account_reactivated", user_id=user_id)
        return user

    async def soft_delete(self, user_id: int) -> User:
        user = self._require_user(user_id)
        if user.is_system_protected:
            raise ProtectedAccountError("Cannot delete system-protected user.")
        if user.is_deleted:
            raise ConflictError("User is already deleted.")
        with self.store.transaction():
            user = self.store.set_user_deleted(user_id, True) or user
        self._notify_status(user, "Account Deleted", "Your account has been deleted.")
        logger.info("account_deleted", user_id=user_id)
        return user

    async def recover(self, user_id: int) -> User:
        user = self._require_user(user_id)
        if not user.is_deleted:
            raise ConflictError("User is not deleted.")
        with self.store.transaction():
            user = self.store.set_user_deleted(user_id, False) or user
        self._notify_status(user, "Account Restored", "Your account has been restored.")
        logger.info("account_recovered", user_id=user_id)
        return user
