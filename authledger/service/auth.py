from __future__ import annotations

import asyncio
import re
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from authledger.config import Role, RolePolicy, Settings
from authledger.logging import get_logger, token_prefix
from authledger.service.email import Notifier
from authledger.service.errors import (
    AccountLockedError,
    ConflictError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    TokenReusedError,
    ValidationError,
)
from authledger.service.ledger import OpenedSession, SessionLedger
from authledger.service.lockout import LockoutPolicy
from authledger.service.passwords import PasswordHasher
from authledger.service.rate_limit import RateLimiter
from authledger.service.tokens import TokenClaims, TokenPair, TokenPurpose, TokenSigner
from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import (
    LoginEvent,
    Principal,
    Session,
    SessionContext,
    SingleUseToken,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CredentialStore(Protocol):
    def create_principal(
        self,
        role: str,
        email: str,
        password_hash: str,
        *,
        profile: Optional[Dict] = None,
        email_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, role: str, email: str) -> Optional[Principal]: ...

    def update_password_hash(self, principal_id: str, password_hash: str, now: datetime) -> bool: ...

    def set_email_verified(self, principal_id: str, now: datetime) -> bool: ...

    def register_login_failure(self, principal_id: str, now: datetime, window: timedelta) -> int: ...

    def reset_login_failures(self, principal_id: str, now: datetime) -> None: ...

    def set_lock(self, principal_id: str, until: datetime, now: datetime) -> None: ...

    def mark_deleted(self, principal_id: str, now: datetime) -> bool: ...

    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken: ...

    def consume_single_use_token(
        self, token_id: str, purpose: str, now: datetime
    ) -> Optional[SingleUseToken]: ...

    def consume_outstanding_tokens(self, principal_id: str, purpose: str, now: datetime) -> int: ...

    def record_login_event(self, event: LoginEvent) -> None: ...

    def list_login_events(self, principal_id: str, limit: int = 50) -> List[LoginEvent]: ...


@dataclass
class AuthResult:
    principal: Principal
    tokens: TokenPair


@dataclass
class AuthContext:
    """Identity resolved from a bearer access token."""

    principal: Principal
    session_id: str
    claims: TokenClaims

    @property
    def principal_id(self) -> str:
        return self.principal.id

    @property
    def role(self) -> str:
        return self.principal.role


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def validate_password(password: str) -> None:
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"password must be at most {PASSWORD_MAX_LENGTH} characters",
            detail={"field": "password"},
        )


class AuthEngine:
    """Registration, login, refresh rotation, recovery and revocation for every role.

    One engine serves all roles; per-role behavior comes from the
    ``RolePolicy`` that ``settings.policy_for`` resolves. Business failures
    are raised as ``ServiceError`` subclasses. Storage outages surface as
    ``StorageUnavailable`` from the store untouched.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        signer: TokenSigner,
        ledger: SessionLedger,
        *,
        hasher: Optional[PasswordHasher] = None,
        notifier: Optional[Notifier] = None,
        reset_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
        notify_timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer
        self.ledger = ledger
        self.hasher = hasher or PasswordHasher()
        self.notifier = notifier
        self.reset_limiter = reset_limiter
        self._clock = clock
        self.notify_timeout_seconds = notify_timeout_seconds
        self._dummy_hash: Optional[str] = None
        self._pending_notifications: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    def _policy(self, role: str | Role) -> Tuple[str, RolePolicy]:
        try:
            policy = self.settings.policy_for(role)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "role"}) from exc
        return Role(role).value, policy

    def _dummy_digest(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
        return self._dummy_hash

    # registration
    async def register(
        self,
        role: str | Role,
        email: str,
        password: str,
        *,
        profile: Optional[Dict[str, Any]] = None,
        context: Optional[SessionContext] = None,
        defer: Optional[Callable[..., Any]] = None,
    ) -> AuthResult:
        role_value, policy = self._policy(role)
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        validate_password(password)
        profile = self._validate_profile(profile, policy)
        now = self._now()
        try:
            principal = self.store.create_principal(
                role_value,
                email,
                self.hasher.hash(password),
                profile=profile,
                now=now,
            )
        except ConstraintViolation as exc:
            logger.info("registration_conflict", role=role_value)
            raise ConflictError("email already registered", detail=exc.detail) from exc
        tokens = self._open_session(principal, policy, context)
        logger.info("principal_registered", principal_id=principal.id, role=role_value)
        if policy.send_verification_on_register:
            token = self._issue_single_use(principal, TokenPurpose.VERIFY, policy.verify_token_ttl_minutes)
            self._notify(principal.email, TokenPurpose.VERIFY, token, defer)
        return AuthResult(principal=principal, tokens=tokens)

    @staticmethod
    def _validate_profile(profile: Optional[Dict[str, Any]], policy: RolePolicy) -> Dict[str, Any]:
        profile = dict(profile or {})
        unknown = sorted(set(profile) - set(policy.profile_fields))
        if unknown:
            raise ValidationError(
                "unsupported profile fields", detail={"fields": unknown}
            )
        bad_values = sorted(
            key for key, value in profile.items() if value is not None and not isinstance(value, str)
        )
        if bad_values:
            raise ValidationError("profile values must be strings", detail={"fields": bad_values})
        return profile

    # login
    async def login(
        self,
        role: str | Role,
        email: str,
        password: str,
        *,
        context: Optional[SessionContext] = None,
    ) -> AuthResult:
        role_value, policy = self._policy(role)
        email = normalize_email(email)
        now = self._now()
        principal = self.store.get_principal_by_email(role_value, email)
        if principal is None:
            # Same hashing cost as a wrong password for an existing account
            self.hasher.verify(password, self._dummy_digest())
            self._record_login(role_value, "invalid_credentials", None, context, now)
            logger.info("login_failed", role=role_value, reason="unknown_email")
            raise InvalidCredentialsError()

        lockout = LockoutPolicy.from_role_policy(policy)
        decision = lockout.check(principal, now)
        if decision.locked:
            self._record_login(role_value, "locked", principal.id, context, now)
            logger.warning(
                "login_refused_locked",
                principal_id=principal.id,
                locked_until=decision.locked_until.isoformat(),
            )
            raise AccountLockedError(decision.locked_until, now)

        if not self.hasher.verify(password, principal.password_hash):
            failures = self.store.register_login_failure(principal.id, now, lockout.window)
            decision = lockout.after_failure(failures, now)
            if decision.locked:
                self.store.set_lock(principal.id, decision.locked_until, now)
                self._record_login(role_value, "locked", principal.id, context, now)
                logger.warning(
                    "account_locked",
                    principal_id=principal.id,
                    failures=failures,
                    locked_until=decision.locked_until.isoformat(),
                )
                raise AccountLockedError(decision.locked_until, now)
            self._record_login(role_value, "invalid_credentials", principal.id, context, now)
            logger.info("login_failed", principal_id=principal.id, failures=failures)
            raise InvalidCredentialsError()

        # A concurrent failure may have locked the account while we hashed
        current = self.store.get_principal(principal.id)
        if current is None:
            self._record_login(role_value, "invalid_credentials", principal.id, context, now)
            raise InvalidCredentialsError()
        decision = lockout.check(current, now)
        if decision.locked:
            self._record_login(role_value, "locked", principal.id, context, now)
            logger.warning(
                "login_refused_locked",
                principal_id=principal.id,
                locked_until=decision.locked_until.isoformat(),
            )
            raise AccountLockedError(decision.locked_until, now)

        self.store.reset_login_failures(principal.id, now)
        if self.hasher.needs_rehash(principal.password_hash):
            self.store.update_password_hash(principal.id, self.hasher.hash(password), now)
            logger.info("password_rehashed", principal_id=principal.id)
        if policy.require_verified_email and not principal.email_verified:
            self._record_login(role_value, "unverified", principal.id, context, now)
            raise EmailNotVerifiedError("email address not verified")

        principal.failed_login_count = 0
        principal.failed_window_started_at = None
        principal.locked_until = None
        principal.last_login_at = now
        tokens = self._open_session(principal, policy, context)
        self._record_login(role_value, "success", principal.id, context, now)
        logger.info("login_succeeded", principal_id=principal.id, session_id=tokens.session_id)
        return AuthResult(principal=principal, tokens=tokens)

    def _record_login(
        self,
        role: str,
        outcome: str,
        principal_id: Optional[str],
        context: Optional[SessionContext],
        now: datetime,
    ) -> None:
        self.store.record_login_event(
            LoginEvent.new(
                role,
                outcome,
                now,
                principal_id=principal_id,
                ip_addr=context.ip_addr if context else None,
                user_agent=context.user_agent if context else None,
            )
        )

    # token issuance
    def _open_session(
        self, principal: Principal, policy: RolePolicy, context: Optional[SessionContext]
    ) -> TokenPair:
        opened = self.ledger.open(
            principal.id,
            principal.role,
            timedelta(minutes=policy.refresh_token_ttl_minutes),
            context,
        )
        return self._pair_for(principal, opened, policy)

    def _pair_for(
        self, principal: Principal, opened: OpenedSession, policy: RolePolicy
    ) -> TokenPair:
        now = self._now()
        access_ttl = min(
            timedelta(minutes=policy.access_token_ttl_minutes),
            opened.claims.expires_at - now,
        )
        access, access_claims = self.signer.issue(
            principal.id,
            principal.role,
            TokenPurpose.ACCESS,
            access_ttl,
            session_id=opened.session.id,
            now=now,
        )
        return TokenPair(
            access=access,
            refresh=opened.refresh_token,
            expired_at=min(access_claims.expires_at, opened.claims.expires_at),
            refreshable_until=opened.claims.expires_at,
            session_id=opened.session.id,
        )

    # refresh
    async def refresh(
        self,
        refresh_token: str,
        *,
        role: Optional[str | Role] = None,
        context: Optional[SessionContext] = None,
    ) -> AuthResult:
        claims = self.signer.verify(refresh_token, purpose=TokenPurpose.REFRESH, now=self._now())
        if claims is None or (role is not None and claims.role != Role(role).value):
            logger.info("refresh_token_invalid", token_prefix=token_prefix(refresh_token))
            raise InvalidTokenError()
        try:
            _, policy = self._policy(claims.role)
        except ValidationError as exc:
            raise InvalidTokenError() from exc
        try:
            redemption = self.ledger.redeem(
                refresh_token,
                timedelta(minutes=policy.refresh_token_ttl_minutes),
                context,
            )
        except TokenReusedError:
            revoked = 0
            if self.settings.revoke_sessions_on_reuse:
                revoked = self.ledger.revoke_all(claims.subject, "reuse_detected")
            logger.warning(
                "refresh_token_reuse_detected",
                principal_id=claims.subject,
                session_id=claims.session_id,
                sessions_revoked=revoked,
            )
            raise
        principal = self.store.get_principal(claims.subject)
        if principal is None:
            self.ledger.revoke(redemption.successor.session.id, "principal_gone")
            raise InvalidTokenError()
        tokens = self._pair_for(principal, redemption.successor, policy)
        return AuthResult(principal=principal, tokens=tokens)

    # access tokens
    async def authenticate(
        self, access_token: str, *, role: Optional[str | Role] = None
    ) -> AuthContext:
        claims = self.signer.verify(access_token, purpose=TokenPurpose.ACCESS, now=self._now())
        if claims is None or not claims.session_id:
            raise InvalidTokenError()
        if role is not None and claims.role != Role(role).value:
            raise InvalidTokenError()
        principal = self.store.get_principal(claims.subject)
        if principal is None or principal.role != claims.role:
            raise InvalidTokenError()
        session = self.ledger.get(claims.session_id)
        if (
            session is None
            or session.principal_id != principal.id
            or not session.is_active(self._now())
        ):
            raise InvalidTokenError("session is no longer active")
        return AuthContext(principal=principal, session_id=session.id, claims=claims)

    # single-use tokens
    def _issue_single_use(self, principal: Principal, purpose: TokenPurpose, ttl_minutes: int) -> str:
        now = self._now()
        token_id = secrets.token_urlsafe(32)
        token, claims = self.signer.issue(
            principal.id,
            principal.role,
            purpose,
            timedelta(minutes=ttl_minutes),
            token_id=token_id,
            now=now,
        )
        self.store.create_single_use_token(
            SingleUseToken(
                id=token_id,
                principal_id=principal.id,
                purpose=purpose.value,
                created_at=now,
                expires_at=claims.expires_at,
            )
        )
        return token

    def _consume_single_use(
        self, token: str, purpose: TokenPurpose, *, role: Optional[str | Role] = None
    ) -> Principal:
        now = self._now()
        claims = self.signer.verify(token, purpose=purpose, now=now)
        if claims is None:
            logger.warning(f"{purpose.value}_token_invalid", token_prefix=token_prefix(token))
            raise InvalidTokenError()
        # Checked before consumption so a wrong role path leaves the token usable
        if role is not None and claims.role != Role(role).value:
            logger.warning(f"{purpose.value}_token_role_mismatch", principal_id=claims.subject)
            raise InvalidTokenError()
        record = self.store.consume_single_use_token(claims.token_id, purpose.value, now)
        if record is None or record.principal_id != claims.subject:
            logger.warning(f"{purpose.value}_token_unusable", principal_id=claims.subject)
            raise InvalidTokenError()
        principal = self.store.get_principal(record.principal_id)
        if principal is None:
            raise InvalidTokenError()
        return principal

    def _notify(
        self,
        email: str,
        purpose: TokenPurpose,
        token: str,
        defer: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Queue delivery so the caller never waits on the notifier."""
        if defer is not None:
            defer(self._deliver, email, purpose, token)
            return
        task = asyncio.get_running_loop().create_task(self._deliver(email, purpose, token))
        self._pending_notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("notification_task_failed", error=str(task.exception()))

    async def drain_notifications(self) -> None:
        """Wait for queued notifications; called on shutdown."""
        pending = list(self._pending_notifications)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _deliver(self, email: str, purpose: TokenPurpose, token: str) -> None:
        if self.notifier is None:
            logger.info("notifier_not_configured", purpose=purpose.value)
            return
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(self.notifier.send, email, purpose.value, token),
                self.notify_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("notifier_timeout", purpose=purpose.value, timeout=self.notify_timeout_seconds)
            return
        except Exception as exc:
            logger.error(
                "notifier_failed",
                purpose=purpose.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if delivered is False:
            logger.warning("notifier_rejected", purpose=purpose.value)

    # password reset
    async def request_password_reset(
        self,
        role: str | Role,
        email: str,
        *,
        defer: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Start a reset; the outcome is identical whether or not the email exists.

        Delivery is queued (``defer`` or a background task) so the response
        time does not reveal whether a message was sent.
        """
        role_value, policy = self._policy(role)
        email = normalize_email(email)
        if self.reset_limiter is not None:
            decision = await self.reset_limiter.check_window(
                f"password_reset:{role_value}:{email}", policy.reset_requests_per_hour, 3600
            )
            if not decision.allowed:
                logger.warning("password_reset_rate_limited", role=role_value)
                raise RateLimitedError(
                    "too many reset requests",
                    detail={"retry_after_seconds": decision.reset_seconds},
                )
        principal = self.store.get_principal_by_email(role_value, email)
        if principal is None:
            logger.info("password_reset_unknown_email", role=role_value)
            return
        token = self._issue_single_use(principal, TokenPurpose.RESET, policy.reset_token_ttl_minutes)
        logger.info("password_reset_requested", principal_id=principal.id)
        self._notify(principal.email, TokenPurpose.RESET, token, defer)

    async def confirm_password_reset(
        self, reset_token: str, new_password: str, *, role: Optional[str | Role] = None
    ) -> int:
        """Set a new password and revoke every session; returns the number revoked."""
        validate_password(new_password)
        principal = self._consume_single_use(reset_token, TokenPurpose.RESET, role=role)
        now = self._now()
        self.store.update_password_hash(principal.id, self.hasher.hash(new_password), now)
        self.store.consume_outstanding_tokens(principal.id, TokenPurpose.RESET.value, now)
        revoked = self.ledger.revoke_all(principal.id, "password_reset")
        logger.info("password_reset_completed", principal_id=principal.id, sessions_revoked=revoked)
        return revoked

    # email verification
    async def request_email_verification(
        self, principal_id: str, *, defer: Optional[Callable[..., Any]] = None
    ) -> bool:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        if principal.email_verified:
            return False
        _, policy = self._policy(principal.role)
        token = self._issue_single_use(principal, TokenPurpose.VERIFY, policy.verify_token_ttl_minutes)
        self._notify(principal.email, TokenPurpose.VERIFY, token, defer)
        logger.info("email_verification_requested", principal_id=principal.id)
        return True

    async def confirm_email_verification(
        self, verify_token: str, *, role: Optional[str | Role] = None
    ) -> Principal:
        principal = self._consume_single_use(verify_token, TokenPurpose.VERIFY, role=role)
        self.store.set_email_verified(principal.id, self._now())
        principal.email_verified = True
        logger.info("email_verified", principal_id=principal.id)
        return principal

    # password change
    async def change_password(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password and revoke every other session; returns the number revoked."""
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        if not self.hasher.verify(current_password, principal.password_hash):
            logger.info("password_change_rejected", principal_id=principal_id)
            raise InvalidCredentialsError("current password is incorrect")
        validate_password(new_password)
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )
        self.store.update_password_hash(principal_id, self.hasher.hash(new_password), self._now())
        revoked = self.ledger.revoke_all(
            principal_id, "password_change", except_session_id=keep_session_id
        )
        logger.info("password_changed", principal_id=principal_id, sessions_revoked=revoked)
        return revoked

    # sessions
    async def logout(self, session_id: str, *, principal_id: Optional[str] = None) -> bool:
        if principal_id is not None:
            session = self.ledger.get(session_id)
            if session is not None and session.principal_id != principal_id:
                raise ForbiddenError("session belongs to another principal")
        return self.ledger.revoke(session_id, "logout")

    async def logout_all(
        self, principal_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        return self.ledger.revoke_all(
            principal_id, "revoke_all", except_session_id=except_session_id
        )

    async def list_sessions(self, principal_id: str) -> List[Session]:
        return self.ledger.list_active(principal_id)

    async def login_history(self, principal_id: str, limit: int = 50) -> List[LoginEvent]:
        return self.store.list_login_events(principal_id, limit=max(1, min(limit, 500)))

    # administration
    async def get_principal(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    async def erase_principal(self, principal_id: str) -> int:
        """Soft-delete a principal and revoke its sessions; returns the number revoked."""
        if not self.store.mark_deleted(principal_id, self._now()):
            raise NotFoundError("principal not found")
        revoked = self.ledger.revoke_all(principal_id, "erased")
        logger.info("principal_erased", principal_id=principal_id, sessions_revoked=revoked)
        return revoked
