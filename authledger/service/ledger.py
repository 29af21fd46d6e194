from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from authledger.logging import get_logger
from authledger.service.errors import InvalidTokenError, TokenReusedError
from authledger.service.tokens import TokenClaims, TokenPurpose, TokenSigner
from authledger.storage.models import (
    RotationOutcome,
    Session,
    SessionContext,
    utcnow,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def rotate_session(
        self, session_id: str, principal_id: str, successor: Session, now: datetime
    ) -> Tuple[RotationOutcome, Optional[Session]]:
        ...

    def revoke_session(self, session_id: str, now: datetime, reason: str = "logout") -> bool:
        ...

    def revoke_all_sessions(
        self,
        principal_id: str,
        now: datetime,
        reason: str = "revoke_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        ...

    def list_sessions(self, principal_id: str, now: datetime) -> List[Session]:
        ...


@dataclass(frozen=True)
class OpenedSession:
    session: Session
    refresh_token: str
    claims: TokenClaims


@dataclass(frozen=True)
class Redemption:
    consumed: Session
    successor: OpenedSession


class SessionLedger:
    """Refresh-token state machine: Active -> Revoked, or Active -> Expired.

    Each session row backs exactly one refresh token; the token's ``sid``
    claim is the row id. Redeeming rotates: the consumed row is revoked and
    its successor written in the same store operation.
    """

    def __init__(
        self,
        store: SessionStore,
        signer: TokenSigner,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self._clock = clock

    def _sign_refresh(
        self, session: Session, role: str, now: datetime
    ) -> OpenedSession:
        token, claims = self.signer.issue(
            session.principal_id,
            role,
            TokenPurpose.REFRESH,
            session.expires_at - now,
            session_id=session.id,
            token_id=session.id,
            now=now,
        )
        return OpenedSession(session=session, refresh_token=token, claims=claims)

    def open(
        self,
        principal_id: str,
        role: str,
        ttl: timedelta,
        context: Optional[SessionContext] = None,
    ) -> OpenedSession:
        now = self._clock()
        context = context or SessionContext()
        session = Session.new(
            principal_id,
            int(ttl.total_seconds() // 60),
            now,
            user_agent=context.user_agent,
            ip_addr=context.ip_addr,
            meta=context.meta(),
        )
        self.store.create_session(session)
        logger.info("session_opened", principal_id=principal_id, session_id=session.id)
        return self._sign_refresh(session, role, now)

    def redeem(
        self,
        refresh_token: str,
        ttl: timedelta,
        context: Optional[SessionContext] = None,
    ) -> Redemption:
        """Exchange a refresh token for a successor session.

        Raises ``InvalidTokenError`` for bad, expired or unknown tokens and
        for principals deleted since issue; raises ``TokenReusedError`` when
        the session was already revoked.
        """
        now = self._clock()
        claims = self.signer.verify(refresh_token, purpose=TokenPurpose.REFRESH, now=now)
        if claims is None or not claims.session_id:
            raise InvalidTokenError()
        previous = self.store.get_session(claims.session_id)
        if context is None and previous is not None:
            context = SessionContext(
                user_agent=previous.user_agent,
                ip_addr=previous.ip_addr,
                device=(previous.meta or {}).get("device"),
            )
        context = context or SessionContext()
        successor = Session.new(
            claims.subject,
            int(ttl.total_seconds() // 60),
            now,
            user_agent=context.user_agent,
            ip_addr=context.ip_addr,
            parent_id=claims.session_id,
            meta=context.meta(),
        )
        outcome, consumed = self.store.rotate_session(
            claims.session_id, claims.subject, successor, now
        )
        if outcome is RotationOutcome.REVOKED:
            logger.warning(
                "refresh_token_replayed",
                principal_id=claims.subject,
                session_id=claims.session_id,
                revoked_reason=consumed.revoked_reason if consumed else None,
            )
            raise TokenReusedError()
        if outcome is not RotationOutcome.ROTATED or consumed is None:
            logger.info(
                "refresh_token_rejected",
                principal_id=claims.subject,
                session_id=claims.session_id,
                outcome=outcome.value,
            )
            raise InvalidTokenError()
        logger.info(
            "session_rotated",
            principal_id=claims.subject,
            session_id=consumed.id,
            successor_id=successor.id,
        )
        return Redemption(consumed=consumed, successor=self._sign_refresh(successor, claims.role, now))

    def revoke(self, session_id: str, reason: str = "logout") -> bool:
        """Revoke one session; revoking an unknown or revoked session is a no-op."""
        changed = self.store.revoke_session(session_id, self._clock(), reason)
        if changed:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return changed

    def revoke_all(
        self,
        principal_id: str,
        reason: str = "revoke_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        count = self.store.revoke_all_sessions(
            principal_id, self._clock(), reason, except_session_id=except_session_id
        )
        logger.info(
            "sessions_revoked",
            principal_id=principal_id,
            count=count,
            reason=reason,
            kept_session_id=except_session_id,
        )
        return count

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def list_active(self, principal_id: str) -> List[Session]:
        return self.store.list_sessions(principal_id, self._clock())
