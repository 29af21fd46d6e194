from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    id: str
    role: str
    email: str
    password_hash: str = field(repr=False)
    email_verified: bool = False
    failed_login_count: int = 0
    failed_window_started_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    profile: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Session:
    """One row per issued refresh token."""

    id: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    parent_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        principal_id: str,
        ttl_minutes: int,
        now: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        parent_id: str | None = None,
        meta: Dict | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            parent_id=parent_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class SessionContext:
    """Informational device metadata attached to a session."""

    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    device: Optional[str] = None

    def meta(self) -> Dict | None:
        return {"device": self.device} if self.device else None


@dataclass
class SingleUseToken:
    """Ledger row backing a reset or email-verification token."""

    id: str
    principal_id: str
    purpose: str
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None


@dataclass
class LoginEvent:
    id: str
    role: str
    outcome: str
    created_at: datetime
    principal_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        role: str,
        outcome: str,
        now: datetime,
        *,
        principal_id: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "LoginEvent":
        return cls(
            id=str(uuid.uuid4()),
            role=role,
            outcome=outcome,
            created_at=now,
            principal_id=principal_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )


class RotationOutcome(str, Enum):
    """Result of an atomic refresh-token redeem attempt."""

    ROTATED = "rotated"
    MISSING = "missing"
    REVOKED = "revoked"
    EXPIRED = "expired"
    PRINCIPAL_GONE = "principal_gone"
