from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authledger.storage.models import LoginEvent, Principal, Session

MAX_PROFILE_VALUE_LENGTH = 512

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "account_locked",
    "token_invalid",
    "token_reused",
    "email_not_verified",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_invisible(value: str) -> str:
    # Zero-width and bidi override characters
    invisible = {"\u200b", "\u200c", "\u200d", "\ufeff"}
    invisible.update(chr(c) for c in range(0x202A, 0x202F))
    invisible.update(chr(c) for c in range(0x2066, 0x206A))
    return unicodedata.normalize("NFKC", "".join(c for c in value if c not in invisible))


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    profile: Dict[str, Optional[str]] = Field(default_factory=dict)
    device: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _strip_invisible(value)

    @field_validator("profile")
    @classmethod
    def _bound_profile(cls, value: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        if len(value) > 32:
            raise ValueError("too many profile fields")
        for key, item in value.items():
            if item is not None and len(item) > MAX_PROFILE_VALUE_LENGTH:
                raise ValueError(f"profile field '{key}' is too long")
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    device: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _strip_invisible(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=4096)
    new_password: str = Field(..., max_length=1024)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)


class LogoutAllRequest(BaseModel):
    keep_current: bool = False


class PrincipalResponse(BaseModel):
    id: str
    role: str
    email: str
    email_verified: bool
    profile: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            role=principal.role,
            email=principal.email,
            email_verified=principal.email_verified,
            profile=principal.profile,
            created_at=principal.created_at,
            last_login_at=principal.last_login_at,
            locked_until=principal.locked_until,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expired_at: datetime
    refreshable_until: datetime
    session_id: str


class AuthResponse(BaseModel):
    principal: PrincipalResponse
    tokens: TokenPairResponse


class SessionResponse(BaseModel):
    id: str
    issued_at: datetime
    expires_at: datetime
    parent_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    device: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            issued_at=session.issued_at,
            expires_at=session.expires_at,
            parent_id=session.parent_id,
            user_agent=session.user_agent,
            ip_addr=session.ip_addr,
            device=(session.meta or {}).get("device"),
            current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class LoginEventResponse(BaseModel):
    id: str
    outcome: str
    created_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_event(cls, event: LoginEvent) -> "LoginEventResponse":
        return cls(
            id=event.id,
            outcome=event.outcome,
            created_at=event.created_at,
            ip_addr=event.ip_addr,
            user_agent=event.user_agent,
        )


class LoginHistoryResponse(BaseModel):
    items: List[LoginEventResponse]


class RevocationResponse(BaseModel):
    revoked: int


class AcceptedResponse(BaseModel):
    """Returned for requests whose outcome must not reveal account existence."""

    accepted: bool = True
