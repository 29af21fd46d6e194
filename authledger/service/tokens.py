from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Tuple

from authledger.logging import get_logger
from authledger.storage.models import utcnow

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"
    VERIFY = "verify"


@dataclass(frozen=True)
class SignerConfig:
    """Everything the signer needs; passed in explicitly, never read from globals."""

    secret: str
    issuer: str = "authledger"
    audience: str = "authledger-clients"
    leeway_seconds: int = 30

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("signing secret must not be empty")


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str
    purpose: TokenPurpose
    token_id: str
    issued_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access: str
    refresh: str
    expired_at: datetime
    refreshable_until: datetime
    session_id: str
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access,
            "refresh_token": self.refresh,
            "token_type": self.token_type,
            "expired_at": self.expired_at.isoformat(),
            "refreshable_until": self.refreshable_until.isoformat(),
            "session_id": self.session_id,
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 compact tokens carrying subject, role, purpose and expiry.

    Verification is self-contained. Whether a refresh, reset or verify
    token is still usable is a ledger question the caller must ask
    separately.
    """

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(self, config: SignerConfig) -> None:
        self._config = config
        self._key = config.secret.encode()

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(
        self,
        subject: str,
        role: str,
        purpose: TokenPurpose,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
        token_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        token, _ = self.issue(
            subject, role, purpose, ttl, session_id=session_id, token_id=token_id, now=now
        )
        return token

    def issue(
        self,
        subject: str,
        role: str,
        purpose: TokenPurpose,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
        token_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[str, TokenClaims]:
        """Sign a token and return it together with the claims it carries."""
        now = now or utcnow()
        issued_ts = int(now.timestamp())
        exp_ts = int((now + ttl).timestamp())
        claims = TokenClaims(
            subject=subject,
            role=role,
            purpose=TokenPurpose(purpose),
            token_id=token_id or str(uuid.uuid4()),
            issued_at=datetime.fromtimestamp(issued_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            session_id=session_id,
        )
        payload: dict[str, Any] = {
            "iss": self._config.issuer,
            "aud": self._config.audience,
            "sub": subject,
            "role": role,
            "purpose": claims.purpose.value,
            "jti": claims.token_id,
            "iat": issued_ts,
            "exp": exp_ts,
        }
        if session_id:
            payload["sid"] = session_id
        header_enc = _encode_segment(json.dumps(self._HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}", claims

    def verify(
        self,
        token: Any,
        *,
        purpose: Optional[TokenPurpose] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TokenClaims]:
        """Return the claims of a valid token, or ``None`` for anything else.

        Bad signatures, foreign issuers or audiences, malformed segments,
        expired tokens and (when ``purpose`` is given) tokens minted for a
        different purpose all yield ``None``. Nothing raises.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            return None
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(_decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("token_invalid_algorithm")
                return None
            if not hmac.compare_digest(
                self._signature(f"{header_b64}.{payload_b64}").encode(), sig_b64.encode()
            ):
                return None
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, binascii.Error, RecursionError):
            return None
        if not isinstance(payload, dict):
            return None
        return self._claims_from_payload(payload, purpose, now or utcnow())

    def _claims_from_payload(
        self, payload: dict[str, Any], purpose: Optional[TokenPurpose], now: datetime
    ) -> Optional[TokenClaims]:
        if payload.get("iss") != self._config.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self._config.audience in aud
        else:
            valid_aud = aud == self._config.audience
        if not valid_aud:
            return None
        try:
            token_purpose = TokenPurpose(payload.get("purpose"))
            exp_ts = int(payload["exp"])
            iat_ts = int(payload.get("iat", exp_ts))
            expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
            issued_at = datetime.fromtimestamp(iat_ts, tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
        if purpose is not None and token_purpose != purpose:
            return None
        if exp_ts <= now.timestamp() - self._config.leeway_seconds:
            return None
        subject, role, jti = payload.get("sub"), payload.get("role"), payload.get("jti")
        if not all(isinstance(value, str) and value for value in (subject, role, jti)):
            return None
        session_id = payload.get("sid")
        if session_id is not None and not isinstance(session_id, str):
            return None
        return TokenClaims(
            subject=subject,
            role=role,
            purpose=token_purpose,
            token_id=jti,
            issued_at=issued_at,
            expires_at=expires_at,
            session_id=session_id,
        )
