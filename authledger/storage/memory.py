from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from authledger.logging import get_logger
from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import (
    LoginEvent,
    Principal,
    RotationOutcome,
    Session,
    SingleUseToken,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every read-modify-write runs under one re-entrant lock, which gives the
    compare-and-set semantics the engine relies on for refresh rotation,
    bulk revocation, failure counting and single-use token consumption.
    State is optionally mirrored to a JSON file so a dev server survives
    restarts.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.sessions: Dict[str, Session] = {}
        self.single_use_tokens: Dict[str, SingleUseToken] = {}
        self.login_events: List[LoginEvent] = []
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # principals
    @staticmethod
    def _live(principal: Optional[Principal]) -> Optional[Principal]:
        """The single soft-delete predicate for every authentication read."""
        if principal is None or principal.deleted_at is not None:
            return None
        return principal

    def create_principal(
        self,
        role: str,
        email: str,
        password_hash: str,
        *,
        profile: Optional[Dict] = None,
        email_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> Principal:
        now = now or utcnow()
        with self._data_lock:
            for existing in self.principals.values():
                if self._live(existing) and existing.role == role and existing.email == email:
                    raise ConstraintViolation(
                        "email already registered", {"field": "email", "role": role}
                    )
            principal = Principal(
                id=str(uuid.uuid4()),
                role=role,
                email=email,
                password_hash=password_hash,
                email_verified=email_verified,
                profile=dict(profile or {}),
                created_at=now,
                updated_at=now,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return copy.deepcopy(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self._live(self.principals.get(principal_id))
            return copy.deepcopy(principal) if principal else None

    def get_principal_by_email(self, role: str, email: str) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                if self._live(principal) and principal.role == role and principal.email == email:
                    return copy.deepcopy(principal)
            return None

    def _mutable_principal(self, principal_id: str) -> Optional[Principal]:
        return self._live(self.principals.get(principal_id))

    def update_password_hash(self, principal_id: str, password_hash: str, now: datetime) -> bool:
        with self._data_lock:
            principal = self._mutable_principal(principal_id)
            if not principal:
                return False
            principal.password_hash = password_hash
            principal.updated_at = now
            self._persist_state()
            return True

    def set_email_verified(self, principal_id: str, now: datetime) -> bool:
        with self._data_lock:
            principal = self._mutable_principal(principal_id)
            if not principal:
                return False
            principal.email_verified = True
            principal.updated_at = now
            self._persist_state()
            return True

    def register_login_failure(
        self, principal_id: str, now: datetime, window: timedelta
    ) -> int:
        """Count a failed attempt and return the count inside the current window."""
        with self._data_lock:
            principal = self._mutable_principal(principal_id)
            if not principal:
                return 0
            started = principal.failed_window_started_at
            if started is None or now - started >= window:
                principal.failed_login_count = 1
                principal.failed_window_started_at = now
            else:
                principal.failed_login_count += 1
            principal.updated_at = now
            self._persist_state()
            return principal.failed_login_count

    def reset_login_failures(self, principal_id: str, now: datetime) -> None:
        with self._data_lock:
            principal = self._mutable_principal(principal_id)
            if not principal:
                return
            principal.failed_login_count = 0
            principal.failed_window_started_at = None
            principal.locked_until = None
            principal.last_login_at = now
            principal.updated_at = now
            self._persist_state()

    def set_lock(self, principal_id: str, until: datetime, now: datetime) -> None:
        """Lock until ``until``; the failures that caused the lock are spent."""
        with self._data_lock:
            principal = self._mutable_principal(principal_id)
            if not principal:
                return
            principal.locked_until = until
            principal.failed_login_count = 0
            principal.failed_window_started_at = None
            principal.updated_at = now
            self._persist_state()

    def mark_deleted(self, principal_id: str, now: datetime) -> bool:
        with self._data_lock:
            principal = self._mutable_principal(principal_id)
            if not principal:
                return False
            principal.deleted_at = now
            principal.updated_at = now
            self._persist_state()
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if not self._mutable_principal(session.principal_id):
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": session.principal_id}
                )
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def rotate_session(
        self,
        session_id: str,
        principal_id: str,
        successor: Session,
        now: datetime,
    ) -> Tuple[RotationOutcome, Optional[Session]]:
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None or current.principal_id != principal_id:
                return RotationOutcome.MISSING, None
            if not self._mutable_principal(principal_id):
                return RotationOutcome.PRINCIPAL_GONE, None
            if current.revoked_at is not None:
                return RotationOutcome.REVOKED, copy.deepcopy(current)
            if current.expires_at <= now:
                return RotationOutcome.EXPIRED, copy.deepcopy(current)
            current.revoked_at = now
            current.revoked_reason = "rotated"
            self.sessions[successor.id] = copy.deepcopy(successor)
            self._persist_state()
            return RotationOutcome.ROTATED, copy.deepcopy(current)

    def revoke_session(self, session_id: str, now: datetime, reason: str = "logout") -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return False
            session.revoked_at = now
            session.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_all_sessions(
        self,
        principal_id: str,
        now: datetime,
        reason: str = "revoke_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.principal_id != principal_id or session.id == except_session_id:
                    continue
                if session.is_active(now):
                    session.revoked_at = now
                    session.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_sessions(self, principal_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.principal_id == principal_id and s.is_active(now)
            ]
        # Newest first; ties keep the most recently written row first
        return sorted(reversed(active), key=lambda s: s.issued_at, reverse=True)

    # single-use tokens
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        with self._data_lock:
            if token.id in self.single_use_tokens:
                raise ConstraintViolation("token id already exists", {"field": "id"})
            self.single_use_tokens[token.id] = copy.deepcopy(token)
            self._persist_state()
            return token

    def consume_single_use_token(
        self, token_id: str, purpose: str, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._data_lock:
            token = self.single_use_tokens.get(token_id)
            if (
                token is None
                or token.purpose != purpose
                or token.consumed_at is not None
                or token.expires_at <= now
            ):
                return None
            token.consumed_at = now
            self._persist_state()
            return copy.deepcopy(token)

    def consume_outstanding_tokens(self, principal_id: str, purpose: str, now: datetime) -> int:
        with self._data_lock:
            burned = 0
            for token in self.single_use_tokens.values():
                if (
                    token.principal_id == principal_id
                    and token.purpose == purpose
                    and token.consumed_at is None
                    and token.expires_at > now
                ):
                    token.consumed_at = now
                    burned += 1
            if burned:
                self._persist_state()
            return burned

    # login history
    def record_login_event(self, event: LoginEvent) -> None:
        with self._data_lock:
            self.login_events.append(copy.deepcopy(event))
            self._persist_state()

    def list_login_events(self, principal_id: str, limit: int = 50) -> List[LoginEvent]:
        with self._data_lock:
            events = [copy.deepcopy(e) for e in self.login_events if e.principal_id == principal_id]
        events = sorted(reversed(events), key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "single_use_tokens": [
                self._serialize_token(t) for t in self.single_use_tokens.values()
            ],
            "login_events": [self._serialize_event(e) for e in self.login_events],
        }
        try:
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        assert self.state_path is not None
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.single_use_tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("single_use_tokens", [])
        }
        self.login_events = [self._deserialize_event(e) for e in data.get("login_events", [])]
        self.logger.info(
            "memory_store_loaded",
            path=str(self.state_path),
            principals=len(self.principals),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "role": principal.role,
            "email": principal.email,
            "password_hash": principal.password_hash,
            "email_verified": principal.email_verified,
            "failed_login_count": principal.failed_login_count,
            "failed_window_started_at": self._serialize_datetime(
                principal.failed_window_started_at
            ),
            "locked_until": self._serialize_datetime(principal.locked_until),
            "last_login_at": self._serialize_datetime(principal.last_login_at),
            "profile": principal.profile,
            "created_at": self._serialize_datetime(principal.created_at),
            "updated_at": self._serialize_datetime(principal.updated_at),
            "deleted_at": self._serialize_datetime(principal.deleted_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=data["id"],
            role=data["role"],
            email=data["email"],
            password_hash=data["password_hash"],
            email_verified=data.get("email_verified", False),
            failed_login_count=data.get("failed_login_count", 0),
            failed_window_started_at=self._deserialize_datetime(
                data.get("failed_window_started_at")
            ),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            profile=data.get("profile") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "principal_id": session.principal_id,
            "issued_at": self._serialize_datetime(session.issued_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoked_reason": session.revoked_reason,
            "parent_id": session.parent_id,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            principal_id=data["principal_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            parent_id=data.get("parent_id"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )

    def _serialize_token(self, token: SingleUseToken) -> dict:
        return {
            "id": token.id,
            "principal_id": token.principal_id,
            "purpose": token.purpose,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "consumed_at": self._serialize_datetime(token.consumed_at),
        }

    def _deserialize_token(self, data: dict) -> SingleUseToken:
        return SingleUseToken(
            id=data["id"],
            principal_id=data["principal_id"],
            purpose=data["purpose"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )

    def _serialize_event(self, event: LoginEvent) -> dict:
        return {
            "id": event.id,
            "role": event.role,
            "outcome": event.outcome,
            "created_at": self._serialize_datetime(event.created_at),
            "principal_id": event.principal_id,
            "ip_addr": event.ip_addr,
            "user_agent": event.user_agent,
        }

    def _deserialize_event(self, data: dict) -> LoginEvent:
        return LoginEvent(
            id=data["id"],
            role=data["role"],
            outcome=data["outcome"],
            created_at=self._deserialize_datetime(data["created_at"]),
            principal_id=data.get("principal_id"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )
