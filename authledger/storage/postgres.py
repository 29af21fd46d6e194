from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from authledger.logging import get_logger
from authledger.storage.errors import ConstraintViolation, StorageUnavailable
from authledger.storage.models import (
    LoginEvent,
    Principal,
    RotationOutcome,
    Session,
    SingleUseToken,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        failed_window_started_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        profile JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS principal_role_email_live
        ON principal (role, email) WHERE deleted_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal (id),
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        parent_id TEXT,
        user_agent TEXT,
        ip_addr TEXT,
        meta JSONB
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_session_principal_active
        ON auth_session (principal_id) WHERE revoked_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS single_use_token (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal (id),
        purpose TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS single_use_token_outstanding
        ON single_use_token (principal_id, purpose) WHERE consumed_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS login_event (
        id TEXT PRIMARY KEY,
        principal_id TEXT REFERENCES principal (id),
        role TEXT NOT NULL,
        outcome TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS login_event_principal_recent
        ON login_event (principal_id, created_at DESC)
    """,
)

REQUIRED_TABLES = ("principal", "auth_session", "single_use_token", "login_event")

# Soft-delete predicate shared by every authentication read
_LIVE = "deleted_at IS NULL"

_PRINCIPAL_COLUMNS = (
    "id, role, email, password_hash, email_verified, failed_login_count, "
    "failed_window_started_at, locked_until, last_login_at, profile, "
    "created_at, updated_at, deleted_at"
)
_SESSION_COLUMNS = (
    "id, principal_id, issued_at, expires_at, revoked_at, revoked_reason, "
    "parent_id, user_agent, ip_addr, meta"
)
_TOKEN_COLUMNS = "id, principal_id, purpose, created_at, expires_at, consumed_at"


class PostgresStore:
    """Postgres-backed credential, session and token ledger.

    Atomic operations run as single conditional statements or as one
    transaction that first locks the owning principal row, so concurrent
    redeem, bulk revoke and failure counting on the same principal
    serialize while different principals never contend.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=row["id"],
            role=row["role"],
            email=row["email"],
            password_hash=row["password_hash"],
            email_verified=bool(row["email_verified"]),
            failed_login_count=row["failed_login_count"],
            failed_window_started_at=row.get("failed_window_started_at"),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            profile=row.get("profile") or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            principal_id=row["principal_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            parent_id=row.get("parent_id"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> SingleUseToken:
        return SingleUseToken(
            id=row["id"],
            principal_id=row["principal_id"],
            purpose=row["purpose"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
        )

    # principals
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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, role, email, password_hash, email_verified, profile, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        role,
                        email,
                        password_hash,
                        email_verified,
                        Jsonb(principal.profile),
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already registered", {"field": "email", "role": role}
            ) from exc
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_PRINCIPAL_COLUMNS} FROM principal WHERE id = %s AND {_LIVE}",
                (principal_id,),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, role: str, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_PRINCIPAL_COLUMNS} FROM principal WHERE role = %s AND email = %s AND {_LIVE}",
                (role, email),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def _update_live_principal(self, assignments: str, params: Tuple, principal_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE principal SET {assignments} WHERE id = %s AND {_LIVE} RETURNING id",
                (*params, principal_id),
            ).fetchone()
        return row is not None

    def update_password_hash(self, principal_id: str, password_hash: str, now: datetime) -> bool:
        return self._update_live_principal(
            "password_hash = %s, updated_at = %s", (password_hash, now), principal_id
        )

    def set_email_verified(self, principal_id: str, now: datetime) -> bool:
        return self._update_live_principal(
            "email_verified = TRUE, updated_at = %s", (now,), principal_id
        )

    def register_login_failure(
        self, principal_id: str, now: datetime, window: timedelta
    ) -> int:
        # SET expressions all read the pre-update row
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE principal SET
                    failed_login_count = CASE
                        WHEN failed_window_started_at IS NULL
                          OR %(now)s - failed_window_started_at >= %(window)s
                        THEN 1 ELSE failed_login_count + 1 END,
                    failed_window_started_at = CASE
                        WHEN failed_window_started_at IS NULL
                          OR %(now)s - failed_window_started_at >= %(window)s
                        THEN %(now)s ELSE failed_window_started_at END,
                    updated_at = %(now)s
                WHERE id = %(id)s AND {_LIVE}
                RETURNING failed_login_count
                """,
                {"now": now, "window": window, "id": principal_id},
            ).fetchone()
        return row["failed_login_count"] if row else 0

    def reset_login_failures(self, principal_id: str, now: datetime) -> None:
        self._update_live_principal(
            "failed_login_count = 0, failed_window_started_at = NULL, locked_until = NULL, "
            "last_login_at = %s, updated_at = %s",
            (now, now),
            principal_id,
        )

    def set_lock(self, principal_id: str, until: datetime, now: datetime) -> None:
        self._update_live_principal(
            "locked_until = %s, failed_login_count = 0, failed_window_started_at = NULL, "
            "updated_at = %s",
            (until, now),
            principal_id,
        )

    def mark_deleted(self, principal_id: str, now: datetime) -> bool:
        return self._update_live_principal(
            "deleted_at = %s, updated_at = %s", (now, now), principal_id
        )

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": session.principal_id}
            ) from exc
        return session

    @staticmethod
    def _insert_session(conn: psycopg.Connection, session: Session) -> None:
        conn.execute(
            f"""
            INSERT INTO auth_session ({_SESSION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.principal_id,
                session.issued_at,
                session.expires_at,
                session.revoked_at,
                session.revoked_reason,
                session.parent_id,
                session.user_agent,
                session.ip_addr,
                Jsonb(session.meta) if session.meta is not None else None,
            ),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    @staticmethod
    def _lock_principal(conn: psycopg.Connection, principal_id: str) -> Optional[Dict[str, Any]]:
        return conn.execute(
            "SELECT id, deleted_at FROM principal WHERE id = %s FOR UPDATE", (principal_id,)
        ).fetchone()

    def rotate_session(
        self,
        session_id: str,
        principal_id: str,
        successor: Session,
        now: datetime,
    ) -> Tuple[RotationOutcome, Optional[Session]]:
        with self._connect() as conn:
            owner = self._lock_principal(conn, principal_id)
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
            if row is None or row["principal_id"] != principal_id:
                return RotationOutcome.MISSING, None
            if owner is None or owner.get("deleted_at") is not None:
                return RotationOutcome.PRINCIPAL_GONE, None
            current = self._session_from_row(row)
            if current.revoked_at is not None:
                return RotationOutcome.REVOKED, current
            if current.expires_at <= now:
                return RotationOutcome.EXPIRED, current
            consumed = conn.execute(
                f"""
                UPDATE auth_session SET revoked_at = %s, revoked_reason = 'rotated'
                WHERE id = %s AND revoked_at IS NULL
                RETURNING {_SESSION_COLUMNS}
                """,
                (now, session_id),
            ).fetchone()
            if consumed is None:
                return RotationOutcome.REVOKED, current
            self._insert_session(conn, successor)
        return RotationOutcome.ROTATED, self._session_from_row(consumed)

    def revoke_session(self, session_id: str, now: datetime, reason: str = "logout") -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason, session_id),
            ).fetchone()
        return row is not None

    def revoke_all_sessions(
        self,
        principal_id: str,
        now: datetime,
        reason: str = "revoke_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            self._lock_principal(conn, principal_id)
            rows = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %(now)s, revoked_reason = %(reason)s
                WHERE principal_id = %(principal_id)s
                  AND revoked_at IS NULL
                  AND expires_at > %(now)s
                  AND (%(keep)s::text IS NULL OR id <> %(keep)s::text)
                RETURNING id
                """,
                {
                    "now": now,
                    "reason": reason,
                    "principal_id": principal_id,
                    "keep": except_session_id,
                },
            ).fetchall()
        return len(rows)

    def list_sessions(self, principal_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE principal_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY issued_at DESC
                """,
                (principal_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # single-use tokens
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO single_use_token ({_TOKEN_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s)",
                    (
                        token.id,
                        token.principal_id,
                        token.purpose,
                        token.created_at,
                        token.expires_at,
                        token.consumed_at,
                    ),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation("token could not be recorded", {"field": "id"}) from exc
        return token

    def consume_single_use_token(
        self, token_id: str, purpose: str, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE single_use_token SET consumed_at = %(now)s
                WHERE id = %(id)s AND purpose = %(purpose)s
                  AND consumed_at IS NULL AND expires_at > %(now)s
                RETURNING {_TOKEN_COLUMNS}
                """,
                {"now": now, "id": token_id, "purpose": purpose},
            ).fetchone()
        return self._token_from_row(row) if row else None

    def consume_outstanding_tokens(self, principal_id: str, purpose: str, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE single_use_token SET consumed_at = %(now)s
                WHERE principal_id = %(principal_id)s AND purpose = %(purpose)s
                  AND consumed_at IS NULL AND expires_at > %(now)s
                RETURNING id
                """,
                {"now": now, "principal_id": principal_id, "purpose": purpose},
            ).fetchall()
        return len(rows)

    # login history
    def record_login_event(self, event: LoginEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_event (id, principal_id, role, outcome, ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.principal_id,
                    event.role,
                    event.outcome,
                    event.ip_addr,
                    event.user_agent,
                    event.created_at,
                ),
            )

    def list_login_events(self, principal_id: str, limit: int = 50) -> List[LoginEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, principal_id, role, outcome, ip_addr, user_agent, created_at
                FROM login_event WHERE principal_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (principal_id, limit),
            ).fetchall()
        return [
            LoginEvent(
                id=row["id"],
                role=row["role"],
                outcome=row["outcome"],
                created_at=row["created_at"],
                principal_id=row.get("principal_id"),
                ip_addr=row.get("ip_addr"),
                user_agent=row.get("user_agent"),
            )
            for row in rows
        ]
