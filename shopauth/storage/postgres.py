from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from shopauth.logging import get_logger
from shopauth.storage.common import normalize_email
from shopauth.storage.errors import ConstraintViolation, TransientStoreError
from shopauth.storage.models import (
    Credential,
    FailedAttemptRecord,
    MfaChallenge,
    PasswordHistoryEntry,
    Session,
    User,
    utcnow,
)

T = TypeVar("T")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS shop_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'customer',
        status TEXT NOT NULL DEFAULT 'pending',
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        email_verification_token TEXT UNIQUE,
        email_verification_expires_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES shop_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        last_changed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        max_failed_attempts INTEGER,
        requires_change BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES shop_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        changed_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS failed_attempt (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES shop_user(id) ON DELETE CASCADE,
        attempts INTEGER NOT NULL,
        first_attempt_at TIMESTAMPTZ NOT NULL,
        last_attempt_at TIMESTAMPTZ NOT NULL,
        ip TEXT,
        resolved BOOLEAN NOT NULL DEFAULT FALSE,
        lockout BOOLEAN NOT NULL DEFAULT FALSE,
        resolved_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS failed_attempt_open_idx
        ON failed_attempt (user_id) WHERE NOT resolved
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES shop_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        refresh_eligible BOOLEAN NOT NULL DEFAULT TRUE,
        ip TEXT,
        client_id TEXT,
        client_class TEXT NOT NULL DEFAULT 'interactive',
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS mfa_challenge (
        user_id UUID NOT NULL REFERENCES shop_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        id UUID NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts_remaining INTEGER NOT NULL,
        valid BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (user_id, purpose)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_config (
        name TEXT PRIMARY KEY,
        config JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _json_value(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        phone=row.get("phone"),
        role=row.get("role", "customer"),
        status=row.get("status", "pending"),
        mfa_enabled=bool(row.get("mfa_enabled", False)),
        created_at=row.get("created_at") or utcnow(),
        email_verification_token=row.get("email_verification_token"),
        email_verification_expires_at=row.get("email_verification_expires_at"),
        meta=_json_value(row.get("meta")),
    )


def _row_to_credential(row: dict) -> Credential:
    return Credential(
        user_id=str(row["user_id"]),
        password_hash=row["password_hash"],
        last_changed_at=row["last_changed_at"],
        max_failed_attempts=row.get("max_failed_attempts"),
        requires_change=bool(row.get("requires_change", False)),
    )


def _row_to_failed_attempt(row: dict) -> FailedAttemptRecord:
    return FailedAttemptRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        attempts=int(row["attempts"]),
        first_attempt_at=row["first_attempt_at"],
        last_attempt_at=row["last_attempt_at"],
        ip=row.get("ip"),
        resolved=bool(row.get("resolved", False)),
        lockout=bool(row.get("lockout", False)),
        resolved_at=row.get("resolved_at"),
    )


def _row_to_session(row: dict) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        last_activity_at=row["last_activity_at"],
        role=row.get("role", "customer"),
        refresh_eligible=bool(row.get("refresh_eligible", True)),
        ip=row.get("ip"),
        client_id=row.get("client_id"),
        client_class=row.get("client_class", "interactive"),
        revoked=bool(row.get("revoked", False)),
        revoked_at=row.get("revoked_at"),
    )


def _row_to_challenge(row: dict) -> MfaChallenge:
    return MfaChallenge(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        code=row["code"],
        expires_at=row["expires_at"],
        purpose=row.get("purpose", "login"),
        attempts_remaining=int(row["attempts_remaining"]),
        valid=bool(row["valid"]),
        created_at=row["created_at"],
    )


class _PostgresUserTransaction:
    """Per-user operations on a connection whose user row is locked FOR UPDATE."""

    def __init__(self, conn, user_id: str) -> None:
        self.conn = conn
        self.user_id = user_id

    def get_user(self) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM shop_user WHERE id = %s", (self.user_id,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def set_status(self, status: str) -> None:
        self.conn.execute(
            "UPDATE shop_user SET status = %s WHERE id = %s", (status, self.user_id)
        )

    def get_credential(self) -> Optional[Credential]:
        row = self.conn.execute(
            "SELECT * FROM user_credential WHERE user_id = %s", (self.user_id,)
        ).fetchone()
        return _row_to_credential(row) if row else None

    def save_credential(self, credential: Credential) -> None:
        self.conn.execute(
            """
            UPDATE user_credential
            SET password_hash = %s, last_changed_at = %s,
                max_failed_attempts = %s, requires_change = %s
            WHERE user_id = %s
            """,
            (
                credential.password_hash,
                credential.last_changed_at,
                credential.max_failed_attempts,
                credential.requires_change,
                self.user_id,
            ),
        )

    def get_open_failed_attempt(self) -> Optional[FailedAttemptRecord]:
        row = self.conn.execute(
            "SELECT * FROM failed_attempt WHERE user_id = %s AND NOT resolved",
            (self.user_id,),
        ).fetchone()
        return _row_to_failed_attempt(row) if row else None

    def save_failed_attempt(self, record: FailedAttemptRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO failed_attempt (
                id, user_id, attempts, first_attempt_at, last_attempt_at,
                ip, resolved, lockout, resolved_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                attempts = EXCLUDED.attempts,
                last_attempt_at = EXCLUDED.last_attempt_at,
                ip = EXCLUDED.ip,
                resolved = EXCLUDED.resolved,
                lockout = EXCLUDED.lockout,
                resolved_at = EXCLUDED.resolved_at
            """,
            (
                record.id,
                self.user_id,
                record.attempts,
                record.first_attempt_at,
                record.last_attempt_at,
                record.ip,
                record.resolved,
                record.lockout,
                record.resolved_at,
            ),
        )

    def resolve_failed_attempts(self, now: datetime) -> int:
        cur = self.conn.execute(
            "UPDATE failed_attempt SET resolved = TRUE, resolved_at = %s WHERE user_id = %s AND NOT resolved",
            (now, self.user_id),
        )
        return cur.rowcount

    def count_lockouts_since(self, since: datetime) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM failed_attempt
            WHERE user_id = %s AND lockout AND resolved_at >= %s
            """,
            (self.user_id, since),
        ).fetchone()
        return int(row["n"]) if row else 0

    def count_active_sessions(self, now: datetime) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM auth_session
            WHERE user_id = %s AND NOT revoked AND expires_at > %s
            """,
            (self.user_id, now),
        ).fetchone()
        return int(row["n"]) if row else 0

    def add_session(self, session: Session) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO auth_session (
                    id, user_id, token, role, refresh_eligible, ip, client_id,
                    client_class, created_at, expires_at, last_activity_at, revoked
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, FALSE)
                """,
                (
                    session.id,
                    session.user_id,
                    session.token,
                    session.role,
                    session.refresh_eligible,
                    session.ip,
                    session.client_id,
                    session.client_class,
                    session.created_at,
                    session.expires_at,
                    session.last_activity_at,
                ),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})

    def get_challenge(self, purpose: str) -> Optional[MfaChallenge]:
        row = self.conn.execute(
            "SELECT * FROM mfa_challenge WHERE user_id = %s AND purpose = %s",
            (self.user_id, purpose),
        ).fetchone()
        return _row_to_challenge(row) if row else None

    def save_challenge(self, challenge: MfaChallenge) -> None:
        self.conn.execute(
            """
            INSERT INTO mfa_challenge (
                user_id, purpose, id, code, expires_at, attempts_remaining, valid, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, purpose) DO UPDATE SET
                id = EXCLUDED.id,
                code = EXCLUDED.code,
                expires_at = EXCLUDED.expires_at,
                attempts_remaining = EXCLUDED.attempts_remaining,
                valid = EXCLUDED.valid,
                created_at = EXCLUDED.created_at
            """,
            (
                self.user_id,
                challenge.purpose,
                challenge.id,
                challenge.code,
                challenge.expires_at,
                challenge.attempts_remaining,
                challenge.valid,
                challenge.created_at,
            ),
        )


class PostgresStore:
    """Postgres-backed store for accounts, credentials and sessions.

    Every public method is one transaction. Serialization failures,
    deadlocks and dropped connections are retried ``retry_attempts`` times
    before surfacing as :class:`TransientStoreError`.
    """

    def __init__(self, dsn: str, fs_root: str, *, retry_attempts: int = 1) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.retry_attempts = max(0, retry_attempts)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _run(self, work: Callable[[Any], T], *, op: str) -> T:
        attempts = self.retry_attempts + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._connect() as conn:
                    return work(conn)
            except psycopg.OperationalError as exc:
                # covers SerializationFailure, DeadlockDetected and pool timeouts
                if attempt >= attempts:
                    self.logger.error("store_transient_failure", op=op, error=str(exc))
                    raise TransientStoreError(
                        "storage temporarily unavailable", {"op": op}
                    ) from exc
                self.logger.warning(
                    "store_transient_retry", op=op, attempt=attempt, error=str(exc)
                )
        raise TransientStoreError("storage temporarily unavailable", {"op": op})

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = "customer",
        status: str = "pending",
        verification_token: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        now = utcnow()
        email = normalize_email(email)

        def _insert(conn) -> None:
            conn.execute(
                """
                INSERT INTO shop_user (
                    id, email, name, phone, role, status, created_at,
                    email_verification_token, email_verification_expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user_id,
                    email,
                    name,
                    phone,
                    role,
                    status,
                    now,
                    verification_token,
                    verification_expires_at,
                ),
            )
            conn.execute(
                """
                INSERT INTO user_credential (user_id, password_hash, last_changed_at)
                VALUES (%s, %s, %s)
                """,
                (user_id, password_hash, now),
            )
            conn.execute(
                "INSERT INTO password_history (user_id, password_hash, changed_at) VALUES (%s, %s, %s)",
                (user_id, password_hash, now),
            )

        try:
            self._run(_insert, op="create_user")
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            name=name,
            phone=phone,
            role=role,
            status=status,
            created_at=now,
            email_verification_token=verification_token,
            email_verification_expires_at=verification_expires_at,
        )

    def _fetch_user(self, where: str, value: Any, *, op: str) -> Optional[User]:
        try:
            row = self._run(
                lambda conn: conn.execute(
                    f"SELECT * FROM shop_user WHERE {where} = %s", (value,)
                ).fetchone(),
                op=op,
            )
        except errors.InvalidTextRepresentation:
            # not a uuid, so no row can match
            return None
        return _row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id, op="get_user")

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", normalize_email(email), op="get_user_by_email")

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._fetch_user(
            "email_verification_token", token, op="get_user_by_verification_token"
        )

    def _update_user(self, sql: str, params: tuple, *, op: str) -> Optional[User]:
        row = self._run(lambda conn: conn.execute(sql, params).fetchone(), op=op)
        return _row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(
            """
            UPDATE shop_user
            SET status = CASE WHEN status = 'pending' THEN 'active' ELSE status END,
                email_verification_token = NULL,
                email_verification_expires_at = NULL
            WHERE id = %s
            RETURNING *
            """,
            (user_id,),
            op="mark_email_verified",
        )

    def set_user_mfa(self, user_id: str, enabled: bool) -> Optional[User]:
        return self._update_user(
            "UPDATE shop_user SET mfa_enabled = %s WHERE id = %s RETURNING *",
            (enabled, user_id),
            op="set_user_mfa",
        )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(
            "UPDATE shop_user SET role = %s WHERE id = %s RETURNING *",
            (role, user_id),
            op="update_user_role",
        )

    # credentials

    def get_credential(self, user_id: str) -> Optional[Credential]:
        row = self._run(
            lambda conn: conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone(),
            op="get_credential",
        )
        return _row_to_credential(row) if row else None

    def list_password_history(self, user_id: str) -> List[PasswordHistoryEntry]:
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT * FROM password_history WHERE user_id = %s ORDER BY changed_at",
                (user_id,),
            ).fetchall(),
            op="list_password_history",
        )
        return [
            PasswordHistoryEntry(
                user_id=str(row["user_id"]),
                password_hash=row["password_hash"],
                changed_at=row["changed_at"],
            )
            for row in rows
        ]

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> None:
        def _update(conn) -> None:
            cur = conn.execute(
                """
                UPDATE user_credential
                SET password_hash = %s, last_changed_at = %s, requires_change = FALSE
                WHERE user_id = %s
                """,
                (password_hash, now, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            conn.execute(
                "INSERT INTO password_history (user_id, password_hash, changed_at) VALUES (%s, %s, %s)",
                (user_id, password_hash, now),
            )

        self._run(_update, op="update_password")

    def list_failed_attempts(self, user_id: str) -> List[FailedAttemptRecord]:
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT * FROM failed_attempt WHERE user_id = %s ORDER BY first_attempt_at",
                (user_id,),
            ).fetchall(),
            op="list_failed_attempts",
        )
        return [_row_to_failed_attempt(row) for row in rows]

    def list_failed_attempts_since(self, since: datetime) -> List[FailedAttemptRecord]:
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT * FROM failed_attempt WHERE last_attempt_at >= %s ORDER BY last_attempt_at DESC",
                (since,),
            ).fetchall(),
            op="list_failed_attempts_since",
        )
        return [_row_to_failed_attempt(row) for row in rows]

    # sessions

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            row = self._run(
                lambda conn: conn.execute(
                    "SELECT * FROM auth_session WHERE id = %s", (session_id,)
                ).fetchone(),
                op="get_session",
            )
        except errors.InvalidTextRepresentation:
            return None
        return _row_to_session(row) if row else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        row = self._run(
            lambda conn: conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone(),
            op="get_session_by_token",
        )
        return _row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall(),
            op="list_user_sessions",
        )
        return [_row_to_session(row) for row in rows]

    def replace_session_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        new_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        row = self._run(
            lambda conn: conn.execute(
                """
                UPDATE auth_session
                SET token = %s, expires_at = %s, last_activity_at = %s
                WHERE id = %s AND token = %s AND NOT revoked
                RETURNING *
                """,
                (new_token, new_expires_at, now, session_id, expected_token),
            ).fetchone(),
            op="replace_session_token",
        )
        return _row_to_session(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        self._run(
            lambda conn: conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s",
                (now, session_id),
            ),
            op="touch_session",
        )

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        row = self._run(
            lambda conn: conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (now, session_id),
            ).fetchone(),
            op="revoke_session",
        )
        return row is not None

    def revoke_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        rows = self._run(
            lambda conn: conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND NOT revoked
                RETURNING *
                """,
                (now, user_id),
            ).fetchall(),
            op="revoke_user_sessions",
        )
        return [_row_to_session(row) for row in rows]

    # security config

    def get_security_config(self) -> Dict[str, Any]:
        row = self._run(
            lambda conn: conn.execute(
                "SELECT config FROM security_config WHERE name = %s", ("default",)
            ).fetchone(),
            op="get_security_config",
        )
        if not row:
            return {}
        config = _json_value(row.get("config"))
        return config if isinstance(config, dict) else {}

    def save_security_config(self, values: Dict[str, Any]) -> Dict[str, Any]:
        row = self._run(
            lambda conn: conn.execute(
                """
                INSERT INTO security_config (name, config, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (name) DO UPDATE
                SET config = security_config.config || EXCLUDED.config,
                    updated_at = EXCLUDED.updated_at
                RETURNING config
                """,
                ("default", json.dumps(values)),
            ).fetchone(),
            op="save_security_config",
        )
        config = _json_value(row.get("config")) if row else None
        return config if isinstance(config, dict) else dict(values)

    # units of work

    def run_exclusive(self, user_id: str, work: Callable[[_PostgresUserTransaction], T]) -> T:
        """Run ``work`` in one transaction holding the user's row lock."""

        def _unit(conn) -> T:
            conn.execute("SELECT id FROM shop_user WHERE id = %s FOR UPDATE", (user_id,))
            return work(_PostgresUserTransaction(conn, user_id))

        return self._run(_unit, op="run_exclusive")
