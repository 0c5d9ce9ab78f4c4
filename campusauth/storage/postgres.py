from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from campusauth.clock import utc_now
from campusauth.logging import get_logger
from campusauth.service.errors import NotFoundError
from campusauth.storage.crypto import FieldCipher
from campusauth.storage.errors import ConstraintViolation, StorageUnavailable
from campusauth.storage.models import STATUS_ACTIVE, AuditEvent, Identity

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS campus_identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        credential_hash TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        phone_encrypted TEXT,
        phone_index TEXT,
        role TEXT NOT NULL DEFAULT 'student',
        campus_id TEXT,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'locked')),
        failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
        locked_until TIMESTAMPTZ,
        token_version INTEGER NOT NULL DEFAULT 0,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT campus_identity_email_key UNIQUE (email),
        CONSTRAINT campus_identity_phone_key UNIQUE (phone_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS campus_audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        actor_id TEXT,
        subject_id TEXT,
        resource_type TEXT NOT NULL,
        resource_id TEXT,
        origin_address TEXT,
        user_agent TEXT,
        detail JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS campus_audit_subject_idx ON campus_audit_log (subject_id, created_at DESC)",
)

_UNIQUE_FIELDS = {
    "campus_identity_email_key": "email",
    "campus_identity_phone_key": "phone",
}


class PostgresStore:
    """Postgres-backed identity store and append-only audit log.

    Counter updates are single ``UPDATE ... RETURNING`` statements so
    concurrent failed logins and password resets never lose an increment.
    """

    def __init__(
        self,
        dsn: str,
        cipher: FieldCipher,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.cipher = cipher
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.QueryCanceled, psycopg.OperationalError) as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StorageUnavailable("postgres", operation, cause=str(exc)) from exc

    def ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _to_identity(self, row: Dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            credential_hash=row["credential_hash"],
            name=row.get("name") or "",
            phone=self.cipher.decrypt(row.get("phone_encrypted")),
            role=row.get("role", "student"),
            campus_id=row.get("campus_id"),
            status=row.get("status", STATUS_ACTIVE),
            failed_attempts=row.get("failed_attempts", 0),
            locked_until=row.get("locked_until"),
            token_version=row.get("token_version", 0),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now(),
        )

    def _update_returning(
        self, operation: str, sql: str, params: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with self._connect(operation) as conn:
            return conn.execute(sql, params).fetchone()

    def _require(self, row: Optional[Dict[str, Any]], identity_id: str) -> Identity:
        if not row:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        return self._to_identity(row)

    # -- identities -----------------------------------------------------

    def create_identity(
        self,
        email: str,
        credential_hash: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        role: str = "student",
        campus_id: Optional[str] = None,
        status: str = STATUS_ACTIVE,
    ) -> Identity:
        identity_id = str(uuid.uuid4())
        try:
            with self._connect("create_identity") as conn:
                row = conn.execute(
                    """
                    INSERT INTO campus_identity (
                        id, email, credential_hash, name, phone_encrypted,
                        phone_index, role, campus_id, status
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity_id,
                        email.strip().lower(),
                        credential_hash,
                        name,
                        self.cipher.encrypt(phone),
                        self.cipher.lookup_digest(phone),
                        role,
                        campus_id,
                        status,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _UNIQUE_FIELDS.get(constraint, "email")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._to_identity(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect("get_identity") as conn:
            row = conn.execute(
                "SELECT * FROM campus_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._to_identity(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect("get_identity_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM campus_identity WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._to_identity(row) if row else None

    def get_identity_by_phone(self, phone: str) -> Optional[Identity]:
        digest = self.cipher.lookup_digest(phone)
        if not digest:
            return None
        with self._connect("get_identity_by_phone") as conn:
            row = conn.execute(
                "SELECT * FROM campus_identity WHERE phone_index = %s", (digest,)
            ).fetchone()
        return self._to_identity(row) if row else None

    def record_failed_attempt(
        self,
        identity_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: Optional[datetime] = None,
    ) -> Identity:
        row = self._update_returning(
            "record_failed_attempt",
            """
            UPDATE campus_identity
            SET failed_attempts = failed_attempts + 1,
                status = CASE
                    WHEN failed_attempts + 1 >= %(threshold)s AND status = 'active'
                    THEN 'locked' ELSE status END,
                locked_until = CASE
                    WHEN failed_attempts + 1 >= %(threshold)s AND status = 'active'
                    THEN %(lock_until)s ELSE locked_until END,
                updated_at = %(now)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "id": identity_id,
                "threshold": threshold,
                "lock_until": lock_until,
                "now": now or utc_now(),
            },
        )
        return self._require(row, identity_id)

    def reset_failed_attempts(
        self, identity_id: str, *, now: datetime, mark_login: bool = True
    ) -> Identity:
        row = self._update_returning(
            "reset_failed_attempts",
            """
            UPDATE campus_identity
            SET failed_attempts = 0,
                locked_until = NULL,
                status = CASE WHEN status = 'locked' THEN 'active' ELSE status END,
                last_login_at = CASE WHEN %(mark_login)s THEN %(now)s ELSE last_login_at END,
                updated_at = %(now)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {"id": identity_id, "now": now, "mark_login": mark_login},
        )
        return self._require(row, identity_id)

    def clear_expired_lock(self, identity_id: str, *, now: datetime) -> Optional[Identity]:
        row = self._update_returning(
            "clear_expired_lock",
            """
            UPDATE campus_identity
            SET status = CASE WHEN status = 'locked' THEN 'active' ELSE status END,
                locked_until = NULL, failed_attempts = 0,
                updated_at = %(now)s
            WHERE id = %(id)s
              AND (status = 'locked' OR locked_until IS NOT NULL)
              AND (locked_until IS NULL OR locked_until <= %(now)s)
            RETURNING *
            """,
            {"id": identity_id, "now": now},
        )
        return self._to_identity(row) if row else None

    def set_lock(self, identity_id: str, *, locked_until: datetime, now: datetime) -> Identity:
        row = self._update_returning(
            "set_lock",
            """
            UPDATE campus_identity
            SET status = CASE WHEN status = 'inactive' THEN status ELSE 'locked' END,
                locked_until = %(locked_until)s, updated_at = %(now)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {"id": identity_id, "locked_until": locked_until, "now": now},
        )
        return self._require(row, identity_id)

    def bump_token_version(self, identity_id: str, *, now: Optional[datetime] = None) -> int:
        row = self._update_returning(
            "bump_token_version",
            """
            UPDATE campus_identity
            SET token_version = token_version + 1, updated_at = %(now)s
            WHERE id = %(id)s
            RETURNING token_version
            """,
            {"id": identity_id, "now": now or utc_now()},
        )
        if not row:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        return int(row["token_version"])

    def update_credential(
        self,
        identity_id: str,
        credential_hash: str,
        *,
        now: datetime,
        clear_lock: bool = False,
    ) -> Identity:
        row = self._update_returning(
            "update_credential",
            """
            UPDATE campus_identity
            SET credential_hash = %(hash)s,
                token_version = token_version + 1,
                failed_attempts = CASE WHEN %(clear)s THEN 0 ELSE failed_attempts END,
                locked_until = CASE WHEN %(clear)s THEN NULL ELSE locked_until END,
                status = CASE WHEN %(clear)s AND status = 'locked' THEN 'active' ELSE status END,
                updated_at = %(now)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {"id": identity_id, "hash": credential_hash, "clear": clear_lock, "now": now},
        )
        return self._require(row, identity_id)

    def set_status(self, identity_id: str, status: str, *, now: datetime) -> Identity:
        row = self._update_returning(
            "set_status",
            """
            UPDATE campus_identity
            SET status = %(status)s,
                locked_until = CASE WHEN %(status)s = 'locked' THEN locked_until ELSE NULL END,
                updated_at = %(now)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {"id": identity_id, "status": status, "now": now},
        )
        return self._require(row, identity_id)

    def set_role(self, identity_id: str, role: str, *, now: datetime) -> Identity:
        row = self._update_returning(
            "set_role",
            "UPDATE campus_identity SET role = %(role)s, updated_at = %(now)s WHERE id = %(id)s RETURNING *",
            {"id": identity_id, "role": role, "now": now},
        )
        return self._require(row, identity_id)

    # -- audit ----------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect("append_audit_event") as conn:
            conn.execute(
                """
                INSERT INTO campus_audit_log (
                    id, action, actor_id, subject_id, resource_type, resource_id,
                    origin_address, user_agent, detail, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.actor_id,
                    event.subject_id,
                    event.resource_type,
                    event.resource_id,
                    event.origin_address,
                    event.user_agent,
                    Jsonb(event.detail),
                    event.created_at,
                ),
            )

    def list_audit_events(
        self,
        *,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: List[Any] = []
        if subject_id is not None:
            clauses.append("subject_id = %s")
            params.append(subject_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect("list_audit_events") as conn:
            rows = conn.execute(
                f"SELECT * FROM campus_audit_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                action=row["action"],
                actor_id=row.get("actor_id"),
                subject_id=row.get("subject_id"),
                resource_type=row.get("resource_type", "user"),
                resource_id=row.get("resource_id"),
                origin_address=row.get("origin_address"),
                user_agent=row.get("user_agent"),
                detail=row.get("detail") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]
