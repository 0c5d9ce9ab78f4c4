from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from campusauth.clock import utc_now
from campusauth.logging import get_logger
from campusauth.service.errors import NotFoundError
from campusauth.storage.crypto import FieldCipher
from campusauth.storage.errors import ConstraintViolation
from campusauth.storage.models import (
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    STATUS_LOCKED,
    AuditEvent,
    Identity,
)


class MemoryStore:
    """In-memory identity store and audit log for tests and local development.

    Rows are kept the way the relational store keeps them: the phone column
    holds ciphertext plus a blind index, and every mutation of a counter
    happens under one lock so increments are never lost.
    """

    def __init__(self, cipher: FieldCipher) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._email_index: Dict[str, str] = {}
        self._phone_index: Dict[str, str] = {}
        self._audit: List[AuditEvent] = []
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def _to_identity(self, row: Dict[str, Any]) -> Identity:
        return Identity(
            id=row["id"],
            email=row["email"],
            credential_hash=row["credential_hash"],
            name=row["name"],
            phone=self.cipher.decrypt(row["phone_encrypted"]),
            role=row["role"],
            campus_id=row["campus_id"],
            status=row["status"],
            failed_attempts=row["failed_attempts"],
            locked_until=row["locked_until"],
            token_version=row["token_version"],
            last_login_at=row["last_login_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row(self, identity_id: str) -> Dict[str, Any]:
        row = self._rows.get(identity_id)
        if row is None:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        return row

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
        normalized_email = self._normalize_email(email)
        phone_digest = self.cipher.lookup_digest(phone)
        now = utc_now()
        with self._data_lock:
            if normalized_email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone_digest and phone_digest in self._phone_index:
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            identity_id = str(uuid.uuid4())
            row = {
                "id": identity_id,
                "email": normalized_email,
                "credential_hash": credential_hash,
                "name": name,
                "phone_encrypted": self.cipher.encrypt(phone),
                "phone_index": phone_digest,
                "role": role,
                "campus_id": campus_id,
                "status": status,
                "failed_attempts": 0,
                "locked_until": None,
                "token_version": 0,
                "last_login_at": None,
                "created_at": now,
                "updated_at": now,
            }
            self._rows[identity_id] = row
            self._email_index[normalized_email] = identity_id
            if phone_digest:
                self._phone_index[phone_digest] = identity_id
            return self._to_identity(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            row = self._rows.get(identity_id)
            return self._to_identity(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity_id = self._email_index.get(self._normalize_email(email))
            return self.get_identity(identity_id) if identity_id else None

    def get_identity_by_phone(self, phone: str) -> Optional[Identity]:
        digest = self.cipher.lookup_digest(phone)
        with self._data_lock:
            identity_id = self._phone_index.get(digest) if digest else None
            return self.get_identity(identity_id) if identity_id else None

    def record_failed_attempt(
        self,
        identity_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: Optional[datetime] = None,
    ) -> Identity:
        """Increment the failure counter and lock once it reaches ``threshold``.

        Only active accounts move to ``locked``; inactive ones keep their status.
        """
        with self._data_lock:
            row = self._row(identity_id)
            row["failed_attempts"] += 1
            if row["failed_attempts"] >= threshold and row["status"] == STATUS_ACTIVE:
                row["status"] = STATUS_LOCKED
                row["locked_until"] = lock_until
            row["updated_at"] = now or utc_now()
            return self._to_identity(row)

    def reset_failed_attempts(
        self, identity_id: str, *, now: datetime, mark_login: bool = True
    ) -> Identity:
        with self._data_lock:
            row = self._row(identity_id)
            row["failed_attempts"] = 0
            row["locked_until"] = None
            if row["status"] == STATUS_LOCKED:
                row["status"] = STATUS_ACTIVE
            if mark_login:
                row["last_login_at"] = now
            row["updated_at"] = now
            return self._to_identity(row)

    def clear_expired_lock(self, identity_id: str, *, now: datetime) -> Optional[Identity]:
        """Clear a lock whose window has passed; None when nothing changed."""
        with self._data_lock:
            row = self._row(identity_id)
            locked_until = row["locked_until"]
            if row["status"] != STATUS_LOCKED and locked_until is None:
                return None
            if locked_until is not None and locked_until > now:
                return None
            if row["status"] == STATUS_LOCKED:
                row["status"] = STATUS_ACTIVE
            row["locked_until"] = None
            row["failed_attempts"] = 0
            row["updated_at"] = now
            return self._to_identity(row)

    def set_lock(self, identity_id: str, *, locked_until: datetime, now: datetime) -> Identity:
        with self._data_lock:
            row = self._row(identity_id)
            if row["status"] != STATUS_INACTIVE:
                row["status"] = STATUS_LOCKED
            row["locked_until"] = locked_until
            row["updated_at"] = now
            return self._to_identity(row)

    def bump_token_version(self, identity_id: str, *, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            row = self._row(identity_id)
            row["token_version"] += 1
            row["updated_at"] = now or utc_now()
            return row["token_version"]

    def update_credential(
        self,
        identity_id: str,
        credential_hash: str,
        *,
        now: datetime,
        clear_lock: bool = False,
    ) -> Identity:
        """Replace the password hash and bump the token version in one step."""
        with self._data_lock:
            row = self._row(identity_id)
            row["credential_hash"] = credential_hash
            row["token_version"] += 1
            if clear_lock:
                row["failed_attempts"] = 0
                row["locked_until"] = None
                if row["status"] == STATUS_LOCKED:
                    row["status"] = STATUS_ACTIVE
            row["updated_at"] = now
            return self._to_identity(row)

    def set_status(self, identity_id: str, status: str, *, now: datetime) -> Identity:
        with self._data_lock:
            row = self._row(identity_id)
            row["status"] = status
            if status != STATUS_LOCKED:
                row["locked_until"] = None
            row["updated_at"] = now
            return self._to_identity(row)

    def set_role(self, identity_id: str, role: str, *, now: datetime) -> Identity:
        with self._data_lock:
            row = self._row(identity_id)
            row["role"] = role
            row["updated_at"] = now
            return self._to_identity(row)

    def raw_row(self, identity_id: str) -> Dict[str, Any]:
        """Copy of the stored row, ciphertext included."""
        with self._data_lock:
            return dict(self._row(identity_id))

    # -- audit ----------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self._audit.append(replace(event, detail=dict(event.detail)))

    def list_audit_events(
        self,
        *,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e
                for e in reversed(self._audit)
                if (subject_id is None or e.subject_id == subject_id)
                and (action is None or e.action == action)
            ]
        return events[:limit]
