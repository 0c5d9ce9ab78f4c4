"""Storage contracts shared by the memory, Redis and Postgres implementations."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from campusauth.storage.models import AuditEvent, Identity

# Outcomes reported by ``KeyValueCache.check_code``
CODE_MISSING = "missing"
CODE_VALID = "valid"
CODE_INVALID = "invalid"
CODE_EXHAUSTED = "exhausted"


def hashed_key(prefix: str, *parts: str) -> str:
    """Build a collision-resistant cache key.

    The subject components are hashed so addresses and other PII never show
    up in key names and cannot inject delimiters.
    """

    digest = hashlib.sha256("\x1f".join(parts).encode()).hexdigest()
    return f"{prefix}:{digest}"


class KeyValueCache(Protocol):
    """TTL-keyed cache shared by every worker instance.

    Every operation is bounded by a timeout and raises ``StorageUnavailable``
    on failure. Single-key read-modify-write steps are atomic.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def replace(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int: ...

    async def decrement(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def keys_matching(self, pattern: str) -> List[str]: ...

    async def reserve_slot(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]: ...

    async def check_code(
        self, key: str, candidate_digest: str, max_attempts: int
    ) -> Tuple[str, int]: ...

    async def close(self) -> None: ...


class IdentityStore(Protocol):
    def create_identity(
        self,
        email: str,
        credential_hash: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        role: str = "student",
        campus_id: Optional[str] = None,
        status: str = "active",
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_phone(self, phone: str) -> Optional[Identity]: ...

    def record_failed_attempt(
        self,
        identity_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: Optional[datetime] = None,
    ) -> Identity: ...

    def reset_failed_attempts(
        self, identity_id: str, *, now: datetime, mark_login: bool = True
    ) -> Identity: ...

    def clear_expired_lock(self, identity_id: str, *, now: datetime) -> Optional[Identity]: ...

    def set_lock(self, identity_id: str, *, locked_until: datetime, now: datetime) -> Identity: ...

    def bump_token_version(self, identity_id: str, *, now: Optional[datetime] = None) -> int: ...

    def update_credential(
        self,
        identity_id: str,
        credential_hash: str,
        *,
        now: datetime,
        clear_lock: bool = False,
    ) -> Identity: ...

    def set_status(self, identity_id: str, status: str, *, now: datetime) -> Identity: ...

    def set_role(self, identity_id: str, role: str, *, now: datetime) -> Identity: ...

    def append_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self,
        *,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...
