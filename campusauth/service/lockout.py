from __future__ import annotations

import math
from datetime import timedelta
from typing import Optional

from campusauth.clock import Clock, ensure_utc, utc_now
from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.service.audit import AuditTrail
from campusauth.service.errors import AccountLockedError, NotFoundError, ValidationFailure
from campusauth.storage.common import IdentityStore, KeyValueCache, hashed_key
from campusauth.storage.models import Identity, RequestContext

logger = get_logger(__name__)


class LockoutPolicy:
    """Failed-login counting and the active/locked state machine.

    ``active -> locked`` after ``lockout_threshold`` consecutive failures,
    ``locked -> active`` lazily on the first access after ``locked_until``,
    and back to zero failures on any successful authentication. Counter
    updates are single atomic store operations.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: KeyValueCache,
        settings: Settings,
        audit: AuditTrail,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.audit = audit
        self.clock = clock
        self.threshold = settings.lockout_threshold
        self.lock_duration = timedelta(minutes=settings.lockout_minutes)
        self.marker_ttl = settings.failed_attempt_marker_seconds

    def retry_after(self, identity: Identity) -> int:
        if identity.locked_until is None:
            return 0
        remaining = (ensure_utc(identity.locked_until) - self.clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def check(self, identity: Identity, context: Optional[RequestContext] = None) -> Identity:
        """Return the identity with any lapsed lock cleared."""
        if not identity.lock_lapsed(self.clock()):
            return identity
        cleared = self.store.clear_expired_lock(identity.id, now=self.clock())
        if cleared is None:
            # Someone else cleared or re-locked it first
            return self.store.get_identity(identity.id) or identity
        logger.info("account_auto_unlocked", subject_id=identity.id)
        self.audit.record(
            "account_unlocked", subject_id=identity.id, context=context, reason="auto_unlock"
        )
        return cleared

    def ensure_not_locked(
        self, identity: Identity, context: Optional[RequestContext] = None
    ) -> Identity:
        identity = self.check(identity, context)
        if identity.lock_active(self.clock()):
            raise AccountLockedError(identity.locked_until, self.retry_after(identity))
        return identity

    async def record_failure(
        self,
        identity: Identity,
        *,
        context: Optional[RequestContext] = None,
        reason: str = "invalid_password",
    ) -> Identity:
        """Count one failed attempt, locking the account at the threshold.

        When the request carries an ``attempt_id`` a retry of the same attempt
        is counted once.
        """
        attempt_id = context.attempt_id if context else None
        if attempt_id:
            first = await self.cache.add(
                hashed_key("lockout:attempt", identity.id, attempt_id), "1", self.marker_ttl
            )
            if not first:
                logger.info("failed_attempt_duplicate", subject_id=identity.id)
                return self.store.get_identity(identity.id) or identity

        now = self.clock()
        was_locked = identity.lock_active(now)
        updated = self.store.record_failed_attempt(
            identity.id,
            threshold=self.threshold,
            lock_until=now + self.lock_duration,
            now=now,
        )
        self.audit.record(
            "failed_login",
            subject_id=identity.id,
            context=context,
            reason=reason,
            failed_attempts=updated.failed_attempts,
        )
        if updated.lock_active(now) and not was_locked:
            logger.warning(
                "account_locked",
                subject_id=identity.id,
                failed_attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
            )
            self.audit.record(
                "account_locked",
                subject_id=identity.id,
                context=context,
                reason="failed_login_attempts",
                failed_attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
            )
        return updated

    def record_success(self, identity: Identity) -> Identity:
        return self.store.reset_failed_attempts(identity.id, now=self.clock(), mark_login=True)

    def lock(
        self,
        identity_id: str,
        *,
        admin_id: str,
        minutes: Optional[int] = None,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        if minutes is not None and minutes <= 0:
            raise ValidationFailure("Lock duration must be positive")
        if self.store.get_identity(identity_id) is None:
            raise NotFoundError("User not found")
        now = self.clock()
        duration = timedelta(minutes=minutes) if minutes else self.lock_duration
        locked = self.store.set_lock(identity_id, locked_until=now + duration, now=now)
        logger.info("account_manually_locked", subject_id=identity_id, admin_id=admin_id)
        self.audit.record(
            "account_locked",
            subject_id=identity_id,
            actor_id=admin_id,
            context=context,
            reason=reason or "manual_lock",
            locked_until=locked.locked_until.isoformat() if locked.locked_until else None,
        )
        return locked

    def unlock(
        self,
        identity_id: str,
        *,
        admin_id: str,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        if self.store.get_identity(identity_id) is None:
            raise NotFoundError("User not found")
        unlocked = self.store.reset_failed_attempts(
            identity_id, now=self.clock(), mark_login=False
        )
        logger.info("account_manually_unlocked", subject_id=identity_id, admin_id=admin_id)
        self.audit.record(
            "account_unlocked",
            subject_id=identity_id,
            actor_id=admin_id,
            context=context,
            reason="manual_unlock",
        )
        return unlocked
