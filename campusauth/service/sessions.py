from __future__ import annotations

import json
import re
import secrets
from typing import List, Optional

from campusauth.clock import Clock, utc_now
from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.storage.common import KeyValueCache
from campusauth.storage.models import DeviceInfo, SessionRecord

logger = get_logger(__name__)

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{64}$")


class SessionRegistry:
    """One cache entry per signed-in device, keyed ``session:{subject}:{id}``.

    Cache failures are not caught here: a logout that silently failed would
    leave sessions that look live.
    """

    KEY_PREFIX = "session"

    def __init__(
        self, cache: KeyValueCache, settings: Settings, *, clock: Clock = utc_now
    ) -> None:
        self.cache = cache
        self.ttl_seconds = settings.session_ttl_seconds
        self.clock = clock

    def _key(self, subject_id: str, session_id: str) -> str:
        return f"{self.KEY_PREFIX}:{subject_id}:{session_id}"

    @staticmethod
    def _session_id_from_key(key: str) -> str:
        return key.rsplit(":", 1)[-1]

    async def create(
        self,
        subject_id: str,
        device: Optional[DeviceInfo] = None,
        origin_address: Optional[str] = None,
    ) -> str:
        device = device or DeviceInfo()
        session_id = secrets.token_hex(32)
        now = self.clock()
        record = SessionRecord(
            session_id=session_id,
            subject_id=subject_id,
            device_type=device.device_type,
            device_label=device.device_label,
            origin_address=origin_address,
            user_agent=device.user_agent,
            created_at=now,
            last_activity_at=now,
        )
        await self.cache.set(
            self._key(subject_id, session_id), json.dumps(record.to_cache()), self.ttl_seconds
        )
        logger.info("session_created", subject_id=subject_id, device_type=device.device_type)
        return session_id

    async def get(self, subject_id: str, session_id: str) -> Optional[SessionRecord]:
        key = self._key(subject_id, session_id)
        raw = await self.cache.get(key)
        if not raw:
            return None
        return SessionRecord.from_cache(json.loads(raw), expires_in=await self.cache.ttl(key))

    async def list(self, subject_id: str) -> List[SessionRecord]:
        records: List[SessionRecord] = []
        for key in await self.cache.keys_matching(self._key(subject_id, "*")):
            raw = await self.cache.get(key)
            if not raw:
                # Expired between the scan and the read
                continue
            records.append(
                SessionRecord.from_cache(json.loads(raw), expires_in=await self.cache.ttl(key))
            )
        records.sort(key=lambda record: record.last_activity_at, reverse=True)
        return records

    async def touch(self, subject_id: str, session_id: str) -> bool:
        """Refresh TTL and last activity; False when the session is gone."""
        key = self._key(subject_id, session_id)
        raw = await self.cache.get(key)
        if not raw:
            return False
        data = json.loads(raw)
        data["last_activity_at"] = self.clock().isoformat()
        # Only rewrites an existing key, so a concurrent revoke stays revoked
        return await self.cache.replace(key, json.dumps(data), self.ttl_seconds)

    async def revoke(self, session_id: str, subject_id: Optional[str] = None) -> bool:
        if not _SESSION_ID_RE.match(session_id or ""):
            return False
        if subject_id:
            keys = [self._key(subject_id, session_id)]
        else:
            # Unscoped revocation scans every subject namespace
            keys = await self.cache.keys_matching(f"{self.KEY_PREFIX}:*:{session_id}")
        if not keys:
            return False
        removed = await self.cache.delete(*keys)
        if removed:
            logger.info("session_revoked", subject_id=subject_id, scoped=bool(subject_id))
        return removed > 0

    async def revoke_all(
        self, subject_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        keys = await self.cache.keys_matching(self._key(subject_id, "*"))
        if except_session_id:
            keys = [k for k in keys if self._session_id_from_key(k) != except_session_id]
        if not keys:
            return 0
        removed = await self.cache.delete(*keys)
        logger.info("sessions_revoked", subject_id=subject_id, count=removed)
        return removed

    async def count(self, subject_id: str) -> int:
        return len(await self.cache.keys_matching(self._key(subject_id, "*")))
