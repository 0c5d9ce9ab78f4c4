from __future__ import annotations

import hashlib
import json
from typing import Optional

from campusauth.clock import Clock, utc_now
from campusauth.logging import get_logger
from campusauth.service.errors import ValidationFailure
from campusauth.service.tokens import TokenService
from campusauth.storage.common import KeyValueCache
from campusauth.storage.errors import StorageUnavailable
from campusauth.storage.models import RevocationEntry

logger = get_logger(__name__)


class RevocationRegistry:
    """Denylist of tokens invalidated before their natural expiry.

    Entries live exactly as long as the token they shadow, so storage never
    grows past the set of still-valid tokens.
    """

    KEY_PREFIX = "revoked"

    def __init__(
        self, cache: KeyValueCache, tokens: TokenService, *, clock: Clock = utc_now
    ) -> None:
        self.cache = cache
        self.tokens = tokens
        self.clock = clock

    def token_key(self, token: str) -> str:
        claims = self.tokens.peek(token)
        if claims and claims.token_id:
            return f"{self.KEY_PREFIX}:{claims.token_id}"
        return f"{self.KEY_PREFIX}:{hashlib.sha256(token.encode()).hexdigest()}"

    async def revoke(
        self, token: str, reason: str, *, subject_id: Optional[str] = None
    ) -> bool:
        """Record ``token`` as revoked.

        Returns False when there was nothing to do: the token is already past
        its expiry or an entry for it already exists.
        """
        claims = self.tokens.peek(token)
        if claims is None:
            raise ValidationFailure("Invalid token format")
        remaining = self.tokens.remaining_seconds(claims)
        if remaining <= 0:
            logger.info("revocation_skipped_expired", subject_id=claims.subject_id)
            return False
        entry = RevocationEntry(
            subject_id=subject_id or claims.subject_id,
            revoked_at=self.clock(),
            reason=reason,
            kind=claims.kind,
        )
        stored = await self.cache.add(
            self.token_key(token), json.dumps(entry.to_cache()), remaining
        )
        if stored:
            logger.info(
                "token_revoked",
                subject_id=entry.subject_id,
                reason=reason,
                kind=claims.kind,
                ttl_seconds=remaining,
            )
        return stored

    async def is_revoked(self, token: str) -> bool:
        """Existence check that lets the request through on storage errors.

        Signature, expiry and version checks remain the primary guard.
        """
        try:
            return await self.cache.exists(self.token_key(token))
        except StorageUnavailable as exc:
            logger.warning("revocation_check_failed", error=exc.cause or exc.message)
            return False

    async def entry(self, token: str) -> Optional[RevocationEntry]:
        raw = await self.cache.get(self.token_key(token))
        if not raw:
            return None
        return RevocationEntry.from_cache(json.loads(raw))
