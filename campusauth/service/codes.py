from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from campusauth.clock import Clock, utc_now
from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.service.errors import RateLimitedError, ValidationFailure
from campusauth.storage.common import CODE_VALID, KeyValueCache, hashed_key
from campusauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999


class CodePurpose(str, Enum):
    LOGIN_OTP = "otp"
    MFA = "mfa"
    PASSWORD_RESET = "reset"


@dataclass(frozen=True)
class CodePolicy:
    ttl_seconds: int
    max_attempts: int
    issue_limit: int
    issue_window_seconds: int


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    purpose: CodePurpose


@dataclass(frozen=True)
class CodeCheck:
    valid: bool
    attempts_remaining: int


@dataclass(frozen=True)
class CodeStatus:
    exists: bool
    expires_in: int = 0
    attempts_remaining: int = 0


@dataclass(frozen=True)
class RateStatus:
    limited: bool
    issued: int
    remaining: int
    retry_after: int = 0


def policies_from_settings(settings: Settings) -> Dict[CodePurpose, CodePolicy]:
    def policy(ttl: int) -> CodePolicy:
        return CodePolicy(
            ttl_seconds=ttl,
            max_attempts=settings.code_max_attempts,
            issue_limit=settings.code_issue_limit,
            issue_window_seconds=settings.code_issue_window_seconds,
        )

    return {
        CodePurpose.LOGIN_OTP: policy(settings.otp_ttl_seconds),
        CodePurpose.MFA: policy(settings.mfa_ttl_seconds),
        CodePurpose.PASSWORD_RESET: policy(settings.reset_ttl_seconds),
    }


class OneTimeCodeService:
    """Six-digit single-use codes for login OTP, step-up MFA and password reset.

    Each (purpose, target) pair has at most one live code. A code record is
    removed on the first correct guess or once its attempts are used up;
    otherwise it simply ages out. Issuance is throttled per target by a
    counter living for one window.

    Codes are stored as an HMAC digest, never in the clear, and verification
    is a single atomic cache step so concurrent guesses cannot share the last
    remaining attempt.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        settings: Settings,
        *,
        clock: Clock = utc_now,
        policies: Optional[Dict[CodePurpose, CodePolicy]] = None,
    ) -> None:
        self.cache = cache
        self.clock = clock
        self.policies = policies or policies_from_settings(settings)
        self.count_failed_issuance = settings.otc_rate_limit_counts_failed_issuance
        self._digest_key = hashlib.sha256(
            f"one-time-code:{settings.jwt_secret}".encode()
        ).digest()

    @staticmethod
    def generate_code() -> str:
        return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))

    def _code_key(self, purpose: CodePurpose, target: str) -> str:
        return hashed_key(f"otc:{purpose.value}", target)

    def _rate_key(self, purpose: CodePurpose, target: str) -> str:
        return hashed_key(f"otc:rate:{purpose.value}", target)

    def _digest(self, purpose: CodePurpose, target: str, code: str) -> str:
        message = f"{purpose.value}\x1f{target}\x1f{code}".encode()
        return hmac.new(self._digest_key, message, hashlib.sha256).hexdigest()

    async def issue(self, purpose: CodePurpose, target: str) -> IssuedCode:
        """Generate and store a new code for ``target``, replacing any live one.

        Raises ``RateLimitedError`` once the issuance ceiling for the current
        window is reached.
        """
        policy = self.policies[purpose]
        rate_key = self._rate_key(purpose, target)
        issued = await self._reserve(purpose, rate_key)

        code = self.generate_code()
        now = self.clock()
        record = {
            "digest": self._digest(purpose, target, code),
            "attempts": 0,
            "created_at": now.isoformat(),
        }
        try:
            await self.cache.set(
                self._code_key(purpose, target), json.dumps(record), policy.ttl_seconds
            )
        except StorageUnavailable:
            if not self.count_failed_issuance:
                await self._release_slot(rate_key)
            raise
        logger.info("code_issued", purpose=purpose.value, issued_in_window=issued)
        return IssuedCode(
            code=code,
            expires_at=now + timedelta(seconds=policy.ttl_seconds),
            purpose=purpose,
        )

    async def _reserve(self, purpose: CodePurpose, rate_key: str) -> int:
        policy = self.policies[purpose]
        allowed, issued, retry_after = await self.cache.reserve_slot(
            rate_key, policy.issue_limit, policy.issue_window_seconds
        )
        if not allowed:
            logger.warning("code_rate_limited", purpose=purpose.value, retry_after=retry_after)
            raise RateLimitedError(
                "Too many code requests. Please try again later.",
                retry_after=retry_after,
            )
        return issued

    async def count_request(self, purpose: CodePurpose, target: str) -> int:
        """Take a rate slot for a request that will not produce a code.

        Lets callers answer unknown targets exactly like known ones, including
        the point at which the window fills up.
        """
        return await self._reserve(purpose, self._rate_key(purpose, target))

    async def _release_slot(self, rate_key: str) -> None:
        try:
            await self.cache.decrement(rate_key)
        except StorageUnavailable:
            logger.warning("code_rate_slot_release_failed")

    async def verify(self, purpose: CodePurpose, target: str, candidate: str) -> CodeCheck:
        """Consume one attempt against the live code for ``target``.

        A missing record reads the same as an expired one: invalid with no
        attempts left.
        """
        candidate = (candidate or "").strip()
        if len(candidate) != 6 or not candidate.isdigit():
            raise ValidationFailure("Code must be 6 digits")
        policy = self.policies[purpose]
        status, remaining = await self.cache.check_code(
            self._code_key(purpose, target),
            self._digest(purpose, target, candidate),
            policy.max_attempts,
        )
        if status == CODE_VALID:
            logger.info("code_verified", purpose=purpose.value)
            return CodeCheck(valid=True, attempts_remaining=remaining)
        logger.info(
            "code_rejected", purpose=purpose.value, outcome=status, attempts_remaining=remaining
        )
        return CodeCheck(valid=False, attempts_remaining=remaining)

    async def status(self, purpose: CodePurpose, target: str) -> CodeStatus:
        key = self._code_key(purpose, target)
        raw = await self.cache.get(key)
        if not raw:
            return CodeStatus(exists=False)
        record = json.loads(raw)
        policy = self.policies[purpose]
        return CodeStatus(
            exists=True,
            expires_in=max(0, await self.cache.ttl(key)),
            attempts_remaining=max(0, policy.max_attempts - int(record.get("attempts", 0))),
        )

    async def rate_status(self, purpose: CodePurpose, target: str) -> RateStatus:
        policy = self.policies[purpose]
        key = self._rate_key(purpose, target)
        raw = await self.cache.get(key)
        issued = int(raw) if raw else 0
        if issued >= policy.issue_limit:
            return RateStatus(
                limited=True,
                issued=issued,
                remaining=0,
                retry_after=max(1, await self.cache.ttl(key)),
            )
        return RateStatus(limited=False, issued=issued, remaining=policy.issue_limit - issued)

    async def discard(self, purpose: CodePurpose, target: str) -> bool:
        return await self.cache.delete(self._code_key(purpose, target)) > 0
