"""Tests for one-time code issuance, verification and throttling."""

import asyncio
import json

import pytest

from campusauth.service.codes import CodePurpose, OneTimeCodeService
from campusauth.service.errors import RateLimitedError, ValidationFailure
from campusauth.storage.errors import StorageUnavailable

from conftest import FailingCache, make_settings

PHONE = "+919876543210"


@pytest.fixture
def codes(cache, settings, clock):
    return OneTimeCodeService(cache, settings, clock=clock)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestIssue:
    async def test_code_is_six_digits(self, codes):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        assert len(issued.code) == 6
        assert 100000 <= int(issued.code) <= 999999

    async def test_code_is_stored_hashed(self, codes, cache):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        (key,) = await cache.keys_matching("otc:otp:*")
        raw = await cache.get(key)

        assert issued.code not in raw
        assert PHONE not in key
        assert json.loads(raw)["attempts"] == 0

    async def test_expiry_follows_purpose(self, codes, clock):
        otp = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        reset = await codes.issue(CodePurpose.PASSWORD_RESET, "user-1")
        assert (otp.expires_at - clock()).total_seconds() == 300
        assert (reset.expires_at - clock()).total_seconds() == 3600

    async def test_reissue_replaces_live_code(self, codes):
        first = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        second = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        if first.code != second.code:
            assert (await codes.verify(CodePurpose.LOGIN_OTP, PHONE, first.code)).valid is False
        assert (await codes.verify(CodePurpose.LOGIN_OTP, PHONE, second.code)).valid is True

    async def test_purposes_are_isolated(self, codes):
        issued = await codes.issue(CodePurpose.MFA, "user-1")
        check = await codes.verify(CodePurpose.PASSWORD_RESET, "user-1", issued.code)
        assert check.valid is False
        assert (await codes.verify(CodePurpose.MFA, "user-1", issued.code)).valid is True


class TestVerify:
    async def test_correct_code_is_single_use(self, codes):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        first = await codes.verify(CodePurpose.LOGIN_OTP, PHONE, issued.code)
        second = await codes.verify(CodePurpose.LOGIN_OTP, PHONE, issued.code)

        assert first.valid is True
        assert first.attempts_remaining == 3
        assert second.valid is False

    async def test_attempts_are_exhausted(self, codes):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        wrong = _wrong(issued.code)

        remaining = [
            (await codes.verify(CodePurpose.LOGIN_OTP, PHONE, wrong)).attempts_remaining
            for _ in range(3)
        ]
        assert remaining == [2, 1, 0]
        # Even the right code is refused once attempts are gone
        assert (await codes.verify(CodePurpose.LOGIN_OTP, PHONE, issued.code)).valid is False

    async def test_expired_code_fails(self, codes, clock):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        clock.advance(seconds=301)
        check = await codes.verify(CodePurpose.LOGIN_OTP, PHONE, issued.code)
        assert check.valid is False
        assert check.attempts_remaining == 0

    async def test_wrong_guess_keeps_original_expiry(self, codes, cache, clock):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        clock.advance(seconds=200)
        await codes.verify(CodePurpose.LOGIN_OTP, PHONE, _wrong(issued.code))
        clock.advance(seconds=101)
        assert (await codes.verify(CodePurpose.LOGIN_OTP, PHONE, issued.code)).valid is False

    @pytest.mark.parametrize("candidate", ["", "12345", "1234567", "abcdef", None])
    async def test_malformed_candidate_rejected(self, codes, candidate):
        with pytest.raises(ValidationFailure):
            await codes.verify(CodePurpose.LOGIN_OTP, PHONE, candidate)

    async def test_concurrent_guesses_share_the_attempt_budget(self, codes):
        issued = await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        wrong = _wrong(issued.code)

        results = await asyncio.gather(
            *[codes.verify(CodePurpose.LOGIN_OTP, PHONE, wrong) for _ in range(10)]
        )
        assert sorted(r.attempts_remaining for r in results if r.attempts_remaining) == [1, 2]
        assert not any(r.valid for r in results)

    async def test_status_reports_remaining_attempts(self, codes, clock):
        assert (await codes.status(CodePurpose.MFA, "user-1")).exists is False
        issued = await codes.issue(CodePurpose.MFA, "user-1")
        await codes.verify(CodePurpose.MFA, "user-1", _wrong(issued.code))
        clock.advance(seconds=60)

        status = await codes.status(CodePurpose.MFA, "user-1")
        assert status.exists is True
        assert status.attempts_remaining == 2
        assert status.expires_in == 240


class TestRateLimit:
    async def test_fourth_issue_in_window_is_refused(self, codes):
        for _ in range(3):
            await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        with pytest.raises(RateLimitedError) as excinfo:
            await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        assert 0 < excinfo.value.retry_after <= 3600

    async def test_window_resets(self, codes, clock):
        for _ in range(3):
            await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        clock.advance(hours=1, seconds=1)
        await codes.issue(CodePurpose.LOGIN_OTP, PHONE)

    async def test_rate_status(self, codes):
        await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        status = await codes.rate_status(CodePurpose.LOGIN_OTP, PHONE)
        assert status.limited is False
        assert status.issued == 1
        assert status.remaining == 2

    async def test_concurrent_issue_respects_ceiling(self, codes):
        results = await asyncio.gather(
            *[codes.issue(CodePurpose.LOGIN_OTP, PHONE) for _ in range(8)],
            return_exceptions=True,
        )
        issued = [r for r in results if not isinstance(r, Exception)]
        limited = [r for r in results if isinstance(r, RateLimitedError)]
        assert len(issued) == 3
        assert len(limited) == 5

    async def test_targets_are_throttled_independently(self, codes):
        for _ in range(3):
            await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        await codes.issue(CodePurpose.LOGIN_OTP, "+919000000000")
        await codes.issue(CodePurpose.MFA, PHONE)

    async def test_counted_requests_share_the_window(self, codes):
        await codes.count_request(CodePurpose.LOGIN_OTP, PHONE)
        await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        assert await codes.count_request(CodePurpose.LOGIN_OTP, PHONE) == 3
        assert (await codes.status(CodePurpose.LOGIN_OTP, PHONE)).exists
        with pytest.raises(RateLimitedError):
            await codes.issue(CodePurpose.LOGIN_OTP, PHONE)


class TestIssueFailure:
    async def test_failed_store_releases_slot_by_default(self, clock):
        cache = FailingCache(clock, failing={"set"})
        codes = OneTimeCodeService(cache, make_settings(), clock=clock)
        for _ in range(5):
            with pytest.raises(StorageUnavailable):
                await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        assert (await codes.rate_status(CodePurpose.LOGIN_OTP, PHONE)).issued == 0

    async def test_failed_store_counts_when_configured(self, clock):
        cache = FailingCache(clock, failing={"set"})
        codes = OneTimeCodeService(
            cache, make_settings(otc_rate_limit_counts_failed_issuance=True), clock=clock
        )
        for _ in range(3):
            with pytest.raises(StorageUnavailable):
                await codes.issue(CodePurpose.LOGIN_OTP, PHONE)
        with pytest.raises(RateLimitedError):
            await codes.issue(CodePurpose.LOGIN_OTP, PHONE)

    async def test_discard(self, codes):
        issued = await codes.issue(CodePurpose.MFA, "user-1")
        assert await codes.discard(CodePurpose.MFA, "user-1") is True
        assert (await codes.verify(CodePurpose.MFA, "user-1", issued.code)).valid is False
