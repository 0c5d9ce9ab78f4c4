"""Tests for bearer token signing and verification."""

import base64
import json

import pytest

from campusauth.service.errors import TokenExpiredError, TokenInvalidError
from campusauth.service.tokens import ACCESS, REFRESH, TokenService
from campusauth.storage.models import Identity

from conftest import CAMPUS, make_settings


@pytest.fixture
def identity():
    return Identity(
        id="user-1",
        email="teacher@campus.example",
        credential_hash="x",
        role="teacher",
        campus_id=CAMPUS,
        token_version=3,
    )


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_access_token_round_trips_claims(self, tokens, identity):
        token = tokens.issue_access(identity, session_id="s" * 64)
        claims = tokens.verify(token, expected_kind=ACCESS)

        assert claims.subject_id == "user-1"
        assert claims.role == "teacher"
        assert claims.campus_id == CAMPUS
        assert claims.email == "teacher@campus.example"
        assert claims.token_version == 3
        assert claims.session_id == "s" * 64
        assert claims.kind == ACCESS

    def test_lifetimes_follow_settings(self, tokens, identity, clock):
        access = tokens.verify(tokens.issue_access(identity))
        refresh = tokens.verify(tokens.issue_refresh(identity))

        assert (access.expires_at - access.issued_at).total_seconds() == 15 * 60
        assert (refresh.expires_at - refresh.issued_at).total_seconds() == 24 * 3600

    def test_each_token_gets_a_unique_id(self, tokens, identity):
        first = tokens.verify(tokens.issue_access(identity))
        second = tokens.verify(tokens.issue_access(identity))
        assert first.token_id != second.token_id

    def test_pair_response_shape(self, tokens, identity):
        pair = tokens.issue_pair(identity, session_id="a" * 64)
        body = pair.as_response()

        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 900
        assert tokens.verify(body["refresh_token"], expected_kind=REFRESH).session_id == "a" * 64


class TestVerify:
    def test_expired_token_is_distinguished(self, tokens, identity, clock):
        token = tokens.issue_access(identity)
        clock.advance(minutes=16)

        with pytest.raises(TokenExpiredError):
            tokens.verify(token)

    def test_allow_expired_still_checks_signature(self, tokens, identity, clock):
        token = tokens.issue_access(identity)
        clock.advance(days=2)

        assert tokens.verify(token, allow_expired=True).subject_id == "user-1"
        with pytest.raises(TokenInvalidError):
            tokens.verify(token[:-2] + "xx", allow_expired=True)

    def test_wrong_kind_rejected(self, tokens, identity):
        refresh = tokens.issue_refresh(identity)
        with pytest.raises(TokenInvalidError):
            tokens.verify(refresh, expected_kind=ACCESS)

    def test_tampered_payload_rejected(self, tokens, identity):
        header, _, signature = tokens.issue_access(identity).split(".")
        forged = _segment(
            {"sub": "user-1", "role": "super_admin", "typ": "access", "iat": 0, "exp": 9999999999}
        )
        with pytest.raises(TokenInvalidError):
            tokens.verify(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, tokens, identity):
        _, payload, _ = tokens.issue_access(identity).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalidError):
            tokens.verify(f"{header}.{payload}.")

    def test_other_secret_rejected(self, identity, clock):
        other = TokenService(
            make_settings(jwt_secret="another-secret-that-is-long-enough-1234"), clock=clock
        )
        token = other.issue_access(identity)
        with pytest.raises(TokenInvalidError):
            TokenService(make_settings(), clock=clock).verify(token)

    def test_audience_mismatch_rejected(self, identity, clock):
        foreign = TokenService(make_settings(jwt_audience="other-app"), clock=clock)
        with pytest.raises(TokenInvalidError):
            TokenService(make_settings(), clock=clock).verify(foreign.issue_access(identity))

    def test_algorithm_is_configurable(self, identity, clock):
        service = TokenService(make_settings(jwt_algorithm="hs512"), clock=clock)
        token = service.issue_access(identity)

        assert service.verify(token).subject_id == "user-1"
        with pytest.raises(TokenInvalidError):
            TokenService(make_settings(), clock=clock).verify(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "é.é.é"])
    def test_malformed_tokens_rejected(self, tokens, garbage):
        with pytest.raises(TokenInvalidError):
            tokens.verify(garbage)


class TestPeek:
    def test_peek_ignores_expiry(self, tokens, identity, clock):
        token = tokens.issue_access(identity)
        clock.advance(days=1)
        assert tokens.peek(token).subject_id == "user-1"

    def test_peek_returns_none_for_garbage(self, tokens):
        assert tokens.peek("not-a-token") is None

    def test_remaining_seconds(self, tokens, identity, clock):
        claims = tokens.verify(tokens.issue_access(identity))
        clock.advance(minutes=5)
        assert tokens.remaining_seconds(claims) == 600

