from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from campusauth.clock import Clock, utc_now
from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.service.errors import TokenExpiredError, TokenInvalidError
from campusauth.storage.models import Identity

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    token_version: int
    kind: str
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None
    role: Optional[str] = None
    campus_id: Optional[str] = None
    email: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            subject_id=str(payload["sub"]),
            token_version=int(payload.get("ver", 0)),
            kind=str(payload["typ"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token_id=payload.get("jti"),
            role=payload.get("role"),
            campus_id=payload.get("campus_id"),
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int
    token_type: str = "bearer"

    def as_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenService:
    """Signs and verifies bearer tokens.

    Tokens are compact JWS strings signed with HMAC. The algorithm, issuer
    and audience come from settings and are enforced on both paths; a token
    whose header names any other algorithm is rejected before the signature
    is even computed. No state is written anywhere.
    """

    def __init__(self, settings: Settings, *, clock: Clock = utc_now) -> None:
        self.settings = settings
        self.clock = clock
        self.algorithm = settings.jwt_algorithm
        self._digest = _DIGESTS[self.algorithm]
        self._secret = settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), self._digest).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _split(self, token: str) -> tuple[str, str, str]:
        if not isinstance(token, str):
            raise TokenInvalidError()
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenInvalidError()
        return parts[0], parts[1], parts[2]

    def _decode_payload(self, payload_b64: str) -> dict[str, Any]:
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError() from exc
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        return payload

    def _build_payload(
        self, identity: Identity, kind: str, ttl: timedelta, session_id: Optional[str]
    ) -> dict[str, Any]:
        now = self.clock()
        payload: dict[str, Any] = {
            "sub": identity.id,
            "email": identity.email,
            "role": identity.role,
            "campus_id": identity.campus_id,
            "ver": identity.token_version,
            "typ": kind,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if session_id:
            payload["sid"] = session_id
        return payload

    def issue_access(self, identity: Identity, *, session_id: Optional[str] = None) -> str:
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self._encode_jwt(self._build_payload(identity, ACCESS, ttl, session_id))

    def issue_refresh(self, identity: Identity, *, session_id: Optional[str] = None) -> str:
        ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        return self._encode_jwt(self._build_payload(identity, REFRESH, ttl, session_id))

    def issue_pair(self, identity: Identity, *, session_id: Optional[str] = None) -> TokenPair:
        now = self.clock()
        return TokenPair(
            access_token=self.issue_access(identity, session_id=session_id),
            refresh_token=self.issue_refresh(identity, session_id=session_id),
            access_expires_at=now + timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            expires_in=self.settings.access_token_ttl_minutes * 60,
        )

    def verify(
        self,
        token: str,
        *,
        expected_kind: Optional[str] = None,
        allow_expired: bool = False,
    ) -> TokenClaims:
        """Check signature, algorithm, issuer, audience and expiry.

        Raises ``TokenExpiredError`` for a genuine token past ``exp`` and
        ``TokenInvalidError`` for anything malformed or tampered with. Account
        state and token version are left to the caller.
        """
        header_b64, payload_b64, sig_b64 = self._split(token)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError() from exc
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError()

        payload = self._decode_payload(payload_b64)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        if payload.get("aud") != self.settings.jwt_audience:
            raise TokenInvalidError()
        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise TokenInvalidError() from exc
        if expected_kind and claims.kind != expected_kind:
            raise TokenInvalidError(f"Expected a {expected_kind} token")
        if not allow_expired and claims.expires_at <= self.clock():
            raise TokenExpiredError()
        return claims

    def peek(self, token: str) -> Optional[TokenClaims]:
        """Decode claims without checking the signature or expiry.

        Only for recovering lifetimes of tokens being revoked.
        """
        try:
            _, payload_b64, _ = self._split(token)
            return TokenClaims.from_payload(self._decode_payload(payload_b64))
        except (TokenInvalidError, KeyError, TypeError, ValueError, OverflowError):
            return None

    def remaining_seconds(self, claims: TokenClaims) -> int:
        return int((claims.expires_at - self.clock()).total_seconds())
