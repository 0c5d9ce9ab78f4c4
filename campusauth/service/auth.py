from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from campusauth.clock import Clock, utc_now
from campusauth.config import Settings
from campusauth.logging import get_logger, redact_value
from campusauth.service.audit import AuditTrail
from campusauth.service.codes import CodePurpose, CodeStatus, OneTimeCodeService
from campusauth.service.errors import (
    AccountInactiveError,
    CodeInvalidError,
    ConflictError,
    DeliveryFailedError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    TokenInvalidError,
    TokenRevokedError,
    ValidationFailure,
)
from campusauth.service.lockout import LockoutPolicy
from campusauth.service.notifications import CHANNELS, EMAIL, SMS, Notifier
from campusauth.service.passwords import CredentialHasher, validate_password_strength
from campusauth.service.revocation import RevocationRegistry
from campusauth.service.sessions import SessionRegistry
from campusauth.service.tokens import ACCESS, REFRESH, TokenPair, TokenService
from campusauth.storage.common import IdentityStore, KeyValueCache
from campusauth.storage.errors import ConstraintViolation
from campusauth.storage.models import (
    ROLES,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    Identity,
    RequestContext,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RESET_ACK_MESSAGE = "If an account exists with this email, a password reset code has been sent"
OTP_ACK_MESSAGE = "If this number is registered, a verification code has been sent"


@dataclass
class AuthContext:
    subject_id: str
    role: str
    campus_id: Optional[str]
    session_id: Optional[str] = None
    email: Optional[str] = None


@dataclass
class LoginResult:
    identity: Identity
    tokens: TokenPair
    session_id: str

    def as_response(self) -> Dict[str, Any]:
        return {
            "user": self.identity.public_view(),
            "session_id": self.session_id,
            **self.tokens.as_response(),
        }


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class DeliveryAck:
    """Response to a code request; identical whether or not a code was sent."""

    message: str
    expires_in: int


@dataclass
class MfaChallenge:
    method: str
    destination: str
    expires_at: datetime
    detail: Dict[str, Any] = field(default_factory=dict)


class AuthService:
    """Login, refresh, logout and credential recovery use cases.

    The only component that decides *when* tokens are issued, sessions are
    created or revoked, codes are sent, and failures are counted. Everything
    it composes is built here from one ``Settings`` instance and one clock.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: KeyValueCache,
        settings: Settings,
        *,
        notifier: Notifier,
        audit: Optional[AuditTrail] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self.notifier = notifier
        self.audit = audit or AuditTrail(store)
        self.hasher = CredentialHasher()
        self.tokens = TokenService(settings, clock=clock)
        self.sessions = SessionRegistry(cache, settings, clock=clock)
        self.revocation = RevocationRegistry(cache, self.tokens, clock=clock)
        self.codes = OneTimeCodeService(cache, settings, clock=clock)
        self.lockout = LockoutPolicy(store, cache, settings, self.audit, clock=clock)
        self._phone_re = re.compile(settings.phone_pattern)
        self.logger = logger

    # -- input checks ---------------------------------------------------

    def _require_email(self, email: Optional[str]) -> str:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise ValidationFailure("A valid email address is required")
        return normalized

    def _require_phone(self, phone: Optional[str]) -> str:
        normalized = (phone or "").strip()
        if not self._phone_re.match(normalized):
            raise ValidationFailure("Invalid phone number format. Expected format: +91XXXXXXXXXX")
        return normalized

    def _require_identity(self, subject_id: str) -> Identity:
        identity = self.store.get_identity(subject_id)
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    # -- registration ---------------------------------------------------

    def register_identity(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        role: str = "student",
        campus_id: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        admin_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        normalized_email = self._require_email(email)
        if phone:
            phone = self._require_phone(phone)
        if role not in ROLES:
            raise ValidationFailure(f"Unknown role {role}")
        if status not in (STATUS_ACTIVE, STATUS_INACTIVE):
            raise ValidationFailure("New accounts must be active or inactive")
        campus_id = campus_id or self.settings.default_campus_id
        if role != "super_admin" and not campus_id:
            raise ValidationFailure("campus_id is required for this role")
        validate_password_strength(password)
        try:
            identity = self.store.create_identity(
                normalized_email,
                self.hasher.hash(password),
                name=name,
                phone=phone,
                role=role,
                campus_id=campus_id,
                status=status,
            )
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field", "email")
            raise ConflictError(
                f"An account with this {field_name} already exists",
                detail={"field": field_name},
                error_code=f"{field_name}_exists",
            ) from exc
        self.audit.record(
            "user_created",
            subject_id=identity.id,
            actor_id=admin_id,
            context=context,
            role=role,
            campus_id=campus_id,
        )
        return identity

    # -- login ----------------------------------------------------------

    async def _complete_login(
        self, identity: Identity, context: RequestContext, method: str
    ) -> LoginResult:
        identity = self.lockout.record_success(identity)
        session_id = await self.sessions.create(
            identity.id, context.device, context.origin_address
        )
        tokens = self.tokens.issue_pair(identity, session_id=session_id)
        self.logger.info("login_succeeded", subject_id=identity.id, method=method)
        self.audit.record(
            "login",
            subject_id=identity.id,
            context=context,
            method=method,
            device_type=context.device.device_type,
        )
        return LoginResult(identity=identity, tokens=tokens, session_id=session_id)

    async def login_with_password(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        context = context or RequestContext()
        if not email or not password:
            raise ValidationFailure("Email and password are required")
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            # Same hashing cost as a real check
            self.hasher.verify_dummy(password)
            self.audit.record("failed_login", context=context, reason="unknown_account")
            raise InvalidCredentialsError()

        identity = self.lockout.ensure_not_locked(identity, context)

        if not self.hasher.verify(identity.credential_hash, password):
            updated = await self.lockout.record_failure(identity, context=context)
            if updated.lock_active(self.clock()) and not identity.lock_active(self.clock()):
                await self._notify_locked(updated)
            raise InvalidCredentialsError()

        if identity.status == STATUS_INACTIVE:
            self.audit.record("login_rejected", subject_id=identity.id, context=context, reason="inactive")
            raise AccountInactiveError()

        return await self._complete_login(identity, context, "password")

    async def _notify_locked(self, identity: Identity) -> None:
        minutes = max(1, -(-self.lockout.retry_after(identity) // 60))
        channel, address = (SMS, identity.phone) if identity.phone else (EMAIL, identity.email)
        await self._deliver(channel, address, lambda: self.notifier.send_lock_notice(channel, address, minutes))

    async def _deliver(self, channel: str, address: str, send) -> bool:
        try:
            delivered = await send()
        except Exception as exc:
            self.logger.error(
                "notification_failed",
                channel=channel,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            self.logger.warning("notification_not_delivered", channel=channel)
        return bool(delivered)

    def _acknowledge(self, purpose: CodePurpose) -> DeliveryAck:
        """The one response shape for code requests, sent or not."""
        policy = self.codes.policies[purpose]
        message = RESET_ACK_MESSAGE if purpose == CodePurpose.PASSWORD_RESET else OTP_ACK_MESSAGE
        return DeliveryAck(message=message, expires_in=policy.ttl_seconds)

    async def request_login_otp(
        self, phone: str, context: Optional[RequestContext] = None
    ) -> DeliveryAck:
        context = context or RequestContext()
        phone = self._require_phone(phone)
        rate = await self.codes.rate_status(CodePurpose.LOGIN_OTP, phone)
        if rate.limited:
            raise RateLimitedError(
                "Too many OTP requests. Please try again later.", retry_after=rate.retry_after
            )

        identity = self.store.get_identity_by_phone(phone)
        if identity is None:
            await self.codes.count_request(CodePurpose.LOGIN_OTP, phone)
            self.audit.record("otp_requested", context=context, outcome="unknown_account")
            return self._acknowledge(CodePurpose.LOGIN_OTP)
        identity = self.lockout.check(identity, context)
        if identity.status != STATUS_ACTIVE:
            await self.codes.count_request(CodePurpose.LOGIN_OTP, phone)
            self.audit.record(
                "otp_requested", subject_id=identity.id, context=context, outcome=identity.status
            )
            return self._acknowledge(CodePurpose.LOGIN_OTP)

        issued = await self.codes.issue(CodePurpose.LOGIN_OTP, phone)
        delivered = await self._deliver(
            SMS,
            phone,
            lambda: self.notifier.send_code(SMS, phone, CodePurpose.LOGIN_OTP, issued.code),
        )
        self.audit.record(
            "otp_requested",
            subject_id=identity.id,
            context=context,
            outcome="sent" if delivered else "delivery_failed",
        )
        return self._acknowledge(CodePurpose.LOGIN_OTP)

    async def login_with_otp(
        self, phone: str, code: str, context: Optional[RequestContext] = None
    ) -> LoginResult:
        context = context or RequestContext()
        phone = self._require_phone(phone)
        identity = self.store.get_identity_by_phone(phone)
        if identity is None:
            self.audit.record("failed_login", context=context, reason="unknown_account", method="otp")
            raise CodeInvalidError("Invalid or expired OTP")

        identity = self.lockout.ensure_not_locked(identity, context)
        if identity.status != STATUS_ACTIVE:
            self.audit.record("login_rejected", subject_id=identity.id, context=context, reason="inactive")
            raise AccountInactiveError()

        check = await self.codes.verify(CodePurpose.LOGIN_OTP, phone, code)
        if not check.valid:
            self.audit.record(
                "otp_verification_failed",
                subject_id=identity.id,
                context=context,
                attempts_remaining=check.attempts_remaining,
            )
            raise CodeInvalidError(
                "Invalid or expired OTP", attempts_remaining=check.attempts_remaining
            )
        return await self._complete_login(identity, context, "otp")

    # -- step-up MFA ----------------------------------------------------

    async def request_mfa_code(
        self,
        subject_id: str,
        method: str = EMAIL,
        context: Optional[RequestContext] = None,
    ) -> MfaChallenge:
        context = context or RequestContext()
        if method not in CHANNELS:
            raise ValidationFailure("Invalid MFA method. Must be 'email' or 'sms'")
        identity = self._require_identity(subject_id)
        if identity.status != STATUS_ACTIVE:
            raise AccountInactiveError()
        address = identity.email if method == EMAIL else identity.phone
        if not address:
            raise ValidationFailure("No phone number on file for SMS verification")

        issued = await self.codes.issue(CodePurpose.MFA, identity.id)
        delivered = await self._deliver(
            method,
            address,
            lambda: self.notifier.send_code(method, address, CodePurpose.MFA, issued.code),
        )
        if not delivered:
            await self.codes.discard(CodePurpose.MFA, identity.id)
            raise DeliveryFailedError(f"Failed to send verification code via {method}")
        self.audit.record("mfa_code_sent", subject_id=identity.id, context=context, method=method)
        return MfaChallenge(
            method=method,
            destination=redact_value(address),
            expires_at=issued.expires_at,
        )

    async def verify_mfa_code(
        self, subject_id: str, code: str, context: Optional[RequestContext] = None
    ) -> bool:
        check = await self.codes.verify(CodePurpose.MFA, subject_id, code)
        if not check.valid:
            self.audit.record(
                "mfa_verification_failed",
                subject_id=subject_id,
                context=context,
                attempts_remaining=check.attempts_remaining,
            )
            raise CodeInvalidError(
                "Invalid or expired verification code",
                attempts_remaining=check.attempts_remaining,
            )
        self.audit.record("mfa_verified", subject_id=subject_id, context=context)
        return True

    async def mfa_status(self, subject_id: str) -> CodeStatus:
        return await self.codes.status(CodePurpose.MFA, subject_id)

    # -- token lifecycle ------------------------------------------------

    async def refresh(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> RefreshResult:
        """Mint a new access token from a refresh token.

        Account state, token version and the session are re-checked on every
        call, so a locked, deactivated or globally logged-out account cannot
        refresh even while the refresh token itself is unexpired.
        """
        claims = self.tokens.verify(refresh_token, expected_kind=REFRESH)
        if await self.revocation.is_revoked(refresh_token):
            raise TokenRevokedError()
        identity = self.store.get_identity(claims.subject_id)
        if identity is None:
            raise TokenInvalidError()
        identity = self.lockout.ensure_not_locked(identity, context)
        if identity.status != STATUS_ACTIVE:
            raise AccountInactiveError()
        if claims.token_version != identity.token_version:
            self.logger.info(
                "refresh_rejected",
                subject_id=identity.id,
                reason="version_mismatch",
            )
            self.audit.record(
                "refresh_rejected", subject_id=identity.id, context=context, reason="version_mismatch"
            )
            raise TokenInvalidError()
        if claims.session_id:
            if not await self.sessions.touch(identity.id, claims.session_id):
                self.audit.record(
                    "refresh_rejected", subject_id=identity.id, context=context, reason="session_ended"
                )
                raise TokenInvalidError("Session has ended")

        access_token = self.tokens.issue_access(identity, session_id=claims.session_id)
        self.audit.record("token_refresh", subject_id=identity.id, context=context)
        return RefreshResult(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl_minutes * 60,
        )

    async def authenticate(
        self, access_token: str, campus_id: Optional[str] = None
    ) -> AuthContext:
        """Resolve a bearer access token into the caller's identity.

        ``campus_id`` scopes the request; a mismatch is forbidden for
        everyone except super admins.
        """
        claims = self.tokens.verify(access_token, expected_kind=ACCESS)
        if await self.revocation.is_revoked(access_token):
            raise TokenRevokedError()
        identity = self.store.get_identity(claims.subject_id)
        if identity is None:
            raise TokenInvalidError()
        identity = self.lockout.ensure_not_locked(identity)
        if identity.status != STATUS_ACTIVE:
            raise AccountInactiveError()
        if claims.token_version != identity.token_version:
            raise TokenInvalidError("Token has been superseded")
        if campus_id and identity.role != "super_admin" and identity.campus_id != campus_id:
            self.logger.warning(
                "campus_scope_denied", subject_id=identity.id, requested_campus=campus_id
            )
            raise ForbiddenError("Access denied for this campus")
        return AuthContext(
            subject_id=identity.id,
            role=identity.role,
            campus_id=identity.campus_id,
            session_id=claims.session_id,
            email=identity.email,
        )

    async def logout(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> bool:
        claims = self.tokens.verify(access_token, expected_kind=ACCESS, allow_expired=True)
        await self.revocation.revoke(access_token, "logout", subject_id=claims.subject_id)
        if refresh_token:
            refresh_claims = self.tokens.verify(
                refresh_token, expected_kind=REFRESH, allow_expired=True
            )
            if refresh_claims.subject_id != claims.subject_id:
                raise TokenInvalidError("Refresh token belongs to a different account")
            await self.revocation.revoke(refresh_token, "logout", subject_id=claims.subject_id)
        target_session = session_id or claims.session_id
        revoked = False
        if target_session:
            revoked = await self.sessions.revoke(target_session, claims.subject_id)
        self.audit.record(
            "logout", subject_id=claims.subject_id, context=context, session_revoked=revoked
        )
        return True

    async def logout_all(
        self, subject_id: str, context: Optional[RequestContext] = None
    ) -> int:
        """Sign the account out everywhere.

        The version bump lands first so refresh tokens die even if deleting
        the session records then fails.
        """
        self._require_identity(subject_id)
        version = self.store.bump_token_version(subject_id, now=self.clock())
        count = await self.sessions.revoke_all(subject_id)
        self.logger.info("logout_all", subject_id=subject_id, sessions=count, token_version=version)
        self.audit.record("logout_all", subject_id=subject_id, context=context, sessions_revoked=count)
        return count

    # -- password recovery ----------------------------------------------

    async def request_password_reset(
        self, email: str, context: Optional[RequestContext] = None
    ) -> DeliveryAck:
        context = context or RequestContext()
        normalized = self._require_email(email)
        identity = self.store.get_identity_by_email(normalized)
        if identity is None:
            self.audit.record("password_reset_requested", context=context, outcome="unknown_account")
            return self._acknowledge(CodePurpose.PASSWORD_RESET)
        if identity.status == STATUS_INACTIVE:
            self.audit.record(
                "password_reset_requested", subject_id=identity.id, context=context, outcome="inactive"
            )
            return self._acknowledge(CodePurpose.PASSWORD_RESET)
        try:
            issued = await self.codes.issue(CodePurpose.PASSWORD_RESET, identity.id)
        except RateLimitedError:
            self.audit.record(
                "password_reset_requested", subject_id=identity.id, context=context, outcome="rate_limited"
            )
            return self._acknowledge(CodePurpose.PASSWORD_RESET)
        delivered = await self._deliver(
            EMAIL,
            identity.email,
            lambda: self.notifier.send_code(
                EMAIL, identity.email, CodePurpose.PASSWORD_RESET, issued.code
            ),
        )
        self.audit.record(
            "password_reset_requested",
            subject_id=identity.id,
            context=context,
            outcome="sent" if delivered else "delivery_failed",
        )
        return self._acknowledge(CodePurpose.PASSWORD_RESET)

    async def confirm_password_reset(
        self,
        email: str,
        code: str,
        new_password: str,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        context = context or RequestContext()
        validate_password_strength(new_password)
        identity = self.store.get_identity_by_email(self._require_email(email))
        if identity is None:
            raise CodeInvalidError("Invalid or expired reset code")
        check = await self.codes.verify(CodePurpose.PASSWORD_RESET, identity.id, code)
        if not check.valid:
            self.audit.record(
                "password_reset_failed",
                subject_id=identity.id,
                context=context,
                attempts_remaining=check.attempts_remaining,
            )
            raise CodeInvalidError(
                "Invalid or expired reset code", attempts_remaining=check.attempts_remaining
            )

        updated = self.store.update_credential(
            identity.id, self.hasher.hash(new_password), now=self.clock(), clear_lock=True
        )
        revoked = await self.sessions.revoke_all(identity.id)
        self.audit.record(
            "password_reset", subject_id=identity.id, context=context, sessions_revoked=revoked
        )
        if updated.phone:
            await self._deliver(
                SMS, updated.phone, lambda: self.notifier.send_password_changed(SMS, updated.phone)
            )
        return updated

    async def change_password(
        self,
        subject_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[TokenPair]:
        """Replace the password of a signed-in account.

        Other sessions are revoked. When ``current_session_id`` is given a
        fresh token pair bound to the new token version is returned for it.
        """
        identity = self._require_identity(subject_id)
        if not self.hasher.verify(identity.credential_hash, current_password):
            self.audit.record("password_change_failed", subject_id=subject_id, context=context)
            raise InvalidCredentialsError("Current password is incorrect")
        validate_password_strength(new_password)
        if self.hasher.verify(identity.credential_hash, new_password):
            raise ValidationFailure("New password must be different from the current password")

        updated = self.store.update_credential(
            identity.id, self.hasher.hash(new_password), now=self.clock()
        )
        revoked = await self.sessions.revoke_all(
            identity.id, except_session_id=current_session_id
        )
        self.audit.record(
            "password_change", subject_id=identity.id, context=context, sessions_revoked=revoked
        )
        if current_session_id and await self.sessions.get(identity.id, current_session_id):
            return self.tokens.issue_pair(updated, session_id=current_session_id)
        return None

    # -- sessions and administration ------------------------------------

    async def list_sessions(
        self, subject_id: str, current_session_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        records = await self.sessions.list(subject_id)
        return [
            {
                "session_id": record.session_id,
                "device_type": record.device_type,
                "device_label": record.device_label,
                "origin_address": record.origin_address,
                "created_at": record.created_at.isoformat(),
                "last_activity_at": record.last_activity_at.isoformat(),
                "expires_in": record.expires_in,
                "is_current": record.session_id == current_session_id,
            }
            for record in records
        ]

    async def revoke_session(
        self,
        subject_id: str,
        session_id: str,
        context: Optional[RequestContext] = None,
    ) -> bool:
        if not await self.sessions.revoke(session_id, subject_id):
            raise NotFoundError("Session not found")
        self.audit.record(
            "session_revoked",
            subject_id=subject_id,
            context=context,
            resource_type="session",
            resource_id=session_id,
        )
        return True

    def lock_account(
        self,
        subject_id: str,
        *,
        admin_id: str,
        minutes: Optional[int] = None,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        return self.lockout.lock(
            subject_id, admin_id=admin_id, minutes=minutes, reason=reason, context=context
        )

    def unlock_account(
        self,
        subject_id: str,
        *,
        admin_id: str,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        return self.lockout.unlock(subject_id, admin_id=admin_id, context=context)
