from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from campusauth.clock import ensure_utc, utc_now

ROLES = ("student", "teacher", "parent", "admin", "super_admin")

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_LOCKED = "locked"


@dataclass
class Identity:
    id: str
    email: str
    credential_hash: str
    name: str = ""
    phone: Optional[str] = None
    role: str = "student"
    campus_id: Optional[str] = None
    status: str = STATUS_ACTIVE
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    token_version: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def lock_active(self, now: datetime) -> bool:
        """True while ``locked_until`` is set and still in the future."""
        return self.locked_until is not None and ensure_utc(self.locked_until) > now

    def lock_lapsed(self, now: datetime) -> bool:
        """True when a lock was set and its window has passed."""
        if self.status != STATUS_LOCKED and self.locked_until is None:
            return False
        return not self.lock_active(now)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "role": self.role,
            "campus_id": self.campus_id,
            "status": self.status,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class DeviceInfo:
    device_type: str = "web"
    device_label: str = "Unknown Device"
    user_agent: Optional[str] = None


@dataclass
class RequestContext:
    """Caller metadata threaded through the orchestrator into audit entries."""

    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    device: DeviceInfo = field(default_factory=DeviceInfo)
    attempt_id: Optional[str] = None


@dataclass
class SessionRecord:
    session_id: str
    subject_id: str
    device_type: str
    device_label: str
    origin_address: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    user_agent: Optional[str] = None
    expires_in: Optional[int] = None

    def to_cache(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "device_type": self.device_type,
            "device_label": self.device_label,
            "origin_address": self.origin_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any], expires_in: Optional[int] = None) -> "SessionRecord":
        return cls(
            session_id=data["session_id"],
            subject_id=data["subject_id"],
            device_type=data.get("device_type", "web"),
            device_label=data.get("device_label", "Unknown Device"),
            origin_address=data.get("origin_address"),
            user_agent=data.get("user_agent"),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
            expires_in=expires_in,
        )


@dataclass
class RevocationEntry:
    subject_id: Optional[str]
    revoked_at: datetime
    reason: str
    kind: Optional[str] = None

    def to_cache(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "revoked_at": self.revoked_at.isoformat(),
            "reason": self.reason,
            "kind": self.kind,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "RevocationEntry":
        return cls(
            subject_id=data.get("subject_id"),
            revoked_at=datetime.fromisoformat(data["revoked_at"]),
            reason=data.get("reason", "unspecified"),
            kind=data.get("kind"),
        )


@dataclass
class AuditEvent:
    action: str
    actor_id: Optional[str] = None
    subject_id: Optional[str] = None
    resource_type: str = "user"
    resource_id: Optional[str] = None
    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload
