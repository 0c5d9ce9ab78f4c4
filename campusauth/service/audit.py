from __future__ import annotations

from typing import Any, List, Optional, Protocol

from campusauth.logging import get_logger
from campusauth.storage.models import AuditEvent, RequestContext

logger = get_logger(__name__)


class AuditSink(Protocol):
    """Append-only audit storage: records can be added and read, nothing else."""

    def append_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self,
        *,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...


class AuditTrail:
    """Fire-and-forget audit recording.

    A failed write is logged and dropped; it never aborts the operation
    being audited.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        action: str,
        *,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        resource_type: str = "user",
        resource_id: Optional[str] = None,
        **detail: Any,
    ) -> None:
        event = AuditEvent(
            action=action,
            actor_id=actor_id,
            subject_id=subject_id,
            resource_type=resource_type,
            resource_id=resource_id or subject_id,
            origin_address=context.origin_address if context else None,
            user_agent=context.user_agent if context else None,
            detail=detail,
        )
        try:
            self.sink.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                subject_id=subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def events(
        self,
        *,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        return self.sink.list_audit_events(subject_id=subject_id, action=action, limit=limit)
