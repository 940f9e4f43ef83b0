"""Audit sink for security-relevant contract events.

Every event is written as a single-line ``AUDIT k=v`` log record so it is easy
to index; the default sink also persists an ``AuditLog`` row in its own
session. Sink failures are logged and never reach the calling workflow.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from tripsign.utils.datetime import utc_now

_logger = logging.getLogger("tripsign.audit")

CREATE_CONTRACT = "CREATE_CONTRACT"
SEND_CONTRACT = "SEND_CONTRACT"
EDIT_CONTRACT = "EDIT_CONTRACT"
APPROVE_CONTRACT = "APPROVE_CONTRACT"
REJECT_CONTRACT = "REJECT_CONTRACT"
RESUBMIT_CONTRACT = "RESUBMIT_CONTRACT"
CANCEL_CONTRACT = "CANCEL_CONTRACT"
SIGN_CONTRACT = "SIGN_CONTRACT"
VERIFY_CONTRACT = "VERIFY_CONTRACT"
VERIFICATION_FAILED = "VERIFICATION_FAILED"
FACE_TO_FACE_VERIFY = "FACE_TO_FACE_VERIFY"


def _emit(action: str, actor_id: Optional[str] = None, **data: Any):
    payload = {"ts": utc_now().isoformat(), "action": action}
    if actor_id:
        payload["actor_id"] = actor_id
    payload.update(data)
    parts = [f"{k}={repr(v)}" for k, v in payload.items()]
    _logger.info("AUDIT " + " ".join(parts))


class AuditSink(ABC):
    """Fire-and-forget recorder; implementations must not raise."""

    @abstractmethod
    def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        origin: Optional[str] = None,
    ) -> None:
        ...


class LoggingAuditSink(AuditSink):
    def record(self, actor_id, action, resource_id=None, details=None, origin=None) -> None:
        _emit(action, actor_id=actor_id, resource_id=resource_id, origin=origin, **(details or {}))


class MemoryAuditSink(LoggingAuditSink):
    """Keeps recorded events in a list; handy for callers that inspect them."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def record(self, actor_id, action, resource_id=None, details=None, origin=None) -> None:
        super().record(actor_id, action, resource_id, details, origin)
        self.events.append(
            {
                "actor_id": actor_id,
                "action": action,
                "resource_id": resource_id,
                "details": dict(details or {}),
                "origin": origin,
            }
        )

    def actions(self) -> List[str]:
        return [e["action"] for e in self.events]


class DatabaseAuditSink(LoggingAuditSink):
    """Persists an AuditLog row in a dedicated session.

    The row is committed independently of the caller's unit of work so an
    audit write never commits (or rolls back) business data.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from tripsign.db import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def record(self, actor_id, action, resource_id=None, details=None, origin=None) -> None:
        super().record(actor_id, action, resource_id, details, origin)
        from tripsign.models.audit_log import AuditLog

        db = None
        try:
            db = self.session_factory()
            db.add(
                AuditLog(
                    actor_id=actor_id,
                    action=action,
                    resource_id=resource_id,
                    details=details or {},
                    ip_address=origin,
                )
            )
            db.commit()
        except Exception as e:
            _logger.error(f"Failed to persist audit event {action} for {resource_id}: {e}")
            if db is not None:
                db.rollback()
        finally:
            if db is not None:
                db.close()


def safe_record(
    sink: Optional[AuditSink],
    actor_id: Optional[str],
    action: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    origin: Optional[str] = None,
) -> None:
    """Call ``sink.record`` and swallow anything it raises."""
    if sink is None:
        return
    try:
        sink.record(actor_id, action, resource_id, details, origin)
    except Exception as e:
        _logger.error(f"Audit sink failed for {action} on {resource_id}: {e}")
