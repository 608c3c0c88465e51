"""
Cross-cutting audit log
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from estate_release.database import utcnow
from estate_release.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Appends audit events to the ``audit_logs`` table. When given the caller's
    session the row joins that transaction, so a failed append rolls back the
    change it describes.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def record(self, action: str, actor: str = "system", details: Optional[Dict[str, Any]] = None,
               result: str = "success", risk_level: str = "low", session: Optional[Session] = None) -> None:
        entry = AuditLog(
            action=action,
            actor=actor,
            result=result,
            risk_level=risk_level,
            details=details or {},
            created_at=self.clock(),
        )
        if session is not None:
            session.add(entry)
            return

        db = self.session_factory()
        try:
            db.add(entry)
            db.commit()
        except Exception:
            db.rollback()
            logger.error(f"Failed to append audit event {action}")
            raise
        finally:
            db.close()

    def append_audit_log(self, event: Dict[str, Any]) -> None:
        """Collaborator entry point taking a plain event dict"""
        event = dict(event)
        self.record(
            action=event.pop("action"),
            actor=event.pop("actor", "system"),
            result=event.pop("result", "success"),
            risk_level=event.pop("risk_level", "low"),
            details=event.pop("details", event),
        )

    def recent(self, limit: int = 100, action: Optional[str] = None) -> List[AuditLog]:
        db = self.session_factory()
        try:
            query = db.query(AuditLog)
            if action:
                query = query.filter(AuditLog.action == action)
            return query.order_by(AuditLog.id.desc()).limit(limit).all()
        finally:
            db.close()
