"""
Audit trail for privileged mutations.

Entries are written after the response has been sent, on a session of
their own, so a slow or failing audit store never delays or fails the
request that triggered it. Write failures are logged and dropped.
"""
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks

from models import AuditLog, AuditTargetType

logger = logging.getLogger("medequip.audit")


class AuditLogger:
    """Fire-and-forget recorder of audit entries."""

    def __init__(self, session_factory: Optional[Callable] = None):
        # None means "use the application's session factory"
        self.session_factory = session_factory

    def _sessions(self):
        if self.session_factory is not None:
            return self.session_factory()
        from database import get_db_context
        return get_db_context()

    def record(
        self,
        background_tasks: BackgroundTasks,
        *,
        user_id: str,
        organization_id: str,
        action: str,
        target_type: AuditTargetType,
        target_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Schedule an entry to be written once the response is sent."""
        background_tasks.add_task(
            self.write,
            user_id=user_id,
            organization_id=organization_id,
            action=str(getattr(action, "value", action)),
            target_type=target_type,
            target_id=target_id,
            details=details or {},
        )

    async def write(self, **entry) -> bool:
        try:
            async with self._sessions() as session:
                session.add(AuditLog(**entry))
                await session.commit()
        except Exception:
            logger.exception(
                f"Failed to save audit log: {entry.get('action')} on "
                f"{entry.get('target_type')} {entry.get('target_id')}"
            )
            return False
        return True


audit_logger = AuditLogger()
