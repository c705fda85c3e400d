"""
Administrative audit trail

Only non-identifying lifecycle events are recorded here. Anonymous vote
paths never call into this module.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from anonvote.models import AuditLog

logger = logging.getLogger(__name__)


def log_audit(
    db: AsyncSession,
    event_type: str,
    entity_type: str,
    entity_id: str,
    details: Optional[Dict[str, Any]] = None,
    actor: Optional[str] = None,
) -> None:
    """Stage an audit row in the caller's transaction"""
    db.add(
        AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            details=details or {},
            actor=actor,
        )
    )
    logger.debug(f"Audit event staged: {event_type} {entity_type}={entity_id}")
