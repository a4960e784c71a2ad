"""
Audit Logging

Records who did what to which call-pipeline entity. Every event is written as
an AuditLog row inside the caller's transaction, so the audit entry commits or
rolls back together with the change it describes, and is echoed on the
``audit`` logger.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from callintel.models.models import AuditLog


class AuditLogger:
    """Database-backed audit sink"""

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

        # Prevent duplicate handlers
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - AUDIT - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)
            self.logger.propagate = False

    async def record(
        self,
        db: AsyncSession,
        *,
        restaurant_id: str,
        actor_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: Any,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditLog:
        """Stage an audit entry on ``db``; the caller owns the commit."""
        entry = AuditLog(
            restaurant_id=restaurant_id,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            details=details or {}
        )
        db.add(entry)

        self.logger.info(
            f"{action.upper()} - Restaurant: {restaurant_id} - "
            f"Actor: {actor_id or 'system'} - {entity_type}: {entity_id} - "
            f"Details: {json.dumps(details or {}, default=str)}"
        )
        return entry
