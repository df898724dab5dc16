"""Audit event emission."""

import logging
from typing import Any, Dict, Optional

from src.engine.models import SYSTEM_ACTOR, Actor, AuditAction, AuditEvent, AuditSource
from src.store.sqlite_store import StateStore, utcnow

logger = logging.getLogger(__name__)


class AuditTrail:
    """
    Append audit events to the store.

    Audit failures never break the operation being audited: they are logged
    and dropped.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def log(
        self,
        entity_type: str,
        entity_id: Any,
        action: AuditAction,
        new_value: Optional[Dict[str, Any]] = None,
        old_value: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        source: AuditSource = AuditSource.SYSTEM,
    ) -> Optional[int]:
        """Append one event. Returns its id, or None if it could not be written."""
        actor = actor or SYSTEM_ACTOR
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            old_value=old_value,
            new_value=new_value,
            user_id=actor.user_id,
            user_name=actor.user_name,
            source=source,
            timestamp=utcnow(),
        )
        try:
            return self.store.append_audit_event(event)
        except Exception as e:
            logger.error("Audit log error for %s %s (%s): %s", entity_type, entity_id, action.value, e)
            return None
