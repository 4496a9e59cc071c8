"""
Comprehensive Audit Logging System

Every order transition, ledger mutation, setting change and admin action is
written as an AuditLog row inside the caller's transaction and mirrored as a
JSON line to the 'audit' logger.
"""

import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from models import AuditLog, ActorType
from services.actors import Actor, SYSTEM_ACTOR

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    """Convert Decimals, datetimes and enums into JSON-safe values"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


class AuditLogger:
    """Service for comprehensive audit logging"""

    def __init__(self, log_file: Optional[str] = None):
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)

        log_file = log_file if log_file is not None else Config.AUDIT_LOG_FILE
        if log_file and not any(
            isinstance(h, logging.FileHandler) for h in self.audit_logger.handlers
        ):
            audit_handler = logging.FileHandler(log_file)
            audit_handler.setFormatter(
                logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s')
            )
            self.audit_logger.addHandler(audit_handler)

    def log_event(
        self,
        session: Session,
        action: str,
        actor: Optional[Actor] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """Append one audit entry in the caller's transaction"""
        actor = actor or SYSTEM_ACTOR
        entry = AuditLog(
            event_id=f"EVT_{uuid.uuid4().hex[:24].upper()}",
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=to_jsonable(previous_state),
            new_state=to_jsonable(new_state),
            event_metadata=to_jsonable(metadata or {}),
        )
        session.add(entry)

        self.audit_logger.info(json.dumps({
            'event_id': entry.event_id,
            'actor': actor.label,
            'action': action,
            'entity_type': entity_type,
            'entity_id': entity_id,
            'previous_state': entry.previous_state,
            'new_state': entry.new_state,
            'metadata': entry.event_metadata,
        }))

        if actor.actor_type != ActorType.SYSTEM.value:
            logger.info(
                f"🛡️ ADMIN ACTION: {actor.label} performed '{action}' on {entity_type} {entity_id or ''}"
            )
        return entry

    def list_events(
        self,
        session: Session,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        query = session.query(AuditLog)
        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            query = query.filter(AuditLog.entity_id == entity_id)
        if action:
            query = query.filter(AuditLog.action == action)
        return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()


# Global audit logger instance
audit_logger = AuditLogger()
