from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol
import enum
import logging

from sqlalchemy.orm import Session

from clinic_engine.core.context import Actor
from clinic_engine.models.schema import AuditEntry

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ("password", "password_hash")

class AuditSink(Protocol):
    def record(self, actor: Actor, action: str, entity_type: str, entity_id: Any,
               before: Optional[Dict[str, Any]] = None, after: Optional[Dict[str, Any]] = None,
               description: str = "", clinic_id: Optional[int] = None) -> None: ...

def sanitize_for_audit(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a snapshot JSON-safe and redact credentials"""
    if values is None:
        return None

    result = {}
    for key, value in values.items():
        if key in SENSITIVE_FIELDS:
            result[key] = "[REDACTED]"
        elif isinstance(value, (datetime, date, time)):
            result[key] = value.isoformat()
        elif isinstance(value, Decimal):
            result[key] = str(value)
        elif isinstance(value, enum.Enum):
            result[key] = value.value
        else:
            result[key] = value
    return result

class DatabaseAuditSink:
    """Writes audit entries into the caller's session so they commit or roll back with the use case."""

    def __init__(self, db: Session):
        self.db = db

    def record(self, actor: Actor, action: str, entity_type: str, entity_id: Any,
               before: Optional[Dict[str, Any]] = None, after: Optional[Dict[str, Any]] = None,
               description: str = "", clinic_id: Optional[int] = None) -> None:
        entry = AuditEntry(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            before=sanitize_for_audit(before),
            after=sanitize_for_audit(after),
            description=description,
            clinic_id=clinic_id
        )
        self.db.add(entry)
        logger.debug(f"Audit {action} {entity_type}#{entity_id} by staff {actor.id}")
