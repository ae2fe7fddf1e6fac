import uuid
from typing import Any

from sqlalchemy.orm import Session

from ghostcrm.context import get_correlation_id
from ghostcrm.models.audit import AuditEvent


def write_audit_event(
    db: Session,
    *,
    organization_id: uuid.UUID | None,
    actor_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction; the caller commits."""
    event = AuditEvent(
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        event_metadata=metadata or {},
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    return event
