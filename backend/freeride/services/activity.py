import logging

from sqlalchemy.orm import Session

from freeride.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

RULE_ENTITY = "FREE_DAYS_RULE"
BENEFICIARY_ENTITY = "FREE_DAYS_BENEFICIARY"


def log_activity(
    db: Session,
    actor_user_id,
    action: str,
    entity_type: str,
    entity_id,
    description: str,
    data: dict | None = None,
):
    """Record a human-readable audit line; committed with the caller's unit of work."""
    row = AuditLog(
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        description=description,
        data=data or {},
    )
    db.add(row)
    logger.info("%s %s %s: %s", action, entity_type, entity_id, description)
