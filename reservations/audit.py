import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def log_event(action, user=None, hotel_id=None, entity='', entity_id=None, meta=None):
    """Record a state change in the audit log and mirror it to the application log."""
    row = AuditLog.objects.create(
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else '',
        user=user if user is not None and user.is_authenticated else None,
        hotel_id=hotel_id,
        meta=meta or None,
    )
    logger.info('%s %s=%s', action, entity or '-', row.entity_id or '-', extra={'audit_meta': meta})
    return row
