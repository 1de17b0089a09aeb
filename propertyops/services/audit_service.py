from propertyops.logging_config import get_logger
from propertyops.models import AuditLog, db
from propertyops.request_context import get_actor_user_id, get_request_metadata

logger = get_logger(__name__)


class AuditService:
    """Service for writing and reading the audit trail"""

    @staticmethod
    def log(action, entity_type, entity_id, message, before=None, after=None, metadata=None):
        """
        Append an audit entry to the current session.

        The entry is flushed but not committed, so it lands in the same
        transaction as the state change it describes.

        Args:
            action: e.g. 'ACCOUNTING_EXPORT_QUEUED'
            entity_type: 'INVOICE', 'OUTBOX', ...
            entity_id: Identifier of the audited entity
            message: Human readable description
            before: Optional state before the change
            after: Optional state after the change
            metadata: Extra structured data, merged with request metadata
        """
        entry = AuditLog(
            actor_user_id=get_actor_user_id(),
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            message=message,
            before=before,
            after=after,
            context={**(metadata or {}), **get_request_metadata()},
        )
        db.session.add(entry)
        db.session.flush()

        logger.info(
            "Audit entry recorded",
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
        )
        return entry

    @staticmethod
    def query(entity_type=None, entity_id=None, action=None, limit=100):
        """Return audit entries matching the filters, newest first."""
        q = AuditLog.query
        if entity_type:
            q = q.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            q = q.filter(AuditLog.entity_id == str(entity_id))
        if action:
            q = q.filter(AuditLog.action == action)
        return q.order_by(AuditLog.created_at.desc()).limit(limit).all()
