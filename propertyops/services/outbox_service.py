import copy

from propertyops.logging_config import get_logger
from propertyops.models import OutboxEvent, OutboxStatus, db

logger = get_logger(__name__)


class OutboxService:
    """Service for appending and reading outbox events"""

    @staticmethod
    def enqueue(event_type, entity_type, entity_id, payload):
        """
        Add an event to the outbox for async processing.

        No remote call happens here and the event type is not checked against
        the handler registry; the processor does that at dispatch time. The row
        is flushed, not committed: the caller commits it together with its own
        state change.

        Args:
            event_type: Handler tag, e.g. 'EXPORT_INVOICE'
            entity_type: Business object kind, e.g. 'INVOICE'
            entity_id: Business object id
            payload: JSON-serializable snapshot of everything the handler needs

        Returns:
            The new OutboxEvent (status PENDING, retry_count 0, next_retry_at None)
        """
        event = OutboxEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload=copy.deepcopy(payload),
            status=OutboxStatus.PENDING,
            retry_count=0,
            next_retry_at=None,
        )

        db.session.add(event)
        db.session.flush()

        logger.info(
            "Outbox event enqueued",
            event_id=event.id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
        )
        return event

    @staticmethod
    def get(event_id):
        return db.session.get(OutboxEvent, event_id)

    @staticmethod
    def find_active(event_type, entity_type, entity_id):
        """Events for the entity that are still waiting for, or in, a processing attempt."""
        return (
            OutboxEvent.query
            .filter(
                OutboxEvent.event_type == event_type,
                OutboxEvent.entity_type == entity_type,
                OutboxEvent.entity_id == str(entity_id),
                OutboxEvent.status.in_([OutboxStatus.PENDING, OutboxStatus.PROCESSING]),
            )
            .order_by(OutboxEvent.created_at.asc())
            .all()
        )

    @staticmethod
    def list_events(status=None, entity_type=None, entity_id=None, limit=100):
        """Return outbox events matching the filters, newest first."""
        q = OutboxEvent.query
        if status:
            if not isinstance(status, OutboxStatus):
                status = OutboxStatus(status.upper())
            q = q.filter(OutboxEvent.status == status)
        if entity_type:
            q = q.filter(OutboxEvent.entity_type == entity_type)
        if entity_id:
            q = q.filter(OutboxEvent.entity_id == str(entity_id))
        return q.order_by(OutboxEvent.created_at.desc()).limit(limit).all()
