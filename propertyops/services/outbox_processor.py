from datetime import timedelta
from sqlalchemy import or_

from propertyops.datetime_utils import utcnow, isoformat_utc
from propertyops.errors import HandlerError
from propertyops.logging_config import get_logger, ProcessingContext
from propertyops.models import OutboxEvent, OutboxStatus, db
from propertyops.services.audit_service import AuditService

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_SECONDS = [60, 300, 900, 3600, 3600]


class OutboxProcessor:
    """
    Drives outbox events through PENDING -> PROCESSING -> SUCCEEDED | PENDING (retry) | FAILED.

    Each claim is a conditional update committed before the handler runs, so
    an event is dispatched by at most one worker and a crash mid-handler
    leaves it visibly PROCESSING. Every failed attempt increments
    retry_count; the attempt that brings it to max_retries is terminal.
    """

    def __init__(self, handlers, batch_size=DEFAULT_BATCH_SIZE, max_retries=DEFAULT_MAX_RETRIES,
                 backoff_seconds=None, clock=None):
        backoff_seconds = list(backoff_seconds or DEFAULT_BACKOFF_SECONDS)
        if any(seconds <= 0 for seconds in backoff_seconds):
            raise ValueError("Retry backoff entries must be positive")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.handlers = handlers
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff = [timedelta(seconds=seconds) for seconds in backoff_seconds]
        self.clock = clock or utcnow

    @classmethod
    def from_config(cls, config, handlers, clock=None):
        return cls(
            handlers,
            batch_size=config.get("OUTBOX_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            max_retries=config.get("OUTBOX_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            backoff_seconds=config.get("OUTBOX_RETRY_BACKOFF_SECONDS", DEFAULT_BACKOFF_SECONDS),
            clock=clock,
        )

    def next_retry_at(self, retry_count, now):
        """Schedule for the retry following `retry_count` earlier failures (index 0 = first retry)."""
        index = min(retry_count, len(self.backoff) - 1)
        return now + self.backoff[index]

    def claim_due(self, now=None, limit=None):
        """PENDING events whose retry time has come, oldest first."""
        now = now or self.clock()
        return (
            OutboxEvent.query
            .filter(
                OutboxEvent.status == OutboxStatus.PENDING,
                or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now),
            )
            .order_by(OutboxEvent.created_at.asc())
            .limit(limit or self.batch_size)
            .all()
        )

    def claim(self, event, now=None):
        """
        Move the event from PENDING to PROCESSING with a compare-and-swap update.

        Returns:
            bool: False if the event was no longer PENDING (another worker claimed it)
        """
        now = now or self.clock()
        claimed = (
            OutboxEvent.query
            .filter(OutboxEvent.id == event.id, OutboxEvent.status == OutboxStatus.PENDING)
            .update(
                {OutboxEvent.status: OutboxStatus.PROCESSING, OutboxEvent.updated_at: now},
                synchronize_session=False,
            )
        )
        db.session.commit()
        return claimed == 1

    def process_event(self, event):
        """
        Claim and dispatch a single event.

        Returns:
            bool: True if the event reached SUCCEEDED
        """
        event_id = event.id
        if not self.claim(event):
            logger.info("Outbox event already claimed elsewhere, skipping", event_id=event_id)
            return False

        handler = self.handlers.get(event.event_type)
        try:
            if handler is None:
                raise HandlerError(f"Unknown event type: {event.event_type}")
            result = handler.handle(event)
        except Exception as e:
            self._record_failure(event, handler, e)
            return False

        self._record_success(event, handler, result)
        return True

    def run_once(self):
        """
        Process one batch of due events. This is the body of every scheduler tick
        and can be called directly.

        Returns:
            int: Number of events advanced to SUCCEEDED in this tick
        """
        with ProcessingContext("outbox_tick") as ctx:
            events = self.claim_due(self.clock())
            if not events:
                ctx.result = 0
                return 0

            event_ids = [event.id for event in events]
            logger.info(f"Processing {len(event_ids)} due outbox events")

            succeeded = 0
            for event_id, event in zip(event_ids, events):
                try:
                    if self.process_event(event):
                        succeeded += 1
                except Exception as e:
                    # One event's persistence failure must not stop the rest of the batch
                    db.session.rollback()
                    logger.error(
                        f"Error processing outbox event {event_id}: {e}",
                        event_id=event_id,
                        exc_info=True
                    )

            logger.info(f"Processed {succeeded}/{len(event_ids)} outbox events successfully")
            ctx.result = succeeded
            return succeeded

    def _record_success(self, event, handler, result):
        now = self.clock()
        event.status = OutboxStatus.SUCCEEDED
        event.next_retry_at = None
        event.updated_at = now
        handler.on_success(event, result, now)
        db.session.commit()

        logger.info(
            "Outbox event succeeded",
            event_id=event.id,
            event_type=event.event_type,
            entity_id=event.entity_id,
            attempts=event.retry_count + 1,
        )

    def _record_failure(self, event, handler, error):
        now = self.clock()
        message = str(error) or error.__class__.__name__
        previous_retries = event.retry_count
        attempts = previous_retries + 1

        event.retry_count = attempts
        event.last_error = message
        event.updated_at = now

        if attempts < self.max_retries:
            next_retry_at = self.next_retry_at(previous_retries, now)
            event.status = OutboxStatus.PENDING
            event.next_retry_at = next_retry_at

            AuditService.log(
                action="OUTBOX_EVENT_RETRY",
                entity_type="OUTBOX",
                entity_id=event.id,
                message=(
                    f"{event.event_type} retry scheduled for {event.entity_type.lower()} {event.entity_id} "
                    f"(attempt {attempts}/{self.max_retries}): {message}"
                ),
                metadata={
                    "eventType": event.event_type,
                    "entityType": event.entity_type,
                    "entityId": event.entity_id,
                    "retryCount": attempts,
                    "nextRetryAt": isoformat_utc(next_retry_at),
                },
            )
            db.session.commit()

            logger.warning(
                f"Outbox event {event.id} failed, will retry (attempt {attempts}/{self.max_retries})",
                event_id=event.id,
                retry_count=attempts,
                next_retry_at=next_retry_at.isoformat(),
                error=message,
            )
            return

        event.status = OutboxStatus.FAILED
        event.next_retry_at = None
        if handler is not None:
            handler.on_terminal_failure(event, message, now)
        else:
            AuditService.log(
                action="OUTBOX_EVENT_FAILED",
                entity_type="OUTBOX",
                entity_id=event.id,
                message=f"Outbox event {event.id} failed permanently: {message}",
                metadata={
                    "eventType": event.event_type,
                    "entityType": event.entity_type,
                    "entityId": event.entity_id,
                    "retryCount": attempts,
                    "terminal": True,
                },
            )
        db.session.commit()

        logger.error(
            f"Outbox event {event.id} failed after {attempts} attempts",
            event_id=event.id,
            event_type=event.event_type,
            entity_id=event.entity_id,
            error=message,
        )
