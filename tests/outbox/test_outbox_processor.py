"""
Tests for the outbox processor state machine.

Uses a recording handler registered under TEST_EVENT so outcomes can be
forced per event, plus the real EXPORT_INVOICE handler with the stub adapter.
"""
import time
import pytest
from datetime import datetime, timedelta
from sqlalchemy.exc import OperationalError

from propertyops.errors import HandlerError
from propertyops.models import (
    AccountingExport,
    AuditLog,
    ExportStatus,
    OutboxEvent,
    OutboxStatus,
    db,
)
from propertyops.services.outbox_handlers import OutboxHandler, call_with_timeout
from propertyops.services.outbox_processor import OutboxProcessor
from propertyops.services.outbox_service import OutboxService


# ==============================================================================
# HELPERS
# ==============================================================================

class RecordingHandler(OutboxHandler):
    """Handler whose outcome is controlled per event through `failing` / `broken_success`."""

    event_type = "TEST_EVENT"

    def __init__(self):
        self.failing = set()
        self.broken_success = set()
        self.calls = []
        self.successes = []
        self.terminal = []

    def handle(self, event):
        n = event.payload["n"]
        self.calls.append(n)
        if n in self.failing:
            raise RuntimeError(f"remote refused item {n}")
        return {"n": n}

    def on_success(self, event, result, now):
        if result["n"] in self.broken_success:
            raise OperationalError("UPDATE things", {}, Exception("database is unavailable"))
        self.successes.append(result["n"])

    def on_terminal_failure(self, event, error_message, now):
        self.terminal.append((event.payload["n"], error_message))


@pytest.fixture
def handler(app):
    handler = RecordingHandler()
    app.extensions["outbox_handlers"].register(handler)
    return handler


def enqueue(n, created_at=None, event_type="TEST_EVENT"):
    event = OutboxService.enqueue(event_type, "THING", f"thing-{n}", {"n": n})
    if created_at is not None:
        event.created_at = created_at
    db.session.commit()
    return event.id


def load(event_id):
    return db.session.get(OutboxEvent, event_id)


# ==============================================================================
# SUCCESS PATH
# ==============================================================================

class TestSuccess:

    def test_successful_event_reaches_succeeded(self, processor, handler):
        event_id = enqueue(1)

        succeeded = processor.run_once()

        event = load(event_id)
        assert succeeded == 1
        assert event.status == OutboxStatus.SUCCEEDED
        assert event.retry_count == 0
        assert handler.successes == [1]

    def test_succeeded_event_is_not_processed_again(self, processor, handler, clock):
        enqueue(1)
        processor.run_once()
        clock.advance(hours=5)

        assert processor.run_once() == 0
        assert handler.calls == [1]

    def test_export_event_marks_record_sent(self, processor, export_service, invoice_factory):
        """An invoice for 'Acme AS' is SENT with an external ref within one tick."""
        invoice = invoice_factory(customer_name="Acme AS")
        export_service.queue_export(invoice.id, "VISMA")

        assert processor.run_once() == 1

        record = AccountingExport.query.filter_by(invoice_id=invoice.id, target_system="VISMA").one()
        assert record.status == ExportStatus.SENT
        assert record.external_ref
        assert record.external_ref.startswith(f"VISMA-{invoice.id[:8]}-")
        assert AuditLog.query.filter_by(action="ACCOUNTING_EXPORT_SENT", entity_id=invoice.id).count() == 1

    def test_retry_count_kept_after_late_success(self, processor, handler, clock):
        handler.failing.add(1)
        event_id = enqueue(1)
        processor.run_once()

        handler.failing.clear()
        clock.advance(minutes=1)
        processor.run_once()

        event = load(event_id)
        assert event.status == OutboxStatus.SUCCEEDED
        assert event.retry_count == 1


# ==============================================================================
# RETRY SCHEDULING
# ==============================================================================

class TestRetryScheduling:

    def test_failure_schedules_first_retry_one_minute_out(self, processor, handler, clock):
        handler.failing.add(1)
        event_id = enqueue(1)
        attempt_at = clock.now

        assert processor.run_once() == 0

        event = load(event_id)
        assert event.status == OutboxStatus.PENDING
        assert event.retry_count == 1
        assert event.last_error == "remote refused item 1"
        assert event.next_retry_at == attempt_at + timedelta(minutes=1)

    def test_retry_writes_audit_entry_with_attempt_number(self, processor, handler):
        handler.failing.add(1)
        event_id = enqueue(1)

        processor.run_once()

        entry = AuditLog.query.filter_by(action="OUTBOX_EVENT_RETRY", entity_id=event_id).one()
        assert "attempt 1/5" in entry.message
        assert entry.context["retryCount"] == 1
        assert entry.actor_user_id == "system"

    def test_event_not_picked_up_before_next_retry_at(self, processor, handler, clock):
        handler.failing.add(1)
        event_id = enqueue(1)
        processor.run_once()

        clock.advance(seconds=59)
        assert processor.run_once() == 0
        assert load(event_id).retry_count == 1
        assert handler.calls == [1]

        clock.advance(seconds=1)
        processor.run_once()
        assert handler.calls == [1, 1]
        assert load(event_id).retry_count == 2

    def test_backoff_gaps_follow_schedule(self, processor, export_service, invoice_factory, clock):
        invoice = invoice_factory(customer_name="FAIL CORP")
        export_service.queue_export(invoice.id, "VISMA")
        event_id = OutboxEvent.query.filter_by(entity_id=invoice.id).one().id

        gaps = []
        scheduled = []
        for _ in range(4):
            attempt_at = clock.now
            processor.run_once()
            event = load(event_id)
            gaps.append((event.next_retry_at - attempt_at).total_seconds())
            scheduled.append(event.next_retry_at)
            clock.now = event.next_retry_at

        assert gaps == [60, 300, 900, 3600]
        assert all(later > earlier for earlier, later in zip(scheduled, scheduled[1:]))

    def test_next_retry_at_clamps_to_last_entry(self, processor):
        now = datetime(2025, 3, 1, 9, 0, 0)
        assert processor.next_retry_at(0, now) == now + timedelta(minutes=1)
        assert processor.next_retry_at(2, now) == now + timedelta(minutes=15)
        assert processor.next_retry_at(4, now) == now + timedelta(hours=1)
        assert processor.next_retry_at(12, now) == now + timedelta(hours=1)

    def test_backoff_entries_must_be_positive(self):
        with pytest.raises(ValueError):
            OutboxProcessor(handlers=None, backoff_seconds=[60, 0])


# ==============================================================================
# TERMINAL FAILURE
# ==============================================================================

class TestTerminalFailure:

    def test_fails_after_exactly_max_retries_attempts(self, processor, handler, run_ticks):
        handler.failing.add(1)
        event_id = enqueue(1)

        run_ticks(4)
        event = load(event_id)
        assert event.status == OutboxStatus.PENDING
        assert event.retry_count == 4

        run_ticks(1)
        event = load(event_id)
        assert event.status == OutboxStatus.FAILED
        assert event.retry_count == processor.max_retries == 5
        assert event.next_retry_at is None
        assert len(handler.calls) == 5
        assert handler.terminal == [(1, "remote refused item 1")]

        run_ticks(3)
        assert len(handler.calls) == 5
        assert load(event_id).retry_count == 5

    def test_fail_corp_export_ends_failed(self, processor, export_service, invoice_factory, run_ticks):
        invoice = invoice_factory(customer_name="FAIL CORP")
        export_service.queue_export(invoice.id, "VISMA")

        run_ticks(processor.max_retries)

        record = AccountingExport.query.filter_by(invoice_id=invoice.id, target_system="VISMA").one()
        assert record.status == ExportStatus.FAILED
        assert 'Customer name contains "FAIL"' in record.last_error
        assert record.external_ref is None

        entry = AuditLog.query.filter_by(action="ACCOUNTING_EXPORT_FAILED", entity_id=invoice.id).one()
        assert entry.context["terminal"] is True
        assert entry.context["retryCount"] == 5

    def test_unknown_event_type_is_retried_then_failed(self, processor, run_ticks):
        event_id = enqueue(1, event_type="NOT_A_HANDLER")

        run_ticks(1)
        event = load(event_id)
        assert event.status == OutboxStatus.PENDING
        assert event.last_error == "Unknown event type: NOT_A_HANDLER"

        run_ticks(4)
        assert load(event_id).status == OutboxStatus.FAILED
        assert AuditLog.query.filter_by(action="OUTBOX_EVENT_FAILED", entity_id=event_id).count() == 1


# ==============================================================================
# CLAIMING
# ==============================================================================

class TestClaiming:

    def test_claim_due_returns_oldest_first_up_to_batch_size(self, processor, handler):
        base = datetime(2025, 2, 1, 8, 0, 0)
        newest = enqueue(3, created_at=base + timedelta(minutes=2))
        oldest = enqueue(1, created_at=base)
        middle = enqueue(2, created_at=base + timedelta(minutes=1))
        processor.batch_size = 2

        due = processor.claim_due()

        assert [event.id for event in due] == [oldest, middle]
        assert newest not in [event.id for event in due]

    def test_claim_moves_event_to_processing(self, processor, handler):
        event_id = enqueue(1)

        assert processor.claim(load(event_id)) is True
        assert load(event_id).status == OutboxStatus.PROCESSING

    def test_second_claim_on_same_event_fails(self, processor, handler):
        event_id = enqueue(1)
        event = load(event_id)
        assert processor.claim(event) is True

        assert processor.claim(event) is False

    def test_event_claimed_elsewhere_is_not_dispatched(self, processor, handler):
        event_id = enqueue(1)
        stale = load(event_id)
        OutboxEvent.query.filter_by(id=event_id).update(
            {OutboxEvent.status: OutboxStatus.PROCESSING}, synchronize_session=False
        )
        db.session.commit()

        assert processor.process_event(stale) is False
        assert handler.calls == []


# ==============================================================================
# ISOLATION
# ==============================================================================

class TestIsolation:

    def test_middle_failure_does_not_affect_neighbours(self, processor, handler, clock):
        base = datetime(2025, 2, 1, 8, 0, 0)
        first = enqueue(1, created_at=base)
        second = enqueue(2, created_at=base + timedelta(seconds=1))
        third = enqueue(3, created_at=base + timedelta(seconds=2))
        handler.failing.add(2)

        assert processor.run_once() == 2

        assert load(first).status == OutboxStatus.SUCCEEDED
        assert load(third).status == OutboxStatus.SUCCEEDED
        failed = load(second)
        assert failed.status == OutboxStatus.PENDING
        assert failed.retry_count == 1
        assert handler.calls == [1, 2, 3]

    def test_persistence_error_leaves_event_in_flight_and_tick_continues(self, processor, handler):
        base = datetime(2025, 2, 1, 8, 0, 0)
        broken = enqueue(1, created_at=base)
        healthy = enqueue(2, created_at=base + timedelta(seconds=1))
        handler.broken_success.add(1)

        assert processor.run_once() == 1

        assert load(broken).status == OutboxStatus.PROCESSING
        assert load(healthy).status == OutboxStatus.SUCCEEDED


# ==============================================================================
# HANDLER BOUNDARY
# ==============================================================================

class TestHandlerBoundary:

    def test_call_with_timeout_raises_handler_error(self):
        with pytest.raises(HandlerError, match="timed out"):
            call_with_timeout(time.sleep, 0.05, 0.5)

    def test_call_with_timeout_returns_result(self):
        assert call_with_timeout(lambda a, b=0: a + b, 1, 2, b=3) == 5

    def test_timeout_counts_as_retryable_failure(self, app, processor):
        class SlowHandler(OutboxHandler):
            event_type = "SLOW_EVENT"

            def handle(self, event):
                return call_with_timeout(time.sleep, 0.05, 0.5)

        app.extensions["outbox_handlers"].register(SlowHandler())
        event_id = enqueue(1, event_type="SLOW_EVENT")

        processor.run_once()

        event = load(event_id)
        assert event.status == OutboxStatus.PENDING
        assert event.retry_count == 1
        assert "timed out" in event.last_error

    def test_handler_cannot_change_stored_payload(self, app, processor, export_service, invoice_factory):
        from propertyops.adapters.visma import VismaAdapter

        class MutatingAdapter(VismaAdapter):
            def submit(self, payload, idempotency_key=None):
                payload["customerName"] = "Rewritten"
                payload["lines"].clear()
                return {"externalRef": "VISMA-MUTATED"}

        app.extensions["export_adapters"].register(MutatingAdapter())
        invoice = invoice_factory(customer_name="Acme AS")
        export_service.queue_export(invoice.id, "VISMA")

        processor.run_once()

        event = OutboxEvent.query.filter_by(entity_id=invoice.id).one()
        assert event.status == OutboxStatus.SUCCEEDED
        assert event.payload["document"]["customerName"] == "Acme AS"
        assert len(event.payload["document"]["lines"]) == 2

    def test_missing_external_ref_is_a_failure(self, app, processor, export_service, invoice_factory):
        from propertyops.adapters.visma import VismaAdapter

        class SilentAdapter(VismaAdapter):
            def submit(self, payload, idempotency_key=None):
                return {"status": "accepted"}

        app.extensions["export_adapters"].register(SilentAdapter())
        invoice = invoice_factory()
        export_service.queue_export(invoice.id, "VISMA")

        processor.run_once()

        event = OutboxEvent.query.filter_by(entity_id=invoice.id).one()
        assert event.status == OutboxStatus.PENDING
        assert "no external reference" in event.last_error
        record = AccountingExport.query.filter_by(invoice_id=invoice.id).one()
        assert record.status == ExportStatus.PENDING

    def test_unknown_target_in_stored_payload_is_a_handler_failure(self, app, processor):
        payload = {"targetSystem": "SAGE", "document": {"invoiceId": "inv-1", "customerName": "Acme AS"}}
        event_id = OutboxService.enqueue("EXPORT_INVOICE", "INVOICE", "inv-1", payload).id
        db.session.commit()

        export_handler = app.extensions["outbox_handlers"].get("EXPORT_INVOICE")
        with pytest.raises(HandlerError, match="No export adapter configured for SAGE"):
            export_handler.handle(load(event_id))

        processor.run_once()

        event = load(event_id)
        assert event.status == OutboxStatus.PENDING
        assert event.retry_count == 1
        assert "No export adapter configured for SAGE" in event.last_error
