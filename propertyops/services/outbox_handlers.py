"""
Outbox handlers: one per event_type.

A handler performs the external action for an event and, for events that
mirror into operator-visible state, records the final outcome. Handlers read
the event payload but never modify it.
"""
import copy
import hashlib
import json
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError

from propertyops.errors import HandlerError, ValidationError
from propertyops.logging_config import get_logger
from propertyops.services.accounting_export_repository import AccountingExportRepository
from propertyops.services.audit_service import AuditService

logger = get_logger(__name__)

EXPORT_INVOICE_EVENT = "EXPORT_INVOICE"
INVOICE_ENTITY = "INVOICE"


def call_with_timeout(func, timeout, *args, **kwargs):
    """
    Run func on a worker thread and wait at most `timeout` seconds for it.

    A call that overruns raises HandlerError; the worker thread is abandoned,
    not killed, so its late result is discarded.
    """
    if not timeout:
        return func(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="outbox-handler")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        future.cancel()
        raise HandlerError(f"Handler timed out after {timeout}s") from e
    finally:
        executor.shutdown(wait=False)


class OutboxHandler:
    """Base class for outbox handlers."""

    event_type = None

    def handle(self, event):
        """Perform the action. Return a result dict or raise; any exception counts as a failed attempt."""
        raise NotImplementedError

    def on_success(self, event, result, now):
        """Record a successful outcome. Runs in the same transaction as the SUCCEEDED transition."""

    def on_terminal_failure(self, event, error_message, now):
        """Record that retries are exhausted. Runs in the same transaction as the FAILED transition."""


class ExportInvoiceHandler(OutboxHandler):
    """Submits an invoice snapshot to the accounting system named in the payload."""

    event_type = EXPORT_INVOICE_EVENT

    def __init__(self, adapters, timeout_seconds=30):
        self.adapters = adapters
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def snapshot_key(target_system, document):
        """
        Idempotency key for one export snapshot.

        Every event carrying the same document for the same target shares the
        key, so the accounting system can drop a resubmission; a corrected
        invoice produces a different document and therefore a new key.
        """
        canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
        return f"{target_system}-{document.get('invoiceId')}-{digest}"

    @staticmethod
    def build_event_payload(target_system, document):
        return {
            "targetSystem": target_system,
            "document": document,
            "idempotencyKey": ExportInvoiceHandler.snapshot_key(target_system, document),
        }

    def handle(self, event):
        payload = event.payload or {}
        target_system = payload.get("targetSystem")
        document = payload.get("document")
        if not target_system or not isinstance(document, dict):
            raise HandlerError(f"Outbox event {event.id} has a malformed export payload")

        try:
            adapter = self.adapters.get(target_system)
        except ValidationError as e:
            raise HandlerError(f"No export adapter configured for {target_system}") from e

        idempotency_key = payload.get("idempotencyKey") or self.snapshot_key(target_system, document)

        logger.info(
            "Submitting invoice export",
            event_id=event.id,
            invoice_id=event.entity_id,
            target_system=target_system,
            idempotency_key=idempotency_key,
            attempt=event.retry_count + 1,
        )
        # The adapter gets its own copy; the stored snapshot stays untouched
        result = call_with_timeout(
            adapter.submit,
            self.timeout_seconds,
            copy.deepcopy(document),
            idempotency_key=idempotency_key,
        )

        external_ref = result.get("externalRef") if isinstance(result, dict) else None
        if not external_ref:
            raise HandlerError(f"{target_system} export returned no external reference: {result!r}")

        return {"externalRef": str(external_ref), "targetSystem": target_system}

    def on_success(self, event, result, now):
        target_system = result["targetSystem"]
        external_ref = result["externalRef"]
        AccountingExportRepository.mark_sent(event.entity_id, target_system, external_ref, now=now)
        AuditService.log(
            action="ACCOUNTING_EXPORT_SENT",
            entity_type=INVOICE_ENTITY,
            entity_id=event.entity_id,
            message=f"{target_system} export sent for invoice {event.entity_id} (ref: {external_ref})",
            after={"status": "SENT", "externalRef": external_ref},
            metadata={"outboxEventId": event.id, "targetSystem": target_system},
        )

    def on_terminal_failure(self, event, error_message, now):
        target_system = (event.payload or {}).get("targetSystem")
        if not target_system:
            logger.error("Terminal failure for export event without target system", event_id=event.id)
            return
        AccountingExportRepository.mark_failed(event.entity_id, target_system, error_message, now=now)
        AuditService.log(
            action="ACCOUNTING_EXPORT_FAILED",
            entity_type=INVOICE_ENTITY,
            entity_id=event.entity_id,
            message=f"{target_system} export failed for invoice {event.entity_id}: {error_message}",
            after={"status": "FAILED", "lastError": error_message},
            metadata={
                "outboxEventId": event.id,
                "targetSystem": target_system,
                "retryCount": event.retry_count,
                "terminal": True,
            },
        )


class HandlerRegistry:
    """Maps event_type to handler."""

    def __init__(self, handlers=None):
        self._handlers = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler, event_type=None):
        self._handlers[event_type or handler.event_type] = handler
        return handler

    def get(self, event_type):
        return self._handlers.get(event_type)

    def event_types(self):
        return sorted(self._handlers)


def build_handler_registry(config, adapters):
    return HandlerRegistry([
        ExportInvoiceHandler(adapters, timeout_seconds=config.get("OUTBOX_HANDLER_TIMEOUT_SECONDS", 30)),
    ])
