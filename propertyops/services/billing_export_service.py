from propertyops.errors import NotFoundError, ValidationError
from propertyops.logging_config import get_logger
from propertyops.models import ExportStatus, Invoice, InvoiceLine, db
from propertyops.services.accounting_export_repository import AccountingExportRepository
from propertyops.services.audit_service import AuditService
from propertyops.services.outbox_handlers import (
    EXPORT_INVOICE_EVENT,
    INVOICE_ENTITY,
    ExportInvoiceHandler,
)
from propertyops.services.outbox_service import OutboxService

logger = get_logger(__name__)

DELIVERED_STATUSES = (ExportStatus.SENT, ExportStatus.CONFIRMED)


class BillingExportService:
    """
    Queues invoices for export to external accounting systems.

    Nothing here talks to the accounting system: the export record is set to
    PENDING and an outbox event carrying the payload snapshot is appended, in
    one commit. The outbox processor does the rest.

    At most one export event per (invoice, target system) is in flight at a
    time, and an export that already reached the accounting system is never
    queued again.
    """

    def __init__(self, adapters):
        self.adapters = adapters

    def queue_export(self, invoice_id, target_system):
        """
        Queue an export of the invoice to target_system.

        Queuing an export that is already waiting to be processed, or that was
        already delivered, returns the existing record without a new event.

        Raises:
            NotFoundError: Invoice does not exist
            ValidationError: Missing references, no lines, unknown target system,
                or the export already FAILED (use retry_export)

        Returns:
            AccountingExport
        """
        target_system = (target_system or "").upper()
        invoice, lines = self._load_exportable_invoice(invoice_id)
        adapter = self.adapters.get(target_system)

        existing = AccountingExportRepository.get(invoice.id, target_system)
        if existing is not None:
            if existing.status in DELIVERED_STATUSES:
                logger.info(
                    "Export already delivered, not queuing again",
                    invoice_id=invoice.id,
                    target_system=target_system,
                    status=existing.status.value,
                    external_ref=existing.external_ref,
                )
                return existing
            if existing.status == ExportStatus.FAILED:
                raise ValidationError(
                    f"{target_system} export of invoice {invoice.id} has failed; use retry to queue it again",
                    details={"status": existing.status.value},
                )

        in_flight = self._active_events(invoice.id, target_system)
        if in_flight:
            logger.info(
                "Export already in flight, not queuing again",
                invoice_id=invoice.id,
                target_system=target_system,
                outbox_event_id=in_flight[0].id,
            )
            if existing is None:
                # Record went missing while its event is queued; restore it, keep the event
                existing, _ = AccountingExportRepository.upsert_pending(invoice.id, target_system)
                db.session.commit()
            return existing

        return self._enqueue_export(invoice, lines, target_system, adapter, retry=False)

    def retry_export(self, invoice_id, target_system):
        """
        Re-queue an export that reached FAILED.

        Earlier outbox events are left as they are; a new event starts from
        retry_count 0.

        Raises:
            NotFoundError: No export record exists for the pair, or the invoice is gone
            ValidationError: The export is not FAILED, or as for queue_export
        """
        target_system = (target_system or "").upper()
        existing = AccountingExportRepository.get(invoice_id, target_system)
        if existing is None:
            raise NotFoundError(f"No {target_system} export found for invoice {invoice_id}")
        if existing.status != ExportStatus.FAILED:
            raise ValidationError(
                f"Only failed exports can be retried; {target_system} export of invoice "
                f"{invoice_id} is {existing.status.value}",
                details={"status": existing.status.value},
            )

        invoice, lines = self._load_exportable_invoice(invoice_id)
        adapter = self.adapters.get(target_system)
        return self._enqueue_export(invoice, lines, target_system, adapter, retry=True, previous=existing)

    def get_export_status(self, invoice_id):
        """All export records for the invoice across target systems, newest first."""
        return AccountingExportRepository.list_for_invoice(invoice_id)

    @staticmethod
    def _active_events(invoice_id, target_system):
        return [
            event for event in OutboxService.find_active(EXPORT_INVOICE_EVENT, INVOICE_ENTITY, invoice_id)
            if (event.payload or {}).get("targetSystem") == target_system
        ]

    def _load_exportable_invoice(self, invoice_id):
        invoice = db.session.get(Invoice, str(invoice_id))
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        if not (invoice.reference1 or "").strip() or not (invoice.reference2 or "").strip():
            raise ValidationError(
                f"Cannot export invoice {invoice_id}: reference1 and reference2 are required"
            )

        lines = (
            InvoiceLine.query
            .filter(InvoiceLine.invoice_id == invoice.id)
            .order_by(InvoiceLine.created_at.asc())
            .all()
        )
        if not lines:
            raise ValidationError(f"Cannot export invoice {invoice_id}: invoice has no lines")

        return invoice, lines

    def _enqueue_export(self, invoice, lines, target_system, adapter, retry, previous=None):
        document = adapter.build_payload(invoice, lines)
        before = previous.to_dict() if previous is not None else None

        try:
            record, created = AccountingExportRepository.upsert_pending(invoice.id, target_system)
            event = OutboxService.enqueue(
                EXPORT_INVOICE_EVENT,
                INVOICE_ENTITY,
                invoice.id,
                ExportInvoiceHandler.build_event_payload(target_system, document),
            )

            label = "retry queued" if retry else "queued"
            AuditService.log(
                action="ACCOUNTING_EXPORT_QUEUED",
                entity_type=INVOICE_ENTITY,
                entity_id=invoice.id,
                message=f"{target_system} export {label} for invoice {invoice.id}",
                before=before,
                after={
                    "exportId": record.id,
                    "status": record.status.value,
                    "retry": retry,
                },
                metadata={"outboxEventId": event.id, "targetSystem": target_system},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Accounting export queued",
            invoice_id=invoice.id,
            target_system=target_system,
            export_id=record.id,
            outbox_event_id=event.id,
            created=created,
            retry=retry,
        )
        return record
