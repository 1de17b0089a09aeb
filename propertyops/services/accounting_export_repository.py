"""
Persistence for AccountingExport rows.

Every write to accounting_exports goes through this module. The row for an
(invoice_id, target_system) pair is unique; queuing again updates it in place.
"""
from sqlalchemy.exc import IntegrityError

from propertyops.datetime_utils import utcnow
from propertyops.logging_config import get_logger
from propertyops.models import AccountingExport, ExportStatus, db

logger = get_logger(__name__)


class AccountingExportRepository:

    @staticmethod
    def get(invoice_id, target_system):
        return AccountingExport.query.filter_by(
            invoice_id=str(invoice_id), target_system=target_system
        ).first()

    @staticmethod
    def list_for_invoice(invoice_id):
        """All export records for an invoice across target systems, newest first."""
        return (
            AccountingExport.query
            .filter(AccountingExport.invoice_id == str(invoice_id))
            .order_by(AccountingExport.created_at.desc(), AccountingExport.target_system)
            .all()
        )

    @staticmethod
    def upsert_pending(invoice_id, target_system):
        """
        Create or reset the export record for (invoice_id, target_system) to PENDING.

        Clears last_error and external_ref. If a concurrent request inserts the
        same pair first, the unique constraint fires inside a savepoint and the
        winner's row is updated instead.

        Returns:
            tuple: (AccountingExport, created)
        """
        record = AccountingExportRepository.get(invoice_id, target_system)
        created = False

        if record is None:
            try:
                with db.session.begin_nested():
                    record = AccountingExport(
                        invoice_id=str(invoice_id),
                        target_system=target_system,
                        status=ExportStatus.PENDING,
                    )
                    db.session.add(record)
                created = True
            except IntegrityError:
                logger.info(
                    "Export record inserted concurrently, updating existing row",
                    invoice_id=str(invoice_id),
                    target_system=target_system,
                )
                record = AccountingExportRepository.get(invoice_id, target_system)

        if not created:
            record.status = ExportStatus.PENDING
            record.last_error = None
            record.external_ref = None
            record.updated_at = utcnow()

        db.session.flush()
        return record, created

    @staticmethod
    def mark_sent(invoice_id, target_system, external_ref, now=None):
        return AccountingExportRepository._set_status(
            invoice_id, target_system, ExportStatus.SENT,
            external_ref=external_ref, last_error=None, now=now,
        )

    @staticmethod
    def mark_failed(invoice_id, target_system, error_message, now=None):
        return AccountingExportRepository._set_status(
            invoice_id, target_system, ExportStatus.FAILED,
            last_error=error_message, now=now,
        )

    @staticmethod
    def _set_status(invoice_id, target_system, status, now=None, **fields):
        record = AccountingExportRepository.get(invoice_id, target_system)
        if record is None:
            # The record is created when the export is queued; recreate it so the
            # outcome is not lost if someone removed it out of band.
            logger.warning(
                "Export record missing while recording outcome, recreating",
                invoice_id=str(invoice_id),
                target_system=target_system,
                status=status.value,
            )
            record = AccountingExport(invoice_id=str(invoice_id), target_system=target_system)
            db.session.add(record)

        record.status = status
        for name, value in fields.items():
            setattr(record, name, value)
        record.updated_at = now or utcnow()
        db.session.flush()
        return record
