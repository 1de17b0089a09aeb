from flask_sqlalchemy import SQLAlchemy
from enum import Enum
import uuid

from propertyops.datetime_utils import utcnow, isoformat_utc

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


def _money(value):
    return float(value) if value is not None else None


class OutboxStatus(Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ExportStatus(Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CONFIRMED = "CONFIRMED"


class VatCode(Enum):
    VAT_0 = "VAT_0"
    VAT_15 = "VAT_15"
    VAT_25 = "VAT_25"


class Invoice(db.Model):
    """Invoice produced by billing. Only the columns the accounting export reads are modeled."""
    __tablename__ = "invoices"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    reservation_id = db.Column(db.String(36), nullable=True, index=True)
    customer_name = db.Column(db.String(256), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="DRAFT")  # DRAFT, SENT, PAID, VOID
    reference1 = db.Column(db.String(128), nullable=True)
    reference2 = db.Column(db.String(128), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="NOK")
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    vat_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    lines = db.relationship(
        "InvoiceLine",
        backref="invoice",
        order_by="InvoiceLine.created_at",
        lazy="select",
    )

    def __repr__(self):
        return f"<Invoice {self.id} - {self.customer_name} - {self.status}>"

    def to_dict(self):
        return {
            'id': self.id,
            'reservation_id': self.reservation_id,
            'customer_name': self.customer_name,
            'status': self.status,
            'reference1': self.reference1,
            'reference2': self.reference2,
            'currency': self.currency,
            'subtotal': _money(self.subtotal),
            'vat_total': _money(self.vat_total),
            'total': _money(self.total),
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }


class InvoiceLine(db.Model):
    __tablename__ = "invoice_lines"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    invoice_id = db.Column(db.String(36), db.ForeignKey("invoices.id"), nullable=False, index=True)
    source_type = db.Column(db.String(16), nullable=False, default="FEE")  # ROOM, MEAL, FEE
    source_id = db.Column(db.String(36), nullable=True)
    description = db.Column(db.String(256), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    vat_code = db.Column(db.Enum(VatCode), nullable=False, default=VatCode.VAT_25)
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<InvoiceLine {self.id} - {self.description}>"


class OutboxEvent(db.Model):
    """Durable work queue entry for one attempted integration action.

    The payload is a snapshot taken at enqueue time and is never rewritten;
    rows are never deleted.
    """
    __tablename__ = "outbox_events"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False)

    status = db.Column(db.Enum(OutboxStatus), nullable=False, default=OutboxStatus.PENDING)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    next_retry_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.Index('idx_outbox_status_next_retry', 'status', 'next_retry_at'),
        db.Index('idx_outbox_entity', 'entity_type', 'entity_id'),
        db.Index('idx_outbox_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<OutboxEvent {self.id} - {self.event_type} - {self.status}>"

    def to_dict(self):
        return {
            'id': self.id,
            'event_type': self.event_type,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'payload': self.payload,
            'status': self.status.value,
            'retry_count': self.retry_count,
            'last_error': self.last_error,
            'next_retry_at': isoformat_utc(self.next_retry_at),
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }


class AccountingExport(db.Model):
    """Operator-visible export status of one invoice against one accounting system."""
    __tablename__ = "accounting_exports"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "target_system", name="_invoice_target_uc"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    invoice_id = db.Column(db.String(36), nullable=False, index=True)
    target_system = db.Column(db.String(32), nullable=False)
    status = db.Column(db.Enum(ExportStatus), nullable=False, default=ExportStatus.PENDING)
    external_ref = db.Column(db.String(128), nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<AccountingExport {self.invoice_id} - {self.target_system} - {self.status}>"

    def to_dict(self):
        return {
            'id': self.id,
            'invoice_id': self.invoice_id,
            'target_system': self.target_system,
            'status': self.status.value,
            'external_ref': self.external_ref,
            'last_error': self.last_error,
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }


class AuditLog(db.Model):
    """Append-only audit trail."""
    __tablename__ = "audit_logs"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    actor_user_id = db.Column(db.String(64), nullable=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=False)
    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)

    # Request id, correlation data and action specific fields
    context = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        db.Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )

    def __repr__(self):
        return f"<AuditLog {self.action} - {self.entity_type}:{self.entity_id}>"

    def to_dict(self):
        return {
            'id': self.id,
            'actor_user_id': self.actor_user_id,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'message': self.message,
            'before': self.before,
            'after': self.after,
            'metadata': self.context,
            'created_at': isoformat_utc(self.created_at),
        }
