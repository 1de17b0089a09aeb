"""
Operator routes for accounting exports of invoices.
"""
from flask import current_app, jsonify

from propertyops.billing import billing_bp
from propertyops.errors import NotFoundError, ValidationError
from propertyops.logging_config import get_logger
from propertyops.models import db

logger = get_logger(__name__)


def _export_service():
    return current_app.extensions["billing_export_service"]


@billing_bp.route("/invoices/<invoice_id>/exports/<target_system>", methods=["POST"])
def queue_export(invoice_id, target_system):
    """Queue an export of the invoice. 201 with the export record."""
    try:
        record = _export_service().queue_export(invoice_id, target_system)
        return jsonify(record.to_dict()), 201
    except (NotFoundError, ValidationError) as exc:
        return jsonify(exc.to_dict()), exc.status_code
    except Exception as exc:
        logger.error("Error queueing accounting export", invoice_id=invoice_id,
                     target_system=target_system, error=str(exc), exc_info=True)
        db.session.rollback()
        return jsonify({
            "error": "Failed to queue accounting export",
            "details": str(exc)
        }), 500


@billing_bp.route("/invoices/<invoice_id>/exports/<target_system>/retry", methods=["POST"])
def retry_export(invoice_id, target_system):
    """Re-queue a previous export. 200 with the refreshed export record."""
    try:
        record = _export_service().retry_export(invoice_id, target_system)
        return jsonify(record.to_dict()), 200
    except (NotFoundError, ValidationError) as exc:
        return jsonify(exc.to_dict()), exc.status_code
    except Exception as exc:
        logger.error("Error retrying accounting export", invoice_id=invoice_id,
                     target_system=target_system, error=str(exc), exc_info=True)
        db.session.rollback()
        return jsonify({
            "error": "Failed to retry accounting export",
            "details": str(exc)
        }), 500


@billing_bp.route("/invoices/<invoice_id>/exports", methods=["GET"])
def get_exports(invoice_id):
    """Export records for the invoice, newest first (possibly empty)."""
    try:
        records = _export_service().get_export_status(invoice_id)
        return jsonify({"exports": [record.to_dict() for record in records]}), 200
    except Exception as exc:
        logger.error("Error fetching invoice exports", invoice_id=invoice_id, error=str(exc))
        return jsonify({
            "error": "Failed to fetch invoice exports",
            "details": str(exc)
        }), 500
