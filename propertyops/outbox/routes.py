"""
Operator routes for inspecting the outbox and forcing a processing pass.
"""
from flask import current_app, jsonify, request

from propertyops.outbox import outbox_bp, logger
from propertyops.models import db
from propertyops.services.outbox_service import OutboxService


@outbox_bp.route("/events", methods=["GET"])
def list_events():
    """List outbox events. Query params: status, entity_type, entity_id, limit."""
    try:
        limit = min(int(request.args.get("limit", 100)), 500)
        events = OutboxService.list_events(
            status=request.args.get("status"),
            entity_type=request.args.get("entity_type"),
            entity_id=request.args.get("entity_id"),
            limit=limit,
        )
        return jsonify({
            "events": [event.to_dict() for event in events],
            "total_count": len(events)
        }), 200
    except ValueError as exc:
        return jsonify({"error": f"Invalid filter: {exc}"}), 400
    except Exception as exc:
        logger.error("Error listing outbox events", error=str(exc), exc_info=True)
        return jsonify({"error": "Failed to list outbox events", "details": str(exc)}), 500


@outbox_bp.route("/process", methods=["POST"])
def process_now():
    """Run one outbox processing pass synchronously."""
    try:
        succeeded = current_app.extensions["outbox_processor"].run_once()
        return jsonify({"succeeded": succeeded}), 200
    except Exception as exc:
        logger.error("Error running outbox processor", error=str(exc), exc_info=True)
        db.session.rollback()
        return jsonify({"error": "Failed to process outbox", "details": str(exc)}), 500
