from flask import jsonify, request

from propertyops.audit import audit_bp
from propertyops.logging_config import get_logger
from propertyops.services.audit_service import AuditService

logger = get_logger(__name__)


@audit_bp.route("/logs", methods=["GET"])
def list_audit_logs():
    """Query params: entity_type, entity_id, action, limit."""
    try:
        limit = min(int(request.args.get("limit", 100)), 500)
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400

    try:
        entries = AuditService.query(
            entity_type=request.args.get("entity_type"),
            entity_id=request.args.get("entity_id"),
            action=request.args.get("action"),
            limit=limit,
        )
        return jsonify({"logs": [entry.to_dict() for entry in entries]}), 200
    except Exception as exc:
        logger.error("Error querying audit logs", error=str(exc))
        return jsonify({"error": "Failed to query audit logs", "details": str(exc)}), 500
