"""Actor and correlation data for audit entries.

Authentication happens upstream; the gateway forwards the caller as headers.
Outside a request (the outbox scheduler thread, scripts) the actor is the system.
"""
import uuid

from flask import has_request_context, request, g

SYSTEM_ACTOR = "system"


def get_actor_user_id():
    if not has_request_context():
        return SYSTEM_ACTOR
    return request.headers.get("X-User-Id") or None


def get_request_id():
    """Return the caller supplied X-Request-Id, generating one per request when absent."""
    if not has_request_context():
        return None
    if "request_id" not in g:
        g.request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    return g.request_id


def get_request_metadata():
    if not has_request_context():
        return {"source": SYSTEM_ACTOR}
    return {
        "request_id": get_request_id(),
        "correlation_id": request.headers.get("X-Correlation-Id"),
        "user_agent": request.headers.get("User-Agent"),
        "ip": request.remote_addr,
    }
