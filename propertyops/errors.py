"""
Error taxonomy for the billing export pipeline.

ValidationError and NotFoundError are raised synchronously to callers of the
export operations and carry the HTTP status the routes (and the global error
handler) answer with. HandlerError and AdapterError only ever travel inside
the outbox processor, where they are captured into last_error.
"""


class PropertyOpsError(Exception):
    """Base class for application errors."""
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PropertyOpsError):
    status_code = 400


class NotFoundError(PropertyOpsError):
    status_code = 404


class HandlerError(PropertyOpsError):
    """An outbox handler could not complete; always retryable."""


class AdapterError(HandlerError):
    """The external accounting system rejected or failed the submission."""
