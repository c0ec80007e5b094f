"""Error taxonomy shared by the booking, dispatch and earnings modules.

Each error carries the HTTP status it maps to; ``main`` renders any
``ServiceError`` as ``{"success": false, "message": ...}``.
"""


class ServiceError(Exception):
    """Base class for errors that surface to API clients."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class AuthError(ServiceError):
    """Missing, invalid or expired token."""

    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(ServiceError):
    """Role or ownership mismatch."""

    status_code = 403
    default_message = "Unauthorized access"


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class InternalError(ServiceError):
    """Unexpected or persistence failure; the message stays generic."""

    status_code = 500
