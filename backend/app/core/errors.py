"""Domain error taxonomy.

Services raise these; the exception handlers in ``app.core.middleware`` turn
them into ``{"success": false, "error": ...}`` responses with the matching
status code.
"""


class AppError(Exception):
    """Base class for errors that map onto an HTTP response"""
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(AppError):
    """Missing or invalid credential or webhook signature"""
    status_code = 401
    default_message = "Not authenticated"


class AuthorizationError(AppError):
    """Role insufficient for the action"""
    status_code = 403
    default_message = "Access denied"


class ValidationError(AppError):
    """Malformed input or invalid enum value"""
    status_code = 400
    default_message = "Invalid request"


class ConflictError(AppError):
    """Duplicate invitation or membership"""
    status_code = 409
    default_message = "Conflict"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class InternalError(AppError):
    """Store or downstream failure. The message is never shown to the caller."""
    status_code = 500
    default_message = "Internal server error"
