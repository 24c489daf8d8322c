"""Domain errors and their HTTP status codes.

Routes never build error responses themselves; a single exception handler in
``commerce.main`` turns any ``CommerceError`` into ``{"detail": ...}``.
"""


class CommerceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CommerceError):
    status_code = 422


class NotFound(CommerceError):
    status_code = 404


class InvalidState(CommerceError):
    status_code = 409


class InvalidTransition(InvalidState):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"invalid status transition from {_label(current)} to {_label(requested)}"
        )


class Conflict(CommerceError):
    status_code = 409


class AuthenticationError(CommerceError):
    status_code = 400


class GatewayUnavailable(CommerceError):
    status_code = 502


class Internal(CommerceError):
    status_code = 500


def _label(status) -> str:
    return getattr(status, "value", status)
