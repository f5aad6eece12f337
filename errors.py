"""
Order domain errors

Every condition here is local and recoverable: it is reported to the caller
and never leaves an order half-updated. Persistence outages are not wrapped.
"""


class OrderError(Exception):
    """Base class for order lifecycle errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderError, ValueError):
    """Malformed input, rejected before any state is touched."""

    status_code = 400


class NotFound(OrderError):
    status_code = 404


class InvalidTransition(OrderError):
    """The edge is not legal from the current status, or the order moved under us."""

    status_code = 409


class Unauthorized(OrderError):
    status_code = 403


class IncorrectCode(OrderError):
    status_code = 400
