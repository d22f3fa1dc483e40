"""
Domain errors raised by the badge, fan-out and aggregation code.
Routes let them propagate; main.py maps them to JSON responses via status_code.
"""


class AppError(Exception):
    """Base class for errors that carry an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(AppError):
    """Referenced user, crew or conversation does not exist."""

    status_code = 404


class PermissionDeniedError(AppError):
    status_code = 403


class InvalidArgumentError(AppError):
    """Missing or malformed field in a request or change-event payload."""

    status_code = 400


class TransientDeliveryError(AppError):
    """Push relay rejected or failed a batch. Logged by the push client, never retried."""

    status_code = 502
