"""Typed failures raised by the services.

The HTTP layer maps each class to a status code (see ``main.py``); services
never build transport responses themselves.
"""


class ExcelDataError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(ExcelDataError):
    """Missing file, row, sheet or import record."""

    status_code = 404


class InvalidArgumentError(ExcelDataError):
    """Bad extension, empty payload, missing required field."""

    status_code = 400


class InvalidStateError(ExcelDataError):
    """Mutating a soft-deleted row or an import that already left Pending."""

    status_code = 409


class ConflictError(ExcelDataError):
    """Optimistic concurrency retries exhausted."""

    status_code = 409


class ExternalFailureError(ExcelDataError):
    """Spreadsheet parse errors or a physical file missing from disk."""

    status_code = 422


class InternalError(ExcelDataError):
    """Unexpected state, e.g. a stored row whose data cannot be decoded."""

    status_code = 500
