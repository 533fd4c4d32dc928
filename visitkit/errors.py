"""Exception types shared by the calculators, store, engine and API."""


class VisitKitError(Exception):
    """Base class for service errors."""
    pass


class InputValidationError(VisitKitError):
    """Raised when a request is rejected before any store access."""
    pass


class AuthorizationError(VisitKitError):
    """Raised when the caller lacks a valid identity, job token or study access."""

    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message)
        self.status_code = status_code


class StoreError(VisitKitError):
    """Raised when the store cannot be read or written."""
    pass


class MalformedRowError(StoreError):
    """Raised when a stored row cannot be used for scheduling or forecasting."""

    def __init__(self, table: str, row_id, message: str):
        super().__init__(f"{table} row {row_id}: {message}")
        self.table = table
        self.row_id = row_id


class RecordNotFoundError(StoreError):
    """Raised when a subject, section or study id does not exist in the store."""
    pass


class StudyNotFoundError(RecordNotFoundError):
    """Raised when a study id does not exist in the store."""
    pass


class DataValidationError(VisitKitError):
    """Raised when loaded tables fail validation."""
    pass
