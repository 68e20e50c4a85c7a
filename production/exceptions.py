class TrackingError(Exception):
    """Base class for errors surfaced by the production tracking services."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(TrackingError):
    status_code = 404


class InvalidScope(TrackingError):
    """Missing or malformed date/shift."""


class InvalidRecordState(TrackingError):
    pass


class InvalidEmployee(TrackingError):
    pass


class DuplicateEmployee(InvalidEmployee):
    pass


class AttendanceLocked(TrackingError):
    status_code = 403


class PermissionDenied(TrackingError):
    status_code = 403


class ConcurrencyConflict(TrackingError):
    """The scope lock could not be taken or a write lost a race, even after retrying."""
    status_code = 409


class PartialReconciliation(TrackingError):
    """
    The write batch of a reconciliation failed part way. The transaction is
    rolled back; run `manage.py reconcile_scope` for the scope to repair it.
    """
    status_code = 500

    def __init__(self, message: str, scope=None):
        super().__init__(message)
        self.scope = scope
