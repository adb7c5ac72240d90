"""
Shared error taxonomy and user-facing messages.

User-visible errors must be clear and actionable.
"""


class PanelError(Exception):
    """Base class for every error the panel core raises."""


class NotFound(PanelError):
    """No record with that id exists within the caller's scope."""


class OwnershipViolation(PanelError):
    """The caller neither owns the record nor holds admin scope."""


class LimitExceeded(PanelError):
    """Admission control refused a new ticket."""

    def __init__(self, limit: int):
        super().__init__(f"You have reached the limit of {limit} open tickets.")
        self.limit = limit


class TicketClosed(PanelError):
    """Message posted to a closed ticket."""


class BackendUnavailable(PanelError):
    """Shared storage is configured but cannot be reached."""


class InvalidTransition(PanelError):
    """Requested ticket status change is not allowed."""


class UnknownField(PanelError, ValueError):
    """A create or patch carried a field the entity does not define."""


class SupportSuspended(PanelError):
    """The user has been suspended from opening support tickets."""

    def __init__(self, message: str = "You are suspended from creating support tickets."):
        super().__init__(message)


class AppErrors:
    """Centralized actionable error messages."""

    SHARED_UNREACHABLE = (
        "Shared database is not reachable. Check the database path in "
        "Settings or disable shared mode."
    )

    SERVER_MODE_LOCAL_WRITE = (
        "Server mode is enabled. Local data is read-only; configure the "
        "shared database."
    )

    NOT_AUTHENTICATED = (
        "No user in session. Sign in and retry."
    )

    ADMIN_REQUIRED = (
        "This action requires an administrator."
    )

    EMPTY_INPUT = (
        "Input is empty. Provide the required fields."
    )

    LOCAL_BUSY = (
        "Local data store is busy. Try again in a moment."
    )

    INVALID_BODY = (
        "Request body must be a JSON object."
    )


ERROR_STATUS = {
    NotFound: 404,
    OwnershipViolation: 403,
    LimitExceeded: 409,
    TicketClosed: 409,
    InvalidTransition: 409,
    BackendUnavailable: 503,
    UnknownField: 400,
    SupportSuspended: 403,
}


UNREACHABLE_MARKERS = (
    "unable to open",
    "no such table",
    "could not connect",
    "connection refused",
    "can't connect",
    "no module named",
)


def status_for(error: PanelError) -> int:
    """HTTP status code for a panel error."""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def format_db_error(error: Exception) -> str:
    """Format a shared-database driver error as an actionable message."""
    # SQLAlchemy wraps the DBAPI exception; its message carries the SQL too
    cause = getattr(error, "orig", None) or error
    error_str = str(cause).lower()
    if any(s in error_str for s in UNREACHABLE_MARKERS):
        return AppErrors.SHARED_UNREACHABLE
    if "locked" in error_str:
        return "Shared database is busy. Try again in a moment."
    return f"Shared database error: {cause}"
