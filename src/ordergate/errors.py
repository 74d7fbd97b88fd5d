"""
Error types for ordergate.

Authorization outcomes are returned as values (see ``Decision``); these
exceptions cover the failures that cross component boundaries: upstream
admin API problems and persistence integrity conflicts.
"""


class OrderGateError(Exception):
    """Base class for all ordergate errors."""


class ThrottleError(OrderGateError):
    """A sender or an (order, command) pair is being throttled."""

    def __init__(self, message: str, remaining_seconds: int) -> None:
        super().__init__(message)
        self.remaining_seconds = remaining_seconds


class OwnershipDenied(OrderGateError):
    """The sender is not allowed to act on the order."""

    def __init__(self, message: str, case: str | None = None) -> None:
        super().__init__(message)
        self.case = case


class UpstreamDependencyError(OrderGateError):
    """The panel admin API could not be reached or returned an error."""


class DataIntegrityError(OrderGateError):
    """A write conflicted with an existing record."""


class DuplicateMappingError(DataIntegrityError, ValueError):
    """A mapping for the panel username already exists for this owner."""


class MappingNotFoundError(OrderGateError, ValueError):
    """No mapping with the given id exists for this owner."""


GENERIC_ERROR_MESSAGES = {
    "order": "Order not found or you do not have access.",
    "panel": "Panel is currently unavailable.",
    "api": "An error occurred. Please try again later.",
    "auth": "Access denied.",
    "rate": "Too many requests. Please wait a moment.",
}


def sanitize_error_message(context: str = "order") -> str:
    """
    Map an error context to a generic, non-leaking user-facing message.

    Args:
        context: One of "order", "panel", "api", "auth", "rate".

    Returns:
        str: Fixed message for the context; unknown contexts map to "api".
    """
    return GENERIC_ERROR_MESSAGES.get(context, GENERIC_ERROR_MESSAGES["api"])
