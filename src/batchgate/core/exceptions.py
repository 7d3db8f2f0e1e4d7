from typing import Any, Dict, Optional


class BatchGateError(Exception):
    """Base class for all custom exceptions in the batchgate library."""

    def __init__(self, message: str = "", context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})


class FatalJobError(BatchGateError):
    """Raised when a job cannot run at all (credential, config or payload problem).

    A fatal error aborts the job before any item starts and is reported to the
    queue collaborator through ``nack``.
    """

    pass


class ItemError(BatchGateError):
    """Raised when a single external generation call fails.

    Always caught at the item boundary and converted into a failed outcome.
    """

    pass


class TransientItemError(ItemError):
    """Raised for item failures worth retrying (network hiccups, 5xx)."""

    pass


class ConfigurationError(BatchGateError):
    """Raised when there's a configuration error."""

    pass


__all__ = [
    "BatchGateError",
    "FatalJobError",
    "ItemError",
    "TransientItemError",
    "ConfigurationError",
]
