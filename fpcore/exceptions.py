"""Exception taxonomy for the fingerprint correlator."""

from typing import Any, Dict, Optional


class CorrelatorError(Exception):
    """Base exception for all correlator errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InvalidArgument(CorrelatorError):
    """Rejected input: bad correlation id, kind or payload shape."""

    pass


class NotFound(CorrelatorError):
    """A referenced snapshot or correlation id does not exist."""

    pass


class BackendUnavailable(CorrelatorError):
    """The shared key/value store could not be reached."""

    def __init__(self, message: str, operation: str = "",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.operation = operation
