"""Errors raised while reconciling OneAgent resources."""

from typing import Optional


class OperatorError(Exception):
    """Base class for reconciliation errors."""


class ConfigurationError(OperatorError):
    """Missing or malformed secret or spec field. Fixable by the user."""


class InsufficientScopeError(OperatorError):
    """A token lacks the capability scope it is used for."""

    def __init__(self, token_key: str, scope: str, message: Optional[str] = None):
        self.token_key = token_key
        self.scope = scope
        super().__init__(message or f"token '{token_key}' is missing scope {scope}")


class UpstreamError(OperatorError):
    """The management API was unreachable or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ConflictError(OperatorError):
    """An optimistic-concurrency write was rejected as stale."""


class NotFoundError(OperatorError):
    """The OneAgent resource no longer exists."""
