"""
Reconciliation errors.

Every failure surfaced to the reconciler engine derives from ReconcileError.
NotFoundError is a subclass of ExternalAPIError so callers that care about
absence can catch it first and let every other API failure propagate.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for errors raised while reconciling a managed resource."""


class WrongKind(ReconcileError):
    """A managed resource was handed to a connector for a different kind."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"managed resource is not a {expected} resource (got {actual})"
        )


class UsageTrackingFailed(ReconcileError):
    """Recording provider config usage for a resource failed."""


class ConfigResolutionFailed(ReconcileError):
    """A provider config reference could not be resolved to credentials."""


class ExternalNameConflict(ReconcileError):
    """A resource bound to one external object was asked to bind to another."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"external name is already set to '{current}', "
            f"refusing to rebind to '{requested}'"
        )


class ExternalAPIError(ReconcileError):
    """The external API call failed (auth, transport, malformed response)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class NotFoundError(ExternalAPIError):
    """The external API reported that no object matches the key."""

    def __init__(self, message: str = "not found"):
        super().__init__(message, status=404)
