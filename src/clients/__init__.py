"""
External API clients.

Typed bindings for the Upbound API resources reconciled by this operator.
"""

from clients.repositories import RepositoryClient, RepositoryObservation
from clients.repository_permission import (
    CreateParameters,
    GetParameters,
    RepositoryPermissionClient,
)
from clients.upbound import UpboundClient

__all__ = [
    "CreateParameters",
    "GetParameters",
    "RepositoryClient",
    "RepositoryObservation",
    "RepositoryPermissionClient",
    "UpboundClient",
]
