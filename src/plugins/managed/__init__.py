"""
Managed resource kinds.

Each kind pairs a parameters model with an ExternalClient that reconciles one
kind of external object. Built-in kinds are listed in BUILTIN_KINDS; others
are discovered via Python entry points
(group: 'permission_operator.managed_kinds').
"""

from plugins.managed.base import (
    Connector,
    ExternalClient,
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    ManagedKind,
)
from plugins.managed.repository import RepositoryKind
from plugins.managed.repositorypermission import RepositoryPermissionKind

BUILTIN_KINDS = [RepositoryPermissionKind, RepositoryKind]

__all__ = [
    "BUILTIN_KINDS",
    "Connector",
    "ExternalClient",
    "ExternalCreation",
    "ExternalObservation",
    "ExternalUpdate",
    "ManagedKind",
    "RepositoryKind",
    "RepositoryPermissionKind",
]
