"""
Plugin system for the permission operator.

Managed kinds describe how one kind of external object is observed and
changed; reconcilers drive them from the managed resource store.
"""

from plugins.managed import ExternalClient, ManagedKind
from plugins.reconcilers import (
    ManagedReconciler,
    ReconcilerContext,
    ReconcilerPlugin,
    ReconcileResult,
)
from plugins.registry import PluginRegistry, build_registry

__all__ = [
    "ExternalClient",
    "ManagedKind",
    "ManagedReconciler",
    "ReconcilerContext",
    "ReconcilerPlugin",
    "ReconcileResult",
    "PluginRegistry",
    "build_registry",
]
