"""
Reconciler plugins package.

Reconcilers own the reconciliation loop for one or more managed kinds. The
operator runs one ManagedReconciler per registered kind.
"""

from plugins.reconcilers.base import (
    BackoffPolicy,
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)
from plugins.reconcilers.managed import ManagedReconciler

__all__ = [
    "BackoffPolicy",
    "ManagedReconciler",
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileResult",
]
