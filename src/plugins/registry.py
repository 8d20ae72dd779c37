"""
Plugin Registry - Discovery and registration of managed kinds.

The registry is built once at startup and passed explicitly to everything
that needs it. Built-in kinds are always registered; further kinds are
discovered via Python entry points.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, Type

from plugins.managed import BUILTIN_KINDS, ManagedKind

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "permission_operator.managed_kinds"


class PluginRegistry:
    """
    Registry mapping each managed kind name to the strategy that handles it.
    """

    def __init__(self):
        # Instantiated kind strategies keyed by kind name
        self._managed_kinds: Dict[str, ManagedKind] = {}

    def register_managed_kind(self, kind_class: Type[ManagedKind]) -> ManagedKind:
        """
        Register a managed kind class.

        Args:
            kind_class: The ManagedKind subclass to register

        Returns:
            The registered ManagedKind instance

        Raises:
            ValueError: If another class already handles the kind
        """
        instance = kind_class()
        name = instance.kind

        existing = self._managed_kinds.get(name)
        if existing is not None:
            if type(existing) is kind_class:
                return existing
            raise ValueError(
                f"Kind '{name}' is already handled by "
                f"{type(existing).__name__}. Cannot register {kind_class.__name__}."
            )

        self._managed_kinds[name] = instance
        logger.info(f"Registered managed kind: {name}")
        return instance

    def get_managed_kind(self, name: str) -> ManagedKind:
        """
        Get the strategy for a managed kind.

        Raises:
            ValueError: If the kind is not registered
        """
        if name not in self._managed_kinds:
            available = ", ".join(self._managed_kinds.keys()) or "none"
            raise ValueError(
                f"Unknown managed kind: {name}. Available kinds: {available}"
            )
        return self._managed_kinds[name]

    def list_managed_kinds(self) -> list[str]:
        """List all registered managed kind names."""
        return list(self._managed_kinds.keys())

    def has_managed_kind(self, name: str) -> bool:
        """Check if a managed kind is registered."""
        return name in self._managed_kinds


def build_registry(discover: bool = True) -> PluginRegistry:
    """
    Build a registry holding the built-in kinds and, when discover is set,
    any kinds installed under the entry point group.

    A kind that fails to load is logged and skipped.
    """
    registry = PluginRegistry()

    for kind_class in BUILTIN_KINDS:
        registry.register_managed_kind(kind_class)

    if not discover:
        return registry

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            kind_class = ep.load()
            registry.register_managed_kind(kind_class)
        except Exception as e:
            logger.warning(f"Could not load managed kind {ep.name}: {e}")

    return registry
