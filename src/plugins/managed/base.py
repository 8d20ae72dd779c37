"""
Managed Resource Base - the contract between the reconciler and a kind.

Each managed kind supplies an ExternalClient that observes, creates, updates
and deletes one kind of external object, and a ManagedKind that describes the
kind and builds that client from resolved credentials. The Connector binds
the two together for one reconciliation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Type

from pydantic import BaseModel

from errors import ConfigResolutionFailed, UsageTrackingFailed, WrongKind
from providerconfig import (
    DEFAULT_REQUEST_TIMEOUT,
    ProviderConfigResolver,
    ProviderConfigUsageTracker,
    ResolvedConfiguration,
)
from managedresource import ManagedResource

logger = logging.getLogger(__name__)


@dataclass
class ExternalObservation:
    """Result of observing an external object."""

    resource_exists: bool = False
    resource_up_to_date: bool = False
    connection_details: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExternalCreation:
    """Result of creating an external object."""

    connection_details: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExternalUpdate:
    """Result of updating an external object."""

    connection_details: Dict[str, str] = field(default_factory=dict)


class ExternalClient(ABC):
    """
    Observes, then either creates, updates, or deletes an external object to
    make it reflect a managed resource's desired state.

    Every method may be called repeatedly for the same resource and must
    derive everything it needs from the resource passed in.
    """

    @abstractmethod
    async def observe(self, record: ManagedResource) -> ExternalObservation:
        """Report whether the external object exists and is up to date."""
        pass

    @abstractmethod
    async def create(self, record: ManagedResource) -> ExternalCreation:
        """Create the external object and bind the record's external name."""
        pass

    @abstractmethod
    async def update(self, record: ManagedResource) -> ExternalUpdate:
        """Bring an existing external object up to date."""
        pass

    @abstractmethod
    async def delete(self, record: ManagedResource) -> None:
        """Delete the external object. An already-absent object is success."""
        pass


class ManagedKind(ABC):
    """
    Abstract base class for managed resource kinds.

    Subclasses set ``kind`` and ``parameters_model`` and build an
    ExternalClient from resolved credentials.
    """

    kind: ClassVar[str]
    parameters_model: ClassVar[Type[BaseModel]]

    @abstractmethod
    def new_external(self, cfg: ResolvedConfiguration) -> ExternalClient:
        """Build an ExternalClient bound to the given credentials."""
        pass

    def parse_parameters(self, spec: Dict[str, Any]) -> BaseModel:
        """Validate a resource spec against this kind's parameters model."""
        return self.parameters_model.model_validate(spec)

    def connector(
        self, db: Any, request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    ) -> "Connector":
        """Build a Connector that resolves credentials from the store."""
        return Connector(
            kind=self,
            usage=ProviderConfigUsageTracker(db),
            resolver=ProviderConfigResolver(db, request_timeout),
        )


class Connector:
    """
    Produces an ExternalClient for a managed resource by:

    1. Checking the resource is of the expected kind.
    2. Tracking that the resource uses its provider config.
    3. Resolving the provider config into endpoint and credentials.
    4. Using the credentials to build a client.
    """

    def __init__(
        self,
        kind: ManagedKind,
        usage: ProviderConfigUsageTracker,
        resolver: ProviderConfigResolver,
    ):
        self.kind = kind
        self.usage = usage
        self.resolver = resolver

    async def connect(self, record: ManagedResource) -> ExternalClient:
        """
        Connect a managed resource to its external API.

        Raises:
            WrongKind: If the resource is not of this connector's kind.
            UsageTrackingFailed: If the usage record cannot be persisted.
            ConfigResolutionFailed: If credentials cannot be resolved.
        """
        if record.kind != self.kind.kind:
            raise WrongKind(self.kind.kind, record.kind)

        try:
            await self.usage.track(record)
        except Exception as e:
            raise UsageTrackingFailed(
                f"cannot track provider config usage: {e}"
            ) from e

        try:
            cfg = await self.resolver.resolve(record.provider_config_ref)
        except ConfigResolutionFailed:
            raise
        except Exception as e:
            raise ConfigResolutionFailed(f"cannot create new client: {e}") from e

        return self.kind.new_external(cfg)
