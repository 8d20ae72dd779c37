"""
Provider Config - credential resolution and usage tracking.

A provider config names an API endpoint and where to find the token used to
call it. Managed resources reference a provider config by name; every
connect resolves that reference afresh so rotated credentials are picked up
on the next reconciliation.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from errors import ConfigResolutionFailed
from managedresource import ManagedResource

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0


class CredentialsSource(Enum):
    """Where a provider config's token comes from."""

    NONE = "None"
    ENVIRONMENT = "Environment"
    FILESYSTEM = "Filesystem"


@dataclass
class ResolvedConfiguration:
    """Endpoint and credentials for a single reconciliation."""

    endpoint: str
    token: str = field(default="", repr=False)  # Never log token
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    provider_config_name: str = ""


class ProviderConfigResolver:
    """Resolves provider config references into ResolvedConfiguration."""

    def __init__(self, db: Any, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.db = db
        self.request_timeout = request_timeout

    async def resolve(self, name: str) -> ResolvedConfiguration:
        """
        Resolve a provider config by name.

        Args:
            name: The provider config name.

        Returns:
            ResolvedConfiguration with the endpoint and token.

        Raises:
            ConfigResolutionFailed: If the provider config does not exist or
                its credentials cannot be read.
        """
        pc = await self.db.get_provider_config(name)
        if pc is None:
            raise ConfigResolutionFailed(f"cannot get provider config '{name}'")

        token = await self._read_credentials(
            name, pc.get("credentials_source"), pc.get("credentials_ref")
        )
        return ResolvedConfiguration(
            endpoint=pc["endpoint"],
            token=token,
            request_timeout=self.request_timeout,
            provider_config_name=name,
        )

    async def _read_credentials(
        self, name: str, source: Optional[str], ref: Optional[str]
    ) -> str:
        try:
            credentials_source = CredentialsSource(source or "None")
        except ValueError:
            raise ConfigResolutionFailed(
                f"provider config '{name}' has unknown credentials source: {source}"
            )

        if credentials_source == CredentialsSource.NONE:
            return ""

        if not ref:
            raise ConfigResolutionFailed(
                f"provider config '{name}' uses {credentials_source.value} "
                f"credentials but sets no reference"
            )

        if credentials_source == CredentialsSource.ENVIRONMENT:
            token = os.getenv(ref)
            if token is None:
                raise ConfigResolutionFailed(
                    f"cannot read credentials for provider config '{name}': "
                    f"environment variable {ref} is not set"
                )
            return token.strip()

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _read_token_file, ref)
        except OSError as e:
            raise ConfigResolutionFailed(
                f"cannot read credentials for provider config '{name}' "
                f"from {ref}: {e}"
            ) from e


def _read_token_file(path: str) -> str:
    with open(path, "r") as f:
        return f.read().strip()


class ProviderConfigUsageTracker:
    """Records which provider config each managed resource uses."""

    def __init__(self, db: Any):
        self.db = db

    async def track(self, record: ManagedResource) -> None:
        """Persist a usage row so the provider config is not deleted in use."""
        await self.db.track_provider_config_usage(
            resource_id=record.id,
            provider_config_name=record.provider_config_ref,
        )
        logger.debug(
            f"Tracked usage of provider config {record.provider_config_ref} "
            f"by {record.kind}/{record.name}"
        )
