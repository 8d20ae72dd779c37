"""
Repository - a package repository owned by an organization.

Unlike repository permissions, a repository has a field that can change
after creation (its visibility), so observe compares it against the spec and
update corrects it in place.
"""

import logging

from pydantic import BaseModel, ConfigDict, Field

from clients.repositories import RepositoryClient
from errors import ExternalAPIError, NotFoundError
from plugins.managed.base import (
    ExternalClient,
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    ManagedKind,
)
from providerconfig import ResolvedConfiguration
from managedresource import (
    ManagedResource,
    available,
    check_external_name,
    set_external_name,
)

logger = logging.getLogger(__name__)

KIND = "Repository"


class RepositoryParameters(BaseModel):
    """Desired state of a repository."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    organization_name: str = Field(..., alias="organizationName", min_length=1)
    name: str = Field(..., min_length=1)
    public: bool = False


class RepositoryExternal(ExternalClient):
    """Reconciles one repository against the Upbound API."""

    def __init__(self, client: RepositoryClient):
        self.client = client

    async def observe(self, record: ManagedResource) -> ExternalObservation:
        params = RepositoryParameters.model_validate(record.spec)
        try:
            observed = await self.client.get(params.organization_name, params.name)
        except NotFoundError:
            return ExternalObservation(resource_exists=False)
        except ExternalAPIError as e:
            raise ExternalAPIError(
                f"cannot get repository {params.name}: {e}", status=e.status
            ) from e

        record.set_conditions(available())
        return ExternalObservation(
            resource_exists=True,
            resource_up_to_date=observed.public == params.public,
        )

    async def create(self, record: ManagedResource) -> ExternalCreation:
        params = RepositoryParameters.model_validate(record.spec)
        check_external_name(record, params.name)
        await self._put(params, "create")
        set_external_name(record, params.name)
        return ExternalCreation()

    async def update(self, record: ManagedResource) -> ExternalUpdate:
        params = RepositoryParameters.model_validate(record.spec)
        await self._put(params, "update")
        logger.info(
            f"Set visibility of {params.organization_name}/{params.name} "
            f"to {'public' if params.public else 'private'}"
        )
        return ExternalUpdate()

    async def delete(self, record: ManagedResource) -> None:
        params = RepositoryParameters.model_validate(record.spec)
        try:
            await self.client.delete(params.organization_name, params.name)
        except NotFoundError:
            return
        except ExternalAPIError as e:
            raise ExternalAPIError(
                f"cannot delete repository {params.name}: {e}", status=e.status
            ) from e

    async def _put(self, params: RepositoryParameters, verb: str) -> None:
        try:
            await self.client.put(
                params.organization_name, params.name, params.public
            )
        except ExternalAPIError as e:
            raise ExternalAPIError(
                f"cannot {verb} repository {params.name}: {e}", status=e.status
            ) from e


class RepositoryKind(ManagedKind):
    """Managed kind for repositories."""

    kind = KIND
    parameters_model = RepositoryParameters

    def new_external(self, cfg: ResolvedConfiguration) -> ExternalClient:
        return RepositoryExternal(RepositoryClient(cfg))
