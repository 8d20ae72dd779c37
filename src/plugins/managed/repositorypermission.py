"""
RepositoryPermission - grants a team a permission level on a repository.

Grants are immutable once created and have no ID of their own, so existence
is the only thing observed: a grant that exists is always up to date, and
update is a no-op. Changing the permission level of an existing grant is not
detected.
"""

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from clients.repository_permission import (
    CreateParameters,
    GetParameters,
    RepositoryPermissionClient,
)
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

KIND = "RepositoryPermission"


class RepositoryPermissionParameters(BaseModel):
    """Desired state of a repository permission."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    organization_name: str = Field(..., alias="organizationName", min_length=1)
    repository: str = Field(..., min_length=1, description="Repository name")
    team_id: str = Field(..., alias="teamId", min_length=1, description="Team ID")
    permission: Literal["admin", "read", "write", "view"] = Field(
        ..., description="Permission level granted to the team"
    )


class RepositoryPermissionExternal(ExternalClient):
    """Reconciles one repository permission against the Upbound API."""

    def __init__(self, client: RepositoryPermissionClient):
        self.client = client

    @staticmethod
    def _parameters(record: ManagedResource) -> RepositoryPermissionParameters:
        return RepositoryPermissionParameters.model_validate(record.spec)

    @staticmethod
    def _key(params: RepositoryPermissionParameters) -> GetParameters:
        return GetParameters(
            organization=params.organization_name,
            team_id=params.team_id,
            repository=params.repository,
        )

    async def observe(self, record: ManagedResource) -> ExternalObservation:
        key = self._key(self._parameters(record))
        try:
            await self.client.get(key)
        except NotFoundError:
            return ExternalObservation(resource_exists=False)
        except ExternalAPIError as e:
            raise ExternalAPIError(
                f"cannot get repository permission for {record.name}: {e}",
                status=e.status,
            ) from e

        record.set_conditions(available())
        return ExternalObservation(resource_exists=True, resource_up_to_date=True)

    async def create(self, record: ManagedResource) -> ExternalCreation:
        params = self._parameters(record)
        key = self._key(params)

        check_external_name(record, key.repository)

        try:
            await self.client.create(
                CreateParameters(
                    organization=key.organization,
                    team_id=key.team_id,
                    repository=key.repository,
                    permission=params.permission,
                )
            )
        except ExternalAPIError as e:
            raise ExternalAPIError(
                f"cannot create repository permission for {record.name}: {e}",
                status=e.status,
            ) from e

        set_external_name(record, key.repository)
        logger.info(
            f"Granted {params.permission} on {key.organization}/{key.repository} "
            f"to team {key.team_id}"
        )
        return ExternalCreation()

    async def update(self, record: ManagedResource) -> ExternalUpdate:
        return ExternalUpdate()

    async def delete(self, record: ManagedResource) -> None:
        key = self._key(self._parameters(record))
        try:
            await self.client.delete(key)
        except NotFoundError:
            logger.info(f"Repository permission for {record.name} already absent")
            return
        except ExternalAPIError as e:
            raise ExternalAPIError(
                f"cannot delete repository permission for {record.name}: {e}",
                status=e.status,
            ) from e


class RepositoryPermissionKind(ManagedKind):
    """Managed kind for repository permissions."""

    kind = KIND
    parameters_model = RepositoryPermissionParameters

    def new_external(self, cfg: ResolvedConfiguration) -> ExternalClient:
        return RepositoryPermissionExternal(RepositoryPermissionClient(cfg))
