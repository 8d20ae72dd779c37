"""
Repository permission client.

A repository permission grants a team access to a repository. Grants have no
ID of their own: organization, team and repository identify one, and the
only mutation the API offers is delete-then-create.
"""

from dataclasses import dataclass

from clients.upbound import UpboundClient
from providerconfig import ResolvedConfiguration

BASE_PATH = "v1/repoPermissions"


@dataclass
class GetParameters:
    """Structural key of a repository permission."""

    organization: str
    team_id: str
    repository: str


@dataclass
class CreateParameters:
    """Everything needed to create a repository permission."""

    organization: str
    team_id: str
    repository: str
    permission: str

    def key(self) -> GetParameters:
        return GetParameters(
            organization=self.organization,
            team_id=self.team_id,
            repository=self.repository,
        )


class RepositoryPermissionClient:
    """Get, create and delete repository permissions."""

    def __init__(self, cfg: ResolvedConfiguration):
        self.client = UpboundClient(cfg)

    def _path(self, params: GetParameters) -> str:
        return "/".join(
            [
                BASE_PATH,
                UpboundClient.path(
                    params.organization,
                    "teams",
                    params.team_id,
                    "repositories",
                    params.repository,
                ),
            ]
        )

    async def get(self, params: GetParameters) -> None:
        """
        Check that the permission exists.

        Raises:
            NotFoundError: If no permission matches the key.
            ExternalAPIError: On any other failure.
        """
        await self.client.request("GET", self._path(params))

    async def create(self, params: CreateParameters) -> None:
        """Grant the permission. Duplicates are not detected here."""
        await self.client.request(
            "PUT", self._path(params.key()), {"permission": params.permission}
        )

    async def delete(self, params: GetParameters) -> None:
        """
        Revoke the permission.

        Raises:
            NotFoundError: If the permission is already gone.
            ExternalAPIError: On any other failure.
        """
        await self.client.request("DELETE", self._path(params))
