"""
Repository client.

Repositories are identified by organization and name; visibility is the only
field that can change after creation.
"""

from dataclasses import dataclass

from clients.upbound import UpboundClient
from errors import ExternalAPIError
from providerconfig import ResolvedConfiguration

BASE_PATH = "v1/repositories"


@dataclass
class RepositoryObservation:
    """Observed state of a repository."""

    name: str
    public: bool


class RepositoryClient:
    """Get, put and delete repositories."""

    def __init__(self, cfg: ResolvedConfiguration):
        self.client = UpboundClient(cfg)

    def _path(self, organization: str, name: str) -> str:
        return f"{BASE_PATH}/{UpboundClient.path(organization, name)}"

    async def get(self, organization: str, name: str) -> RepositoryObservation:
        data = await self.client.request("GET", self._path(organization, name))
        if not isinstance(data, dict):
            raise ExternalAPIError(
                f"unexpected repository response for {organization}/{name}"
            )
        return RepositoryObservation(
            name=data.get("name", name),
            public=bool(data.get("public", False)),
        )

    async def put(self, organization: str, name: str, public: bool) -> None:
        """Create the repository, or update its visibility if it exists."""
        await self.client.request(
            "PUT", self._path(organization, name), {"public": public}
        )

    async def delete(self, organization: str, name: str) -> None:
        await self.client.request("DELETE", self._path(organization, name))
