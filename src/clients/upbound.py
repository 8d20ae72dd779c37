"""
Upbound API client - HTTP plumbing shared by the resource clients.

Each call opens its own aiohttp session bound to the credentials it was
constructed with; nothing is cached between reconciliations.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from errors import ExternalAPIError, NotFoundError
from providerconfig import ResolvedConfiguration

logger = logging.getLogger(__name__)


class UpboundClient:
    """Thin JSON-over-HTTP client for the Upbound API."""

    def __init__(self, cfg: ResolvedConfiguration):
        self.endpoint = cfg.endpoint.rstrip("/")
        self.token = cfg.token
        self.timeout = cfg.request_timeout

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Upbound API requests."""
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def path(*segments: str) -> str:
        """Join path segments, escaping each one."""
        return "/".join(quote(str(s), safe="") for s in segments)

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Perform a request and decode the JSON response.

        Args:
            method: HTTP method.
            path: Path relative to the endpoint, already escaped.
            payload: Optional JSON body.

        Returns:
            The decoded JSON body, or None for an empty response.

        Raises:
            NotFoundError: If the API answers 404.
            ExternalAPIError: For any other HTTP error, transport failure, or
                malformed response body.
        """
        url = f"{self.endpoint}/{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._get_headers(), json=payload
                ) as response:
                    if response.status == 404:
                        raise NotFoundError(f"{method} {path}: not found")
                    body = await response.text()
                    if response.status >= 400:
                        raise ExternalAPIError(
                            f"{method} {path} returned HTTP {response.status}: "
                            f"{body}",
                            status=response.status,
                        )
        except UnicodeDecodeError as e:
            raise ExternalAPIError(
                f"{method} {path} returned a malformed response: {e}"
            ) from e
        except asyncio.TimeoutError as e:
            raise ExternalAPIError(
                f"{method} {path} timed out after {self.timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise ExternalAPIError(f"{method} {path} failed: {e}") from e

        logger.debug(f"{method} {url} -> {response.status}")

        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise ExternalAPIError(
                f"{method} {path} returned a malformed response: {e}",
                status=response.status,
            ) from e
