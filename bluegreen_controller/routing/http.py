"""
Blue/Green Deployment Controller - HTTP Routing Backend.

============================================================
PURPOSE
============================================================
Talk JSON to a traffic control plane (ingress controller,
service mesh API, load balancer gateway).

ENDPOINTS (relative to base_url):
- GET  /services/{service}/split
- PUT  /services/{service}/split
- GET  /services/{service}/revisions/{revision}/health
- GET  /services/{service}
- POST /services/{service}/promote

Every non-2xx response or network failure raises
RoutingBackendError. Reachability checks return False instead.

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..types import RoutingBackendError, TrafficSplit, ValidationError
from .base import RoutingBackend


logger = logging.getLogger(__name__)


class HttpRoutingBackend(RoutingBackend):
    """
    Routing backend using a JSON control-plane API.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._headers: Dict[str, str] = {"Content-Type": "application/json"}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"
        self._session: Optional[aiohttp.ClientSession] = None

    # =========================================================
    # TRANSPORT
    # =========================================================

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
                headers=self._headers,
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Make API request."""
        url = f"{self._base_url}{path}"
        session = await self._get_session()

        try:
            async with session.request(method, url, json=payload) as response:
                if allow_not_found and response.status == 404:
                    return None

                if response.status >= 300:
                    body = await response.text()
                    raise RoutingBackendError(
                        f"{method} {path} failed with HTTP {response.status}: {body[:200]}"
                    )

                if response.status == 204:
                    return {}
                return await response.json(content_type=None) or {}

        except aiohttp.ClientError as e:
            raise RoutingBackendError(f"Network error on {method} {path}: {e}") from e
        except asyncio.TimeoutError as e:
            raise RoutingBackendError(f"Timeout on {method} {path}") from e

    # =========================================================
    # ROUTING API
    # =========================================================

    async def get_split(self, service_name: str) -> TrafficSplit:
        data = await self._request("GET", f"/services/{service_name}/split")
        try:
            return TrafficSplit(
                blue_percent=int(data["blue_percent"]),
                green_percent=int(data["green_percent"]),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise RoutingBackendError(f"Malformed split for {service_name}: {data!r}") from e

    async def set_split(
        self,
        service_name: str,
        blue_revision: Optional[str],
        green_revision: str,
        split: TrafficSplit,
    ) -> None:
        payload = {
            "blue_revision": blue_revision,
            "green_revision": green_revision,
            **split.to_dict(),
        }
        await self._request("PUT", f"/services/{service_name}/split", payload)

    async def is_reachable(self, service_name: str, revision: str) -> bool:
        try:
            data = await self._request(
                "GET", f"/services/{service_name}/revisions/{revision}/health"
            )
        except RoutingBackendError as e:
            logger.debug(f"Revision {revision} of {service_name} not reachable: {e}")
            return False
        return bool(data.get("reachable", True))

    async def get_active_revision(self, service_name: str) -> Optional[str]:
        data = await self._request("GET", f"/services/{service_name}", allow_not_found=True)
        if not data:
            return None
        return data.get("active_revision")

    async def promote(self, service_name: str, revision: str) -> None:
        await self._request(
            "POST", f"/services/{service_name}/promote", {"revision": revision}
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
