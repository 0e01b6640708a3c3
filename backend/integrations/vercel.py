"""Vercel REST client and deployment state mapping."""

from typing import Any

import httpx
import structlog

from config import settings
from errors import UpstreamServiceError
from integrations.base import HostingDeployment
from models.session import DeploymentStatus

logger = structlog.get_logger(__name__)

_READY_STATES = {"READY"}
_ERROR_STATES = {"ERROR", "CANCELED"}
_BUILDING_STATES = {"BUILDING", "QUEUED", "INITIALIZING"}


def map_ready_state(ready_state: str | None) -> DeploymentStatus:
    """Map a hosting ``readyState`` onto the pipeline's deployment status.

    Unrecognized states map to ``pending``.
    """
    state = (ready_state or "").upper()
    if state in _READY_STATES:
        return DeploymentStatus.READY
    if state in _ERROR_STATES:
        return DeploymentStatus.ERROR
    if state in _BUILDING_STATES:
        return DeploymentStatus.BUILDING
    return DeploymentStatus.PENDING


def normalize_deployment_url(url: str | None) -> str | None:
    """Hosting APIs report bare hostnames; make them absolute https URLs."""
    if not url:
        return None
    url = url.strip()
    if url.startswith(("http://", "https://")):
        return url
    return f"https://{url}"


class VercelClient:
    """Thin async wrapper over the Vercel REST API."""

    def __init__(
        self,
        token: str | None = None,
        team_id: str | None = None,
        api_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token if token is not None else settings.vercel_api_token
        self.team_id = team_id if team_id is not None else settings.vercel_team_id
        self.api_base = (api_base or settings.vercel_api_base).rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=settings.http_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = dict(extra)
        if self.team_id:
            params["teamId"] = self.team_id
        return params

    async def _get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        try:
            return await self._get_client().get(path, params=params)
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"Vercel unreachable: {e}", service="vercel") from e

    async def find_project(self, project_name: str) -> dict[str, Any] | None:
        response = await self._get(f"/v9/projects/{project_name}", self._params())
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamServiceError(
                f"Vercel project lookup failed: {response.text}", service="vercel"
            )
        return response.json()

    async def latest_deployment(self, project_name: str) -> HostingDeployment | None:
        """Return the newest deployment of a project, or None if there is none.

        Without an API token there is nothing to query and None is returned.
        """
        if not self.enabled:
            logger.warning("vercel_token_missing", project=project_name)
            return None

        project = await self.find_project(project_name)
        if project is None:
            logger.info("vercel_project_not_found", project=project_name)
            return None

        response = await self._get(
            "/v6/deployments", self._params(projectId=project["id"], limit=1)
        )
        if response.status_code >= 400:
            raise UpstreamServiceError(
                f"Vercel deployments query failed: {response.text}", service="vercel"
            )
        deployments = response.json().get("deployments") or []
        if not deployments:
            return None

        latest = deployments[0]
        url = normalize_deployment_url(latest.get("url")) or (
            f"https://{project.get('name', project_name)}.vercel.app"
        )
        return HostingDeployment(
            id=latest.get("uid") or latest.get("id", ""),
            ready_state=latest.get("readyState") or latest.get("state") or "",
            url=url,
            created_at=latest.get("created"),
        )
