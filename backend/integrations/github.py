"""GitHub REST client used to publish the worker's files.

Only the calls the pipeline needs: create (or reuse) a repository, put files
through the contents API, and read the most recent commit.
"""

import asyncio
import base64
import re
import time

import httpx
import structlog

from config import settings
from errors import UpstreamServiceError, ValidationError
from integrations.base import CommitInfo, RepoFile, RepoHandle
from models.session import parse_artifact_ref

logger = structlog.get_logger(__name__)

# Pause between file writes to stay under the secondary rate limit.
FILE_WRITE_DELAY_SECONDS = 0.1


def sanitize_repo_name(project_name: str) -> str:
    """Lowercase and replace anything outside ``[a-z0-9-]`` with dashes."""
    name = re.sub(r"[^a-z0-9-]", "-", project_name.strip().lower()).strip("-")
    return name or "project"


class GitHubClient:
    """Thin async wrapper over the GitHub REST API."""

    def __init__(
        self,
        token: str | None = None,
        api_base: str | None = None,
        branch: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token if token is not None else settings.github_token
        self.api_base = (api_base or settings.github_api_base).rstrip("/")
        self.branch = branch or settings.github_branch
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.file_write_delay = FILE_WRITE_DELAY_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github.v3+json",
                },
                timeout=settings.http_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_token(self) -> None:
        if not self.enabled:
            raise UpstreamServiceError("GITHUB_TOKEN is not configured", service="github")

    async def create_or_reuse(
        self,
        project_name: str,
        description: str | None = None,
        existing: str | None = None,
    ) -> RepoHandle:
        """Return the session's repository, creating a new one if it has none.

        New repositories are named ``<sanitized-project>-<epoch ms>`` and
        initialized with a README so the default branch exists.
        """
        self._require_token()
        if existing:
            full_name = parse_artifact_ref(existing)
            if full_name is None:
                raise ValidationError(f"Not a repository reference: {existing}")
            return RepoHandle(full_name=full_name, html_url=f"https://github.com/{full_name}")

        repo_name = f"{sanitize_repo_name(project_name)}-{int(time.time() * 1000)}"
        try:
            response = await self._get_client().post(
                "/user/repos",
                json={
                    "name": repo_name,
                    "description": description or f"Generated project: {project_name}",
                    "private": False,
                    "auto_init": True,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamServiceError(
                f"GitHub repository creation failed: {e.response.text}", service="github"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"GitHub unreachable: {e}", service="github") from e

        repo = response.json()
        logger.info("github_repo_created", full_name=repo["full_name"])
        return RepoHandle(full_name=repo["full_name"], html_url=repo["html_url"], created=True)

    async def _existing_sha(self, full_name: str, path: str) -> str | None:
        try:
            response = await self._get_client().get(
                f"/repos/{full_name}/contents/{path}", params={"ref": self.branch}
            )
        except httpx.HTTPError:
            return None
        if response.status_code != 200:
            return None
        data = response.json()
        return data.get("sha") if isinstance(data, dict) else None

    async def put_file(self, full_name: str, file: RepoFile) -> None:
        """Create or update one file on the configured branch."""
        path = file.path.lstrip("/")
        sha = await self._existing_sha(full_name, path)
        payload: dict[str, str] = {
            "message": f"Update {path}" if sha else f"Add {path}",
            "content": base64.b64encode(file.content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            payload["sha"] = sha
        try:
            response = await self._get_client().put(
                f"/repos/{full_name}/contents/{path}", json=payload
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamServiceError(
                f"Upload of {path} failed: {e.response.text}", service="github"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"GitHub unreachable: {e}", service="github") from e

    async def put_files(self, full_name: str, files: list[RepoFile]) -> int:
        """Upload files in order. Stops at the first failure."""
        self._require_token()
        for index, file in enumerate(files):
            await self.put_file(full_name, file)
            if index < len(files) - 1 and self.file_write_delay:
                await asyncio.sleep(self.file_write_delay)
        logger.info("github_files_uploaded", full_name=full_name, file_count=len(files))
        return len(files)

    async def latest_commit(self, full_name: str) -> CommitInfo | None:
        try:
            response = await self._get_client().get(
                f"/repos/{full_name}/commits", params={"per_page": 1}
            )
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"GitHub unreachable: {e}", service="github") from e
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamServiceError(
                f"GitHub commits query failed: {response.text}", service="github"
            )
        commits = response.json()
        if not commits:
            return None
        head = commits[0]
        commit = head.get("commit", {})
        return CommitInfo(
            sha=head.get("sha", ""),
            message=commit.get("message", ""),
            date=(commit.get("author") or {}).get("date"),
        )
