"""Figma REST client: design pages and rendered reference images.

Everything here is best-effort for the supervisor. A missing token, an
unknown file or a failed render yields None / an empty list instead of an
error, and evaluation proceeds without the design image.
"""

import re
from urllib.parse import parse_qs, unquote, urlparse

import httpx
import structlog

from config import settings
from integrations.base import DesignPage

logger = structlog.get_logger(__name__)

_FILE_KEY_RE = re.compile(r"figma\.com/(?:file|design|proto)/([a-zA-Z0-9]+)", re.IGNORECASE)
_MIN_FILE_KEY_LENGTH = 10


def extract_file_key(design_ref: str) -> str | None:
    """Return the Figma file key from a design URL, or None.

    >>> extract_file_key("https://www.figma.com/design/AbCdEfGhIjKl/Landing?node-id=1-2")
    'AbCdEfGhIjKl'
    """
    match = _FILE_KEY_RE.search(design_ref or "")
    if not match:
        return None
    key = match.group(1)
    return key if len(key) >= _MIN_FILE_KEY_LENGTH else None


def extract_node_id(design_ref: str) -> str | None:
    """Return the ``node-id`` query parameter in API form (``1:2``), or None."""
    query = parse_qs(urlparse(design_ref or "").query)
    values = query.get("node-id")
    if not values:
        return None
    return unquote(values[0]).replace("-", ":")


class FigmaClient:
    """Thin async wrapper over the Figma REST API."""

    def __init__(
        self,
        token: str | None = None,
        api_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token if token is not None else settings.figma_api_token
        self.api_base = (api_base or settings.figma_api_base).rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"X-Figma-Token": self.token},
                timeout=settings.http_timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def list_pages(self, design_ref: str) -> list[DesignPage]:
        """List the top-level pages (canvases) of a design file."""
        file_key = extract_file_key(design_ref)
        if not self.enabled or file_key is None:
            logger.warning("figma_pages_unavailable", design_ref=design_ref, enabled=self.enabled)
            return []
        try:
            response = await self._get_client().get(
                f"{self.api_base}/v1/files/{file_key}", params={"depth": 1}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("figma_file_fetch_failed", file_key=file_key, error=str(e))
            return []
        document = response.json().get("document") or {}
        return [
            DesignPage(id=child["id"], name=child.get("name", child["id"]))
            for child in document.get("children", [])
            if child.get("type") == "CANVAS"
        ]

    async def page_image(self, design_ref: str, page_id: str) -> bytes | None:
        """Render a node of the design file to PNG bytes."""
        file_key = extract_file_key(design_ref)
        if not self.enabled or file_key is None:
            return None
        client = self._get_client()
        try:
            response = await client.get(
                f"{self.api_base}/v1/images/{file_key}",
                params={"ids": page_id, "format": "png", "scale": 1},
            )
            response.raise_for_status()
            image_url = (response.json().get("images") or {}).get(page_id)
            if not image_url:
                logger.warning("figma_render_empty", file_key=file_key, node_id=page_id)
                return None
            image = await client.get(image_url)
            image.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("figma_render_failed", file_key=file_key, node_id=page_id, error=str(e))
            return None
        return image.content

    async def reference_image(self, design_ref: str) -> bytes | None:
        """Render the node named in the URL, or else the first page."""
        node_id = extract_node_id(design_ref)
        if node_id is None:
            pages = await self.list_pages(design_ref)
            if not pages:
                return None
            node_id = pages[0].id
        return await self.page_image(design_ref, node_id)
