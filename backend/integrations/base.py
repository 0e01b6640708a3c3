"""Collaborator interfaces used by the pipeline core.

The core only depends on these protocols. Concrete clients live beside this
module (GitHub, Vercel, Figma, Playwright) and tests substitute fakes.
"""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass
class RepoFile:
    path: str
    content: str


@dataclass
class RepoHandle:
    """A repository the worker publishes to."""

    full_name: str  # owner/repo
    html_url: str
    created: bool = False


@dataclass
class CommitInfo:
    sha: str
    message: str
    date: str | None = None


@dataclass
class HostingDeployment:
    """Latest deployment known to the hosting platform."""

    id: str
    ready_state: str
    url: str | None = None
    created_at: float | None = None


@dataclass
class DomSummary:
    """Structural summary of a rendered page."""

    title: str = ""
    url: str = ""
    headings: list[dict[str, str]] = field(default_factory=list)
    link_count: int = 0
    button_count: int = 0
    form_count: int = 0
    image_count: int = 0
    body_text: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "url": self.url,
            "headings": self.headings,
            "links": self.link_count,
            "buttons": self.button_count,
            "forms": self.form_count,
            "images": self.image_count,
            "bodyText": self.body_text,
        }


@dataclass
class PageSnapshot:
    """Screenshot plus DOM summary of a live deployment."""

    screenshot_png: bytes
    dom: DomSummary


@dataclass
class DesignPage:
    id: str
    name: str


@runtime_checkable
class ArtifactRepository(Protocol):
    async def create_or_reuse(
        self, project_name: str, description: str | None, existing: str | None
    ) -> RepoHandle: ...

    async def put_files(self, full_name: str, files: list[RepoFile]) -> int: ...

    async def latest_commit(self, full_name: str) -> CommitInfo | None: ...


@runtime_checkable
class HostingPlatform(Protocol):
    async def latest_deployment(self, project_name: str) -> HostingDeployment | None: ...


@runtime_checkable
class DesignSource(Protocol):
    async def reference_image(self, design_ref: str) -> bytes | None: ...

    async def list_pages(self, design_ref: str) -> list[DesignPage]: ...

    async def page_image(self, design_ref: str, page_id: str) -> bytes | None: ...


@runtime_checkable
class BrowserAutomation(Protocol):
    async def capture(self, url: str) -> PageSnapshot: ...
