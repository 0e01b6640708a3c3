"""Clients for the services the pipeline coordinates.

- GitHubClient: artifact repository (create repo, put files, latest commit)
- VercelClient: hosting platform (latest deployment and its state)
- FigmaClient: design source (pages and rendered reference images)
- PlaywrightBrowser: live capture of a deployment
"""

from integrations.base import (
    ArtifactRepository,
    BrowserAutomation,
    CommitInfo,
    DesignPage,
    DesignSource,
    DomSummary,
    HostingDeployment,
    HostingPlatform,
    PageSnapshot,
    RepoFile,
    RepoHandle,
)

__all__ = [
    "ArtifactRepository",
    "BrowserAutomation",
    "CommitInfo",
    "DesignPage",
    "DesignSource",
    "DomSummary",
    "HostingDeployment",
    "HostingPlatform",
    "PageSnapshot",
    "RepoFile",
    "RepoHandle",
]
