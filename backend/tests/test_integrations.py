"""Tests for the integrations package.

The REST clients run against httpx.MockTransport handlers, so request
shapes and response mapping are checked without network access.
"""

import base64
import json

import httpx
import pytest

from errors import UpstreamServiceError, ValidationError
from integrations.base import RepoFile
from integrations.browser import dom_summary_from_dict
from integrations.figma import FigmaClient, extract_file_key, extract_node_id
from integrations.github import GitHubClient, sanitize_repo_name
from integrations.vercel import VercelClient, map_ready_state, normalize_deployment_url
from models.session import DeploymentStatus

DESIGN = "https://www.figma.com/design/AbCdEfGhIjKl/Landing?node-id=12-34"


# =========================================================================
# GitHub
# =========================================================================


class TestGitHubClient:
    def test_sanitize_repo_name(self) -> None:
        assert sanitize_repo_name("My Landing Page!") == "my-landing-page"
        assert sanitize_repo_name("***") == "project"

    async def test_create_repository(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "full_name": f"acme/{body['name']}",
                    "html_url": f"https://github.com/acme/{body['name']}",
                },
            )

        client = GitHubClient(token="t", transport=httpx.MockTransport(handler))
        handle = await client.create_or_reuse("Landing Page", None, None)

        assert handle.created is True
        assert handle.full_name.startswith("acme/landing-page-")
        assert seen[0].url.path == "/user/repos"
        assert seen[0].headers["Authorization"] == "Bearer t"
        assert json.loads(seen[0].content)["auto_init"] is True
        await client.aclose()

    async def test_reuse_existing_repository(self) -> None:
        client = GitHubClient(token="t", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        handle = await client.create_or_reuse("x", None, "https://github.com/acme/site")
        assert (handle.full_name, handle.created) == ("acme/site", False)

        with pytest.raises(ValidationError):
            await client.create_or_reuse("x", None, "not a repo")

    async def test_missing_token(self) -> None:
        client = GitHubClient(token="")
        with pytest.raises(UpstreamServiceError, match="GITHUB_TOKEN"):
            await client.create_or_reuse("x", None, None)

    async def test_put_files_updates_existing(self) -> None:
        puts: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                if request.url.path.endswith("index.html"):
                    return httpx.Response(200, json={"sha": "old-sha"})
                return httpx.Response(404, json={})
            puts.append(json.loads(request.content))
            return httpx.Response(200, json={})

        client = GitHubClient(token="t", transport=httpx.MockTransport(handler))
        client.file_write_delay = 0
        count = await client.put_files(
            "acme/site",
            [RepoFile("index.html", "<h1>Hi</h1>"), RepoFile("style.css", "h1 {}")],
        )

        assert count == 2
        assert puts[0]["sha"] == "old-sha"
        assert puts[0]["message"] == "Update index.html"
        assert "sha" not in puts[1]
        assert base64.b64decode(puts[1]["content"]).decode() == "h1 {}"

    async def test_put_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(404)
            return httpx.Response(422, text="invalid")

        client = GitHubClient(token="t", transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamServiceError, match="index.html"):
            await client.put_files("acme/site", [RepoFile("index.html", "x")])

    async def test_latest_commit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if "missing" in request.url.path:
                return httpx.Response(404)
            return httpx.Response(
                200,
                json=[{"sha": "abc", "commit": {"message": "init", "author": {"date": "2024-01-01"}}}],
            )

        client = GitHubClient(token="t", transport=httpx.MockTransport(handler))
        commit = await client.latest_commit("acme/site")
        assert commit is not None
        assert (commit.sha, commit.message, commit.date) == ("abc", "init", "2024-01-01")
        assert await client.latest_commit("acme/missing") is None


# =========================================================================
# Vercel
# =========================================================================


class TestVercel:
    @pytest.mark.parametrize(
        "state, expected",
        [
            ("READY", DeploymentStatus.READY),
            ("ready", DeploymentStatus.READY),
            ("ERROR", DeploymentStatus.ERROR),
            ("CANCELED", DeploymentStatus.ERROR),
            ("BUILDING", DeploymentStatus.BUILDING),
            (None, DeploymentStatus.PENDING),
        ],
    )
    def test_map_ready_state(self, state: str | None, expected: DeploymentStatus) -> None:
        assert map_ready_state(state) == expected

    def test_normalize_deployment_url(self) -> None:
        assert normalize_deployment_url("x.vercel.app") == "https://x.vercel.app"
        assert normalize_deployment_url("http://x.dev") == "http://x.dev"
        assert normalize_deployment_url("") is None

    async def test_latest_deployment(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["teamId"] == "team_1"
            if request.url.path == "/v9/projects/site":
                return httpx.Response(200, json={"id": "prj_1", "name": "site"})
            assert request.url.params["projectId"] == "prj_1"
            return httpx.Response(
                200,
                json={"deployments": [{"uid": "dpl_1", "readyState": "READY", "url": "site-abc.vercel.app"}]},
            )

        client = VercelClient(token="t", team_id="team_1", transport=httpx.MockTransport(handler))
        deployment = await client.latest_deployment("site")

        assert deployment is not None
        assert deployment.id == "dpl_1"
        assert deployment.ready_state == "READY"
        assert deployment.url == "https://site-abc.vercel.app"
        await client.aclose()

    async def test_unknown_project_and_missing_token(self) -> None:
        client = VercelClient(
            token="t", team_id="", transport=httpx.MockTransport(lambda r: httpx.Response(404))
        )
        assert await client.latest_deployment("nope") is None
        assert await VercelClient(token="").latest_deployment("site") is None

    async def test_api_error(self) -> None:
        client = VercelClient(
            token="t", team_id="", transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))
        )
        with pytest.raises(UpstreamServiceError):
            await client.latest_deployment("site")


# =========================================================================
# Figma
# =========================================================================


class TestFigma:
    def test_extract_file_key(self) -> None:
        assert extract_file_key(DESIGN) == "AbCdEfGhIjKl"
        assert extract_file_key("https://www.figma.com/file/short/x") is None
        assert extract_file_key("https://example.com") is None

    def test_extract_node_id(self) -> None:
        assert extract_node_id(DESIGN) == "12:34"
        assert extract_node_id("https://www.figma.com/design/AbCdEfGhIjKl/x") is None

    async def test_reference_image_for_node(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/images/AbCdEfGhIjKl":
                assert request.url.params["ids"] == "12:34"
                return httpx.Response(200, json={"images": {"12:34": "https://cdn.test/img.png"}})
            if request.url.host == "cdn.test":
                return httpx.Response(200, content=b"png-bytes")
            return httpx.Response(404)

        client = FigmaClient(token="t", transport=httpx.MockTransport(handler))
        assert await client.reference_image(DESIGN) == b"png-bytes"
        await client.aclose()

    async def test_list_pages(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "document": {
                        "children": [
                            {"id": "0:1", "name": "Home", "type": "CANVAS"},
                            {"id": "0:2", "name": "Notes", "type": "SECTION"},
                        ]
                    }
                },
            )

        client = FigmaClient(token="t", transport=httpx.MockTransport(handler))
        pages = await client.list_pages(DESIGN)
        assert [(p.id, p.name) for p in pages] == [("0:1", "Home")]

    async def test_best_effort_failures(self) -> None:
        client = FigmaClient(token="t", transport=httpx.MockTransport(lambda r: httpx.Response(403)))
        assert await client.list_pages(DESIGN) == []
        assert await client.page_image(DESIGN, "0:1") is None
        assert await FigmaClient(token="").reference_image(DESIGN) is None


# =========================================================================
# Browser
# =========================================================================


class TestDomSummary:
    def test_from_dict(self) -> None:
        summary = dom_summary_from_dict({
            "title": "Landing",
            "url": "https://x.dev",
            "headings": [{"tag": "h1", "text": "Welcome" * 30}],
            "links": 4,
            "buttons": "2",
            "bodyText": "b" * 2000,
        })
        assert summary.link_count == 4
        assert summary.button_count == 2
        assert summary.form_count == 0
        assert len(summary.headings[0]["text"]) == 100
        assert len(summary.body_text) == 1000
        assert summary.to_dict()["buttons"] == 2
