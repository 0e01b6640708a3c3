"""Tests for api/webhooks.py -- GitHub push and Vercel deployment receivers.

Signature secrets are toggled on the shared settings object with
monkeypatch; evaluations are replaced by an AsyncMock on the tracker so the
webhook response can be checked without running the supervisor.
"""

import hashlib
import hmac
import json
from collections.abc import Generator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from api.webhooks import reset_webhook_activity, verify_signature
from config import settings
from events.bus import EventBus
from session_manager import SessionManager
from tests.conftest import (
    FakeArtifactRepository,
    FakeBrowser,
    FakeDesignSource,
    FakeHosting,
    build_test_app,
    make_mock_llm,
)

DESIGN = "https://www.figma.com/design/AbCdEfGhIjKl/Landing"


@pytest.fixture()
def manager(event_bus: EventBus) -> SessionManager:
    mgr = SessionManager(
        event_bus,
        llm_client=make_mock_llm(),
        artifact_repo=FakeArtifactRepository(),
        hosting=FakeHosting(),
        design_source=FakeDesignSource(),
        browser=FakeBrowser(),
    )
    mgr.tracker.evaluate = AsyncMock(return_value=None)
    return mgr


@pytest.fixture()
def client(manager: SessionManager) -> Generator[TestClient, None, None]:
    reset_webhook_activity()
    with TestClient(build_test_app(manager)) as c:
        yield c


@pytest.fixture()
def session_id(client: TestClient) -> str:
    resp = client.post(
        "/api/sessions",
        json={"artifact_url": "https://github.com/acme/landing-page", "design_ref": DESIGN},
    )
    return resp.json()["session_id"]


def _push(full_name: str = "acme/landing-page") -> bytes:
    return json.dumps({"ref": "refs/heads/main", "repository": {"full_name": full_name}}).encode()


def _deployment(ready_state: str = "READY", project: str = "landing-page") -> bytes:
    return json.dumps({
        "type": "deployment.succeeded",
        "payload": {
            "deployment": {"readyState": ready_state, "url": "landing-page-abc.vercel.app"},
            "project": {"name": project},
        },
    }).encode()


# =========================================================================
# Signatures
# =========================================================================


class TestVerifySignature:
    def test_github_style_prefix(self) -> None:
        body = b'{"a": 1}'
        digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert verify_signature(body, f"sha256={digest}", "s3cret", "sha256") is True
        assert verify_signature(body, f"sha256={digest}", "other", "sha256") is False

    def test_bare_hex(self) -> None:
        body = b"{}"
        digest = hmac.new(b"s3cret", body, hashlib.sha1).hexdigest()
        assert verify_signature(body, digest, "s3cret", "sha1") is True

    def test_missing_signature(self) -> None:
        assert verify_signature(b"{}", "", "s3cret", "sha1") is False


# =========================================================================
# GitHub
# =========================================================================


class TestGithubWebhook:
    def test_push_marks_building(
        self, client: TestClient, manager: SessionManager, session_id: str
    ) -> None:
        resp = client.post(
            "/api/webhooks/github", content=_push(), headers={"x-github-event": "push"}
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["session_id"] == session_id
        assert data["status"] == "building"
        assert data["message"] == "Webhook received, deployment check triggered"
        assert manager.scheduler.pending(f"deployment_check_{session_id}")

    def test_other_events_ignored(self, client: TestClient) -> None:
        resp = client.post(
            "/api/webhooks/github", content=_push(), headers={"x-github-event": "issues"}
        )
        assert resp.json() == {
            "success": True,
            "message": "Event ignored",
            "session_id": None,
            "status": None,
            "evaluation_scheduled": False,
        }

    def test_missing_repository_is_400(self, client: TestClient) -> None:
        resp = client.post(
            "/api/webhooks/github", content=b"{}", headers={"x-github-event": "push"}
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Repository information not found"}

    def test_unknown_repository(self, client: TestClient) -> None:
        resp = client.post(
            "/api/webhooks/github",
            content=_push("someone/else"),
            headers={"x-github-event": "push"},
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "No session found for this repository"

    def test_signature_required_when_configured(
        self, client: TestClient, session_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "github_webhook_secret", "s3cret")
        body = _push()

        bad = client.post(
            "/api/webhooks/github",
            content=body,
            headers={"x-github-event": "push", "x-hub-signature-256": "sha256=deadbeef"},
        )
        assert bad.status_code == 401
        assert bad.json() == {"error": "Invalid signature"}

        digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        good = client.post(
            "/api/webhooks/github",
            content=body,
            headers={"x-github-event": "push", "x-hub-signature-256": f"sha256={digest}"},
        )
        assert good.status_code == 200
        assert good.json()["session_id"] == session_id

    def test_activity(self, client: TestClient, session_id: str) -> None:
        client.post("/api/webhooks/github", content=_push(), headers={"x-github-event": "push"})

        data = client.get("/api/webhooks/github").json()
        assert data["message"] == "Github webhook endpoint is active"
        assert data["events"] == ["push"]
        assert data["received"] == 1
        assert data["signature_required"] is False


# =========================================================================
# Vercel
# =========================================================================


class TestVercelWebhook:
    def test_ready_triggers_evaluation(
        self, client: TestClient, manager: SessionManager, session_id: str
    ) -> None:
        resp = client.post("/api/webhooks/vercel", content=_deployment())

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ready"
        assert data["evaluation_scheduled"] is True
        assert data["message"] == "Webhook received, evaluation triggered"
        stored = manager.get_session(session_id)
        assert stored.deployment.url == "https://landing-page-abc.vercel.app"

    def test_error_state_recorded(
        self, client: TestClient, manager: SessionManager, session_id: str
    ) -> None:
        resp = client.post("/api/webhooks/vercel", content=_deployment("ERROR"))
        assert resp.json()["status"] == "error"
        assert resp.json()["evaluation_scheduled"] is False

    def test_unmatched_project(self, client: TestClient) -> None:
        resp = client.post("/api/webhooks/vercel", content=_deployment(project="unrelated"))
        assert resp.status_code == 200
        assert resp.json()["message"] == "No session found for this deployment"

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"type": "deployment"}'])
    def test_bad_bodies_are_400(self, client: TestClient, body: bytes) -> None:
        resp = client.post("/api/webhooks/vercel", content=body)
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_signature_required_when_configured(
        self, client: TestClient, session_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "vercel_webhook_secret", "s3cret")
        body = _deployment("BUILDING")

        assert client.post("/api/webhooks/vercel", content=body).status_code == 401

        digest = hmac.new(b"s3cret", body, hashlib.sha1).hexdigest()
        resp = client.post(
            "/api/webhooks/vercel", content=body, headers={"x-vercel-signature": digest}
        )
        assert resp.status_code == 200
        assert client.get("/api/webhooks/vercel").json()["signature_required"] is True
