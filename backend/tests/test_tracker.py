"""Tests for deployment/tracker.py -- push/pull deployment tracking.

Covers the evaluation trigger rules on ``apply_status``, hosting and
repository webhooks, pull checks against the fakes, delayed checks after a
publish and the supersession of stale polls by webhook signals.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from deployment.tracker import DeploymentTracker
from errors import NotFoundError, UpstreamServiceError, ValidationError
from events.bus import EventBus
from events.types import EventType
from integrations.base import CommitInfo, HostingDeployment, RepoHandle
from models.repository import InMemorySessionRepository
from models.session import DeploymentStatus, EvaluationResult
from scheduler import TaskScheduler
from tests.conftest import FakeArtifactRepository, FakeHosting, collect_events

DESIGN = "https://www.figma.com/file/KEY123/Landing"
URL = "https://landing-page-abc.vercel.app"


@pytest.fixture()
async def scheduler() -> TaskScheduler:
    sched = TaskScheduler()
    yield sched
    await sched.shutdown()


@pytest.fixture()
def evaluate() -> AsyncMock:
    return AsyncMock(return_value=None)


def _make_tracker(
    repository: InMemorySessionRepository,
    event_bus: EventBus,
    scheduler: TaskScheduler,
    evaluate: AsyncMock | None,
    artifact_repo: FakeArtifactRepository | None = None,
    hosting: FakeHosting | None = None,
    reevaluate: bool = True,
    delay: float = 60.0,
) -> DeploymentTracker:
    return DeploymentTracker(
        repository,
        event_bus,
        scheduler,
        artifact_repo or FakeArtifactRepository(),
        hosting or FakeHosting(),
        evaluate=evaluate,
        check_delay_seconds=delay,
        reevaluate_on_repeated_ready=reevaluate,
    )


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# =========================================================================
# apply_status
# =========================================================================


class TestApplyStatus:
    async def test_ready_with_url_and_design_triggers_evaluation(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page", design_ref=DESIGN)
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate)

        assert await tracker.apply_status(session.id, DeploymentStatus.READY, URL) is True
        await _drain()

        evaluate.assert_awaited_once_with(session.id, URL, DESIGN)
        stored = repository.get(session.id)
        assert stored.deployment.status == DeploymentStatus.READY
        assert stored.deployment.url == URL

    @pytest.mark.parametrize(
        "status", [DeploymentStatus.PENDING, DeploymentStatus.BUILDING, DeploymentStatus.ERROR]
    )
    async def test_non_ready_never_triggers(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
        status: DeploymentStatus,
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate)

        assert await tracker.apply_status(session.id, status, URL) is False
        await _drain()
        evaluate.assert_not_awaited()

    async def test_no_design_ref_no_evaluation(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create()
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate)
        assert await tracker.apply_status(session.id, DeploymentStatus.READY, URL) is False

    async def test_no_url_no_evaluation(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate)
        assert await tracker.apply_status(session.id, DeploymentStatus.READY) is False

    async def test_repeated_ready_reevaluates_by_default(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        repository.update_evaluation(session.id, EvaluationResult(score=50, deployment_url=URL))
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate)

        assert await tracker.apply_status(session.id, DeploymentStatus.READY, URL) is True
        assert await tracker.apply_status(session.id, DeploymentStatus.READY, URL) is True
        await _drain()
        assert evaluate.await_count == 2

    async def test_repeated_ready_deduplicated_when_disabled(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        repository.update_evaluation(session.id, EvaluationResult(score=50, deployment_url=URL))
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate, reevaluate=False)

        assert await tracker.apply_status(session.id, DeploymentStatus.READY, URL) is False
        other = "https://landing-page-def.vercel.app"
        assert await tracker.apply_status(session.id, DeploymentStatus.READY, other) is True

    async def test_emits_status_event(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create()
        tracker = _make_tracker(repository, event_bus, scheduler, None)

        await tracker.apply_status(session.id, DeploymentStatus.BUILDING, source="webhook")

        events = await collect_events(event_bus, session.id)
        changed = [e for e in events if e.type == EventType.DEPLOYMENT_STATUS_CHANGED]
        assert changed[0].data["status"] == "building"
        assert changed[0].data["signal"] == "webhook"


# =========================================================================
# Webhooks
# =========================================================================


def _vercel_payload(
    ready_state: str = "READY",
    url: str = "landing-page-abc.vercel.app",
    project: str = "landing-page",
    repo: str | None = None,
) -> dict[str, object]:
    project_body: dict[str, object] = {"name": project}
    if repo:
        project_body["link"] = {"repo": repo}
    return {"deployment": {"readyState": ready_state, "url": url}, "project": project_body}


class TestHostingWebhook:
    async def test_ready_webhook_triggers_evaluation(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page", design_ref=DESIGN)
        tracker = _make_tracker(repository, event_bus, scheduler, evaluate)

        outcome = await tracker.ingest_hosting_webhook(_vercel_payload())
        await _drain()

        assert outcome.session_id == session.id
        assert outcome.status == DeploymentStatus.READY
        assert outcome.evaluation_scheduled is True
        assert outcome.message == "Webhook received, evaluation triggered"
        evaluate.assert_awaited_once_with(session.id, URL, DESIGN)

    async def test_wrapped_payload_and_linked_repo(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create(artifact_hint="acme/site")
        tracker = _make_tracker(repository, event_bus, scheduler, None)

        outcome = await tracker.ingest_hosting_webhook(
            {"payload": _vercel_payload("BUILDING", project="renamed", repo="acme/site")}
        )

        assert outcome.session_id == session.id
        assert repository.get(session.id).deployment.status == DeploymentStatus.BUILDING

    @pytest.mark.parametrize(
        "state, expected",
        [
            ("ERROR", DeploymentStatus.ERROR),
            ("CANCELED", DeploymentStatus.ERROR),
            ("QUEUED", DeploymentStatus.BUILDING),
            ("INITIALIZING", DeploymentStatus.BUILDING),
            ("SOMETHING_NEW", DeploymentStatus.PENDING),
        ],
    )
    async def test_state_mapping(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        state: str,
        expected: DeploymentStatus,
    ) -> None:
        repository.create(artifact_hint="acme/landing-page")
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        outcome = await tracker.ingest_hosting_webhook(_vercel_payload(state))
        assert outcome.status == expected

    async def test_unmatched_project(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        outcome = await tracker.ingest_hosting_webhook(_vercel_payload(project="unknown"))
        assert outcome.session_id is None
        assert outcome.message == "No session found for this deployment"

    async def test_missing_deployment_rejected(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        with pytest.raises(ValidationError):
            await tracker.ingest_hosting_webhook({"project": {"name": "x"}})

    async def test_terminal_webhook_supersedes_pending_check(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page")
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        tracker.schedule_check(session.id)
        assert scheduler.pending(f"deployment_check_{session.id}")

        await tracker.ingest_hosting_webhook(_vercel_payload("ERROR"))

        assert not scheduler.pending(f"deployment_check_{session.id}")


class TestRepositoryPush:
    async def test_push_marks_building_and_schedules_check(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page")
        tracker = _make_tracker(repository, event_bus, scheduler, None)

        outcome = await tracker.ingest_repository_push("acme/landing-page")

        assert outcome.session_id == session.id
        assert outcome.message == "Webhook received, deployment check triggered"
        assert repository.get(session.id).deployment.status == DeploymentStatus.BUILDING
        assert scheduler.pending(f"deployment_check_{session.id}")

    async def test_push_for_unknown_repository(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        outcome = await tracker.ingest_repository_push("acme/unknown")
        assert outcome.session_id is None
        assert outcome.message == "No session found for this repository"

    async def test_push_without_repository_rejected(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        with pytest.raises(ValidationError):
            await tracker.ingest_repository_push("")


# =========================================================================
# Pull checks
# =========================================================================


class TestCheckDeployment:
    async def test_ready_deployment(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page", design_ref=DESIGN)
        artifact_repo = FakeArtifactRepository()
        artifact_repo.commits["acme/landing-page"] = CommitInfo(sha="abc123", message="init")
        hosting = FakeHosting(
            deployments={"landing-page": HostingDeployment(id="dpl_1", ready_state="READY", url=URL)}
        )
        tracker = _make_tracker(
            repository, event_bus, scheduler, evaluate, artifact_repo, hosting
        )

        check = await tracker.check_deployment(session_id=session.id)
        await _drain()

        assert check.repo_name == "acme/landing-page"
        assert check.commit is not None and check.commit.sha == "abc123"
        assert check.status == DeploymentStatus.READY
        assert check.url == URL
        assert check.evaluation_scheduled is True
        assert hosting.calls == ["landing-page"]
        evaluate.assert_awaited_once()

    async def test_lookup_by_repo_name(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page")
        tracker = _make_tracker(repository, event_bus, scheduler, None)

        check = await tracker.check_deployment(repo_name="https://github.com/acme/landing-page")

        assert check.session_id == session.id
        assert check.status is None
        assert repository.get(session.id).deployment.status == DeploymentStatus.PENDING

    async def test_hosting_failure_reports_unknown(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page")
        hosting = FakeHosting()
        hosting.latest_deployment = AsyncMock(  # type: ignore[method-assign]
            side_effect=UpstreamServiceError("Vercel API error 500", service="vercel")
        )
        tracker = _make_tracker(repository, event_bus, scheduler, None, hosting=hosting)

        check = await tracker.check_deployment(session_id=session.id)
        assert check.status is None

    async def test_requires_an_identifier(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        with pytest.raises(ValidationError):
            await tracker.check_deployment()

    async def test_session_without_repository(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create()
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        with pytest.raises(NotFoundError):
            await tracker.check_deployment(session_id=session.id)

    async def test_unknown_session(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        tracker = _make_tracker(repository, event_bus, scheduler, None)
        with pytest.raises(NotFoundError):
            await tracker.check_deployment(session_id="sess_missing")


class TestScheduledChecks:
    async def test_publish_schedules_check_that_triggers_evaluation(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        evaluate: AsyncMock,
    ) -> None:
        session = repository.create(design_ref=DESIGN)
        repository.update_artifact(session.id, "acme/landing-page")
        hosting = FakeHosting(
            deployments={"landing-page": HostingDeployment(id="dpl_1", ready_state="READY", url=URL)}
        )
        tracker = _make_tracker(
            repository, event_bus, scheduler, evaluate, hosting=hosting, delay=0.01
        )

        tracker.on_artifact_published(
            session.id,
            RepoHandle(full_name="acme/landing-page", html_url="https://github.com/acme/landing-page"),
        )
        await asyncio.sleep(0.1)
        await _drain()

        evaluate.assert_awaited_once_with(session.id, URL, DESIGN)
        events = await collect_events(event_bus, session.id)
        assert EventType.DEPLOYMENT_CHECK_SCHEDULED in [e.type for e in events]

    async def test_rescheduling_replaces_pending_check(
        self,
        repository: InMemorySessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
    ) -> None:
        session = repository.create(artifact_hint="acme/landing-page")
        hosting = FakeHosting()
        tracker = _make_tracker(repository, event_bus, scheduler, None, hosting=hosting, delay=0.01)

        tracker.schedule_check(session.id)
        tracker.schedule_check(session.id)
        await asyncio.sleep(0.1)

        assert hosting.calls == ["landing-page"]
