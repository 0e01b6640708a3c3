"""Deployment tracker: follows a published artifact until it is live.

Two ingestion paths converge on ``apply_status``:

- push: hosting webhooks (``ingest_hosting_webhook``) and repository push
  webhooks (``ingest_repository_push``)
- pull: ``check_deployment`` asks the repository for its latest commit and
  the hosting platform for its latest deployment

A ``ready`` status with a URL, for a session that has a design reference,
enqueues one evaluation per signal. Whether a repeated ready signal for an
already evaluated URL evaluates again is controlled by
``reevaluate_on_repeated_ready``.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from config import settings
from errors import NotFoundError, UpstreamServiceError, ValidationError
from events.bus import EventBus
from events.types import EventType
from integrations.base import ArtifactRepository, CommitInfo, HostingPlatform, RepoHandle
from integrations.vercel import map_ready_state, normalize_deployment_url
from models.repository import SessionRepository
from models.session import DeploymentStatus, Session
from scheduler import TaskScheduler

logger = structlog.get_logger()

# (session_id, deployment_url, design_ref) -> evaluation run
EvaluateFn = Callable[[str, str, str | None], Awaitable[Any]]

_TERMINAL_STATUSES = (DeploymentStatus.READY, DeploymentStatus.ERROR)


@dataclass
class DeploymentCheck:
    """Outcome of a pull check. ``status`` is None when the platform knows nothing."""

    session_id: str
    repo_name: str
    commit: CommitInfo | None
    status: DeploymentStatus | None
    url: str | None
    evaluation_scheduled: bool = False


@dataclass
class WebhookOutcome:
    message: str
    session_id: str | None = None
    status: DeploymentStatus | None = None
    evaluation_scheduled: bool = False


def _check_key(session_id: str) -> str:
    return f"deployment_check_{session_id}"


class DeploymentTracker:
    """Advances session deployment state and triggers evaluations.

    Attributes:
        evaluate: Callable that runs one evaluation; assigned after the
            supervisor is built, since the supervisor indirectly depends on
            this tracker.
    """

    def __init__(
        self,
        repository: SessionRepository,
        event_bus: EventBus,
        scheduler: TaskScheduler,
        artifact_repo: ArtifactRepository,
        hosting: HostingPlatform,
        evaluate: EvaluateFn | None = None,
        check_delay_seconds: float | None = None,
        reevaluate_on_repeated_ready: bool | None = None,
    ) -> None:
        self.repository = repository
        self.event_bus = event_bus
        self.scheduler = scheduler
        self.artifact_repo = artifact_repo
        self.hosting = hosting
        self.evaluate = evaluate
        self.check_delay_seconds = (
            settings.deployment_check_delay_seconds
            if check_delay_seconds is None
            else check_delay_seconds
        )
        self.reevaluate_on_repeated_ready = (
            settings.reevaluate_on_repeated_ready
            if reevaluate_on_repeated_ready is None
            else reevaluate_on_repeated_ready
        )

    # -----------------------------------------------------------------
    # Convergence point
    # -----------------------------------------------------------------

    async def apply_status(
        self,
        session_id: str,
        status: DeploymentStatus,
        url: str | None = None,
        source: str = "poll",
    ) -> bool:
        """Record a deployment signal and enqueue an evaluation if it is due.

        Returns:
            True if an evaluation was enqueued for this signal.
        """
        session = self.repository.update_deployment_status(session_id, status, url)
        await self.event_bus.emit(
            EventType.DEPLOYMENT_STATUS_CHANGED,
            session_id,
            source="tracker",
            status=status.value,
            url=session.deployment.url,
            signal=source,
        )

        # A pushed terminal state makes any pending poll for the session stale.
        if source == "webhook" and status in _TERMINAL_STATUSES:
            if self.scheduler.cancel(_check_key(session_id)):
                logger.info("deployment_check_superseded", session_id=session_id)

        if status != DeploymentStatus.READY:
            return False
        return self._enqueue_evaluation(session, session.deployment.url)

    def _enqueue_evaluation(self, session: Session, url: str | None) -> bool:
        if not url:
            logger.info("evaluation_not_triggered", session_id=session.id, reason="no_url")
            return False
        if not session.design_ref:
            logger.info("evaluation_not_triggered", session_id=session.id, reason="no_design_ref")
            return False
        if not self.reevaluate_on_repeated_ready and url in session.evaluated_urls:
            logger.info("evaluation_deduplicated", session_id=session.id, url=url)
            return False
        if self.evaluate is None:
            logger.warning("evaluation_not_triggered", session_id=session.id, reason="no_evaluator")
            return False

        self.scheduler.spawn(
            f"evaluate_{session.id}",
            self.evaluate(session.id, url, session.design_ref),
        )
        logger.info("evaluation_enqueued", session_id=session.id, url=url)
        return True

    # -----------------------------------------------------------------
    # Push
    # -----------------------------------------------------------------

    async def ingest_hosting_webhook(self, payload: dict[str, Any]) -> WebhookOutcome:
        """Handle a hosting platform deployment event.

        Raises:
            ValidationError: If the payload lacks deployment or project data.
        """
        # Newer webhook deliveries wrap the event body in "payload".
        body = payload.get("payload") if isinstance(payload.get("payload"), dict) else payload
        deployment = body.get("deployment")
        project = body.get("project")
        if not isinstance(deployment, dict) or not isinstance(project, dict):
            raise ValidationError("Deployment or project information not found")

        project_name = str(project.get("name") or "")
        repo_name = str((project.get("link") or {}).get("repo") or project_name)
        session = self._find_session(repo_name, project_name)
        if session is None:
            logger.info("hosting_webhook_unmatched", repo=repo_name, project=project_name)
            return WebhookOutcome(message="No session found for this deployment")

        status = map_ready_state(deployment.get("readyState") or deployment.get("state"))
        url = normalize_deployment_url(deployment.get("url"))
        scheduled = await self.apply_status(session.id, status, url, source="webhook")
        return WebhookOutcome(
            message="Webhook received, evaluation triggered"
            if scheduled
            else "Webhook received",
            session_id=session.id,
            status=status,
            evaluation_scheduled=scheduled,
        )

    async def ingest_repository_push(self, full_name: str) -> WebhookOutcome:
        """Handle a push to a tracked repository: mark building, check later."""
        if not full_name:
            raise ValidationError("Repository information not found")
        try:
            session = self.repository.find_by_artifact_ref(full_name)
        except NotFoundError:
            logger.info("repository_push_unmatched", repo=full_name)
            return WebhookOutcome(message="No session found for this repository")

        await self.apply_status(session.id, DeploymentStatus.BUILDING, source="webhook")
        self.schedule_check(session.id)
        return WebhookOutcome(
            message="Webhook received, deployment check triggered",
            session_id=session.id,
            status=DeploymentStatus.BUILDING,
        )

    def _find_session(self, *refs: str) -> Session | None:
        for ref in refs:
            if not ref:
                continue
            try:
                return self.repository.find_by_artifact_ref(ref)
            except NotFoundError:
                continue
        return None

    # -----------------------------------------------------------------
    # Pull
    # -----------------------------------------------------------------

    async def check_deployment(
        self, session_id: str | None = None, repo_name: str | None = None
    ) -> DeploymentCheck:
        """Query the repository and hosting platform for a session's state.

        Raises:
            ValidationError: If neither argument is given.
            NotFoundError: If no session matches or it has no repository yet.
        """
        if not session_id and not repo_name:
            raise ValidationError("session_id or repo_name is required")

        session: Session | None = None
        if session_id:
            try:
                session = self.repository.get(session_id)
            except NotFoundError:
                if not repo_name:
                    raise
        if session is None and repo_name:
            session = self.repository.find_by_artifact_ref(repo_name)
        if session is None or not session.artifact_ref:
            raise NotFoundError("Session not found or it has no repository")

        ref = session.artifact_ref
        commit: CommitInfo | None = None
        try:
            commit = await self.artifact_repo.latest_commit(ref)
        except UpstreamServiceError as e:
            logger.warning("latest_commit_unavailable", session_id=session.id, error=e.message)

        status: DeploymentStatus | None = None
        url: str | None = None
        try:
            deployment = await self.hosting.latest_deployment(ref.split("/", 1)[1])
        except UpstreamServiceError as e:
            logger.warning("latest_deployment_unavailable", session_id=session.id, error=e.message)
            deployment = None
        if deployment is not None:
            status = map_ready_state(deployment.ready_state)
            url = deployment.url

        scheduled = False
        if status is not None:
            scheduled = await self.apply_status(session.id, status, url, source="poll")

        logger.info(
            "deployment_checked",
            session_id=session.id,
            repo=ref,
            commit=commit.sha if commit else None,
            status=status.value if status else "unknown",
            url=url,
        )
        return DeploymentCheck(
            session_id=session.id,
            repo_name=ref,
            commit=commit,
            status=status,
            url=url,
            evaluation_scheduled=scheduled,
        )

    def schedule_check(self, session_id: str, delay: float | None = None) -> None:
        """Check the deployment once after ``delay``, replacing any pending check."""
        delay = self.check_delay_seconds if delay is None else delay
        self.scheduler.schedule(
            _check_key(session_id),
            delay,
            lambda: self.check_deployment(session_id=session_id),
        )
        self.scheduler.spawn(
            f"notify_check_{session_id}",
            self.event_bus.emit(
                EventType.DEPLOYMENT_CHECK_SCHEDULED,
                session_id,
                source="tracker",
                delay_seconds=delay,
            ),
        )

    def on_artifact_published(self, session_id: str, handle: RepoHandle) -> None:
        """Hook for the publish tool: a fresh publish gets a delayed check."""
        logger.info("deployment_check_after_publish", session_id=session_id, repo=handle.full_name)
        self.schedule_check(session_id)
