"""Session manager: wires the pipeline components together.

The SessionManager owns one instance of every component and is the only
object the API layer talks to:

- SessionRepository: live session state (in memory, mirrored to SQLite)
- WorkerAgent + ToolExecutor: conversational turns and publishing
- DeploymentTracker: webhook / poll ingestion, evaluation triggers
- SupervisorEvaluator + FeedbackLoop: scoring and feedback turns
- BatchGenerator: design-to-project conversion
- TaskScheduler: every background task the above start

Usage:
    >>> from events import get_event_bus
    >>> from session_manager import SessionManager
    >>>
    >>> manager = SessionManager(get_event_bus())
    >>> await manager.start()
    >>> result = await manager.submit_message(None, "Build a landing page")
    >>> await manager.cleanup_all()
"""

import asyncio
from typing import Any

import structlog

from agents.batch_generator import BatchGenerator, BatchResult, ProjectType
from agents.feedback import FeedbackLoop
from agents.interpreter import CodeInterpreter
from agents.supervisor import SupervisorEvaluator
from agents.tools import ToolExecutor
from agents.utils import LLMClient
from agents.worker import TurnResult, WorkerAgent
from config import settings
from deployment.tracker import DeploymentCheck, DeploymentTracker
from errors import ValidationError
from events import EventBus
from events.types import EventType
from integrations.base import (
    ArtifactRepository,
    BrowserAutomation,
    DesignSource,
    HostingPlatform,
)
from integrations.browser import PlaywrightBrowser
from integrations.figma import FigmaClient
from integrations.github import GitHubClient
from integrations.vercel import VercelClient
from models.database import SessionArchive
from models.repository import InMemorySessionRepository, SessionRepository
from models.session import EvaluationResult, Session, parse_artifact_ref
from scheduler import TaskScheduler

logger = structlog.get_logger()


class SessionManager:
    """Central coordinator for pipeline sessions.

    Collaborators default to the real clients configured from settings;
    tests pass fakes.

    Attributes:
        repository: The session store
        event_bus: Event bus for real-time event streaming
        scheduler: Owner of all background tasks
        worker / tracker / supervisor / feedback / batch: pipeline components
    """

    def __init__(
        self,
        event_bus: EventBus,
        repository: SessionRepository | None = None,
        archive: SessionArchive | None = None,
        scheduler: TaskScheduler | None = None,
        llm_client: LLMClient | None = None,
        artifact_repo: ArtifactRepository | None = None,
        hosting: HostingPlatform | None = None,
        design_source: DesignSource | None = None,
        browser: BrowserAutomation | None = None,
        interpreter: CodeInterpreter | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.repository = repository or InMemorySessionRepository()
        self.archive = archive
        self.scheduler = scheduler or TaskScheduler()
        self.llm_client = llm_client or LLMClient(event_bus=event_bus)
        self.artifact_repo = artifact_repo or GitHubClient()
        self.hosting = hosting or VercelClient()
        self.design_source = design_source or FigmaClient()
        self.browser = browser or PlaywrightBrowser()

        self._pending_snapshots: dict[str, Session] = {}
        self._flush_tasks: dict[str, asyncio.Task[Any]] = {}

        self.tracker = DeploymentTracker(
            self.repository,
            event_bus,
            self.scheduler,
            self.artifact_repo,
            self.hosting,
        )
        tool_executor = ToolExecutor(
            event_bus,
            self.repository,
            self.artifact_repo,
            interpreter=interpreter,
            on_published=self.tracker.on_artifact_published,
        )
        self.worker = WorkerAgent(self.repository, event_bus, self.llm_client, tool_executor)
        self.feedback = FeedbackLoop(self.repository, event_bus, self.worker)
        self.supervisor = SupervisorEvaluator(
            self.repository,
            event_bus,
            self.llm_client,
            self.browser,
            design_source=self.design_source,
            feedback_loop=self.feedback,
        )
        # The tracker triggers evaluations, whose feedback reaches the worker,
        # whose publishes reach the tracker.
        self.tracker.evaluate = self.supervisor.evaluate
        self.batch = BatchGenerator(
            event_bus, self.llm_client, self.design_source, self.artifact_repo
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> int:
        """Initialize the archive and restore archived sessions.

        Returns:
            Number of sessions restored.
        """
        if self.archive is None:
            return 0
        await self.archive.init()
        restored = 0
        if isinstance(self.repository, InMemorySessionRepository):
            for session in await self.archive.load_all():
                if self.repository.restore(session):
                    restored += 1
            self.repository.set_change_listener(self._mirror)
        logger.info("session_manager_started", restored_sessions=restored)
        return restored

    def _mirror(self, session: Session) -> None:
        """Queue a snapshot for the archive; one writer per session keeps order."""
        self._pending_snapshots[session.id] = session
        task = self._flush_tasks.get(session.id)
        if task is None or task.done():
            self._flush_tasks[session.id] = self.scheduler.spawn(
                f"archive_{session.id}", self._flush(session.id)
            )

    async def _flush(self, session_id: str) -> None:
        if self.archive is None:
            return
        while session_id in self._pending_snapshots:
            snapshot = self._pending_snapshots.pop(session_id)
            await self.archive.save_snapshot(snapshot)

    async def cleanup_all(self) -> None:
        """Cancel background work, close event streams and HTTP clients.

        This method should be called during application shutdown.
        """
        sessions = self.repository.list_sessions()
        logger.info("cleanup_all_start", session_count=len(sessions))

        # Let in-flight archive writes finish before everything is cancelled.
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks.values(), return_exceptions=True)
        await self.scheduler.shutdown()
        if self.archive is not None:
            for session_id in list(self._pending_snapshots):
                await self.archive.save_snapshot(self._pending_snapshots.pop(session_id))

        for session in sessions:
            try:
                await self.event_bus.close_session(session.id)
            except Exception as e:
                logger.warning(
                    "cleanup_close_event_stream_failed",
                    session_id=session.id,
                    error=str(e),
                )

        for client in (self.artifact_repo, self.hosting, self.design_source):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.info("cleanup_all_complete")

    # -----------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------

    async def create_session(
        self, artifact_url: str | None = None, design_ref: str | None = None
    ) -> Session:
        if artifact_url and parse_artifact_ref(artifact_url) is None:
            raise ValidationError(f"Not a repository URL: {artifact_url}")
        session = self.repository.create(artifact_hint=artifact_url, design_ref=design_ref)
        await self.event_bus.emit(
            EventType.SESSION_CREATED,
            session.id,
            source="session_manager",
            artifact_ref=session.artifact_ref,
            design_ref=session.design_ref,
        )
        return session

    def get_session(self, session_id: str) -> Session:
        return self.repository.get(session_id)

    def list_sessions(self) -> list[Session]:
        return self.repository.list_sessions()

    async def submit_message(
        self,
        session_id: str | None,
        message: str,
        create_new_session: bool = False,
        artifact_url: str | None = None,
        design_ref: str | None = None,
    ) -> TurnResult:
        """Run a worker turn, creating the session first when needed.

        A new session is created when ``create_new_session`` is set or no id
        is given. For an existing session a different ``artifact_url``
        replaces its repository and ``design_ref`` replaces its design.

        Raises:
            ValidationError: If the message is empty.
            NotFoundError: If ``session_id`` names no session.
        """
        if not message or not message.strip():
            raise ValidationError("message is required")

        if create_new_session or not session_id:
            session = await self.create_session(artifact_url, design_ref)
        else:
            session = self.repository.get(session_id)
            if artifact_url and artifact_url != session.artifact_url:
                self.repository.update_artifact(session.id, artifact_url)
            if design_ref and design_ref != session.design_ref:
                self.repository.update_design_ref(session.id, design_ref)

        return await self.worker.run_turn(session.id, message)

    # -----------------------------------------------------------------
    # Deployment, evaluation, generation
    # -----------------------------------------------------------------

    async def check_deployment(
        self, session_id: str | None = None, repo_name: str | None = None
    ) -> DeploymentCheck:
        return await self.tracker.check_deployment(session_id=session_id, repo_name=repo_name)

    async def evaluate_now(
        self, session_id: str, deployment_url: str, design_ref: str | None = None
    ) -> EvaluationResult:
        """Evaluate synchronously, surfacing capture / model failures."""
        if not deployment_url:
            raise ValidationError("deployment_url is required")
        if design_ref:
            self.repository.update_design_ref(session_id, design_ref)
        return await self.supervisor.evaluate(
            session_id, deployment_url, design_ref, raise_on_failure=True
        )

    async def generate_project(
        self, repo_url: str, design_ref: str, project_type: ProjectType = "nextjs"
    ) -> BatchResult:
        return await self.batch.generate(repo_url, design_ref, project_type)

    def stats(self) -> dict[str, Any]:
        sessions = self.repository.list_sessions()
        return {
            "sessions": len(sessions),
            "completed": sum(1 for s in sessions if s.completed),
            "background_tasks": self.scheduler.active_count,
            "archive": settings.database_path if self.archive else None,
        }
