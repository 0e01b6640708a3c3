"""Session Store: the single source of truth for live session state.

Components never hold on to a ``Session`` object between steps. They read a
snapshot with ``get`` and write through the narrow update operations below,
each of which is atomic per session. Multi-step writers (a whole worker
turn) additionally hold the per-session ``lock``.
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import structlog

from errors import NotFoundError
from models.session import (
    DeploymentStatus,
    EvaluationResult,
    Message,
    Session,
    parse_artifact_ref,
)

logger = structlog.get_logger(__name__)


class SessionRepository(ABC):
    """Interface for session persistence."""

    @abstractmethod
    def create(self, artifact_hint: str | None = None, design_ref: str | None = None) -> Session:
        """Create and store a new session."""

    @abstractmethod
    def get(self, session_id: str) -> Session:
        """Return a snapshot of a session. Raises NotFoundError."""

    @abstractmethod
    def list_sessions(self) -> list[Session]:
        """Return snapshots of every session, newest first."""

    @abstractmethod
    def append_message(self, session_id: str, message: Message) -> None:
        """Append to the history. Existing entries are never modified."""

    @abstractmethod
    def update_deployment_status(
        self, session_id: str, status: DeploymentStatus, url: str | None = None
    ) -> Session:
        """Record a deployment transition."""

    @abstractmethod
    def update_evaluation(self, session_id: str, result: EvaluationResult) -> Session:
        """Replace the latest evaluation (and with it the completion flag)."""

    @abstractmethod
    def update_artifact(self, session_id: str, url_or_handle: str) -> Session:
        """Record the repository the session publishes to."""

    @abstractmethod
    def update_design_ref(self, session_id: str, design_ref: str) -> Session:
        """Record the design reference the session is measured against."""

    @abstractmethod
    def record_feedback_cycle(self, session_id: str) -> int:
        """Increment and return the number of automatic feedback turns."""

    @abstractmethod
    def find_by_artifact_ref(self, ref: str) -> Session:
        """Find the session that owns a repository / hosting project."""

    @abstractmethod
    def lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock serializing multi-step writers."""


class InMemorySessionRepository(SessionRepository):
    """Mutex-guarded in-process session map.

    Every operation takes the map lock, so updates to one session are never
    interleaved. ``get`` and ``list_sessions`` return deep copies; mutating them has no
    effect on stored state.
    """

    def __init__(self, on_change: Callable[[Session], None] | None = None) -> None:
        """Initialize the repository.

        Args:
            on_change: Optional callback invoked with a snapshot after every
                successful write (used to mirror sessions into the archive).
        """
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._mutex = threading.RLock()
        self._on_change = on_change

    def set_change_listener(self, on_change: Callable[[Session], None] | None) -> None:
        self._on_change = on_change

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        with self._mutex:
            return self._require(session_id).model_copy(deep=True)

    def list_sessions(self) -> list[Session]:
        with self._mutex:
            sessions = [s.model_copy(deep=True) for s in self._sessions.values()]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def find_by_artifact_ref(self, ref: str) -> Session:
        """Resolve a repository handle or hosting project name to a session.

        Lookup order:
            1. Exact match of the ``owner/repo`` handle (case-insensitive).
            2. Fallback on the last path segment of ``ref``: the stored
               handle ends with it, or the deployment URL contains it. A
               project ``site`` therefore also matches ``acme/my-site``.

        When several sessions match, the most recently updated wins.

        Raises:
            NotFoundError: If no session matches.
        """
        if not ref or not ref.strip():
            raise NotFoundError("No session found for empty repository reference")
        handle = parse_artifact_ref(ref) or ref.strip()
        wanted = handle.casefold()
        segment = handle.rstrip("/").rsplit("/", 1)[-1].casefold()

        with self._mutex:
            candidates = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
            for session in candidates:
                if session.artifact_ref and session.artifact_ref.casefold() == wanted:
                    return session.model_copy(deep=True)
            for session in candidates:
                stored = (session.artifact_ref or "").casefold()
                deploy_url = (session.deployment.url or "").casefold()
                if segment and (stored.endswith(segment) or segment in deploy_url):
                    logger.debug("session_matched_by_fallback", ref=ref, session_id=session.id)
                    return session.model_copy(deep=True)

        raise NotFoundError(f"No session found for repository: {ref}")

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def create(self, artifact_hint: str | None = None, design_ref: str | None = None) -> Session:
        session = Session(design_ref=design_ref or None)
        if artifact_hint:
            session.artifact_url = artifact_hint
            session.artifact_ref = parse_artifact_ref(artifact_hint)
        with self._mutex:
            self._sessions[session.id] = session
            snapshot = session.model_copy(deep=True)
        logger.info(
            "session_created",
            session_id=session.id,
            artifact_ref=session.artifact_ref,
            design_ref=design_ref,
        )
        self._notify(snapshot)
        return snapshot

    def restore(self, session: Session) -> bool:
        """Load an archived session unless a live one with the same id exists."""
        with self._mutex:
            if session.id in self._sessions:
                return False
            self._sessions[session.id] = session.model_copy(deep=True)
        return True

    def append_message(self, session_id: str, message: Message) -> None:
        with self._mutex:
            session = self._require(session_id)
            session.messages.append(message.model_copy(deep=True))
            snapshot = self._touch(session)
        self._notify(snapshot)

    def update_deployment_status(
        self, session_id: str, status: DeploymentStatus, url: str | None = None
    ) -> Session:
        with self._mutex:
            session = self._require(session_id)
            previous = session.deployment.status
            session.deployment.status = status
            if url:
                session.deployment.url = url
            session.deployment.updated_at = time.time()
            snapshot = self._touch(session)
        logger.info(
            "deployment_status_updated",
            session_id=session_id,
            previous=previous.value,
            status=status.value,
            url=snapshot.deployment.url,
        )
        self._notify(snapshot)
        return snapshot

    def update_evaluation(self, session_id: str, result: EvaluationResult) -> Session:
        with self._mutex:
            session = self._require(session_id)
            session.last_evaluation = result
            if result.deployment_url and result.deployment_url not in session.evaluated_urls:
                session.evaluated_urls.append(result.deployment_url)
            snapshot = self._touch(session)
        logger.info(
            "evaluation_recorded",
            session_id=session_id,
            score=result.score,
            completed=result.completed,
        )
        self._notify(snapshot)
        return snapshot

    def update_artifact(self, session_id: str, url_or_handle: str) -> Session:
        handle = parse_artifact_ref(url_or_handle)
        with self._mutex:
            session = self._require(session_id)
            if handle is None:
                logger.warning(
                    "artifact_ref_unparsable",
                    session_id=session_id,
                    value=url_or_handle,
                )
                return session.model_copy(deep=True)
            session.artifact_ref = handle
            session.artifact_url = (
                url_or_handle if "://" in url_or_handle else f"https://github.com/{handle}"
            )
            snapshot = self._touch(session)
        self._notify(snapshot)
        return snapshot

    def update_design_ref(self, session_id: str, design_ref: str) -> Session:
        with self._mutex:
            session = self._require(session_id)
            session.design_ref = design_ref
            snapshot = self._touch(session)
        self._notify(snapshot)
        return snapshot

    def record_feedback_cycle(self, session_id: str) -> int:
        with self._mutex:
            session = self._require(session_id)
            session.feedback_cycles += 1
            snapshot = self._touch(session)
        self._notify(snapshot)
        return snapshot.feedback_cycles

    def lock(self, session_id: str) -> asyncio.Lock:
        with self._mutex:
            self._require(session_id)
            if session_id not in self._locks:
                self._locks[session_id] = asyncio.Lock()
            return self._locks[session_id]

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def _touch(self, session: Session) -> Session:
        session.updated_at = time.time()
        return session.model_copy(deep=True)

    def _notify(self, snapshot: Session) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(snapshot)
        except Exception as e:
            logger.error("session_change_listener_failed", session_id=snapshot.id, error=str(e))
