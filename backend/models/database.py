"""SQLite-based session archive using aiosqlite.

The live Session Store keeps state in memory. This module mirrors each
session as a JSON snapshot so that history, deployment state and the last
evaluation survive a restart and can be listed later. All operations are
async and designed to fail gracefully -- an archive error should never break
a running pipeline.

Tables:
    sessions: One row per session (id, repository handle, status, score,
        completion flag, full JSON snapshot, timestamps).

Usage:
    >>> from models.database import SessionArchive
    >>> archive = SessionArchive("./data/relay.db")
    >>> await archive.init()
    >>> await archive.save_snapshot(session)
"""

import json
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.session import Session

logger = structlog.get_logger(__name__)


class SessionArchive:
    """Async SQLite store of session snapshots.

    All public methods except ``init`` catch exceptions internally and log
    errors rather than propagating them.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS sessions (
                        id TEXT PRIMARY KEY,
                        artifact_ref TEXT,
                        deployment_status TEXT NOT NULL DEFAULT 'pending',
                        last_score INTEGER,
                        completed INTEGER NOT NULL DEFAULT 0,
                        snapshot TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sessions_created_at
                    ON sessions(created_at DESC)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sessions_artifact_ref
                    ON sessions(artifact_ref)
                """)
                await db.commit()
            logger.info("session_archive_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "session_archive_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def save_snapshot(self, session: Session) -> None:
        """Insert or replace the snapshot of a session."""
        score = session.last_evaluation.score if session.last_evaluation else None
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO sessions
                        (id, artifact_ref, deployment_status, last_score, completed,
                         snapshot, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.artifact_ref,
                        session.deployment.status.value,
                        score,
                        int(session.completed),
                        session.model_dump_json(),
                        session.created_at,
                        session.updated_at,
                    ),
                )
                await db.commit()
            logger.debug("session_snapshot_saved", session_id=session.id)
        except Exception as e:
            logger.error(
                "session_snapshot_save_failed",
                session_id=session.id,
                error=str(e),
            )

    async def load_snapshot(self, session_id: str) -> Session | None:
        """Load a session snapshot, or None if missing or unreadable."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT snapshot FROM sessions WHERE id = ?",
                    (session_id,),
                )
                row = await cursor.fetchone()
        except Exception as e:
            logger.error("session_snapshot_load_failed", session_id=session_id, error=str(e))
            return None
        if row is None:
            return None
        try:
            return Session.model_validate_json(row[0])
        except ValueError as e:
            logger.warning("session_snapshot_corrupt", session_id=session_id, error=str(e))
            return None

    async def list_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List archived sessions ordered by creation time (newest first).

        Returns summary rows only; use ``load_snapshot`` for the full state.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT id, artifact_ref, deployment_status, last_score, completed,
                           created_at, updated_at
                    FROM sessions
                    ORDER BY created_at DESC
                    LIMIT ? OFFSET ?
                    """,
                    (limit, offset),
                )
                rows = await cursor.fetchall()
                sessions: list[dict[str, Any]] = []
                for row in rows:
                    entry = dict(row)
                    entry["completed"] = bool(entry["completed"])
                    sessions.append(entry)
                return sessions
        except Exception as e:
            logger.error("session_archive_list_failed", error=str(e))
            return []

    async def load_all(self) -> list[Session]:
        """Load every readable snapshot (used to rehydrate the live store)."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT id, snapshot FROM sessions")
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("session_archive_load_all_failed", error=str(e))
            return []

        sessions: list[Session] = []
        for session_id, raw in rows:
            try:
                sessions.append(Session.model_validate(json.loads(raw)))
            except ValueError as e:
                logger.warning("session_snapshot_corrupt", session_id=session_id, error=str(e))
        return sessions

    async def clear_all(self) -> int:
        """Delete all archived sessions. Returns the number of rows removed."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM sessions")
                count_row = await cursor.fetchone()
                deleted_count = int(count_row[0]) if count_row else 0
                await db.execute("DELETE FROM sessions")
                await db.commit()
            logger.info("session_archive_cleared", deleted_count=deleted_count)
            return deleted_count
        except Exception as e:
            logger.error("session_archive_clear_failed", error=str(e))
            return 0
