"""SQLite checkpoint store for resumable sync runs."""
import time
import uuid
import aiosqlite
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from carsync.config import STATE_DB

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


def new_run_id() -> str:
    return f"sync-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class SyncCheckpoint(BaseModel):
    """Progress marker of a sync run."""

    run_id: str
    last_page: int = Field(0, description="Every page up to this one is done")
    total_processed: int = 0
    start_time: float = Field(default_factory=time.time)
    last_update_time: float = Field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_update_time

    def is_stale(self, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS, now: Optional[float] = None) -> bool:
        return self.age(now) > max_age_seconds


class CheckpointManager:
    """Persists the single current checkpoint in SQLite."""

    def __init__(self, db_path: Path = STATE_DB, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS):
        self.db_path = db_path
        self.max_age_seconds = max_age_seconds

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_checkpoint (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    run_id TEXT NOT NULL,
                    last_page INTEGER NOT NULL,
                    total_processed INTEGER NOT NULL,
                    start_time REAL NOT NULL,
                    last_update_time REAL NOT NULL
                )
                """
            )
            await db.commit()
            logger.info(f"Checkpoint store initialized at {self.db_path}")

    async def save(self, checkpoint: SyncCheckpoint) -> bool:
        """Store the checkpoint. Failures are logged and reported as False."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO sync_checkpoint
                        (id, run_id, last_page, total_processed, start_time, last_update_time)
                    VALUES (1, ?, ?, ?, ?, ?)
                    """,
                    (
                        checkpoint.run_id,
                        checkpoint.last_page,
                        checkpoint.total_processed,
                        checkpoint.start_time,
                        checkpoint.last_update_time,
                    ),
                )
                await db.commit()
            return True
        except Exception as e:
            logger.warning(f"Failed to save checkpoint at page {checkpoint.last_page}: {e}")
            return False

    async def read(self) -> Optional[SyncCheckpoint]:
        """Return the stored checkpoint as is, without the staleness check."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT run_id, last_page, total_processed, start_time, last_update_time
                FROM sync_checkpoint WHERE id = 1
                """
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return SyncCheckpoint(
            run_id=row[0],
            last_page=row[1],
            total_processed=row[2],
            start_time=row[3],
            last_update_time=row[4],
        )

    async def load(self, now: Optional[float] = None) -> Optional[SyncCheckpoint]:
        """Return the checkpoint if one exists and is fresh enough to resume."""
        try:
            checkpoint = await self.read()
        except Exception as e:
            logger.warning(f"Checkpoint store unavailable, starting fresh: {e}")
            return None

        if checkpoint is None:
            return None
        if checkpoint.is_stale(self.max_age_seconds, now):
            hours = checkpoint.age(now) / 3600
            logger.info(f"Ignoring checkpoint of run {checkpoint.run_id}: {hours:.1f}h old")
            return None
        return checkpoint

    async def clear(self) -> None:
        """Delete the stored checkpoint."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM sync_checkpoint")
                await db.commit()
        except Exception as e:
            logger.warning(f"Failed to clear checkpoint: {e}")
