"""
Durable pipeline state: key/value store, Stage 3 checkpoint and active-job lock.

StateStore is the small key/value surface every piece of shared state goes
through (checkpoint, lock, stop flag, progress, last-run summary). The
SQLAlchemy implementation keeps one ``sync_state`` row per key; entries
written with a TTL stop being visible once ``expires_at`` has passed.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional
from pydantic import ValidationError
from sqlalchemy import select, delete, or_
from sqlalchemy.dialects.postgresql import insert
from core.config import settings
from core.database import async_session_maker
from core.exceptions import CheckpointError
from models.sync_state import SyncState
from schemas.sync import Manifest, ProcessingCheckpoint
import logging

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Named key/value entries with optional expiry"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None when absent or expired"""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        """Create or replace key"""
        pass

    @abstractmethod
    async def delete(self, key: str):
        pass

    @abstractmethod
    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        Create key only if it is absent or expired.

        Returns:
            True if this call created the entry
        """
        pass


class SQLAlchemyStateStore(StateStore):
    """StateStore backed by the ``sync_state`` table"""

    def __init__(self, session_maker=None):
        self.session_maker = session_maker or async_session_maker

    @staticmethod
    def _expiry(ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        return datetime.utcnow() + timedelta(seconds=ttl_seconds)

    async def get(self, key: str) -> Optional[Any]:
        now = datetime.utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncState.value).where(
                    SyncState.name == key,
                    or_(SyncState.expires_at.is_(None), SyncState.expires_at > now)
                )
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        expires_at = self._expiry(ttl_seconds)
        stmt = insert(SyncState).values(name=key, value=value, expires_at=expires_at, updated_at=datetime.utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={
                "value": stmt.excluded.value,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            }
        )
        async with self.session_maker() as session:
            try:
                await session.execute(stmt)
                await session.commit()
            except Exception as e:
                await session.rollback()
                raise CheckpointError(
                    "Failed to write state",
                    context={"key": key, "operation": "write"},
                    original_exception=e
                )

    async def delete(self, key: str):
        async with self.session_maker() as session:
            await session.execute(delete(SyncState).where(SyncState.name == key))
            await session.commit()

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        now = datetime.utcnow()
        stmt = insert(SyncState).values(
            name=key, value=value, expires_at=self._expiry(ttl_seconds), updated_at=now
        )
        # Overwrite only a stale row; a live row makes the upsert a no-op
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={
                "value": stmt.excluded.value,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
            where=(SyncState.expires_at.isnot(None)) & (SyncState.expires_at <= now)
        ).returning(SyncState.name)

        async with self.session_maker() as session:
            result = await session.execute(stmt)
            created = result.scalar_one_or_none() is not None
            await session.commit()
            return created


# ============================================================================
# Checkpoint
# ============================================================================

class CheckpointStore:
    """
    Load, save and clear the Stage 3 ProcessingCheckpoint.

    Absence of the entry means no run is in progress.
    """

    KEY = "stage3_checkpoint"

    def __init__(self, state_store: StateStore):
        self.state = state_store

    async def load(self, manifest: Optional[Manifest] = None) -> Optional[ProcessingCheckpoint]:
        """
        Rehydrate the checkpoint.

        A checkpoint without total_cases (partially written) gets it
        recomputed from the manifest when one is given.

        Raises:
            CheckpointError: If the stored value cannot be parsed
        """
        raw = await self.state.get(self.KEY)
        if raw is None:
            return None

        try:
            checkpoint = ProcessingCheckpoint.model_validate(raw)
        except ValidationError as e:
            raise CheckpointError(
                "Stored checkpoint is unreadable",
                context={"key": self.KEY, "operation": "read"},
                original_exception=e
            )

        if checkpoint.total_cases is None and manifest is not None:
            checkpoint.total_cases = manifest.total_cases()
            logger.info(f"Recomputed checkpoint total_cases={checkpoint.total_cases} from manifest")

        return checkpoint

    async def save(self, checkpoint: ProcessingCheckpoint):
        checkpoint.touch()
        await self.state.set(self.KEY, checkpoint.model_dump(mode="json"))
        logger.debug(
            f"Checkpoint saved: procedure_index={checkpoint.procedure_index}, "
            f"case_index={checkpoint.case_index}, processed={checkpoint.processed_count}"
        )

    async def clear(self):
        await self.state.delete(self.KEY)
        logger.info("Checkpoint cleared")


# ============================================================================
# Active-job lock
# ============================================================================

class JobLock:
    """
    Single-active-job guard.

    Two entries cooperate:
    - the run entry names the session that owns the current sync run and
      survives between invocations of a CONTINUING run
    - the invocation entry exists only while some invocation is executing

    An invocation may proceed when it creates the invocation entry and the
    run entry is free or already owned by its session. Both entries carry a
    TTL so a killed process cannot wedge the pipeline forever.
    """

    RUN_KEY = "sync_active_job"
    INVOCATION_KEY = "sync_active_invocation"

    def __init__(self, state_store: StateStore, ttl_seconds: Optional[int] = None):
        self.state = state_store
        self.ttl_seconds = ttl_seconds or settings.LOCK_TTL_SECONDS

    async def try_acquire(self, session_id: str) -> bool:
        now = datetime.utcnow().isoformat()
        claimed = await self.state.add(
            self.INVOCATION_KEY, {"holder": session_id, "started_at": now}, self.ttl_seconds
        )
        if not claimed:
            logger.warning(f"Sync invocation already running, session {session_id} not started")
            return False

        run = await self.state.get(self.RUN_KEY)
        if run is not None and run.get("holder") != session_id:
            await self.state.delete(self.INVOCATION_KEY)
            logger.warning(f"Sync run owned by session {run.get('holder')}, session {session_id} not started")
            return False

        await self.state.set(
            self.RUN_KEY,
            {"holder": session_id, "acquired_at": (run or {}).get("acquired_at", now), "refreshed_at": now},
            self.ttl_seconds
        )
        return True

    async def suspend(self):
        """End the current invocation but keep the run owned"""
        await self.state.delete(self.INVOCATION_KEY)

    async def release(self):
        await self.state.delete(self.INVOCATION_KEY)
        await self.state.delete(self.RUN_KEY)
        logger.debug("Job lock released")

    async def holder(self) -> Optional[str]:
        run = await self.state.get(self.RUN_KEY)
        return run.get("holder") if run else None

    async def is_running(self) -> bool:
        return await self.state.get(self.INVOCATION_KEY) is not None
