"""
Sync run history: one SyncRun row per pipeline invocation
"""

from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from core.database import async_session_maker
from models.base import SyncStage, SyncStatus
from models.sync_run import SyncRun
from schemas.sync import SyncResult
import logging

logger = logging.getLogger(__name__)


class RunHistory:
    """Records the start and outcome of each invocation"""

    def __init__(self, session_maker=None):
        self.session_maker = session_maker or async_session_maker

    async def start_run(self, stage: SyncStage, session_id: Optional[str] = None) -> int:
        """Insert a RUNNING row and return its ID"""
        async with self.session_maker() as session:
            run = SyncRun(
                stage=stage,
                session_id=session_id,
                status=SyncStatus.RUNNING,
                started_at=datetime.utcnow(),
            )
            session.add(run)
            await session.commit()
            await session.refresh(run)
            logger.debug(f"Started sync run {run.run_id} ({stage.value})")
            return run.id

    async def complete_run(self, run_id: int, result: SyncResult):
        """Copy the result's counters and status onto the run row"""
        async with self.session_maker() as session:
            run = await session.get(SyncRun, run_id)
            if run is None:
                logger.warning(f"Sync run {run_id} vanished before completion")
                return

            run.status = SyncStatus(result.status)
            run.completed_at = datetime.utcnow()
            run.duration_seconds = (run.completed_at - run.started_at).total_seconds()
            run.needs_continue = result.needs_continue
            run.created_count = result.created
            run.updated_count = result.updated
            run.failed_count = result.failed
            run.skipped_count = result.skipped
            run.processed_count = result.processed
            run.total_count = result.total
            run.message = result.message
            run.errors = result.errors or None
            run.warnings = result.warnings or None

            await session.commit()

    async def recent_runs(self, limit: int = 10) -> List[SyncRun]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
            )
            return list(result.scalars().all())
