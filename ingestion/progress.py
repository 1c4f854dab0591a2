"""
Progress channel for UI polling.

The reporter publishes a ProgressSnapshot under one short-TTL state key.
Coarse fields give stage/procedure/case percentages; fine fields give the
current step and a ring buffer of recently processed cases.

Overall percentage is dynamic: declared case counts are approximate, so
when more cases are processed than expected the denominator grows by a
10% buffer. The value is capped below 100 until the run completes and
never goes backwards.
"""

from collections import deque
from typing import Optional, Union
from pydantic import ValidationError
from core.config import settings
from ingestion.checkpoint import StateStore
from models.base import SyncStage
from schemas.sync import ProgressSnapshot, StepProgress
import logging

logger = logging.getLogger(__name__)

EXPECTED_TOTAL_BUFFER = 0.1
RUNNING_CAP = 99.0


def percent(current: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(current / total * 100, 100.0), 1)


class ProgressReporter:
    """Publishes progress snapshots to the state store"""

    KEY = "sync_progress"

    def __init__(
        self,
        state_store: StateStore,
        ttl_seconds: Optional[int] = None,
        recent_size: Optional[int] = None
    ):
        self.state = state_store
        self.ttl_seconds = ttl_seconds or settings.PROGRESS_TTL_SECONDS
        self.recent_cases = deque(maxlen=recent_size or settings.RECENT_ACTIVITY_SIZE)
        self.stage = SyncStage.TAXONOMY
        self.session_id: Optional[str] = None
        self.expected_total = 0
        self._last_overall = 0.0

    def begin(self, stage: SyncStage, session_id: Optional[str] = None, expected_total: int = 0):
        self.stage = stage
        self.session_id = session_id
        self.expected_total = max(expected_total, 0)
        self._last_overall = 0.0
        self.recent_cases.clear()

    async def restore(self):
        """Carry recent activity and percentage over from a previous invocation"""
        snapshot = await self.read()
        if snapshot is None or snapshot.session_id != self.session_id:
            return
        self.recent_cases.clear()
        for entry in reversed(snapshot.recent_cases[:self.recent_cases.maxlen]):
            self.recent_cases.appendleft(entry)
        self._last_overall = snapshot.overall_percentage

    def overall_percentage(self, processed: int, completed: bool = False) -> float:
        if completed:
            self._last_overall = 100.0
            return 100.0
        if processed > self.expected_total:
            self.expected_total = processed + round(processed * EXPECTED_TOTAL_BUFFER)
        value = min(percent(processed, self.expected_total), RUNNING_CAP)
        self._last_overall = max(self._last_overall, value)
        return self._last_overall

    def note_case(
        self,
        action: str,
        position: int,
        total: int,
        procedure_name: str,
        procedure_id: Union[int, str],
        case_id: Union[int, str]
    ):
        """Push one line into the recent activity ring buffer (newest first)"""
        self.recent_cases.appendleft(
            f"[{action.upper()}] {position}/{total} {procedure_name} ({procedure_id}) - Case Id: {case_id}"
        )

    async def publish(
        self,
        processed: int = 0,
        current_step: str = "",
        current_procedure: Optional[str] = None,
        procedure_current: int = 0,
        procedure_total: int = 0,
        case_current: int = 0,
        case_total: int = 0,
        completed: bool = False
    ) -> ProgressSnapshot:
        snapshot = ProgressSnapshot(
            stage=self.stage,
            session_id=self.session_id,
            overall_percentage=self.overall_percentage(processed, completed=completed),
            current_procedure=current_procedure,
            procedure_progress=StepProgress(
                current=procedure_current,
                total=procedure_total,
                percentage=percent(procedure_current, procedure_total),
            ),
            case_progress=StepProgress(
                current=case_current,
                total=case_total,
                percentage=percent(case_current, case_total),
            ),
            current_step=current_step,
            recent_cases=list(self.recent_cases),
        )
        await self.state.set(self.KEY, snapshot.model_dump(mode="json"), self.ttl_seconds)
        return snapshot

    async def read(self) -> Optional[ProgressSnapshot]:
        raw = await self.state.get(self.KEY)
        if raw is None:
            return None
        try:
            return ProgressSnapshot.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable progress snapshot: {e}")
            return None

    async def clear(self):
        await self.state.delete(self.KEY)
