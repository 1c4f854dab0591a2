"""
Pydantic schemas for pipeline state: manifest, checkpoint, progress and results
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Union, Literal
from datetime import datetime
from models.base import SyncStage, SyncStatus

ERROR_DISPLAY_LIMIT = 10
LAST_RUN_ERROR_LIMIT = 5


def truncate_errors(errors: List[str], limit: int = ERROR_DISPLAY_LIMIT) -> List[str]:
    """Keep the first ``limit`` errors and summarize the rest"""
    if len(errors) <= limit:
        return list(errors)
    return list(errors[:limit]) + [f"... and {len(errors) - limit} more errors"]


def composite_key(procedure_id: Union[int, str], case_id: Union[int, str]) -> str:
    return f"{procedure_id}:{case_id}"


# ============================================================================
# Manifest
# ============================================================================

class Manifest(BaseModel):
    """
    Ordered mapping of procedure external ID to case external IDs.

    Keys are strings because the manifest round-trips through JSON; insertion
    order is the order procedures are processed in.
    """
    procedures: Dict[str, List[int]] = Field(default_factory=dict)

    def procedure_ids(self) -> List[str]:
        return list(self.procedures.keys())

    def cases_for(self, procedure_id: Union[int, str]) -> List[int]:
        return self.procedures.get(str(procedure_id), [])

    def total_cases(self) -> int:
        return sum(len(ids) for ids in self.procedures.values())

    def is_empty(self) -> bool:
        return self.total_cases() == 0


# ============================================================================
# Checkpoint
# ============================================================================

class OrderEntry(BaseModel):
    local_id: int
    external_id: str


class ProcessingCheckpoint(BaseModel):
    """
    Resume cursor plus running counters for an in-progress Stage 3 run.

    ``procedure_index`` indexes the manifest's procedure list and
    ``case_index`` the current procedure's case list, both zero-based.
    """
    session_id: str
    procedure_index: int = Field(0, ge=0)
    case_index: int = Field(0, ge=0)

    processed_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    total_cases: Optional[int] = None

    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    # Composite keys already handled in this run
    seen_keys: List[str] = Field(default_factory=list)
    # Local record IDs the store returned for created or updated cases
    written_ids: List[int] = Field(default_factory=list)
    # Procedures whose case lists were fully handled; only these are cleaned of orphans
    completed_procedures: List[str] = Field(default_factory=list)
    # Order list of the procedure under the cursor, flushed when it finishes
    current_order: List[OrderEntry] = Field(default_factory=list)

    # Set when a stop request ended the last invocation; scheduled continuation skips it
    paused: bool = False

    manifest_date: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def distinct_successes(self) -> int:
        return self.created_count + self.updated_count

    def cross_procedure_duplicates(self) -> List[str]:
        """Bare case IDs handled under more than one procedure, in first-seen order"""
        procedures: Dict[str, set] = {}
        for key in self.seen_keys:
            procedure_id, _, case_id = key.partition(":")
            procedures.setdefault(case_id, set()).add(procedure_id)
        return [case_id for case_id, owners in procedures.items() if len(owners) > 1]

    def touch(self):
        self.timestamp = datetime.utcnow()


# ============================================================================
# Progress channel
# ============================================================================

class StepProgress(BaseModel):
    current: int = 0
    total: int = 0
    percentage: float = 0.0


class ProgressSnapshot(BaseModel):
    """Value published on the progress channel"""
    stage: SyncStage
    session_id: Optional[str] = None
    overall_percentage: float = 0.0
    current_procedure: Optional[str] = None
    procedure_progress: StepProgress = Field(default_factory=StepProgress)
    case_progress: StepProgress = Field(default_factory=StepProgress)
    current_step: str = ""
    recent_cases: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True


# ============================================================================
# Per-case results
# ============================================================================

class CaseOutcome(BaseModel):
    """Successful handling of one manifest entry"""
    ok: Literal[True] = True
    action: Literal["created", "updated", "skipped", "duplicate"]
    procedure_id: str
    case_id: str
    local_id: Optional[int] = None
    message: Optional[str] = None


class CaseError(BaseModel):
    """Failed handling of one manifest entry"""
    ok: Literal[False] = False
    procedure_id: str
    case_id: str
    error_type: str
    message: str

    def describe(self) -> str:
        return f"Case {self.case_id} (procedure {self.procedure_id}): {self.error_type}: {self.message}"


CaseResult = Union[CaseOutcome, CaseError]


# ============================================================================
# Run results
# ============================================================================

class SyncResult(BaseModel):
    """
    Structured result of one pipeline invocation.

    Every public pipeline entry point returns one of these; exceptions
    never reach the caller.
    """
    success: bool
    stage: SyncStage
    status: SyncStatus
    session_id: Optional[str] = None

    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    processed: int = 0
    total: int = 0

    needs_continue: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)

    @validator("errors", pre=True)
    def limit_errors(cls, v):
        return truncate_errors(v or [])

    class Config:
        use_enum_values = True


class LastRunSummary(BaseModel):
    """Stored after a Stage 3 run completes"""
    session_id: str
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    processed: int = 0
    total: int = 0
    errors: List[str] = Field(default_factory=list)

    @validator("errors", pre=True)
    def keep_first_errors(cls, v):
        return list(v or [])[:LAST_RUN_ERROR_LIMIT]
