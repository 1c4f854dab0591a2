from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class SyncStage(str, enum.Enum):
    """Pipeline stages, executed in this order"""
    TAXONOMY = "stage_1"
    MANIFEST = "stage_2"
    CASES = "stage_3"


class SyncStatus(str, enum.Enum):
    """Outcome of one pipeline invocation"""
    PENDING = "pending"
    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"
    SKIPPED = "skipped"


class CaseStatus(str, enum.Enum):
    """Publication status of a local case record"""
    PUBLISH = "publish"
    DRAFT = "draft"
