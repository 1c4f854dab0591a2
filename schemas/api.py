"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from schemas.sync import ProcessingCheckpoint, ProgressSnapshot, LastRunSummary

# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    job_active: bool = False
    lock_holder: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "job_active": True,
                "lock_holder": "7d0b8f0e4a3c"
            }
        }

# ============================================================================
# Sync Schemas
# ============================================================================

class ProgressResponse(BaseModel):
    """Progress channel value, or idle when nothing is published"""
    active: bool
    progress: Optional[ProgressSnapshot] = None

    class Config:
        json_schema_extra = {
            "example": {
                "active": True,
                "progress": {
                    "stage": "stage_3",
                    "overall_percentage": 42.5,
                    "current_procedure": "Facelift",
                    "procedure_progress": {"current": 3, "total": 12, "percentage": 25.0},
                    "case_progress": {"current": 17, "total": 40, "percentage": 42.5},
                    "current_step": "Processing case 17 of 40 for Facelift",
                    "recent_cases": [
                        "[CREATE] 17/40 Facelift (101) - Case Id: 5017"
                    ]
                }
            }
        }


class ManifestPreviewEntry(BaseModel):
    procedure_id: str
    case_count: int
    sample_ids: List[int] = Field(default_factory=list)


class ManifestPreview(BaseModel):
    manifest_date: Optional[str] = None
    exists: bool = False
    procedure_count: int = 0
    total_cases: int = 0
    procedures: List[ManifestPreviewEntry] = Field(default_factory=list)


class SyncRunSummary(BaseModel):
    run_id: str
    stage: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    created_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    message: Optional[str] = None

    @classmethod
    def from_orm(cls, run):
        """Explicit UUID → str conversion"""
        return cls(
            run_id=str(run.run_id),
            stage=getattr(run.stage, "value", run.stage),
            status=getattr(run.status, "value", run.status),
            started_at=run.started_at,
            completed_at=run.completed_at,
            created_count=run.created_count or 0,
            updated_count=run.updated_count or 0,
            failed_count=run.failed_count or 0,
            skipped_count=run.skipped_count or 0,
            message=run.message,
        )


class SyncStatusResponse(BaseModel):
    """Checkpoint, lock, manifest and run history in one view"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    job_active: bool
    lock_holder: Optional[str] = None
    stop_requested: bool = False
    checkpoint: Optional[ProcessingCheckpoint] = None
    manifest: ManifestPreview = Field(default_factory=ManifestPreview)
    last_run: Optional[LastRunSummary] = None
    recent_runs: List[SyncRunSummary] = Field(default_factory=list)


class StopResponse(BaseModel):
    stop_requested: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

