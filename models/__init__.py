"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (SyncStage, SyncStatus, CaseStatus)
    procedure: Taxonomy terms for categories and procedures
    case_record: Local case records keyed by (procedure, case) external IDs
    sync_state: Named key/value state (checkpoint, lock, progress, stop flag)
    sync_run: Pipeline invocation history

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for flexible attribute storage.

Usage:
    from models import ProcedureTerm, CaseRecord, SyncState, SyncRun
    from models.base import SyncStage, SyncStatus

Example:
    term = ProcedureTerm(name="Facelift", slug="facelift", external_id="101")
    session.add(term)
    await session.commit()

Relationships:
    - ProcedureTerm → ProcedureTerm (category → procedures, one level)
    - ProcedureTerm → CaseRecord (one-to-many primary assignment)
"""

from models.base import Base, SyncStage, SyncStatus, CaseStatus
from models.procedure import ProcedureTerm
from models.case_record import CaseRecord
from models.sync_state import SyncState
from models.sync_run import SyncRun

__all__ = [
    "Base",
    "SyncStage",
    "SyncStatus",
    "CaseStatus",
    "ProcedureTerm",
    "CaseRecord",
    "SyncState",
    "SyncRun",
]
