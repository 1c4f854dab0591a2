"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for remote payload decoding, pipeline
state and API request/response validation:

Schemas:
    catalog: Remote category tree (categories and procedures)
    remote_case: Remote case detail variants and the canonical case shape
    sync: Manifest, checkpoint, progress and run result models
    api: API endpoint request/response schemas

Features:
    - Automatic data validation
    - camelCase remote keys mapped through field aliases
    - JSON serialization for the state store and manifest snapshots
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.catalog import CategoryTree
    from schemas.remote_case import parse_case_payload
    from schemas.sync import ProcessingCheckpoint, SyncResult

Example:
    # Decode a detail response whatever its version
    remote = parse_case_payload({"success": True, "data": {"case": {"id": 5001}}})
    case = remote.normalize()
    assert case.case_id == "5001"

Validation:
    All schemas use Pydantic validators for:
    - Placeholder ID filtering (0, "0", empty, null)
    - Boolean coercion of "true"/"false" strings
    - Error list truncation in run results
"""

__all__ = [
    "CategoryNode",
    "CategoryTree",
    "RemoteCaseV1",
    "RemoteCaseV2",
    "CanonicalCase",
    "Manifest",
    "ProcessingCheckpoint",
    "ProgressSnapshot",
    "SyncResult",
    "CaseOutcome",
    "CaseError",
]
