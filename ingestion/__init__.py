"""
Catalog sync pipeline components.

This package mirrors the remote case catalog into the local entity store
in three resumable stages:

Modules:
    client: Async HTTP client for the sidebar, listing and detail endpoints
    taxonomy: Stage 1, category/procedure sync into taxonomy terms
    manifest: Stage 2, manifest builder and dated snapshot store
    processor: Stage 3, checkpointed batch processor
    transformer: Canonical case to CaseRecord field mapping
    entity_store: Entity store interface and SQLAlchemy adapter
    checkpoint: State store, Stage 3 checkpoint and single-active-job lock
    cancellation: Stored stop flag and cancellation token
    progress: Progress channel with recent activity
    guard: Memory and wall-clock budgets
    history: SyncRun bookkeeping
    pipeline: Stage orchestration; every entry point returns a SyncResult
    scheduler: APScheduler job that continues an in-progress run

Architecture:
    Stage 3 never tries to finish in one go. Each invocation handles at most
    one batch, saves its cursor in the checkpoint and reports
    ``needs_continue``; the scheduler (or ``run_full``) invokes it again
    until the manifest is exhausted.

Usage:
    from ingestion.pipeline import SyncPipeline

    pipeline = SyncPipeline.from_settings()
    result = await pipeline.run_stage_3()

    print(f"{result.status}: {result.processed}/{result.total} cases")

Error Handling:
    Components raise the exceptions in core.exceptions; the pipeline turns
    them into failed SyncResults. Per-case failures are recorded as values
    and never abort a batch.
"""

__all__ = [
    "CatalogAPIClient",
    "TaxonomySync",
    "ManifestBuilder",
    "ManifestStore",
    "BatchProcessor",
    "CaseTransformer",
    "SyncPipeline",
    "SyncScheduler",
]
