# ============================================================================
# File: ingestion/pipeline.py
# Description: Staged sync orchestrator with lock, checkpoint and run history
# ============================================================================
"""
SyncPipeline - orchestrates the three sync stages.

    Stage 1  category/procedure sync   (TaxonomySync)
    Stage 2  manifest build            (ManifestBuilder + ManifestStore)
    Stage 3  case batch processing     (BatchProcessor, one batch per call)

Every public entry point returns a SyncResult. Configuration problems, a
held lock and unexpected exceptions all come back as failed results; no
exception escapes to the caller.

The pipeline holds no state between invocations: the checkpoint, lock,
stop flag and progress channel live in the StateStore passed in.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from core.config import settings
from core.database import async_session_maker
from core.exceptions import CheckpointError, ConfigError, LockHeldError, ManifestError, SyncException
from ingestion.cancellation import CancellationToken, StoredStopFlag
from ingestion.checkpoint import CheckpointStore, JobLock, SQLAlchemyStateStore, StateStore
from ingestion.client import CatalogAPIClient
from ingestion.entity_store import EntityStore, SQLAlchemyEntityStore
from ingestion.guard import ResourceGuard
from ingestion.history import RunHistory
from ingestion.manifest import ManifestBuilder, ManifestStore
from ingestion.processor import BatchProcessor
from ingestion.progress import ProgressReporter
from ingestion.taxonomy import TaxonomySync
from models.base import SyncStage, SyncStatus
from schemas.catalog import CategoryTree
from schemas.sync import LastRunSummary, Manifest, ProcessingCheckpoint, SyncResult
import logging

logger = logging.getLogger(__name__)

LAST_RUN_KEY = "stage3_last_run"


def new_session_id() -> str:
    return uuid.uuid4().hex[:16]


class SyncPipeline:
    """
    Staged, resumable catalog sync.

    Collaborators are injected so tests can swap in fakes; ``from_settings``
    wires the production SQLAlchemy stores.
    """

    def __init__(
        self,
        state_store: StateStore,
        manifest_store: ManifestStore,
        client: Optional[CatalogAPIClient] = None,
        entity_store: Optional[EntityStore] = None,
        session_maker=None,
        history: Optional[RunHistory] = None,
        guard_factory: Optional[Callable[[], ResourceGuard]] = None,
        batch_size: Optional[int] = None
    ):
        self.state = state_store
        self.manifests = manifest_store
        self.client = client or CatalogAPIClient()
        self.entity_store = entity_store
        self.session_maker = session_maker or async_session_maker
        self.history = history
        self.guard_factory = guard_factory or ResourceGuard
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE

        self.checkpoints = CheckpointStore(state_store)
        self.lock = JobLock(state_store)
        self.stop_flag = StoredStopFlag(state_store)
        self.progress = ProgressReporter(state_store)

    @classmethod
    def from_settings(cls) -> "SyncPipeline":
        return cls(
            state_store=SQLAlchemyStateStore(async_session_maker),
            manifest_store=ManifestStore(settings.MANIFEST_DIR),
            history=RunHistory(async_session_maker),
        )

    @asynccontextmanager
    async def _entity_store(self):
        if self.entity_store is not None:
            yield self.entity_store
            return
        async with self.session_maker() as session:
            yield SQLAlchemyEntityStore(session)

    # ------------------------------------------------------------------
    # Invocation wrapper
    # ------------------------------------------------------------------

    @staticmethod
    def _failure(stage: SyncStage, message: str, session_id: Optional[str] = None,
                 status: SyncStatus = SyncStatus.FAILED, errors: Optional[List[str]] = None) -> SyncResult:
        return SyncResult(
            success=False,
            stage=stage,
            status=status,
            session_id=session_id,
            errors=errors or [message],
            message=message,
        )

    async def _guarded(
        self,
        stage: SyncStage,
        session_id: str,
        work: Callable[[], Awaitable[SyncResult]]
    ) -> SyncResult:
        """Validate config, take the lock, record history and run ``work``"""
        try:
            self.client.validate()
        except ConfigError as e:
            logger.error(f"{stage.value} not started: {e.message}", extra={"error_context": e.to_dict()})
            return self._failure(stage, e.message, session_id)

        if not await self.lock.try_acquire(session_id):
            e = LockHeldError(
                f"Another sync job is active (session {await self.lock.holder()})",
                context={"session_id": session_id, "stage": stage.value}
            )
            logger.warning(e.message, extra={"error_context": e.to_dict()})
            return self._failure(
                stage,
                e.message,
                session_id,
                status=SyncStatus.SKIPPED,
            )

        run_id = None
        result = None
        try:
            if self.history is not None:
                run_id = await self.history.start_run(stage, session_id)
            result = await work()

        except SyncException as e:
            logger.error(f"{stage.value} failed: {e.message}", extra={"error_context": e.to_dict()})
            result = self._failure(stage, e.message, session_id)

        except Exception as e:
            logger.exception(f"Unexpected error in {stage.value}")
            result = self._failure(stage, f"Unexpected error: {e}", session_id)

        finally:
            if result is not None and result.needs_continue:
                await self.lock.suspend()
            else:
                await self.lock.release()

        if self.history is not None and run_id is not None:
            try:
                await self.history.complete_run(run_id, result)
            except Exception as e:
                logger.error(f"Failed to record sync run {run_id}: {e}")

        return result

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    async def _fetch_tree(self, use_snapshot: bool = False) -> CategoryTree:
        payload = self.manifests.load_sidebar() if use_snapshot else None
        if payload is None:
            async with self.client as client:
                payload = await client.fetch_sidebar()
            self.manifests.save_sidebar(payload)
        return CategoryTree.from_sidebar(payload)

    async def run_stage_1(self, session_id: Optional[str] = None) -> SyncResult:
        """Sync categories and procedures into local taxonomy terms"""
        session_id = session_id or new_session_id()

        async def work() -> SyncResult:
            self.progress.begin(SyncStage.TAXONOMY, session_id)
            tree = await self._fetch_tree()
            if not tree.categories:
                return self._failure(SyncStage.TAXONOMY, "Catalog returned no categories", session_id)

            async with self._entity_store() as store:
                result = await TaxonomySync(store, self.progress).sync(tree)
            result.session_id = session_id
            return result

        return await self._guarded(SyncStage.TAXONOMY, session_id, work)

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    async def run_stage_2(self, force: bool = False, session_id: Optional[str] = None) -> SyncResult:
        """
        Build today's manifest, reusing an existing snapshot unless forced.

        A forced rebuild is refused while a Stage 3 run holds a checkpoint.
        """
        session_id = session_id or new_session_id()

        async def work() -> SyncResult:
            existing = self.manifests.load()
            if existing is not None and not force:
                return SyncResult(
                    success=True,
                    stage=SyncStage.MANIFEST,
                    status=SyncStatus.COMPLETED,
                    session_id=session_id,
                    total=existing.total_cases(),
                    message=f"Manifest already built for {date.today().isoformat()}",
                    details={"reused": True, "procedures": len(existing.procedures)},
                )

            if force and await self.checkpoints.load() is not None:
                raise ManifestError("Cannot rebuild the manifest while a Stage 3 run is in progress")

            self.progress.begin(SyncStage.MANIFEST, session_id)
            tree = await self._fetch_tree(use_snapshot=True)

            async with self.client as client:
                builder = ManifestBuilder(client, progress=self.progress)
                manifest = await builder.build(tree)

            if manifest.is_empty() and builder.errors:
                return self._failure(
                    SyncStage.MANIFEST,
                    "Manifest build failed for every procedure",
                    session_id,
                    errors=builder.errors,
                )

            path = self.manifests.save(manifest)
            return SyncResult(
                success=True,
                stage=SyncStage.MANIFEST,
                status=SyncStatus.COMPLETED,
                session_id=session_id,
                processed=len(manifest.procedures),
                failed=len(builder.errors),
                total=manifest.total_cases(),
                errors=builder.errors,
                warnings=builder.warnings,
                message=f"Manifest built: {len(manifest.procedures)} procedures, {manifest.total_cases()} cases",
                details={"file_path": str(path), "reused": False},
            )

        return await self._guarded(SyncStage.MANIFEST, session_id, work)

    # ------------------------------------------------------------------
    # Stage 3
    # ------------------------------------------------------------------

    async def _resolve_run(self) -> Optional[tuple]:
        """
        Find the checkpoint and manifest for the next Stage 3 invocation.

        Returns:
            (checkpoint, manifest, fresh); ``fresh`` is True when no run was in
            progress and a new checkpoint was created

        Raises:
            ManifestError: No manifest for a new run, or the checkpoint's
                snapshot is gone
            CheckpointError: Stored checkpoint unreadable
        """
        checkpoint = await self.checkpoints.load()
        if checkpoint is not None:
            manifest = self.manifests.load(checkpoint.manifest_date)
            if manifest is None:
                raise ManifestError(
                    "Manifest snapshot for the checkpointed run is missing",
                    context={"manifest_date": checkpoint.manifest_date, "session_id": checkpoint.session_id}
                )
            if checkpoint.total_cases is None:
                checkpoint.total_cases = manifest.total_cases()
            return checkpoint, manifest, False

        manifest = self.manifests.load()
        if manifest is None:
            raise ManifestError(
                "No manifest for today; run Stage 2 first",
                context={"file_path": str(self.manifests.path_for())}
            )

        checkpoint = ProcessingCheckpoint(
            session_id=new_session_id(),
            total_cases=manifest.total_cases(),
            manifest_date=date.today().isoformat(),
        )
        return checkpoint, manifest, True

    async def run_stage_3(self, resume_paused: bool = True) -> SyncResult:
        """
        Run one Stage 3 invocation.

        Args:
            resume_paused: Continue a run that a stop request paused
        """
        try:
            checkpoint, manifest, fresh = await self._resolve_run()
        except (ManifestError, CheckpointError) as e:
            logger.error(f"Stage 3 not started: {e.message}", extra={"error_context": e.to_dict()})
            return self._failure(SyncStage.CASES, e.message)

        if checkpoint.paused:
            if not resume_paused:
                return SyncResult(
                    success=True,
                    stage=SyncStage.CASES,
                    status=SyncStatus.SKIPPED,
                    session_id=checkpoint.session_id,
                    message="Run is paused by a stop request",
                )
            checkpoint.paused = False

        async def work() -> SyncResult:
            if fresh:
                # A stop sent while no run was active must not end this one
                await self.stop_flag.clear()
            async with self._entity_store() as store:
                async with self.client as client:
                    processor = BatchProcessor(
                        client=client,
                        entity_store=store,
                        checkpoint_store=self.checkpoints,
                        progress=self.progress,
                        guard=self.guard_factory(),
                        batch_size=self.batch_size,
                    )
                    result = await processor.run(manifest, checkpoint, CancellationToken(self.stop_flag))

            if result.status == SyncStatus.COMPLETED.value:
                await self._store_last_run(checkpoint)
            return result

        return await self._guarded(SyncStage.CASES, checkpoint.session_id, work)

    async def _store_last_run(self, checkpoint: ProcessingCheckpoint):
        summary = LastRunSummary(
            session_id=checkpoint.session_id,
            started_at=checkpoint.started_at,
            created=checkpoint.created_count,
            updated=checkpoint.updated_count,
            failed=checkpoint.failed_count,
            skipped=checkpoint.skipped_count,
            processed=checkpoint.processed_count,
            total=checkpoint.total_cases or 0,
            errors=checkpoint.errors,
        )
        await self.state.set(LAST_RUN_KEY, summary.model_dump(mode="json"))

    async def last_run(self) -> Optional[LastRunSummary]:
        raw = await self.state.get(LAST_RUN_KEY)
        return LastRunSummary.model_validate(raw) if raw else None

    # ------------------------------------------------------------------
    # Drivers and control
    # ------------------------------------------------------------------

    async def run_next(self) -> SyncResult:
        """Continue an in-progress Stage 3 run; no-op when none is pending"""
        try:
            checkpoint = await self.checkpoints.load()
        except CheckpointError as e:
            return self._failure(SyncStage.CASES, e.message)

        if checkpoint is None:
            return SyncResult(
                success=True,
                stage=SyncStage.CASES,
                status=SyncStatus.SKIPPED,
                message="No sync in progress",
            )
        return await self.run_stage_3(resume_paused=False)

    async def run_full(self, force_manifest: bool = False, max_invocations: int = 1000) -> List[SyncResult]:
        """
        Run stages 1-3 in this process until Stage 3 stops asking to continue.

        An existing checkpoint is resumed directly; stages 1 and 2 only run
        for a fresh sync.
        """
        results: List[SyncResult] = []
        try:
            resuming = await self.checkpoints.load() is not None
        except CheckpointError as e:
            return [self._failure(SyncStage.CASES, e.message)]

        if not resuming:
            results.append(await self.run_stage_1())
            if not results[-1].success:
                return results

            results.append(await self.run_stage_2(force=force_manifest))
            if not results[-1].success:
                return results

        for _ in range(max_invocations):
            result = await self.run_stage_3()
            results.append(result)
            if not result.needs_continue:
                break
        return results

    async def request_stop(self, requested_by: Optional[str] = None):
        await self.stop_flag.request(requested_by)

    async def abort(self) -> SyncResult:
        """Discard the in-progress run: checkpoint, lock and progress"""
        checkpoint = None
        try:
            checkpoint = await self.checkpoints.load()
        except CheckpointError as e:
            logger.warning(f"Discarding unreadable checkpoint: {e.message}")

        await self.checkpoints.clear()
        await self.lock.release()
        await self.progress.clear()

        return SyncResult(
            success=True,
            stage=SyncStage.CASES,
            status=SyncStatus.ABORTED,
            session_id=checkpoint.session_id if checkpoint else None,
            processed=checkpoint.processed_count if checkpoint else 0,
            message="Sync aborted; checkpoint cleared",
        )

    async def status(self) -> Dict[str, Any]:
        """Snapshot of pipeline state for the API"""
        try:
            checkpoint = await self.checkpoints.load()
        except CheckpointError:
            checkpoint = None
        return {
            "job_active": await self.lock.is_running(),
            "lock_holder": await self.lock.holder(),
            "stop_requested": await self.stop_flag.is_requested(),
            "checkpoint": checkpoint,
            "last_run": await self.last_run(),
            "checked_at": datetime.utcnow(),
        }
