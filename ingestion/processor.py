"""
Stage 3: checkpointed batch processing of the manifest.

One call to ``BatchProcessor.run()`` is one invocation: it resumes from the
checkpoint cursor, handles at most ``batch_size`` manifest entries and
returns one of three outcomes:

    COMPLETED   cursor moved past the last procedure; order list flushed,
                orphaned records removed, checkpoint cleared
    CONTINUING  batch size or a resource budget reached; checkpoint saved,
                caller invokes again later
    ABORTED     stop requested; checkpoint saved and paused

Case details are fetched concurrently in small groups. Every write to the
entity store and the checkpoint happens sequentially, one case at a time.
"""

from datetime import datetime
from typing import Dict, List, Optional, Union
from core.config import settings
from core.exceptions import DataIntegrityWarning, ResourceExhaustion, SyncException
from ingestion.cancellation import CancellationToken
from ingestion.checkpoint import CheckpointStore
from ingestion.client import CatalogAPIClient
from ingestion.entity_store import CategoryRef, EntityStore
from ingestion.guard import ResourceGuard
from ingestion.progress import ProgressReporter
from ingestion.transformer import CaseTransformer
from models.base import SyncStage, SyncStatus
from schemas.remote_case import RemoteCase
from schemas.sync import (
    CaseError,
    CaseOutcome,
    CaseResult,
    Manifest,
    OrderEntry,
    ProcessingCheckpoint,
    SyncResult,
    composite_key,
)
import logging

logger = logging.getLogger(__name__)

ACTION_LABELS = {
    "created": "CREATE",
    "updated": "UPDATE",
    "skipped": "SKIP",
    "duplicate": "DUPLICATE",
}


class BatchProcessor:
    """
    Drive the entity store towards the remote catalog, one bounded batch
    per invocation.

    Attributes:
        batch_size: Manifest entries handled per invocation
        checkpoint_interval: Save the checkpoint every N entries
        progress_interval: Publish progress every N entries
    """

    def __init__(
        self,
        client: CatalogAPIClient,
        entity_store: EntityStore,
        checkpoint_store: CheckpointStore,
        progress: ProgressReporter,
        guard: Optional[ResourceGuard] = None,
        transformer: Optional[CaseTransformer] = None,
        batch_size: Optional[int] = None,
        checkpoint_interval: Optional[int] = None,
        progress_interval: Optional[int] = None
    ):
        self.client = client
        self.store = entity_store
        self.checkpoints = checkpoint_store
        self.progress = progress
        self.guard = guard or ResourceGuard()
        self.transformer = transformer or CaseTransformer()
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.checkpoint_interval = checkpoint_interval or settings.CHECKPOINT_INTERVAL
        self.progress_interval = progress_interval or settings.PROGRESS_INTERVAL
        self._categories: Dict[str, Optional[CategoryRef]] = {}

    async def _category_for(self, procedure_id: Union[int, str]) -> Optional[CategoryRef]:
        key = str(procedure_id)
        if key not in self._categories:
            self._categories[key] = await self.store.find_category_by_external_id(key)
        return self._categories[key]

    async def _category_ids_for(self, case, procedure_id: str, category: CategoryRef) -> List[int]:
        """Primary category first, then every other known category the case lists"""
        category_ids = [category.id]
        for other_id in case.procedure_ids:
            if str(other_id) == procedure_id:
                continue
            other = await self._category_for(other_id)
            if other is not None and other.id not in category_ids:
                category_ids.append(other.id)
        return category_ids

    # ------------------------------------------------------------------
    # Per-case handling
    # ------------------------------------------------------------------

    async def process_case(
        self,
        procedure_id: str,
        case_id: int,
        category: CategoryRef,
        fetched: Union[RemoteCase, SyncException, None],
        position: int,
        seen: set
    ) -> CaseResult:
        """Upsert one fetched case; never raises"""
        key = composite_key(procedure_id, case_id)
        if key in seen:
            return CaseOutcome(action="duplicate", procedure_id=procedure_id, case_id=str(case_id))

        if fetched is None or isinstance(fetched, Exception):
            return CaseError(
                procedure_id=procedure_id,
                case_id=str(case_id),
                error_type=type(fetched).__name__ if fetched is not None else "TransportError",
                message=getattr(fetched, "message", None) or "No detail record fetched",
            )

        try:
            case = fetched.normalize()
            local_id = await self.store.find_by_external_id(procedure_id, case_id)

            if not case.is_for_website:
                if local_id is not None:
                    await self.store.delete(local_id)
                    await self.store.commit()
                    logger.info(f"Deleted case {case_id} (procedure {procedure_id}): not approved for website")
                return CaseOutcome(
                    action="skipped",
                    procedure_id=procedure_id,
                    case_id=str(case_id),
                    local_id=local_id,
                    message="Not approved for website",
                )

            fields = self.transformer.to_fields(case, procedure_id, category.name, datetime.utcnow())
            if local_id is None:
                local_id = await self.store.create(fields)
                action = "created"
            else:
                await self.store.update(local_id, fields)
                action = "updated"

            await self.store.assign_category(local_id, await self._category_ids_for(case, procedure_id, category))
            await self.store.set_order(local_id, category.id, position)
            await self.store.commit()

        except Exception as e:
            await self.store.rollback()
            logger.error(
                f"Failed to process case {case_id} (procedure {procedure_id}): {e}",
                extra={"error_context": {"procedure_id": procedure_id, "case_id": case_id}}
            )
            return CaseError(
                procedure_id=procedure_id,
                case_id=str(case_id),
                error_type=type(e).__name__,
                message=getattr(e, "message", None) or str(e),
            )

        return CaseOutcome(action=action, procedure_id=procedure_id, case_id=str(case_id), local_id=local_id)

    def apply_result(self, checkpoint: ProcessingCheckpoint, result: CaseResult, seen: set):
        """Fold one case result into the running counters"""
        checkpoint.processed_count += 1

        if isinstance(result, CaseError):
            checkpoint.failed_count += 1
            checkpoint.errors.append(result.describe())
            return

        if result.action == "duplicate":
            checkpoint.warnings.append(
                f"Duplicate case {result.case_id} in procedure {result.procedure_id} skipped"
            )
            return

        if result.action == "skipped":
            checkpoint.skipped_count += 1
            return

        key = composite_key(result.procedure_id, result.case_id)
        seen.add(key)
        checkpoint.seen_keys.append(key)
        checkpoint.written_ids.append(result.local_id)
        checkpoint.current_order.append(OrderEntry(local_id=result.local_id, external_id=result.case_id))
        if result.action == "created":
            checkpoint.created_count += 1
        else:
            checkpoint.updated_count += 1

    # ------------------------------------------------------------------
    # Procedure boundaries
    # ------------------------------------------------------------------

    @staticmethod
    def _advance_procedure(checkpoint: ProcessingCheckpoint):
        checkpoint.procedure_index += 1
        checkpoint.case_index = 0
        checkpoint.current_order = []

    async def _finish_procedure(self, checkpoint: ProcessingCheckpoint, procedure_id: str, category: CategoryRef):
        """Store the procedure's order list, then move the cursor on"""
        await self.store.store_category_order(category.id, checkpoint.current_order)
        await self.store.commit()
        logger.info(f"Stored order list for {category.name}: {len(checkpoint.current_order)} cases")
        checkpoint.completed_procedures.append(procedure_id)
        self._advance_procedure(checkpoint)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    @staticmethod
    def _warn(checkpoint: ProcessingCheckpoint, warning: DataIntegrityWarning):
        checkpoint.warnings.append(warning.message)
        logger.warning(warning.message, extra={"error_context": warning.to_dict()})

    def _check_invariant(self, checkpoint: ProcessingCheckpoint):
        """Created plus updated must equal the distinct local records written"""
        unique = len(set(checkpoint.written_ids))
        if checkpoint.distinct_successes() != unique:
            message = (
                f"Case count mismatch: Created ({checkpoint.created_count}) + "
                f"Updated ({checkpoint.updated_count}) = {checkpoint.distinct_successes()}, "
                f"but unique cases processed = {unique}"
            )
            self._warn(checkpoint, DataIntegrityWarning(message, context={"session_id": checkpoint.session_id}))

    def _check_cross_procedure(self, checkpoint: ProcessingCheckpoint):
        duplicates = checkpoint.cross_procedure_duplicates()
        if duplicates:
            message = (
                f"Found {len(duplicates)} duplicate case IDs in multiple procedures: "
                f"{', '.join(duplicates)}"
            )
            self._warn(checkpoint, DataIntegrityWarning(message, context={"session_id": checkpoint.session_id}))

    async def _remove_orphans(self, manifest: Manifest, checkpoint: ProcessingCheckpoint) -> int:
        """
        Delete local cases that dropped out of the remote catalog.

        Only procedures whose case lists were fully handled in this run are
        reconciled; a procedure that was skipped or aborted keeps its records.
        """
        procedures = list(dict.fromkeys(checkpoint.completed_procedures))
        if not procedures:
            return 0

        keep_keys = {
            composite_key(procedure_id, case_id)
            for procedure_id in procedures
            for case_id in manifest.cases_for(procedure_id)
        }
        try:
            removed = await self.store.remove_orphans(procedures, keep_keys)
            await self.store.commit()
        except Exception as e:
            await self.store.rollback()
            message = f"Orphan cleanup failed: {e}"
            checkpoint.errors.append(message)
            logger.error(message, extra={"error_context": {"session_id": checkpoint.session_id}})
            return 0

        if removed:
            logger.info(f"Removed {len(removed)} orphaned cases no longer listed remotely")
        return len(removed)

    async def run(
        self,
        manifest: Manifest,
        checkpoint: ProcessingCheckpoint,
        cancellation: Optional[CancellationToken] = None
    ) -> SyncResult:
        """Run one invocation from the checkpoint cursor"""
        cancellation = cancellation or CancellationToken()
        if checkpoint.total_cases is None:
            checkpoint.total_cases = manifest.total_cases()

        self.guard.start()
        self.progress.begin(SyncStage.CASES, checkpoint.session_id, expected_total=checkpoint.total_cases)
        await self.progress.restore()

        procedure_ids = manifest.procedure_ids()
        seen = set(checkpoint.seen_keys)
        handled = 0
        status = SyncStatus.RUNNING
        stop_message = None

        logger.info(
            f"Stage 3 invocation for session {checkpoint.session_id}: starting at "
            f"procedure {checkpoint.procedure_index}/{len(procedure_ids)}, case {checkpoint.case_index}"
        )

        try:
            while handled < self.batch_size and checkpoint.procedure_index < len(procedure_ids):
                if await cancellation.check():
                    status = SyncStatus.ABORTED
                    stop_message = cancellation.reason
                    break

                self.guard.check()

                procedure_id = procedure_ids[checkpoint.procedure_index]
                case_ids = manifest.cases_for(procedure_id)

                try:
                    category = await self._category_for(procedure_id)
                    if category is None:
                        self._warn(checkpoint, DataIntegrityWarning(
                            f"No local category for procedure {procedure_id}; "
                            f"skipping {len(case_ids) - checkpoint.case_index} cases",
                            context={"procedure_id": procedure_id}
                        ))
                        self._advance_procedure(checkpoint)
                        continue

                    if checkpoint.case_index >= len(case_ids):
                        await self._finish_procedure(checkpoint, procedure_id, category)
                        continue

                    start = checkpoint.case_index
                    take = min(self.client.concurrency, self.batch_size - handled, len(case_ids) - start)
                    group = case_ids[start:start + take]

                    to_fetch = [c for c in group if composite_key(procedure_id, c) not in seen]
                    fetched = dict(await self.client.fetch_case_details(to_fetch, [procedure_id])) if to_fetch else {}

                    for offset, case_id in enumerate(group):
                        position = start + offset + 1
                        result = await self.process_case(
                            procedure_id, case_id, category, fetched.get(case_id), position, seen
                        )
                        self.apply_result(checkpoint, result, seen)
                        checkpoint.case_index += 1
                        handled += 1

                        self.progress.note_case(
                            ACTION_LABELS.get(getattr(result, "action", None), "FAIL"),
                            position, len(case_ids), category.name, procedure_id, case_id
                        )
                        if handled % self.progress_interval == 0:
                            await self.progress.publish(
                                processed=checkpoint.processed_count,
                                current_step=f"Processing case {position} of {len(case_ids)} for {category.name}",
                                current_procedure=category.name,
                                procedure_current=checkpoint.procedure_index + 1,
                                procedure_total=len(procedure_ids),
                                case_current=position,
                                case_total=len(case_ids),
                            )
                        if handled % self.checkpoint_interval == 0:
                            await self.checkpoints.save(checkpoint)

                    if checkpoint.case_index >= len(case_ids):
                        await self._finish_procedure(checkpoint, procedure_id, category)

                except ResourceExhaustion:
                    raise
                except Exception as e:
                    message = f"Procedure {procedure_id} aborted: {e}"
                    checkpoint.errors.append(message)
                    logger.error(message, extra={"error_context": {"procedure_id": procedure_id}})
                    await self.store.rollback()
                    self._advance_procedure(checkpoint)

        except ResourceExhaustion as e:
            status = SyncStatus.CONTINUING
            checkpoint.warnings.append(f"Invocation suspended: {e.message}")
            logger.warning(f"Stage 3 suspended by resource guard: {e}")

        total = checkpoint.total_cases or 0
        finished = checkpoint.procedure_index >= len(procedure_ids)
        orphans_removed = 0

        if status == SyncStatus.RUNNING:
            status = SyncStatus.COMPLETED if finished else SyncStatus.CONTINUING

        if status == SyncStatus.COMPLETED:
            self._check_invariant(checkpoint)
            self._check_cross_procedure(checkpoint)
            orphans_removed = await self._remove_orphans(manifest, checkpoint)
            await self.checkpoints.clear()
            await self.progress.publish(
                processed=checkpoint.processed_count,
                current_step="Stage 3 complete",
                procedure_current=len(procedure_ids),
                procedure_total=len(procedure_ids),
                completed=True,
            )
            message = (
                f"Stage 3 complete: {checkpoint.created_count} created, {checkpoint.updated_count} updated, "
                f"{checkpoint.failed_count} failed, {checkpoint.skipped_count} skipped, "
                f"{orphans_removed} orphans removed"
            )
        elif status == SyncStatus.ABORTED:
            checkpoint.paused = True
            await self.checkpoints.save(checkpoint)
            await self.progress.publish(
                processed=checkpoint.processed_count,
                current_step=stop_message,
                procedure_current=checkpoint.procedure_index,
                procedure_total=len(procedure_ids),
            )
            message = stop_message
        else:
            await self.checkpoints.save(checkpoint)
            message = f"Processed {checkpoint.processed_count}/{total} cases; continuing"

        logger.info(f"Stage 3 invocation finished with status {status.value}: {message}")

        return SyncResult(
            success=status != SyncStatus.ABORTED,
            stage=SyncStage.CASES,
            status=status,
            session_id=checkpoint.session_id,
            created=checkpoint.created_count,
            updated=checkpoint.updated_count,
            failed=checkpoint.failed_count,
            skipped=checkpoint.skipped_count,
            processed=checkpoint.processed_count,
            total=total,
            needs_continue=status == SyncStatus.CONTINUING,
            errors=checkpoint.errors,
            warnings=checkpoint.warnings,
            message=message,
            details={
                "procedure_index": checkpoint.procedure_index,
                "case_index": checkpoint.case_index,
                "handled_this_invocation": handled,
                "orphans_removed": orphans_removed,
            },
        )
