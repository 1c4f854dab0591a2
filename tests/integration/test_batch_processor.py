# ============================================================================
# File: tests/integration/test_batch_processor.py
# ============================================================================

import pytest
from unittest.mock import Mock
from ingestion.cancellation import CancellationToken, StoredStopFlag
from ingestion.checkpoint import CheckpointStore
from ingestion.guard import ResourceGuard
from ingestion.processor import BatchProcessor
from ingestion.progress import ProgressReporter
from schemas.sync import Manifest, ProcessingCheckpoint
from tests.conftest import make_case, make_client, quiet_guard


MANIFEST = Manifest(procedures={"101": [5001, 5002, 5003]})


@pytest.fixture
def tummy_tuck(entity_store):
    return entity_store.add_category("Tummy Tuck", external_id="101")


def make_processor(catalog, entity_store, state_store, batch_size=2, guard=None, **client_kwargs):
    return BatchProcessor(
        client=make_client(catalog, **client_kwargs),
        entity_store=entity_store,
        checkpoint_store=CheckpointStore(state_store),
        progress=ProgressReporter(state_store),
        guard=guard or quiet_guard(),
        batch_size=batch_size,
        checkpoint_interval=10,
        progress_interval=1,
    )


async def run_once(catalog, entity_store, state_store, manifest=MANIFEST, checkpoint=None, **kwargs):
    """One invocation, resuming from the stored checkpoint like the pipeline does"""
    store = CheckpointStore(state_store)
    checkpoint = checkpoint or await store.load(manifest) or ProcessingCheckpoint(session_id="session-1")
    processor = make_processor(catalog, entity_store, state_store, **kwargs)
    async with processor.client:
        return await processor.run(manifest, checkpoint, CancellationToken(StoredStopFlag(state_store)))


@pytest.mark.asyncio
async def test_batches_resume_until_complete(catalog, entity_store, state_store, tummy_tuck):
    """
    Three cases with batch size 2:
    1. First invocation handles two cases and saves the cursor
    2. Second invocation resumes at the third case and completes
    3. Order list holds all three cases in manifest order
    """

    # -------------------------------------------------------
    # STEP 1: First invocation
    # -------------------------------------------------------
    first = await run_once(catalog, entity_store, state_store)

    assert first.status == "continuing"
    assert first.needs_continue is True
    assert first.created == 2
    assert first.details["case_index"] == 2

    saved = await CheckpointStore(state_store).load()
    assert saved.procedure_index == 0
    assert saved.case_index == 2
    assert saved.seen_keys == ["101:5001", "101:5002"]
    assert entity_store.orders == {}

    # -------------------------------------------------------
    # STEP 2: Second invocation
    # -------------------------------------------------------
    second = await run_once(catalog, entity_store, state_store)

    assert second.status == "completed"
    assert second.needs_continue is False
    assert second.created == 3
    assert second.processed == 3
    assert second.total == 3
    assert second.warnings == []
    assert await CheckpointStore(state_store).load() is None

    # -------------------------------------------------------
    # STEP 3: Stored records and order
    # -------------------------------------------------------
    records = entity_store.records_for(101)
    assert [r["case_external_id"] for r in records] == ["5001", "5002", "5003"]
    assert [r["case_order"] for r in records] == [1, 2, 3]
    assert all(r["procedure_term_id"] == tummy_tuck for r in records)

    order = entity_store.orders[tummy_tuck]
    assert [entry["external_id"] for entry in order] == ["5001", "5002", "5003"]
    assert await entity_store.get_ordered_case_ids(101) == list(entity_store.records)

    # Only three detail requests in total: nothing fetched twice
    assert sorted(catalog.detail_requests()) == [5001, 5002, 5003]

    progress = await ProgressReporter(state_store).read()
    assert progress.overall_percentage == 100.0


@pytest.mark.asyncio
async def test_rerun_updates_instead_of_duplicating(catalog, entity_store, state_store, tummy_tuck):
    await run_once(catalog, entity_store, state_store, batch_size=10)

    result = await run_once(
        catalog, entity_store, state_store, batch_size=10,
        checkpoint=ProcessingCheckpoint(session_id="session-2")
    )

    assert result.status == "completed"
    assert result.created == 0
    assert result.updated == 3
    assert len(entity_store.records) == 3


@pytest.mark.asyncio
async def test_case_not_for_website_removed(catalog, entity_store, state_store, tummy_tuck):
    await run_once(catalog, entity_store, state_store, batch_size=10)
    catalog.details[5002] = {"success": True, "data": {"case": make_case(5002, [101], isForWebsite=False)}}

    result = await run_once(
        catalog, entity_store, state_store, batch_size=10,
        checkpoint=ProcessingCheckpoint(session_id="session-2")
    )

    assert result.skipped == 1
    assert result.updated == 2
    assert [r["case_external_id"] for r in entity_store.records_for(101)] == ["5001", "5003"]
    assert [entry["external_id"] for entry in entity_store.orders[tummy_tuck]] == ["5001", "5003"]


@pytest.mark.asyncio
async def test_failed_fetch_recorded_and_batch_continues(catalog, entity_store, state_store, tummy_tuck):
    catalog.failing.add(5002)

    result = await run_once(catalog, entity_store, state_store, batch_size=10)

    assert result.status == "completed"
    assert result.created == 2
    assert result.failed == 1
    assert result.processed == 3
    assert "Case 5002" in result.errors[0]
    assert "TransportError" in result.errors[0]


@pytest.mark.asyncio
async def test_write_failure_rolled_back(catalog, entity_store, state_store, tummy_tuck):
    entity_store.fail_case_ids.add("5003")

    result = await run_once(catalog, entity_store, state_store, batch_size=10)

    assert result.failed == 1
    assert "EntityStoreError" in result.errors[0]
    assert entity_store.rollbacks == 1
    assert len(entity_store.records) == 2


@pytest.mark.asyncio
async def test_duplicate_case_in_manifest(catalog, entity_store, state_store, tummy_tuck):
    manifest = Manifest(procedures={"101": [5001, 5001, 5002]})

    result = await run_once(catalog, entity_store, state_store, manifest=manifest, batch_size=10)

    assert result.status == "completed"
    assert result.created == 2
    assert result.processed == 3
    assert any("Duplicate case 5001" in w for w in result.warnings)
    assert not any("mismatch" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_missing_category_skips_procedure(catalog, entity_store, state_store, tummy_tuck):
    manifest = Manifest(procedures={"999": [1, 2], "101": [5001]})

    result = await run_once(catalog, entity_store, state_store, manifest=manifest, batch_size=10)

    assert result.status == "completed"
    assert result.created == 1
    assert any("No local category for procedure 999" in w for w in result.warnings)
    assert 1 not in catalog.detail_requests()


@pytest.mark.asyncio
async def test_case_assigned_to_every_known_procedure(catalog, entity_store, state_store, tummy_tuck):
    lipo = entity_store.add_category("Liposuction", external_id="102")
    catalog.details[5001] = {"success": True, "data": {"case": make_case(5001, [101, 102, 555])}}

    await run_once(catalog, entity_store, state_store, batch_size=10)

    record = entity_store.records_for(101)[0]
    assert record["procedure_term_ids"] == [tummy_tuck, lipo]


@pytest.mark.asyncio
async def test_stop_request_pauses_run(catalog, entity_store, state_store, tummy_tuck):
    await StoredStopFlag(state_store).request("tester")

    result = await run_once(catalog, entity_store, state_store)

    assert result.status == "aborted"
    assert result.success is False
    assert result.processed == 0
    assert result.message == "Sync stopped by user request"

    saved = await CheckpointStore(state_store).load()
    assert saved.paused is True
    assert saved.case_index == 0
    assert await StoredStopFlag(state_store).is_requested() is False


@pytest.mark.asyncio
async def test_memory_budget_suspends_invocation(catalog, entity_store, state_store, tummy_tuck):
    rss_readings = Mock(side_effect=[10.0, 1000.0])
    guard = ResourceGuard(memory_limit_mb=100, time_budget_seconds=3600, memory_probe=rss_readings)

    result = await run_once(catalog, entity_store, state_store, batch_size=10, guard=guard)

    assert result.status == "continuing"
    assert result.needs_continue is True
    assert result.processed == 2
    assert any("Invocation suspended" in w for w in result.warnings)

    saved = await CheckpointStore(state_store).load()
    assert saved.case_index == 2


@pytest.mark.asyncio
async def test_case_listed_under_two_procedures_warns(catalog, entity_store, state_store, tummy_tuck):
    entity_store.add_category("Liposuction", external_id="102")
    manifest = Manifest(procedures={"101": [5001, 5002], "102": [5001]})

    result = await run_once(catalog, entity_store, state_store, manifest=manifest, batch_size=10)

    assert result.status == "completed"
    assert result.created == 3
    assert "Found 1 duplicate case IDs in multiple procedures: 5001" in result.warnings
    assert not any("mismatch" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_store_reusing_record_id_flags_count_mismatch(catalog, entity_store, state_store, tummy_tuck):
    original = entity_store.create

    async def create(fields):
        # Store hands back the row it wrote for 5001 instead of a new one
        if fields["case_external_id"] == "5002":
            return await entity_store.find_by_external_id("101", 5001)
        return await original(fields)

    entity_store.create = create

    result = await run_once(catalog, entity_store, state_store, batch_size=10)

    assert result.status == "completed"
    assert result.created == 3
    assert (
        "Case count mismatch: Created (3) + Updated (0) = 3, but unique cases processed = 2"
        in result.warnings
    )


@pytest.mark.asyncio
async def test_cases_dropped_remotely_are_removed(catalog, entity_store, state_store, tummy_tuck):
    """
    Second run after the catalog dropped case 5002:
    1. 5002 is deleted from the completed procedure
    2. A case whose fetch failed is still listed, so it stays
    3. Procedures outside this run's manifest are left alone
    """
    entity_store.add_category("Facelift", external_id="201")
    await run_once(
        catalog, entity_store, state_store, batch_size=10,
        manifest=Manifest(procedures={"101": [5001, 5002, 5003], "201": [7001]})
    )
    assert len(entity_store.records) == 4
    catalog.failing.add(5003)

    result = await run_once(
        catalog, entity_store, state_store, batch_size=10,
        manifest=Manifest(procedures={"101": [5001, 5003]}),
        checkpoint=ProcessingCheckpoint(session_id="session-2")
    )

    assert result.status == "completed"
    assert result.failed == 1
    assert result.details["orphans_removed"] == 1
    assert result.message.endswith("1 orphans removed")
    assert [r["case_external_id"] for r in entity_store.records_for(101)] == ["5001", "5003"]
    assert [r["case_external_id"] for r in entity_store.records_for(201)] == ["7001"]


@pytest.mark.asyncio
async def test_aborted_procedure_keeps_its_records(catalog, entity_store, state_store, tummy_tuck):
    await run_once(catalog, entity_store, state_store, batch_size=10)

    async def store_category_order(category_id, entries):
        raise RuntimeError("order column locked")

    entity_store.store_category_order = store_category_order

    result = await run_once(
        catalog, entity_store, state_store, batch_size=10,
        manifest=Manifest(procedures={"101": [5001]}),
        checkpoint=ProcessingCheckpoint(session_id="session-2")
    )

    assert result.status == "completed"
    assert any("Procedure 101 aborted" in e for e in result.errors)
    assert result.details["orphans_removed"] == 0
    assert len(entity_store.records_for(101)) == 3


@pytest.mark.asyncio
async def test_orphan_cleanup_not_run_before_completion(catalog, entity_store, state_store, tummy_tuck):
    await run_once(catalog, entity_store, state_store, batch_size=10)
    manifest = Manifest(procedures={"101": [5001, 5003]})
    checkpoint = ProcessingCheckpoint(session_id="session-2")

    first = await run_once(
        catalog, entity_store, state_store, batch_size=1, manifest=manifest, checkpoint=checkpoint
    )

    assert first.status == "continuing"
    assert first.details["orphans_removed"] == 0
    assert len(entity_store.records_for(101)) == 3

    second = await run_once(catalog, entity_store, state_store, batch_size=1, manifest=manifest)

    assert second.status == "completed"
    assert second.details["orphans_removed"] == 1
    assert [r["case_external_id"] for r in entity_store.records_for(101)] == ["5001", "5003"]


@pytest.mark.asyncio
async def test_processed_reaching_total_does_not_complete_early(catalog, entity_store, state_store, tummy_tuck):
    checkpoint = ProcessingCheckpoint(session_id="session-1", total_cases=2)

    first = await run_once(catalog, entity_store, state_store, checkpoint=checkpoint)

    assert first.processed == 2
    assert first.status == "continuing"
    assert (await CheckpointStore(state_store).load()).case_index == 2

    second = await run_once(catalog, entity_store, state_store)

    assert second.status == "completed"
    assert second.created == 3
