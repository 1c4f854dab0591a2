"""
Unit tests for the entity store adapter and taxonomy sync
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import IntegrityError, OperationalError
from core.exceptions import EntityStoreError
from ingestion.entity_store import SQLAlchemyEntityStore
from ingestion.progress import ProgressReporter
from ingestion.taxonomy import TaxonomySync
from models.base import SyncStage
from schemas.catalog import CategoryTree
from schemas.sync import OrderEntry
from tests.conftest import make_sidebar


def scalar_result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    return result


class TestSQLAlchemyEntityStore:
    """Test the SQLAlchemy adapter against a mocked session"""

    @pytest.mark.asyncio
    async def test_find_by_external_id(self):
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(return_value=scalar_result(12))

        store = SQLAlchemyEntityStore(mock_session)
        local_id = await store.find_by_external_id(101, 5001)

        assert local_id == 12
        mock_session.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_create_flushes_without_commit(self):
        mock_session = MagicMock()
        mock_session.flush = AsyncMock()
        mock_session.commit = AsyncMock()

        store = SQLAlchemyEntityStore(mock_session)
        await store.create({"procedure_external_id": "101", "case_external_id": "5001", "title": "Case"})

        mock_session.add.assert_called_once()
        mock_session.flush.assert_awaited_once()
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_failure_raises_entity_store_error(self):
        mock_session = MagicMock()
        mock_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate key")))

        store = SQLAlchemyEntityStore(mock_session)

        with pytest.raises(EntityStoreError) as exc_info:
            await store.create({"procedure_external_id": "101", "case_external_id": "5001"})

        assert exc_info.value.context["composite_key"] == "101:5001"
        assert exc_info.value.context["operation"] == "create"

    @pytest.mark.asyncio
    async def test_store_category_order(self):
        mock_session = AsyncMock()

        store = SQLAlchemyEntityStore(mock_session)
        await store.store_category_order(3, [OrderEntry(local_id=1, external_id="5001")])

        mock_session.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_get_ordered_case_ids(self):
        term = MagicMock(id=3, external_id="101", parent_id=1, slug="tummy-tuck")
        term.name = "Tummy Tuck"
        term_result = MagicMock()
        term_result.scalars.return_value.first.return_value = term
        order_result = scalar_result([
            {"local_id": 9, "external_id": "5002"},
            {"local_id": 4, "external_id": "5001"},
        ])
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=[term_result, order_result])

        store = SQLAlchemyEntityStore(mock_session)

        assert await store.get_ordered_case_ids(101) == [9, 4]

    @pytest.mark.asyncio
    async def test_get_ordered_case_ids_unknown_procedure(self):
        term_result = MagicMock()
        term_result.scalars.return_value.first.return_value = None
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(return_value=term_result)

        store = SQLAlchemyEntityStore(mock_session)

        assert await store.get_ordered_case_ids(999) == []

    @pytest.mark.asyncio
    async def test_remove_orphans_deletes_unlisted_rows(self):
        rows = [
            MagicMock(id=1, procedure_external_id="101", case_external_id="5001"),
            MagicMock(id=2, procedure_external_id="101", case_external_id="5002"),
            MagicMock(id=3, procedure_external_id="101", case_external_id="5003"),
        ]
        select_result = MagicMock()
        select_result.all.return_value = rows
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=[select_result, MagicMock()])

        store = SQLAlchemyEntityStore(mock_session)
        removed = await store.remove_orphans([101], {"101:5001", "101:5003"})

        assert removed == [2]
        assert mock_session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_remove_orphans_nothing_to_delete(self):
        select_result = MagicMock()
        select_result.all.return_value = [MagicMock(id=1, procedure_external_id="101", case_external_id="5001")]
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(return_value=select_result)

        store = SQLAlchemyEntityStore(mock_session)

        assert await store.remove_orphans(["101"], {"101:5001"}) == []
        mock_session.execute.assert_awaited_once()
        assert await store.remove_orphans([], set()) == []
        mock_session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remove_orphans_failure_raises_entity_store_error(self):
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("server closed")))

        store = SQLAlchemyEntityStore(mock_session)

        with pytest.raises(EntityStoreError) as exc_info:
            await store.remove_orphans(["101", "102"], set())

        assert exc_info.value.context["operation"] == "remove_orphans"
        assert exc_info.value.context["procedures"] == "101, 102"


class TestTaxonomySync:
    """Test Stage 1 against the in-memory entity store"""

    @pytest.mark.asyncio
    async def test_creates_terms_with_parents(self, entity_store):
        result = await TaxonomySync(entity_store).sync(CategoryTree.from_sidebar(make_sidebar()))

        assert result.success is True
        assert result.status == "completed"
        assert result.created == 6
        body = await entity_store.find_category_by_slug("body")
        tummy = await entity_store.find_category_by_external_id(101)
        assert tummy.parent_id == body.id
        assert entity_store.categories[tummy.id]["nudity"] is True
        assert entity_store.categories[tummy.id]["external_ids"] == [101]
        assert entity_store.categories[tummy.id]["total_cases"] == 3

    @pytest.mark.asyncio
    async def test_rerun_updates_in_place(self, entity_store):
        tree = CategoryTree.from_sidebar(make_sidebar())
        await TaxonomySync(entity_store).sync(tree)

        result = await TaxonomySync(entity_store).sync(tree)

        assert result.created == 0
        assert result.updated == 6
        assert len(entity_store.categories) == 6

    @pytest.mark.asyncio
    async def test_failed_term_rolled_back_and_reported(self, entity_store):
        original = entity_store.create_category

        async def create_category(fields):
            if fields["slug"] == "liposuction":
                raise RuntimeError("constraint violated")
            return await original(fields)

        entity_store.create_category = create_category

        result = await TaxonomySync(entity_store).sync(CategoryTree.from_sidebar(make_sidebar()))

        assert result.success is True
        assert result.failed == 1
        assert result.created == 5
        assert "Liposuction" in result.errors[0]
        assert entity_store.rollbacks == 1

    @pytest.mark.asyncio
    async def test_progress_published(self, entity_store, state_store):
        progress = ProgressReporter(state_store)
        progress.begin(SyncStage.TAXONOMY, "abc")

        await TaxonomySync(entity_store, progress).sync(CategoryTree.from_sidebar(make_sidebar()))

        snapshot = await progress.read()
        assert snapshot.stage == "stage_1"
        assert snapshot.current_procedure == "Face"
