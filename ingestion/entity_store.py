"""
Local entity store adapter.

EntityStore is the surface the pipeline writes through: case records keyed
by (procedure_external_id, case_external_id) and the taxonomy terms Stage 1
maintains. SQLAlchemyEntityStore implements it on the ``case_records`` and
``procedure_terms`` tables.

Writes are not committed by the individual operations; the processor
commits once per case so a failing case rolls back as a unit.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Union
from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import EntityStoreError
from models.case_record import CaseRecord
from models.procedure import ProcedureTerm
from schemas.sync import OrderEntry, composite_key
import logging

logger = logging.getLogger(__name__)


@dataclass
class CategoryRef:
    """Local taxonomy term as seen by the pipeline"""
    id: int
    name: str
    slug: str
    external_id: Optional[str] = None
    parent_id: Optional[int] = None


class EntityStore(ABC):
    """Persistence surface consumed by the pipeline"""

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_by_external_id(self, procedure_id: Union[int, str], case_id: Union[int, str]) -> Optional[int]:
        """Local ID of the record for a composite key, or None"""
        pass

    @abstractmethod
    async def create(self, fields: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def update(self, local_id: int, fields: Dict[str, Any]):
        pass

    @abstractmethod
    async def delete(self, local_id: int):
        pass

    @abstractmethod
    async def assign_category(self, local_id: int, category_ids: Sequence[int]):
        """Assign a record to one or more categories; the first is primary"""
        pass

    @abstractmethod
    async def set_order(self, local_id: int, category_id: int, index: int):
        pass

    @abstractmethod
    async def store_category_order(self, category_id: int, entries: List[OrderEntry]):
        pass

    @abstractmethod
    async def get_ordered_case_ids(self, procedure_external_id: Union[int, str]) -> List[int]:
        """Local case IDs of a procedure in remote display order"""
        pass

    @abstractmethod
    async def remove_orphans(self, procedure_external_ids: Sequence[str], keep_keys: Set[str]) -> List[int]:
        """
        Delete case records of the given procedures whose composite key is
        not in ``keep_keys``.

        Returns:
            Local IDs of the deleted records
        """
        pass

    @abstractmethod
    async def count_cases(self) -> int:
        pass

    # ------------------------------------------------------------------
    # Taxonomy
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_category_by_external_id(self, external_id: Union[int, str]) -> Optional[CategoryRef]:
        pass

    @abstractmethod
    async def find_category_by_slug(self, slug: str) -> Optional[CategoryRef]:
        pass

    @abstractmethod
    async def create_category(self, fields: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def update_category(self, category_id: int, fields: Dict[str, Any]):
        pass

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


def _write_context(fields: Dict[str, Any], operation: str) -> Dict[str, Any]:
    return {
        "composite_key": f"{fields.get('procedure_external_id')}:{fields.get('case_external_id')}",
        "operation": operation,
    }


def _category_ref(term: ProcedureTerm) -> CategoryRef:
    return CategoryRef(
        id=term.id,
        name=term.name,
        slug=term.slug,
        external_id=term.external_id,
        parent_id=term.parent_id,
    )


class SQLAlchemyEntityStore(EntityStore):
    """EntityStore on the case_records and procedure_terms tables"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def find_by_external_id(self, procedure_id, case_id) -> Optional[int]:
        result = await self.db.execute(
            select(CaseRecord.id).where(
                CaseRecord.procedure_external_id == str(procedure_id),
                CaseRecord.case_external_id == str(case_id)
            )
        )
        return result.scalar_one_or_none()

    async def create(self, fields: Dict[str, Any]) -> int:
        record = CaseRecord(**fields)
        self.db.add(record)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            raise EntityStoreError(
                "Failed to create case record",
                context=_write_context(fields, "create"),
                original_exception=e
            )
        return record.id

    async def update(self, local_id: int, fields: Dict[str, Any]):
        try:
            await self.db.execute(
                update(CaseRecord)
                .where(CaseRecord.id == local_id)
                .values(**fields, updated_at=datetime.utcnow())
            )
        except SQLAlchemyError as e:
            raise EntityStoreError(
                f"Failed to update case record {local_id}",
                context=_write_context(fields, "update"),
                original_exception=e
            )

    async def delete(self, local_id: int):
        await self.db.execute(delete(CaseRecord).where(CaseRecord.id == local_id))

    async def assign_category(self, local_id: int, category_ids: Sequence[int]):
        category_ids = list(category_ids)
        await self.db.execute(
            update(CaseRecord)
            .where(CaseRecord.id == local_id)
            .values(
                procedure_term_id=category_ids[0] if category_ids else None,
                procedure_term_ids=category_ids
            )
        )

    async def set_order(self, local_id: int, category_id: int, index: int):
        await self.db.execute(
            update(CaseRecord)
            .where(CaseRecord.id == local_id)
            .values(case_order=index)
        )

    async def store_category_order(self, category_id: int, entries: List[OrderEntry]):
        await self.db.execute(
            update(ProcedureTerm)
            .where(ProcedureTerm.id == category_id)
            .values(
                case_order_list=[entry.model_dump() for entry in entries],
                updated_at=datetime.utcnow()
            )
        )

    async def get_ordered_case_ids(self, procedure_external_id) -> List[int]:
        category = await self.find_category_by_external_id(procedure_external_id)
        if category is None:
            return []
        result = await self.db.execute(
            select(ProcedureTerm.case_order_list).where(ProcedureTerm.id == category.id)
        )
        order_list = result.scalar_one_or_none() or []
        return [entry["local_id"] for entry in order_list if "local_id" in entry]

    async def remove_orphans(self, procedure_external_ids, keep_keys) -> List[int]:
        procedure_external_ids = [str(p) for p in procedure_external_ids]
        if not procedure_external_ids:
            return []
        try:
            result = await self.db.execute(
                select(CaseRecord.id, CaseRecord.procedure_external_id, CaseRecord.case_external_id)
                .where(CaseRecord.procedure_external_id.in_(procedure_external_ids))
            )
            orphan_ids = [
                row.id for row in result.all()
                if composite_key(row.procedure_external_id, row.case_external_id) not in keep_keys
            ]
            if orphan_ids:
                await self.db.execute(delete(CaseRecord).where(CaseRecord.id.in_(orphan_ids)))
        except SQLAlchemyError as e:
            raise EntityStoreError(
                "Failed to remove orphaned case records",
                context={"operation": "remove_orphans", "procedures": ", ".join(procedure_external_ids)},
                original_exception=e
            )
        return orphan_ids

    async def count_cases(self) -> int:
        result = await self.db.execute(select(func.count(CaseRecord.id)))
        return result.scalar_one()

    async def find_category_by_external_id(self, external_id) -> Optional[CategoryRef]:
        # Prefer procedure terms over top-level categories sharing the ID
        result = await self.db.execute(
            select(ProcedureTerm)
            .where(ProcedureTerm.external_id == str(external_id))
            .order_by(ProcedureTerm.parent_id.is_(None), ProcedureTerm.id)
            .limit(1)
        )
        term = result.scalars().first()
        return _category_ref(term) if term else None

    async def find_category_by_slug(self, slug: str) -> Optional[CategoryRef]:
        result = await self.db.execute(select(ProcedureTerm).where(ProcedureTerm.slug == slug))
        term = result.scalars().first()
        return _category_ref(term) if term else None

    async def create_category(self, fields: Dict[str, Any]) -> int:
        term = ProcedureTerm(**fields)
        self.db.add(term)
        await self.db.flush()
        return term.id

    async def update_category(self, category_id: int, fields: Dict[str, Any]):
        await self.db.execute(
            update(ProcedureTerm)
            .where(ProcedureTerm.id == category_id)
            .values(**fields, updated_at=datetime.utcnow())
        )

    async def commit(self):
        await self.db.commit()

    async def rollback(self):
        await self.db.rollback()
