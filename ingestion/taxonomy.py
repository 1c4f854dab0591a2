"""
Stage 1: mirror the remote category tree into local taxonomy terms.

Top-level categories become parentless terms; each procedure becomes a
child term of its category carrying the external IDs, nudity flag,
description and declared case count. Terms are matched by slug, so a
re-run updates in place.
"""

from typing import Optional
from ingestion.entity_store import EntityStore
from ingestion.progress import ProgressReporter
from models.base import SyncStage, SyncStatus
from schemas.catalog import CategoryNode, CategoryTree
from schemas.sync import SyncResult
import logging

logger = logging.getLogger(__name__)


class TaxonomySync:

    def __init__(self, entity_store: EntityStore, progress: Optional[ProgressReporter] = None):
        self.store = entity_store
        self.progress = progress
        self.created = 0
        self.updated = 0
        self.errors = []

    async def upsert_term(self, node: CategoryNode, parent_id: Optional[int] = None) -> int:
        """Create or update the term for one node; returns its local ID"""
        slug = node.resolved_slug
        if not slug:
            raise ValueError(f"Cannot derive a slug for {node.name!r}")

        fields = {
            "name": node.name,
            "slug": slug,
            "parent_id": parent_id,
            "external_id": str(node.canonical_id) if node.canonical_id is not None else None,
            "external_ids": node.external_ids,
            "nudity": node.nudity,
            "description": node.description,
            "total_cases": node.total_case_count,
        }

        existing = await self.store.find_category_by_slug(slug)
        if existing:
            await self.store.update_category(existing.id, fields)
            self.updated += 1
            logger.debug(f"Updated term {slug} (id={existing.id})")
            return existing.id

        term_id = await self.store.create_category(fields)
        self.created += 1
        logger.debug(f"Created term {slug} (id={term_id})")
        return term_id

    async def sync(self, tree: CategoryTree) -> SyncResult:
        self.created = 0
        self.updated = 0
        self.errors = []

        total = len(tree.categories)
        procedure_count = 0

        for position, category in enumerate(tree.categories, start=1):
            if self.progress is not None:
                await self.progress.publish(
                    processed=position - 1,
                    current_step=f"Syncing category {category.name}",
                    current_procedure=category.name,
                    procedure_current=position,
                    procedure_total=total,
                )

            try:
                category_id = await self.upsert_term(category)
                await self.store.commit()
            except Exception as e:
                await self.store.rollback()
                self.errors.append(f"Category {category.name}: {e}")
                logger.error(
                    f"Failed to sync category {category.name}: {e}",
                    extra={"error_context": {"category": category.name}}
                )
                continue

            for procedure in category.children:
                procedure_count += 1
                try:
                    await self.upsert_term(procedure, parent_id=category_id)
                    await self.store.commit()
                except Exception as e:
                    await self.store.rollback()
                    self.errors.append(f"Procedure {procedure.name}: {e}")
                    logger.error(
                        f"Failed to sync procedure {procedure.name}: {e}",
                        extra={"error_context": {"category": category.name, "procedure": procedure.name}}
                    )

        failed = len(self.errors)
        written = self.created + self.updated
        success = failed == 0 or written > 0
        logger.info(
            f"Taxonomy sync: {total} categories, {procedure_count} procedures, "
            f"{self.created} created, {self.updated} updated, {failed} failed"
        )

        return SyncResult(
            success=success,
            stage=SyncStage.TAXONOMY,
            status=SyncStatus.COMPLETED if success else SyncStatus.FAILED,
            created=self.created,
            updated=self.updated,
            failed=failed,
            processed=written + failed,
            total=total + procedure_count,
            errors=self.errors,
            message=f"Synced {total} categories and {procedure_count} procedures",
        )
