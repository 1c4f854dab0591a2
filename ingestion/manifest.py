"""
Stage 2: enumerate every case ID of every procedure.

ManifestBuilder walks the listing endpoint page by page for each procedure
with a positive declared case count. Enumeration for a procedure stops when:
- the backend's pagination object says there is no next page
- a page contains only IDs already seen for the procedure
- two consecutive pages come back empty
- the page ceiling is reached

ManifestStore keeps one pretty-printed JSON snapshot per calendar day.
"""

import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from pydantic import ValidationError
from core.config import settings
from core.exceptions import DataIntegrityWarning, ManifestError
from ingestion.client import CatalogAPIClient
from ingestion.progress import ProgressReporter
from schemas.api import ManifestPreview, ManifestPreviewEntry
from schemas.catalog import CategoryTree
from schemas.sync import Manifest
import logging

logger = logging.getLogger(__name__)

EMPTY_PAGE_LIMIT = 2
PREVIEW_SAMPLE_SIZE = 3


class ManifestBuilder:
    """
    Build a Manifest from the category tree.

    Attributes:
        max_pages: Safety ceiling on listing pages per procedure
        errors: Per-procedure failures from the last build
        warnings: Declared-vs-listed count mismatches from the last build
    """

    def __init__(
        self,
        client: CatalogAPIClient,
        max_pages: Optional[int] = None,
        progress: Optional[ProgressReporter] = None
    ):
        self.client = client
        self.max_pages = max_pages or settings.MAX_LISTING_PAGES
        self.progress = progress
        self.errors: List[str] = []
        self.warnings: List[str] = []

    async def collect_case_ids(self, procedure_id: Union[int, str]) -> List[int]:
        """Walk the listing pages of one procedure, preserving remote order"""
        seen = set()
        ordered: List[int] = []
        consecutive_empty = 0

        for cursor in range(1, self.max_pages + 1):
            page = await self.client.fetch_case_page(procedure_id, cursor)

            if not page.case_ids:
                consecutive_empty += 1
                if page.has_next is False or consecutive_empty >= EMPTY_PAGE_LIMIT:
                    logger.debug(f"Procedure {procedure_id}: listing exhausted at page {cursor}")
                    break
                continue
            consecutive_empty = 0

            new_ids = []
            for case_id in page.case_ids:
                if case_id not in seen:
                    seen.add(case_id)
                    new_ids.append(case_id)

            if not new_ids:
                logger.debug(f"Procedure {procedure_id}: page {cursor} repeats seen IDs, stopping")
                break

            ordered.extend(new_ids)

            if page.has_next is False:
                break
        else:
            logger.warning(
                f"Procedure {procedure_id}: reached page ceiling ({self.max_pages}) "
                f"with {len(ordered)} case IDs"
            )

        return ordered

    async def build(self, tree: CategoryTree) -> Manifest:
        """
        Build the manifest for every procedure with cases.

        A failing procedure is logged and left out; the partial manifest is
        still valid.
        """
        self.errors = []
        self.warnings = []
        manifest = Manifest()
        procedures = tree.procedures_with_cases()
        total = len(procedures)

        logger.info(f"Building manifest for {total} procedures")

        for position, node in enumerate(procedures, start=1):
            procedure_id = str(node.canonical_id)

            if procedure_id in manifest.procedures:
                # Same procedure listed under several categories
                continue

            if self.progress is not None:
                await self.progress.publish(
                    processed=position - 1,
                    current_step=f"Collecting case IDs for {node.name}",
                    current_procedure=node.name,
                    procedure_current=position,
                    procedure_total=total,
                )

            try:
                case_ids = await self.collect_case_ids(procedure_id)
            except Exception as e:
                message = f"Procedure {node.name} ({procedure_id}): {e}"
                self.errors.append(message)
                logger.error(
                    f"Manifest build failed for procedure {procedure_id}: {e}",
                    extra={"error_context": {"procedure_id": procedure_id, "procedure_name": node.name}}
                )
                continue

            if case_ids:
                manifest.procedures[procedure_id] = case_ids
            logger.info(f"Procedure {node.name} ({procedure_id}): {len(case_ids)} case IDs")

            if len(case_ids) != node.total_case_count:
                warning = DataIntegrityWarning(
                    f"Procedure {node.name} ({procedure_id}): declared {node.total_case_count} cases, "
                    f"listing returned {len(case_ids)}",
                    context={"procedure_id": procedure_id, "procedure_name": node.name}
                )
                self.warnings.append(warning.message)
                logger.warning(warning.message, extra={"error_context": warning.to_dict()})

        logger.info(
            f"Manifest built: {len(manifest.procedures)} procedures, {manifest.total_cases()} cases, "
            f"{len(self.errors)} failures, {len(self.warnings)} count mismatches"
        )
        return manifest


class ManifestStore:
    """Dated JSON snapshots of the manifest and the sidebar payload"""

    MANIFEST_PREFIX = "case-manifest"
    SIDEBAR_PREFIX = "sync-data"

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory or settings.MANIFEST_DIR)

    def _path(self, prefix: str, day: Optional[date] = None) -> Path:
        day = day or date.today()
        return self.directory / f"{prefix}-{day.isoformat()}.json"

    def path_for(self, day: Optional[date] = None) -> Path:
        return self._path(self.MANIFEST_PREFIX, day)

    def exists(self, day: Optional[date] = None) -> bool:
        return self.path_for(day).exists()

    def _write(self, path: Path, payload: Any):
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(path)

    def _read(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ManifestError(
                "Snapshot is unreadable",
                context={"file_path": str(path)},
                original_exception=e
            )

    def save(self, manifest: Manifest, day: Optional[date] = None) -> Path:
        path = self.path_for(day)
        self._write(path, manifest.procedures)
        logger.info(f"Manifest saved to {path}")
        return path

    def load(self, day: Optional[Union[date, str]] = None) -> Optional[Manifest]:
        """
        Load the snapshot for a day (today by default).

        Returns:
            Manifest, or None when no snapshot exists for that day

        Raises:
            ManifestError: If the file exists but cannot be parsed
        """
        if isinstance(day, str):
            day = date.fromisoformat(day)
        path = self.path_for(day)
        if not path.exists():
            return None

        data = self._read(path)
        try:
            return Manifest(procedures=data)
        except ValidationError as e:
            raise ManifestError(
                "Snapshot does not contain a manifest",
                context={"file_path": str(path)},
                original_exception=e
            )

    def save_sidebar(self, payload: Dict[str, Any], day: Optional[date] = None) -> Path:
        path = self._path(self.SIDEBAR_PREFIX, day)
        self._write(path, payload)
        return path

    def load_sidebar(self, day: Optional[date] = None) -> Optional[Dict[str, Any]]:
        path = self._path(self.SIDEBAR_PREFIX, day)
        if not path.exists():
            return None
        return self._read(path)

    def preview(self, limit: Optional[int] = None, day: Optional[date] = None) -> ManifestPreview:
        """Per-procedure case counts with a few sample IDs"""
        day = day or date.today()
        manifest = self.load(day)
        if manifest is None:
            return ManifestPreview(manifest_date=day.isoformat(), exists=False)

        entries = [
            ManifestPreviewEntry(
                procedure_id=procedure_id,
                case_count=len(case_ids),
                sample_ids=case_ids[:PREVIEW_SAMPLE_SIZE],
            )
            for procedure_id, case_ids in manifest.procedures.items()
        ]
        return ManifestPreview(
            manifest_date=day.isoformat(),
            exists=True,
            procedure_count=len(entries),
            total_cases=manifest.total_cases(),
            procedures=entries[:limit] if limit else entries,
        )
