"""
Transform canonical remote cases into local CaseRecord fields
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union
from models.base import CaseStatus
from schemas.catalog import slugify
from schemas.remote_case import CanonicalCase
import logging

logger = logging.getLogger(__name__)


class CaseTransformer:
    """
    Map a CanonicalCase onto the entity store's field dictionary.

    Rules:
    - slug: first non-empty SEO suffix URL, slugified; otherwise the case ID
    - title: "<procedure name> #<caseId>" (falls back to the record ID)
    - status: draft when the remote record is a draft, else publish
    - content: placeholder naming the case, procedure and sync time
    """

    def build_slug(self, case: CanonicalCase) -> str:
        if case.seo.suffix_url:
            slug = slugify(case.seo.suffix_url)
            if slug:
                return slug
        return str(case.case_id)

    def build_title(self, case: CanonicalCase, procedure_name: Optional[str]) -> str:
        display_id = case.original_case_id or case.case_id
        if procedure_name:
            return f"{procedure_name} #{display_id}"
        return f"Case #{case.case_id}"

    def build_content(self, case: CanonicalCase, procedure_id: Union[int, str], synced_at: datetime) -> str:
        return (
            f"Case {case.case_id} for procedure {procedure_id}, "
            f"synced {synced_at.strftime('%Y-%m-%d %H:%M:%S')}"
        )

    def to_fields(
        self,
        case: CanonicalCase,
        procedure_id: Union[int, str],
        procedure_name: Optional[str] = None,
        synced_at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        synced_at = synced_at or datetime.utcnow()

        attributes = dict(case.attributes)
        if case.notes:
            attributes["notes"] = case.notes
        attributes["procedure_ids"] = case.procedure_ids
        attributes["category_ids"] = case.category_ids

        return {
            "procedure_external_id": str(procedure_id),
            "case_external_id": str(case.case_id),
            "original_case_id": case.original_case_id,
            "title": self.build_title(case, procedure_name),
            "slug": self.build_slug(case),
            "content": self.build_content(case, procedure_id, synced_at),
            "status": CaseStatus.DRAFT if case.draft else CaseStatus.PUBLISH,
            "patient": case.patient.model_dump(mode="json"),
            "doctor": case.doctor.model_dump(mode="json"),
            "image_sets": [image_set.model_dump(mode="json") for image_set in case.image_sets],
            "seo": case.seo.model_dump(mode="json"),
            "attributes": attributes,
            "api_response": case.raw,
            "synced_at": synced_at,
        }
