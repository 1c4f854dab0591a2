"""
Pydantic schemas for the remote category tree (sidebar payload)
"""

from pydantic import BaseModel, Field, ValidationError, validator
from typing import Optional, List, Any
import logging
import re

logger = logging.getLogger(__name__)


def slugify(text: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9\s-]", "", (text or "").strip().lower())
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned.strip("-")


def is_valid_external_id(value: Any) -> bool:
    """Remote IDs of 0, "0", empty or null are placeholders, not real records."""
    if value is None or isinstance(value, bool):
        return False
    text = str(value).strip()
    return text not in ("", "0")


class CategoryNode(BaseModel):
    """
    One node of the remote category tree.

    Top-level nodes are categories; their children (remote key
    ``procedures``) are procedures carrying the external IDs the listing
    endpoint understands. ``external_ids[0]`` is the canonical key.
    """

    name: str = Field(..., min_length=1)
    slug: Optional[str] = Field(None, alias="slugName")
    external_ids: List[int] = Field(default_factory=list, alias="ids")
    nudity: bool = False
    description: Optional[str] = None
    total_case_count: int = Field(0, alias="totalCase")
    children: List["CategoryNode"] = Field(default_factory=list, alias="procedures")

    @validator("name", pre=True)
    def clean_name(cls, v):
        if v is None:
            return v
        return str(v).strip()

    @validator("external_ids", pre=True)
    def clean_external_ids(cls, v):
        """Drop placeholder IDs and keep remote order"""
        if v is None:
            return []
        if not isinstance(v, list):
            v = [v]
        return [int(i) for i in v if is_valid_external_id(i)]

    @validator("nudity", pre=True)
    def parse_nudity(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ("true", "1", "yes")
        return bool(v)

    @validator("total_case_count", pre=True)
    def parse_total(cls, v):
        if v in (None, ""):
            return 0
        return max(int(v), 0)

    @validator("children", pre=True)
    def clean_children(cls, v):
        return v or []

    @property
    def canonical_id(self) -> Optional[int]:
        return self.external_ids[0] if self.external_ids else None

    @property
    def resolved_slug(self) -> str:
        """Remote slug when supplied, otherwise derived from the name"""
        return slugify(self.slug) if self.slug else slugify(self.name)

    class Config:
        populate_by_name = True


CategoryNode.model_rebuild()


class CategoryTree(BaseModel):
    """Decoded sidebar payload: the list of top-level categories"""

    categories: List[CategoryNode] = Field(default_factory=list)

    def procedures(self) -> List[CategoryNode]:
        """All procedure nodes in tree order"""
        return [child for category in self.categories for child in category.children]

    def procedures_with_cases(self) -> List[CategoryNode]:
        """Procedures with a canonical ID and a positive declared case count"""
        return [
            node for node in self.procedures()
            if node.canonical_id is not None and node.total_case_count > 0
        ]

    @classmethod
    def from_sidebar(cls, payload: Any) -> "CategoryTree":
        """Build the tree from a sidebar response, skipping nodes that fail validation"""
        data = payload.get("data", []) if isinstance(payload, dict) else payload
        categories = []
        for node in data or []:
            if not isinstance(node, dict):
                continue
            try:
                categories.append(CategoryNode(**node))
            except ValidationError as e:
                logger.warning(f"Skipping invalid category node {node.get('name')!r}: {e}")
        return cls(categories=categories)
