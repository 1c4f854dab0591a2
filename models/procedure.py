from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base


class ProcedureTerm(Base):
    """
    Local taxonomy term for a remote category or procedure.

    Design:
    - Top-level categories have parent_id NULL, procedures point at their category
    - external_id is the canonical remote key (first of the remote ids array)
    - case_order_list is the CategoryOrderList rebuilt after each procedure
      finishes processing: [{"local_id": ..., "external_id": ...}, ...]
    """
    __tablename__ = "procedure_terms"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    parent_id = Column(Integer, ForeignKey("procedure_terms.id"), nullable=True, index=True)

    # Remote identifiers
    external_id = Column(String(64), nullable=True, index=True)
    external_ids = Column(JSONB, nullable=True)

    # Remote attributes
    nudity = Column(Boolean, default=False, nullable=False)
    description = Column(Text, nullable=True)
    total_cases = Column(Integer, default=0, nullable=False)

    # Ordering metadata
    case_order_list = Column(JSONB, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_procedure_parent_name", "parent_id", "name"),
    )
