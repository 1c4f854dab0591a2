from sqlalchemy import Column, BigInteger, Integer, String, Enum, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, CaseStatus


class CaseRecord(Base):
    """
    Local copy of one remote case as listed under one procedure.

    Design Decisions:
    - Identity is the composite (procedure_external_id, case_external_id); the
      same remote case listed under two procedures is two rows
    - JSONB columns keep patient, image and SEO attributes close to their
      remote shape
    - api_response holds the raw detail payload for reprocessing
    """
    __tablename__ = "case_records"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    # Composite external key
    procedure_external_id = Column(String(64), nullable=False)
    case_external_id = Column(String(64), nullable=False)
    original_case_id = Column(String(64), nullable=True, index=True)

    # Display fields
    title = Column(String(500), nullable=False)
    slug = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=True)
    status = Column(Enum(CaseStatus), default=CaseStatus.PUBLISH, nullable=False, index=True)

    # Attributes
    patient = Column(JSONB, nullable=True)
    doctor = Column(JSONB, nullable=True)
    image_sets = Column(JSONB, nullable=True)
    seo = Column(JSONB, nullable=True)
    attributes = Column(JSONB, nullable=True)

    # Taxonomy and ordering
    procedure_term_id = Column(Integer, ForeignKey("procedure_terms.id"), nullable=True, index=True)
    procedure_term_ids = Column(JSONB, nullable=True)
    case_order = Column(Integer, nullable=True)

    # Sync metadata
    api_response = Column(JSONB, nullable=True)
    synced_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_case_composite_key", "procedure_external_id", "case_external_id", unique=True),
        Index("idx_case_term_order", "procedure_term_id", "case_order"),
    )
