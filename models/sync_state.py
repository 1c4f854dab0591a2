from sqlalchemy import Column, String, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base


class SyncState(Base):
    """
    Named key/value state shared between invocations.

    Purpose:
    - Processing checkpoint (resume cursor and counters)
    - Active-job lock
    - Cooperative stop flag
    - Progress channel polled by the UI
    - Last-run summary

    Design:
    - One row per key
    - expires_at makes short-lived entries (progress, lock) disappear when
      their writer stops refreshing them; NULL means no expiry
    """
    __tablename__ = "sync_state"

    name = Column(String(100), primary_key=True)
    value = Column(JSONB, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
