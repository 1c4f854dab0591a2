"""
FastAPI dependencies: database session, sync pipeline and API key check
"""

from typing import AsyncGenerator, Optional
from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import get_session
from ingestion.pipeline import SyncPipeline
from ingestion.history import RunHistory

_pipeline: Optional[SyncPipeline] = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


def get_pipeline() -> SyncPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = SyncPipeline.from_settings()
    return _pipeline


def get_history() -> Optional[RunHistory]:
    return get_pipeline().history


async def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    """Reject the request unless X-API-Key matches settings.API_KEY (when one is set)"""
    if not settings.API_KEY:
        return
    if x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-API-Key header"
        )
