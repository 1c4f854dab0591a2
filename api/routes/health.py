"""
Health check endpoint with database and sync job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_pipeline
from schemas.api import HealthCheckResponse
from ingestion.pipeline import SyncPipeline
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    pipeline: SyncPipeline = Depends(get_pipeline)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether a sync invocation is running and which session owns the run
    """

    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    job_active = False
    lock_holder = None
    if db_connected:
        try:
            job_active = await pipeline.lock.is_running()
            lock_holder = await pipeline.lock.holder()
        except Exception as e:
            logger.error(f"Failed to read sync lock: {str(e)}")

    return HealthCheckResponse(
        status="healthy" if db_connected else "unhealthy",
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        job_active=job_active,
        lock_holder=lock_holder
    )
