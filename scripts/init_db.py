"""
Create (or recreate) the sync tables
"""

import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import engine, dispose_engine
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.procedure import ProcedureTerm
from models.case_record import CaseRecord
from models.sync_state import SyncState
from models.sync_run import SyncRun

logger = logging.getLogger(__name__)


async def init_database(drop: bool = False):
    logger.info("Connecting to database...")

    async with engine.begin() as conn:
        if drop:
            logger.warning("Dropping existing sync tables")
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

    await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the sync tables")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(init_database(drop=args.drop))
