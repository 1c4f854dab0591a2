"""
Script to run the catalog sync to completion in one process
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import dispose_engine
from core.logging import setup_logging
from ingestion.pipeline import SyncPipeline

logger = logging.getLogger(__name__)


def log_result(result):
    logger.info(
        f"{result.stage} {result.status}: {result.message} "
        f"(created={result.created}, updated={result.updated}, failed={result.failed}, "
        f"skipped={result.skipped}, processed={result.processed}/{result.total})"
    )
    for error in result.errors:
        logger.error(f"  {error}")
    for warning in result.warnings:
        logger.warning(f"  {warning}")


async def run_sync(args) -> int:
    """Run the requested stage(s); returns the process exit code"""
    pipeline = SyncPipeline.from_settings()

    try:
        if args.abort:
            results = [await pipeline.abort()]
        elif args.stop:
            await pipeline.request_stop(requested_by="run_sync.py")
            logger.info("Stop flag set")
            return 0
        elif args.stage == "1":
            results = [await pipeline.run_stage_1()]
        elif args.stage == "2":
            results = [await pipeline.run_stage_2(force=args.force_manifest)]
        elif args.stage == "3":
            results = [await pipeline.run_stage_3()]
        else:
            results = await pipeline.run_full(force_manifest=args.force_manifest)
    finally:
        await dispose_engine()

    for result in results:
        log_result(result)

    return 0 if all(result.success for result in results) else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the staged case catalog sync")
    parser.add_argument("--stage", choices=["1", "2", "3", "all"], default="all",
                        help="Run a single stage (3 runs one invocation) or everything")
    parser.add_argument("--force-manifest", action="store_true",
                        help="Rebuild today's manifest even if it exists")
    parser.add_argument("--abort", action="store_true",
                        help="Discard the in-progress run and its checkpoint")
    parser.add_argument("--stop", action="store_true",
                        help="Ask a running sync to stop after its current batch")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_sync(args)))
