"""
Cooperative cancellation for the batch processor.

A CancellationToken is handed to the processor and checked between
batches. It can be cancelled in-process, or backed by a StoredStopFlag so
an external caller (the API's stop endpoint) can request a stop through
the shared state store.
"""

from datetime import datetime
from typing import Optional
from ingestion.checkpoint import StateStore
import logging

logger = logging.getLogger(__name__)

STOP_MESSAGE = "Sync stopped by user request"


class StoredStopFlag:
    """Stop request persisted in the state store; consumed when detected"""

    KEY = "sync_stop_requested"

    def __init__(self, state_store: StateStore):
        self.state = state_store

    async def request(self, requested_by: Optional[str] = None):
        await self.state.set(self.KEY, {
            "requested_at": datetime.utcnow().isoformat(),
            "requested_by": requested_by,
        })
        logger.info(f"Stop requested by {requested_by or 'unknown caller'}")

    async def is_requested(self) -> bool:
        return await self.state.get(self.KEY) is not None

    async def consume(self) -> bool:
        """Return True once per stop request"""
        if await self.state.get(self.KEY) is None:
            return False
        await self.state.delete(self.KEY)
        logger.info("Stop request detected and consumed")
        return True

    async def clear(self):
        """Drop a stop request left over from before the current run began"""
        if await self.state.get(self.KEY) is not None:
            await self.state.delete(self.KEY)
            logger.info("Discarded stale stop request")


class CancellationToken:

    def __init__(self, stop_flag: Optional[StoredStopFlag] = None):
        self.stop_flag = stop_flag
        self.reason: Optional[str] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = STOP_MESSAGE):
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    async def check(self) -> bool:
        """Poll the token (and the stored flag); True means stop now"""
        if self._cancelled:
            return True
        if self.stop_flag is not None and await self.stop_flag.consume():
            self.cancel()
        return self._cancelled
