"""
Per-invocation resource guard.

Checks process memory (RSS via psutil) against a ceiling and wall-clock
time against a deadline fixed when the invocation starts. The processor
calls ``check()`` before each fetch batch so work stops between cases,
never in the middle of a write.
"""

import os
import time
from typing import Optional, Callable
import psutil
from core.config import settings
from core.exceptions import MemoryBudgetExceeded, TimeBudgetExceeded
import logging

logger = logging.getLogger(__name__)


def current_memory_mb() -> float:
    """Resident set size of this process in MB"""
    return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)


class ResourceGuard:
    """
    Memory and time budget for one invocation.

    Attributes:
        memory_limit_mb: Memory ceiling in MB (default: settings.MEMORY_LIMIT_MB)
        threshold: Fraction of the ceiling that triggers an abort (default: 0.9)
        time_budget_seconds: Wall-clock budget (default: settings.TIME_BUDGET_SECONDS)
    """

    def __init__(
        self,
        memory_limit_mb: Optional[float] = None,
        threshold: Optional[float] = None,
        time_budget_seconds: Optional[float] = None,
        memory_probe: Callable[[], float] = current_memory_mb,
        clock: Callable[[], float] = time.monotonic
    ):
        self.memory_limit_mb = memory_limit_mb or settings.MEMORY_LIMIT_MB
        self.threshold = threshold or settings.MEMORY_THRESHOLD
        self.time_budget_seconds = time_budget_seconds or settings.TIME_BUDGET_SECONDS
        self.memory_probe = memory_probe
        self.clock = clock
        self.started_at: Optional[float] = None
        self.deadline: Optional[float] = None

    def start(self):
        """Fix the deadline for this invocation"""
        self.started_at = self.clock()
        self.deadline = self.started_at + self.time_budget_seconds

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self.clock() - self.started_at

    def memory_usage_ratio(self) -> float:
        return self.memory_probe() / self.memory_limit_mb

    def check(self):
        """
        Raise if either budget is spent.

        Raises:
            MemoryBudgetExceeded: Usage above threshold of the ceiling
            TimeBudgetExceeded: Deadline passed
        """
        if self.deadline is None:
            self.start()

        used_mb = self.memory_probe()
        if used_mb > self.memory_limit_mb * self.threshold:
            raise MemoryBudgetExceeded(
                "Memory usage approaching limit",
                context={
                    "used_mb": round(used_mb, 1),
                    "limit_mb": self.memory_limit_mb,
                    "threshold": self.threshold,
                }
            )

        if self.clock() >= self.deadline:
            raise TimeBudgetExceeded(
                "Invocation time budget spent",
                context={
                    "elapsed_seconds": round(self.elapsed(), 1),
                    "budget_seconds": self.time_budget_seconds,
                }
            )
