"""
Unit tests for the progress reporter and resource guard
"""

from unittest.mock import Mock
import pytest
from core.exceptions import MemoryBudgetExceeded, ResourceExhaustion, TimeBudgetExceeded
from ingestion.guard import ResourceGuard
from ingestion.progress import ProgressReporter, percent
from models.base import SyncStage


class TestProgressReporter:

    def test_percent(self):
        assert percent(1, 3) == 33.3
        assert percent(5, 0) == 0.0
        assert percent(12, 10) == 100.0

    def test_running_percentage_capped_and_monotonic(self, state_store):
        reporter = ProgressReporter(state_store)
        reporter.begin(SyncStage.CASES, "abc", expected_total=10)

        assert reporter.overall_percentage(5) == 50.0
        assert reporter.overall_percentage(10) == 99.0
        assert reporter.overall_percentage(3) == 99.0
        assert reporter.overall_percentage(10, completed=True) == 100.0

    def test_expected_total_grows_past_estimate(self, state_store):
        reporter = ProgressReporter(state_store)
        reporter.begin(SyncStage.CASES, "abc", expected_total=10)

        value = reporter.overall_percentage(20)

        assert reporter.expected_total == 22
        assert value == 90.9

    def test_recent_activity_ring(self, state_store):
        reporter = ProgressReporter(state_store, recent_size=2)
        reporter.begin(SyncStage.CASES, "abc")

        reporter.note_case("create", 1, 3, "Tummy Tuck", 101, 5001)
        reporter.note_case("update", 2, 3, "Tummy Tuck", 101, 5002)
        reporter.note_case("skip", 3, 3, "Tummy Tuck", 101, 5003)

        assert list(reporter.recent_cases) == [
            "[SKIP] 3/3 Tummy Tuck (101) - Case Id: 5003",
            "[UPDATE] 2/3 Tummy Tuck (101) - Case Id: 5002",
        ]

    @pytest.mark.asyncio
    async def test_publish_and_read(self, state_store):
        reporter = ProgressReporter(state_store, ttl_seconds=300)
        reporter.begin(SyncStage.CASES, "abc", expected_total=4)
        reporter.note_case("CREATE", 1, 4, "Facelift", 201, 7001)

        await reporter.publish(
            processed=1,
            current_step="Processing case 1 of 4 for Facelift",
            current_procedure="Facelift",
            procedure_current=1,
            procedure_total=2,
            case_current=1,
            case_total=4,
        )
        snapshot = await reporter.read()

        assert snapshot.stage == "stage_3"
        assert snapshot.overall_percentage == 25.0
        assert snapshot.procedure_progress.percentage == 50.0
        assert snapshot.case_progress.current == 1
        assert snapshot.recent_cases[0].startswith("[CREATE] 1/4 Facelift")

    @pytest.mark.asyncio
    async def test_snapshot_expires(self, state_store):
        reporter = ProgressReporter(state_store, ttl_seconds=300)
        reporter.begin(SyncStage.MANIFEST, "abc")
        await reporter.publish(current_step="Collecting")

        state_store.advance(301)

        assert await reporter.read() is None

    @pytest.mark.asyncio
    async def test_restore_carries_activity_for_same_session(self, state_store):
        first = ProgressReporter(state_store)
        first.begin(SyncStage.CASES, "abc", expected_total=10)
        first.note_case("CREATE", 1, 10, "Facelift", 201, 7001)
        await first.publish(processed=4)

        second = ProgressReporter(state_store)
        second.begin(SyncStage.CASES, "abc", expected_total=10)
        await second.restore()

        assert second.overall_percentage(2) == 40.0
        assert len(second.recent_cases) == 1

        other = ProgressReporter(state_store)
        other.begin(SyncStage.CASES, "different", expected_total=10)
        await other.restore()
        assert len(other.recent_cases) == 0


class TestResourceGuard:

    def test_within_budget(self):
        guard = ResourceGuard(memory_limit_mb=100, threshold=0.9, time_budget_seconds=60,
                              memory_probe=lambda: 50.0, clock=lambda: 0.0)
        guard.start()

        guard.check()

        assert guard.memory_usage_ratio() == 0.5

    def test_memory_budget(self):
        guard = ResourceGuard(memory_limit_mb=100, threshold=0.9, time_budget_seconds=60,
                              memory_probe=lambda: 95.0, clock=lambda: 0.0)
        guard.start()

        with pytest.raises(MemoryBudgetExceeded) as exc_info:
            guard.check()

        assert isinstance(exc_info.value, ResourceExhaustion)
        assert exc_info.value.context["used_mb"] == 95.0

    def test_time_budget(self):
        clock = Mock(side_effect=[0.0, 30.0, 61.0, 61.0])
        guard = ResourceGuard(memory_limit_mb=100, time_budget_seconds=60,
                              memory_probe=lambda: 1.0, clock=clock)
        guard.start()

        guard.check()
        with pytest.raises(TimeBudgetExceeded):
            guard.check()
