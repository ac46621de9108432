"""Tests for progress tracking and reports."""

import asyncio

import pytest

from cow_settlement_sync.sync.progress import (
    ProgressReporter,
    ProgressTracker,
    format_duration,
    format_report,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(3, "3s"), (123, "2m 3s"), (3723, "1h 2m 3s"), (-5, "0s"), (59.9, "59s")],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_counters(self) -> None:
        tracker = ProgressTracker()
        tracker.record_events(3)
        tracker.record_saved()
        tracker.record_saved()
        tracker.record_skipped()
        tracker.record_error()
        tracker.record_processed()
        tracker.set_current_block(50)
        tracker.set_target_block(10)
        tracker.set_last_processed_block(51)

        snapshot = tracker.snapshot()

        assert snapshot.total_events == 3
        assert snapshot.saved_orders == 2
        assert snapshot.skipped_duplicates == 1
        assert snapshot.errors == 1
        assert snapshot.processed_events == 1
        assert (snapshot.current_block, snapshot.target_block, snapshot.last_processed_block) == (50, 10, 51)
        assert tracker.last_processed_block == 51

    def test_cooldown_remaining(self) -> None:
        clock = _Clock()
        tracker = ProgressTracker(clock=clock)

        tracker.begin_cooldown(600)
        clock.now += 120
        snapshot = tracker.snapshot()
        assert snapshot.waiting_for_timeout is True
        assert snapshot.timeout_remaining_seconds == 480
        assert snapshot.uptime_seconds == 120

        tracker.end_cooldown()
        snapshot = tracker.snapshot()
        assert snapshot.waiting_for_timeout is False
        assert snapshot.timeout_remaining_seconds is None

    def test_snapshot_is_a_copy(self) -> None:
        tracker = ProgressTracker()
        snapshot = tracker.snapshot()
        tracker.record_saved()
        assert snapshot.saved_orders == 0


class TestFormatReport:
    """Tests for format_report."""

    def test_report_while_waiting(self) -> None:
        clock = _Clock()
        tracker = ProgressTracker(clock=clock)
        tracker.set_current_block(42)
        tracker.begin_cooldown(600)
        clock.now += 90

        report = format_report(tracker.snapshot(), title="Historical sync")

        assert report.splitlines()[0] == "Historical sync"
        assert "Current block: 42" in report
        assert "Target block: -" in report
        assert "RPC Timeout: 8m 30s remaining" in report

    def test_report_not_waiting(self) -> None:
        report = format_report(ProgressTracker().snapshot())
        assert "RPC Timeout: Not active" in report


class TestProgressReporter:
    """Tests for ProgressReporter."""

    @pytest.mark.asyncio
    async def test_reports_periodically_until_stopped(self, caplog: pytest.LogCaptureFixture) -> None:
        reporter = ProgressReporter(ProgressTracker(), title="Realtime sync", interval_seconds=0.01)

        with caplog.at_level("INFO", logger="cow_settlement_sync.sync.progress"):
            reporter.start()
            assert reporter.is_running
            await asyncio.sleep(0.05)
            await reporter.stop()

        assert not reporter.is_running
        assert any("Realtime sync" in r.getMessage() for r in caplog.records)

    def test_report_now_returns_report(self) -> None:
        reporter = ProgressReporter(ProgressTracker(), title="Sync progress")
        assert reporter.report_now().startswith("Sync progress")
