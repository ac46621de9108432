"""Sync progress counters and human-readable reports.

A ``ProgressTracker`` is owned by one controller. The reporter task only reads
it through ``snapshot()``, which copies the state under a lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

DEFAULT_REPORT_INTERVAL_SECONDS = 30.0


def format_duration(seconds: float) -> str:
    """Render a duration as ``1h 2m 3s``, dropping leading zero units."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time copy of a tracker's state."""

    started_at: datetime
    uptime_seconds: float
    total_events: int
    processed_events: int
    saved_orders: int
    skipped_duplicates: int
    errors: int
    current_block: int | None
    target_block: int | None
    last_processed_block: int | None
    waiting_for_timeout: bool
    timeout_remaining_seconds: float | None


class ProgressTracker:
    """In-memory progress counters for one sync run."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()

        self.started_at = datetime.now(UTC)
        self._started_monotonic = clock()

        self._total_events = 0
        self._processed_events = 0
        self._saved_orders = 0
        self._skipped_duplicates = 0
        self._errors = 0

        self._current_block: int | None = None
        self._target_block: int | None = None
        self._last_processed_block: int | None = None

        self._timeout_started: float | None = None
        self._timeout_duration: float | None = None

    def record_events(self, count: int) -> None:
        """Count order fills received from the settlement API."""
        with self._lock:
            self._total_events += count

    def record_processed(self) -> None:
        with self._lock:
            self._processed_events += 1

    def record_saved(self) -> None:
        with self._lock:
            self._saved_orders += 1

    def record_skipped(self) -> None:
        with self._lock:
            self._skipped_duplicates += 1

    def record_error(self) -> None:
        with self._lock:
            self._errors += 1

    def set_current_block(self, number: int) -> None:
        with self._lock:
            self._current_block = number

    def set_target_block(self, number: int | None) -> None:
        with self._lock:
            self._target_block = number

    def set_last_processed_block(self, number: int) -> None:
        with self._lock:
            self._last_processed_block = number

    @property
    def last_processed_block(self) -> int | None:
        with self._lock:
            return self._last_processed_block

    def begin_cooldown(self, duration_seconds: float) -> None:
        """Mark the start of a rate-limit cooldown of the given length."""
        with self._lock:
            self._timeout_started = self._clock()
            self._timeout_duration = duration_seconds

    def end_cooldown(self) -> None:
        with self._lock:
            self._timeout_started = None
            self._timeout_duration = None

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            now = self._clock()
            waiting = self._timeout_started is not None
            remaining = None
            if self._timeout_started is not None and self._timeout_duration is not None:
                remaining = max(0.0, self._timeout_duration - (now - self._timeout_started))
            return ProgressSnapshot(
                started_at=self.started_at,
                uptime_seconds=now - self._started_monotonic,
                total_events=self._total_events,
                processed_events=self._processed_events,
                saved_orders=self._saved_orders,
                skipped_duplicates=self._skipped_duplicates,
                errors=self._errors,
                current_block=self._current_block,
                target_block=self._target_block,
                last_processed_block=self._last_processed_block,
                waiting_for_timeout=waiting,
                timeout_remaining_seconds=remaining,
            )


def format_report(snapshot: ProgressSnapshot, *, title: str = "Sync progress") -> str:
    """Render a multi-line progress report."""
    if snapshot.waiting_for_timeout:
        timeout = f"{format_duration(snapshot.timeout_remaining_seconds or 0.0)} remaining"
    else:
        timeout = "Not active"

    def _block(value: int | None) -> str:
        return "-" if value is None else str(value)

    lines = [
        f"{title}",
        f"  Uptime: {format_duration(snapshot.uptime_seconds)}",
        f"  Current block: {_block(snapshot.current_block)}",
        f"  Target block: {_block(snapshot.target_block)}",
        f"  Last processed block: {_block(snapshot.last_processed_block)}",
        f"  Events processed: {snapshot.processed_events}",
        f"  Orders received: {snapshot.total_events}",
        f"  Orders saved: {snapshot.saved_orders}",
        f"  Duplicates skipped: {snapshot.skipped_duplicates}",
        f"  Errors: {snapshot.errors}",
        f"  RPC Timeout: {timeout}",
    ]
    return "\n".join(lines)


class ProgressReporter:
    """Logs a tracker's report on a fixed interval from a background task."""

    def __init__(
        self,
        tracker: ProgressTracker,
        *,
        title: str,
        interval_seconds: float = DEFAULT_REPORT_INTERVAL_SECONDS,
    ) -> None:
        self._tracker = tracker
        self._title = title
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def report_now(self) -> str:
        report = format_report(self._tracker.snapshot(), title=self._title)
        logger.info("%s", report)
        return report

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                self.report_now()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
