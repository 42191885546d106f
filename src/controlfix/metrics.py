"""
In-process metrics for the remediation engine.

Counters track execution outcomes, gauges track the active-execution set,
and timers measure each stage of an execution. The collector is a
thread-safe singleton so every coordinator in a process reports into the
same place; ``get_metrics()`` returns a JSON-serializable snapshot.

Usage:
    from controlfix.metrics import MetricNames, StageTimer, metrics_collector

    metrics_collector.increment(MetricNames.EXECUTIONS_STARTED_TOTAL)
    with metrics_collector.start_timer(StageTimer.VALIDATION):
        result = await engine.validate(execution)
"""

from __future__ import annotations

import statistics
import threading
import time
from collections import defaultdict
from datetime import UTC, datetime
from enum import Enum
from types import TracebackType
from typing import Any

_LabelKey = tuple[str, tuple[tuple[str, str], ...]]

MAX_TIMINGS_PER_KEY = 1000


class StageTimer(str, Enum):
    """
    Timed stages of a remediation.

    Attributes:
        SNAPSHOT_CAPTURE: Reading a resource into a snapshot
        STRATEGY_EXECUTION: Running the remediation strategy chain
        VALIDATION: Post-execution validation checks
        ROLLBACK: Restoring a before-snapshot
        TOTAL_EXECUTION: One execution from entry to terminal state
        BATCH: One batch from launch to last outcome
        PLAN_GENERATION: Building a remediation plan
    """

    SNAPSHOT_CAPTURE = "snapshot_capture"
    STRATEGY_EXECUTION = "strategy_execution"
    VALIDATION = "validation"
    ROLLBACK = "rollback"
    TOTAL_EXECUTION = "total_execution"
    BATCH = "batch"
    PLAN_GENERATION = "plan_generation"


class Timer:
    """
    Context manager that records its elapsed time on exit.

    Example:
        >>> with metrics_collector.start_timer(StageTimer.ROLLBACK) as timer:
        ...     ...
        >>> timer.duration
    """

    def __init__(
        self,
        name: str,
        collector: MetricsCollector,
        labels: dict[str, str] | None = None,
    ) -> None:
        self.name: str = name
        self.collector: MetricsCollector = collector
        self.labels: dict[str, str] = labels or {}
        self.start_time: float = 0.0
        self.duration: float = 0.0

    def __enter__(self) -> Timer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()

    def stop(self) -> float:
        """
        Stop the timer and record duration.

        Returns:
            Duration in seconds
        """
        self.duration = time.perf_counter() - self.start_time
        self.collector._record_timing(self.name, self.duration, self.labels)
        return self.duration


class MetricsCollector:
    """
    Thread-safe singleton holding counters, gauges and timings.

    Attributes:
        _counters: Counter values keyed by (name, labels_tuple)
        _gauges: Gauge values keyed by (name, labels_tuple)
        _timings: Recent durations keyed by (name, labels_tuple)
        _lock: Lock guarding all three maps
        _start_time: When the collector was created or last reset
    """

    _instance: MetricsCollector | None = None
    _lock_class: threading.Lock = threading.Lock()

    def __new__(cls) -> MetricsCollector:
        with cls._lock_class:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self) -> None:
        if getattr(self, "_initialized", False):
            return

        self._counters: dict[_LabelKey, int] = defaultdict(int)
        self._gauges: dict[_LabelKey, float] = {}
        self._timings: dict[_LabelKey, list[float]] = defaultdict(list)
        self._lock: threading.Lock = threading.Lock()
        self._start_time: datetime = datetime.now(UTC)
        self._initialized: bool = True

    @staticmethod
    def _key(name: str, labels: dict[str, str] | None) -> _LabelKey:
        return (name, tuple(sorted(labels.items())) if labels else ())

    @staticmethod
    def _render_name(key: _LabelKey) -> str:
        name, labels = key
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in labels)
        return f"{name}{{{label_str}}}"

    def increment(
        self,
        name: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Counter name (see MetricNames)
            value: Amount to increment (default: 1)
            labels: Optional labels (e.g., {"strategy": "declarative"})
        """
        key = self._key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Set a gauge metric to a specific value."""
        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def start_timer(
        self,
        name: str | StageTimer,
        labels: dict[str, str] | None = None,
    ) -> Timer:
        """
        Start a timer for measuring a stage.

        Args:
            name: Timer name (usually a StageTimer value)
            labels: Optional labels

        Returns:
            Timer context manager
        """
        timer_name = name.value if isinstance(name, StageTimer) else name
        return Timer(timer_name, self, labels)

    def _record_timing(
        self,
        name: str,
        duration: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        key = self._key(name, labels)
        with self._lock:
            timings = self._timings[key]
            timings.append(duration)
            if len(timings) > MAX_TIMINGS_PER_KEY:
                del timings[:-MAX_TIMINGS_PER_KEY]

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Get current value of a counter (0 if never incremented)."""
        with self._lock:
            return self._counters.get(self._key(name, labels), 0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Get current value of a gauge or None if never set."""
        with self._lock:
            return self._gauges.get(self._key(name, labels))

    def get_timing_stats(
        self,
        name: str | StageTimer,
        labels: dict[str, str] | None = None,
    ) -> dict[str, float] | None:
        """
        Get timing statistics for a named timer.

        Returns:
            Dictionary with count, min, max, mean, p50, p95
            or None if no timings recorded
        """
        timer_name = name.value if isinstance(name, StageTimer) else name
        with self._lock:
            timings = list(self._timings.get(self._key(timer_name, labels), []))
        return self._summarize(timings) if timings else None

    @staticmethod
    def _summarize(values: list[float]) -> dict[str, float]:
        ordered = sorted(values)

        def percentile(p: int) -> float:
            return ordered[min(int(len(ordered) * p / 100), len(ordered) - 1)]

        return {
            "count": len(ordered),
            "min": ordered[0],
            "max": ordered[-1],
            "mean": statistics.mean(ordered),
            "p50": percentile(50),
            "p95": percentile(95),
        }

    def get_metrics(self) -> dict[str, Any]:
        """
        Get all metrics as a JSON-serializable dictionary.

        Returns:
            Dictionary with timestamp, uptime_seconds, counters, gauges
            and per-timer statistics
        """
        now = datetime.now(UTC)
        with self._lock:
            counters = {self._render_name(k): v for k, v in self._counters.items()}
            gauges = {self._render_name(k): v for k, v in self._gauges.items()}
            timings = {
                self._render_name(k): self._summarize(list(v))
                for k, v in self._timings.items()
                if v
            }
            uptime = (now - self._start_time).total_seconds()

        return {
            "timestamp": now.isoformat(),
            "uptime_seconds": uptime,
            "counters": counters,
            "gauges": gauges,
            "timings": timings,
        }

    def reset(self) -> None:
        """Reset all metrics; used between tests."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()
            self._start_time = datetime.now(UTC)


metrics_collector = MetricsCollector()


class MetricNames:
    """Standard metric names used throughout ControlFix."""

    # Counters
    EXECUTIONS_STARTED_TOTAL = "executions_started_total"
    EXECUTIONS_COMPLETED_TOTAL = "executions_completed_total"
    EXECUTIONS_FAILED_TOTAL = "executions_failed_total"
    EXECUTIONS_ROLLED_BACK_TOTAL = "executions_rolled_back_total"
    EXECUTIONS_DENIED_TOTAL = "executions_denied_total"
    APPROVALS_TOTAL = "approvals_total"
    STRATEGY_USED_TOTAL = "strategy_used_total"
    STRATEGY_FALLTHROUGH_TOTAL = "strategy_fallthrough_total"
    SCRIPTS_REJECTED_TOTAL = "scripts_rejected_total"
    BATCHES_TOTAL = "batches_total"

    # Gauges
    ACTIVE_EXECUTIONS = "active_executions"
    PENDING_APPROVALS = "pending_approvals"
