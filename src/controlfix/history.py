"""
Execution history, the active-execution set, and progress reporting.

Finished executions are appended to a HistoryStore exactly once. Two
stores are provided:

    InMemoryHistoryStore  process-local, used in tests and the CLI default
    RedisHistoryStore     shared across workers, records expire after the
                          configured retention period

Executions still running, and executions waiting for approval, live in
the ActiveExecutionRegistry. HistoryTracker combines both to answer
progress and history queries.

Usage:
    tracker = HistoryTracker(store=InMemoryHistoryStore())
    tracker.record(execution)
    progress = tracker.get_progress(since=utcnow() - timedelta(days=7))
"""

import threading
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Protocol

import redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from controlfix.errors import ExecutionNotFoundError, HistoryStoreError
from controlfix.logging_config import get_logger, log_with_context
from controlfix.metrics import MetricNames, metrics_collector
from controlfix.models import (
    ExecutionOptions,
    ExecutionStatus,
    Finding,
    RemediationExecution,
    RemediationHistory,
    RemediationMetric,
    RemediationPath,
    RemediationProgress,
    utcnow,
)

logger = get_logger(__name__)

RECENT_EXECUTIONS_LIMIT = 10

_FAILED_STATUSES = frozenset(
    {ExecutionStatus.FAILED, ExecutionStatus.ROLLED_BACK, ExecutionStatus.CANCELLED}
)
_AUTOMATED_PATHS = frozenset(
    {RemediationPath.AI_SCRIPT, RemediationPath.DOMAIN_SERVICE, RemediationPath.DECLARATIVE}
)


class HistoryStore(Protocol):
    """Append-only store of finished executions."""

    def append(self, execution: RemediationExecution) -> None:
        """Store an execution; raises HistoryStoreError if it is already stored."""
        ...

    def list_between(self, start: datetime, end: datetime) -> list[RemediationExecution]:
        """Executions started in [start, end], oldest first."""
        ...

    def get(self, execution_id: str) -> RemediationExecution | None: ...


class InMemoryHistoryStore:
    """Process-local history store guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, RemediationExecution] = {}

    def append(self, execution: RemediationExecution) -> None:
        with self._lock:
            if execution.execution_id in self._records:
                raise HistoryStoreError(
                    f"Execution {execution.execution_id} is already in history",
                    operation="append",
                )
            self._records[execution.execution_id] = execution.model_copy(deep=True)

    def list_between(self, start: datetime, end: datetime) -> list[RemediationExecution]:
        with self._lock:
            selected = [e for e in self._records.values() if start <= e.started_at <= end]
        return sorted(selected, key=lambda e: e.started_at)

    def get(self, execution_id: str) -> RemediationExecution | None:
        with self._lock:
            return self._records.get(execution_id)


class RedisHistoryStore:
    """
    Redis-backed history store.

    Each execution is stored as JSON under ``{prefix}execution:{id}`` with
    SET NX, so a second append of the same execution is rejected
    atomically even across workers. A sorted set scored by start time
    indexes executions for range queries. Records expire after the
    retention period; index entries pointing at expired records are
    pruned when listed.

    Attributes:
        client: Redis client instance with connection pooling
        key_prefix: Prefix for all keys to namespace ControlFix data
        ttl_seconds: Time-to-live for history records in seconds
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "controlfix:",
        retention_days: int = 90,
    ) -> None:
        """
        Connect to Redis and verify connectivity with PING.

        Args:
            redis_url: Redis connection URL (redis://host:port/db)
            key_prefix: Prefix for all Redis keys
            retention_days: Days to keep execution records

        Raises:
            HistoryStoreError: If Redis connection fails
        """
        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            self.client.ping()

            log_with_context(
                logger,
                "info",
                "Connected to Redis",
                redis_url=self._sanitize_url(redis_url),
            )

        except RedisError as e:
            log_with_context(
                logger,
                "error",
                "Failed to connect to Redis",
                error=str(e),
            )
            raise HistoryStoreError(
                f"Failed to connect to Redis: {e}",
                operation="connect",
                backend_error=str(e),
            ) from e

        self.key_prefix = key_prefix
        self.ttl_seconds = retention_days * 24 * 60 * 60

    def _sanitize_url(self, url: str) -> str:
        """Remove credentials from a Redis URL for logging."""
        if "@" in url:
            scheme = url.split("://", 1)[0]
            return f"{scheme}://***@{url.rsplit('@', 1)[-1]}"
        return url

    def _make_key(self, execution_id: str) -> str:
        return f"{self.key_prefix}execution:{execution_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.key_prefix}executions:by_start"

    def append(self, execution: RemediationExecution) -> None:
        """
        Store a finished execution.

        Raises:
            HistoryStoreError: If the execution is already stored or Redis fails
        """
        key = self._make_key(execution.execution_id)
        try:
            stored = self.client.set(key, execution.model_dump_json(), nx=True, ex=self.ttl_seconds)
            if not stored:
                raise HistoryStoreError(
                    f"Execution {execution.execution_id} is already in history",
                    operation="append",
                )
            self.client.zadd(self._index_key, {execution.execution_id: execution.started_at.timestamp()})

            log_with_context(
                logger,
                "debug",
                "Stored execution in history",
                execution_id=execution.execution_id,
                status=execution.status.value,
            )

        except RedisError as e:
            log_with_context(
                logger,
                "error",
                "Failed to store execution",
                execution_id=execution.execution_id,
                error=str(e),
            )
            raise HistoryStoreError(
                f"Failed to store execution: {e}",
                operation="append",
                backend_error=str(e),
            ) from e

    def list_between(self, start: datetime, end: datetime) -> list[RemediationExecution]:
        """
        Executions started in [start, end], oldest first.

        Raises:
            HistoryStoreError: If Redis fails or a record is corrupt
        """
        try:
            ids = self.client.zrangebyscore(self._index_key, start.timestamp(), end.timestamp())
            if not ids:
                return []
            raw_records = self.client.mget([self._make_key(i) for i in ids])

            executions: list[RemediationExecution] = []
            expired: list[str] = []
            for execution_id, raw in zip(ids, raw_records, strict=True):
                if raw is None:
                    expired.append(execution_id)
                    continue
                executions.append(RemediationExecution.model_validate_json(raw))

            if expired:
                self.client.zrem(self._index_key, *expired)
            return executions

        except RedisError as e:
            log_with_context(
                logger,
                "error",
                "Failed to list history",
                error=str(e),
            )
            raise HistoryStoreError(
                f"Failed to list history: {e}",
                operation="list",
                backend_error=str(e),
            ) from e
        except ValidationError as e:
            raise HistoryStoreError(
                f"Corrupt history record: {e}",
                operation="list",
                backend_error=str(e),
            ) from e

    def get(self, execution_id: str) -> RemediationExecution | None:
        try:
            raw = self.client.get(self._make_key(execution_id))
        except RedisError as e:
            raise HistoryStoreError(
                f"Failed to get execution: {e}",
                operation="get",
                backend_error=str(e),
            ) from e
        if raw is None:
            return None
        return RemediationExecution.model_validate_json(raw)

    def close(self) -> None:
        """Close the Redis connection. Safe to call multiple times."""
        try:
            self.client.close()
            log_with_context(logger, "debug", "Closed Redis connection")
        except RedisError as e:
            log_with_context(
                logger,
                "warning",
                "Error closing Redis connection",
                error=str(e),
            )

    def __enter__(self) -> "RedisHistoryStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


@dataclass
class PendingApproval:
    """An execution suspended in PENDING, with what is needed to resume it."""

    execution: RemediationExecution
    finding: Finding
    options: ExecutionOptions


class ActiveExecutionRegistry:
    """
    Executions that have not reached a terminal status.

    Running executions and executions suspended for approval are tracked
    separately. All methods are safe to call from concurrent coordinators.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: dict[str, RemediationExecution] = {}
        self._pending: dict[str, PendingApproval] = {}

    def add_running(self, execution: RemediationExecution) -> None:
        with self._lock:
            self._running[execution.execution_id] = execution
            count = len(self._running)
        metrics_collector.set_gauge(MetricNames.ACTIVE_EXECUTIONS, count)

    def remove_running(self, execution_id: str) -> None:
        with self._lock:
            self._running.pop(execution_id, None)
            count = len(self._running)
        metrics_collector.set_gauge(MetricNames.ACTIVE_EXECUTIONS, count)

    def running(self) -> list[RemediationExecution]:
        with self._lock:
            return list(self._running.values())

    def add_pending(self, pending: PendingApproval) -> None:
        with self._lock:
            self._pending[pending.execution.execution_id] = pending
            count = len(self._pending)
        metrics_collector.set_gauge(MetricNames.PENDING_APPROVALS, count)

    def get_pending(self, execution_id: str) -> PendingApproval | None:
        with self._lock:
            return self._pending.get(execution_id)

    def pop_pending(self, execution_id: str) -> PendingApproval | None:
        with self._lock:
            pending = self._pending.pop(execution_id, None)
            count = len(self._pending)
        metrics_collector.set_gauge(MetricNames.PENDING_APPROVALS, count)
        return pending

    def pending(self) -> list[PendingApproval]:
        with self._lock:
            return list(self._pending.values())


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware")


def _average(durations: list[timedelta]) -> timedelta | None:
    if not durations:
        return None
    return sum(durations, timedelta(0)) / len(durations)


class HistoryTracker:
    """
    Ledger of executions and the source of progress and history reports.

    Attributes:
        store: Where finished executions are kept
        registry: Running and approval-pending executions
        progress_window_days: Default look-back for get_progress
    """

    def __init__(
        self,
        store: HistoryStore | None = None,
        registry: ActiveExecutionRegistry | None = None,
        progress_window_days: int = 30,
    ) -> None:
        self.store: HistoryStore = store if store is not None else InMemoryHistoryStore()
        self.registry = registry or ActiveExecutionRegistry()
        self.progress_window_days = progress_window_days

    def record(self, execution: RemediationExecution) -> None:
        """
        Append a terminal execution to history.

        Raises:
            HistoryStoreError: If the execution was already recorded
        """
        if not execution.status.is_terminal:
            raise HistoryStoreError(
                f"Execution {execution.execution_id} is {execution.status.value}, not terminal",
                operation="append",
            )
        self.store.append(execution)

    def find(self, execution_id: str) -> RemediationExecution:
        """
        Look up an execution among pending approvals and history.

        Raises:
            ExecutionNotFoundError: If no execution has the id
        """
        pending = self.registry.get_pending(execution_id)
        if pending is not None:
            return pending.execution
        execution = self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def get_progress(self, since: datetime | None = None) -> RemediationProgress:
        """
        Summarize executions started since a point in time.

        Running and approval-pending executions are always included.

        Raises:
            ValueError: If since is a naive datetime
        """
        if since is not None:
            _require_aware(since, "since")
        since = since or utcnow() - timedelta(days=self.progress_window_days)
        finished = self.store.list_between(since, utcnow())
        running = self.registry.running()
        pending = self.registry.pending()

        statuses = Counter(e.status for e in finished)
        finding_ids = {e.finding_id for e in finished}
        finding_ids.update(e.finding_id for e in running)
        finding_ids.update(p.finding.finding_id for p in pending)

        return RemediationProgress(
            since=since,
            total_findings=len(finding_ids),
            total_executions=len(finished) + len(running) + len(pending),
            completed=statuses[ExecutionStatus.COMPLETED],
            in_progress=len(running),
            failed=statuses[ExecutionStatus.FAILED] + statuses[ExecutionStatus.CANCELLED],
            rolled_back=statuses[ExecutionStatus.ROLLED_BACK],
            pending_approval=len(pending),
            auto_remediations_executed=sum(
                1
                for e in finished
                if e.success
                and not e.requires_approval
                and not e.dry_run
                and e.strategy in _AUTOMATED_PATHS
            ),
            average_duration=_average(
                [
                    d
                    for e in finished
                    if e.status is ExecutionStatus.COMPLETED and (d := e.duration) is not None
                ]
            ),
            active_execution_ids=[e.execution_id for e in running],
            recent_executions=sorted(finished, key=lambda e: e.started_at, reverse=True)[
                :RECENT_EXECUTIONS_LIMIT
            ],
        )

    def get_history(self, start: datetime, end: datetime) -> RemediationHistory:
        """
        Executions started in [start, end] with per-day metrics.

        Raises:
            ValueError: If start or end is naive, or start is after end
        """
        _require_aware(start, "History start")
        _require_aware(end, "History end")
        if start > end:
            raise ValueError("History start must not be after end")

        executions = self.store.list_between(start, end)
        by_day: dict[date, list[RemediationExecution]] = defaultdict(list)
        for execution in executions:
            by_day[execution.started_at.date()].append(execution)

        metrics = []
        for day in sorted(by_day):
            group = by_day[day]
            average = _average([d for e in group if (d := e.duration) is not None])
            metrics.append(
                RemediationMetric(
                    day=day,
                    total=len(group),
                    successful=sum(1 for e in group if e.success),
                    failed=sum(1 for e in group if e.status in _FAILED_STATUSES),
                    average_duration_minutes=average.total_seconds() / 60 if average else 0.0,
                )
            )

        return RemediationHistory(
            start=start,
            end=end,
            executions=executions,
            metrics=metrics,
            by_status=dict(Counter(e.status.value for e in executions)),
        )
