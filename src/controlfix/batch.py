"""
Bounded-concurrency batch execution.

One coordinator run is launched per finding inside an ``asyncio.TaskGroup``
and admitted through a semaphore sized to the concurrency cap, so a batch
may be far larger than the cap. Results are returned in input order.

Without fail-fast every finding yields exactly one execution: an error that
escapes the coordinator is turned into a FAILED execution for that finding.
With fail-fast the first failure cancels the remaining work and raises
BatchAbortedError.

Usage:
    scheduler = BatchScheduler(coordinator, settings)
    result = await scheduler.run_batch(findings, BatchOptions(max_concurrent=2))
"""

import asyncio
import traceback
from collections import Counter

from controlfix.config import Settings
from controlfix.coordinator import ExecutionCoordinator
from controlfix.errors import BatchAbortedError
from controlfix.logging_config import BatchLogContext, get_logger, log_with_context
from controlfix.metrics import MetricNames, StageTimer, metrics_collector
from controlfix.models import (
    BatchOptions,
    BatchRemediationResult,
    BatchSummary,
    ExecutionStatus,
    Finding,
    RemediationExecution,
    Severity,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

_FAILED = frozenset({ExecutionStatus.FAILED, ExecutionStatus.ROLLED_BACK, ExecutionStatus.CANCELLED})
_SKIPPED = frozenset({ExecutionStatus.PENDING, ExecutionStatus.REJECTED})


class _FailFast(Exception):
    """Raised inside the task group to stop a fail-fast batch."""

    def __init__(self, finding_id: str, reason: str) -> None:
        super().__init__(reason)
        self.finding_id = finding_id
        self.reason = reason


def summarize(findings: list[Finding], executions: list[RemediationExecution]) -> BatchSummary:
    """Success rate, remediated counts by severity and affected control families."""
    by_id = {f.finding_id: f for f in findings}
    remediated = [e for e in executions if e.success and not e.dry_run]
    by_severity = Counter(e.severity.value for e in remediated)

    families: set[str] = set()
    for execution in remediated:
        finding = by_id.get(execution.finding_id)
        if finding is not None:
            families |= finding.control_families

    total_risk = sum(f.severity.risk_score for f in findings)
    remediated_risk = sum(e.severity.risk_score for e in remediated)

    return BatchSummary(
        success_rate=round(sum(1 for e in executions if e.success) / len(executions) * 100, 2)
        if executions
        else 0.0,
        remediated_by_severity=dict(by_severity),
        critical_remediated=by_severity[Severity.CRITICAL.value],
        high_remediated=by_severity[Severity.HIGH.value],
        control_families_affected=sorted(families),
        estimated_risk_reduction=round(remediated_risk / total_risk * 100, 2) if total_risk else 0.0,
    )


class BatchScheduler:
    """
    Runs many executions under a concurrency cap.

    Attributes:
        coordinator: Runs each execution
        settings: Supplies the default concurrency cap
    """

    def __init__(self, coordinator: ExecutionCoordinator, settings: Settings) -> None:
        self.coordinator = coordinator
        self.settings = settings

    async def run_batch(
        self,
        findings: list[Finding],
        options: BatchOptions | None = None,
    ) -> BatchRemediationResult:
        """
        Execute remediation for every finding.

        Args:
            findings: Findings to remediate
            options: Concurrency cap, fail-fast and per-execution options

        Returns:
            BatchRemediationResult with one execution per finding, in input order

        Raises:
            BatchAbortedError: With fail_fast, on the first failed execution or error
        """
        options = options or BatchOptions()
        max_concurrent = options.max_concurrent or self.settings.max_concurrent_remediations
        batch_id = new_id()
        started_at = utcnow()
        metrics_collector.increment(MetricNames.BATCHES_TOTAL)

        with BatchLogContext(batch_id), metrics_collector.start_timer(StageTimer.BATCH):
            log_with_context(
                logger,
                "info",
                "Starting batch",
                finding_count=len(findings),
                max_concurrent=max_concurrent,
                fail_fast=options.fail_fast,
            )

            semaphore = asyncio.Semaphore(max_concurrent)
            resource_locks: dict[str, asyncio.Lock] = {}
            if options.serialize_per_resource:
                resource_locks = {f.resource_id: asyncio.Lock() for f in findings}
            results: list[RemediationExecution | None] = [None] * len(findings)

            async def run_one(index: int, finding: Finding) -> None:
                lock = resource_locks.get(finding.resource_id)
                if lock is not None:
                    async with lock, semaphore:
                        results[index] = await self._run_guarded(finding, options)
                else:
                    async with semaphore:
                        results[index] = await self._run_guarded(finding, options)

                execution = results[index]
                if options.fail_fast and execution is not None and execution.status in _FAILED:
                    raise _FailFast(
                        finding.finding_id,
                        execution.error_message or execution.message or execution.status.value,
                    )

            try:
                async with asyncio.TaskGroup() as group:
                    for index, finding in enumerate(findings):
                        group.create_task(run_one(index, finding))
            except BaseExceptionGroup as eg:
                aborted = eg.subgroup(_FailFast)
                if aborted is None:
                    raise
                first = aborted.exceptions[0]
                if not isinstance(first, _FailFast):
                    raise
                log_with_context(
                    logger,
                    "warning",
                    "Batch aborted",
                    failed_finding_id=first.finding_id,
                    reason=first.reason,
                )
                raise BatchAbortedError(
                    batch_id,
                    first.finding_id,
                    first.reason,
                    executions=[e for e in results if e is not None],
                ) from None

            executions = [e for e in results if e is not None]
            result = BatchRemediationResult(
                batch_id=batch_id,
                started_at=started_at,
                completed_at=utcnow(),
                total=len(findings),
                succeeded=sum(1 for e in executions if e.success),
                failed=sum(1 for e in executions if e.status in _FAILED),
                skipped=sum(1 for e in executions if e.status in _SKIPPED),
                executions=executions,
                summary=summarize(findings, executions),
            )

            log_with_context(
                logger,
                "info",
                "Batch finished",
                total=result.total,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
            )
            return result

    async def _run_guarded(self, finding: Finding, options: BatchOptions) -> RemediationExecution:
        try:
            return await self.coordinator.run(finding, options.execution)
        except Exception as e:
            if options.fail_fast:
                raise _FailFast(finding.finding_id, str(e) or type(e).__name__) from e
            log_with_context(
                logger,
                "error",
                "Execution raised outside the coordinator",
                finding_id=finding.finding_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            execution = self.coordinator.new_execution(finding, options.execution)
            execution.status = ExecutionStatus.FAILED
            execution.success = False
            execution.error_message = str(e) or type(e).__name__
            execution.error = traceback.format_exc()
            execution.message = f"Remediation of {finding.display_name} failed: {execution.error_message}"
            execution.completed_at = utcnow()
            return execution
