"""
Execution state machine for a single finding.

The ExecutionCoordinator carries one RemediationExecution from PENDING to
a terminal status:

    1. Configuration gate (automation disabled -> FAILED, never retried)
    2. Approval gate (approval required and not granted -> stay PENDING)
    3. Dry run (describe steps only -> COMPLETED, no cloud writes)
    4. Before-snapshot and backup identifier
    5. Strategy chain (IN_PROGRESS)
    6. After-snapshot and validation (VALIDATING)
    7. Rollback on validation failure (ROLLED_BACK) when enabled

Faults raised by collaborators are captured on the execution record and
the execution lands in FAILED. Cancellation lands in CANCELLED and is
re-raised so the caller's task actually stops. Every terminal execution
is appended to history exactly once.

Usage:
    coordinator = ExecutionCoordinator(settings, resolver, snapshots, validator, tracker)
    execution = await coordinator.run(finding, ExecutionOptions(require_approval=False))
"""

import asyncio
import traceback
import uuid

from controlfix.config import Settings
from controlfix.errors import InvalidTransitionError, RemediationDisabledError
from controlfix.history import HistoryTracker, PendingApproval
from controlfix.logging_config import ExecutionLogContext, get_logger, log_with_context
from controlfix.metrics import MetricNames, StageTimer, metrics_collector
from controlfix.models import (
    ExecutionOptions,
    ExecutionStatus,
    Finding,
    RemediationExecution,
    RollbackResult,
    utcnow,
)
from controlfix.path_resolver import RemediationPathResolver
from controlfix.snapshots import SnapshotStore
from controlfix.validation import ValidationEngine

logger = get_logger(__name__)

_STATUS_COUNTERS = {
    ExecutionStatus.COMPLETED: MetricNames.EXECUTIONS_COMPLETED_TOTAL,
    ExecutionStatus.FAILED: MetricNames.EXECUTIONS_FAILED_TOTAL,
    ExecutionStatus.CANCELLED: MetricNames.EXECUTIONS_FAILED_TOTAL,
    ExecutionStatus.ROLLED_BACK: MetricNames.EXECUTIONS_ROLLED_BACK_TOTAL,
}


def new_backup_id() -> str:
    """Backup identifier of the form ``backup-{8 hex}-{YYYYmmddHHMMSS}``."""
    return f"backup-{uuid.uuid4().hex[:8]}-{utcnow():%Y%m%d%H%M%S}"


class ExecutionCoordinator:
    """
    Runs the execution state machine.

    Attributes:
        settings: Engine settings (the automation switch is read on every run)
        resolver: Strategy chain
        snapshots: Snapshot capture and restore
        validator: Post-execution checks
        tracker: History and the active-execution registry
    """

    def __init__(
        self,
        settings: Settings,
        resolver: RemediationPathResolver,
        snapshots: SnapshotStore,
        validator: ValidationEngine,
        tracker: HistoryTracker,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.snapshots = snapshots
        self.validator = validator
        self.tracker = tracker

    @staticmethod
    def new_execution(finding: Finding, options: ExecutionOptions) -> RemediationExecution:
        return RemediationExecution(
            finding_id=finding.finding_id,
            resource_id=finding.resource_id,
            resource_type=finding.resource_type,
            severity=finding.severity,
            control_ids=list(finding.affected_controls),
            dry_run=options.dry_run,
            requires_approval=options.require_approval,
            executed_by=options.executed_by,
        )

    async def run(
        self,
        finding: Finding,
        options: ExecutionOptions,
        execution: RemediationExecution | None = None,
    ) -> RemediationExecution:
        """
        Carry an execution as far as it can go.

        Args:
            finding: Finding to remediate
            options: Execution switches
            execution: An APPROVED execution to resume (a new one is created otherwise)

        Returns:
            The execution, either terminal or PENDING awaiting approval

        Raises:
            asyncio.CancelledError: If the task is cancelled (execution lands in CANCELLED)
        """
        execution = execution or self.new_execution(finding, options)

        with ExecutionLogContext(execution.execution_id):
            log_with_context(
                logger,
                "info",
                "Starting remediation",
                finding_id=finding.finding_id,
                resource_id=finding.resource_id,
                severity=finding.severity.value,
                dry_run=options.dry_run,
            )

            if not self.settings.enable_automated_remediation:
                self._deny(execution, finding)
                return execution

            if options.require_approval and execution.status is not ExecutionStatus.APPROVED:
                execution.requires_approval = True
                execution.message = "Awaiting approval before remediation"
                self.tracker.registry.add_pending(
                    PendingApproval(execution=execution, finding=finding, options=options)
                )
                log_with_context(
                    logger,
                    "info",
                    "Execution suspended for approval",
                    finding_id=finding.finding_id,
                )
                return execution

            metrics_collector.increment(MetricNames.EXECUTIONS_STARTED_TOTAL)
            with metrics_collector.start_timer(StageTimer.TOTAL_EXECUTION):
                try:
                    if options.dry_run:
                        await self._dry_run(execution, finding, options)
                    else:
                        await self._execute(execution, finding, options)

                except asyncio.CancelledError:
                    execution.error_message = "Execution cancelled"
                    execution.message = f"Remediation of {finding.display_name} was cancelled"
                    if not execution.status.is_terminal:
                        self._transition(execution, ExecutionStatus.CANCELLED)
                    self._finalize(execution)
                    raise

                except Exception as e:
                    log_with_context(
                        logger,
                        "error",
                        "Remediation failed with an error",
                        finding_id=finding.finding_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    execution.success = False
                    execution.error_message = str(e) or type(e).__name__
                    execution.error = traceback.format_exc()
                    execution.message = f"Remediation of {finding.display_name} failed: {execution.error_message}"
                    if not execution.status.is_terminal:
                        self._transition(execution, ExecutionStatus.FAILED)

            self._finalize(execution)
            return execution

    def _deny(self, execution: RemediationExecution, finding: Finding) -> None:
        error = RemediationDisabledError(finding.finding_id)
        execution.success = False
        execution.error_message = str(error)
        execution.message = str(error)
        self._transition(execution, ExecutionStatus.FAILED)
        metrics_collector.increment(MetricNames.EXECUTIONS_DENIED_TOTAL)
        log_with_context(
            logger,
            "warning",
            "Automated remediation disabled, execution denied",
            finding_id=finding.finding_id,
        )
        self._finalize(execution)

    async def _dry_run(
        self,
        execution: RemediationExecution,
        finding: Finding,
        options: ExecutionOptions,
    ) -> None:
        resolved = await self.resolver.resolve_steps(finding, options)
        execution.steps_executed = resolved.steps
        execution.strategy = resolved.path
        execution.requires_manual_action = not resolved.is_automated
        execution.success = True
        execution.message = (
            f"DRY RUN: Would apply {len(resolved.steps)} changes to {finding.display_name}"
        )
        self._transition(execution, ExecutionStatus.COMPLETED)

    async def _execute(
        self,
        execution: RemediationExecution,
        finding: Finding,
        options: ExecutionOptions,
    ) -> None:
        if options.capture_snapshots:
            execution.before_snapshot = await self.snapshots.capture(
                finding.resource_id, finding.resource_type
            )
        execution.backup_id = new_backup_id()

        self._transition(execution, ExecutionStatus.IN_PROGRESS)
        self.tracker.registry.add_running(execution)

        outcome = await self.resolver.execute(finding, options)
        execution.strategy = outcome.path
        execution.steps_executed = outcome.steps
        execution.changes_applied = outcome.changes
        execution.success = outcome.success
        execution.message = outcome.message
        execution.error_message = outcome.error_message
        execution.requires_manual_action = outcome.requires_manual_action
        execution.manual_guide = outcome.manual_guide

        if not outcome.success:
            self._transition(execution, ExecutionStatus.FAILED)
            return

        if options.capture_snapshots:
            execution.after_snapshot = await self.snapshots.capture(
                finding.resource_id, finding.resource_type
            )

        if not options.auto_validate:
            self._transition(execution, ExecutionStatus.COMPLETED)
            return

        self._transition(execution, ExecutionStatus.VALIDATING)
        validation = self.validator.validate(execution)
        execution.validation_result = validation

        if validation.is_valid:
            self._transition(execution, ExecutionStatus.COMPLETED)
            return

        if not options.auto_rollback_on_failure:
            execution.message = f"Remediation applied but validation failed: {validation.failure_reason}"
            self._transition(execution, ExecutionStatus.COMPLETED)
            return

        rollback = await self.rollback(execution)
        execution.rollback_result = rollback
        execution.success = False
        if rollback.success:
            execution.message = (
                f"Validation failed ({validation.failure_reason}); "
                f"restored {finding.display_name} from snapshot {rollback.restored_snapshot_id}"
            )
            self._transition(execution, ExecutionStatus.ROLLED_BACK)
        else:
            execution.error_message = rollback.error
            execution.message = (
                f"Validation failed ({validation.failure_reason}) and rollback failed: {rollback.error}"
            )
            self._transition(execution, ExecutionStatus.FAILED)

    async def rollback(self, execution: RemediationExecution) -> RollbackResult:
        """
        Restore an execution's before-snapshot.

        Restore errors are captured on the result and never raised.
        """
        snapshot = execution.before_snapshot
        if snapshot is None:
            return RollbackResult(
                execution_id=execution.execution_id,
                success=False,
                error="No before-snapshot was captured for this execution",
            )

        steps = [f"Restore {snapshot.resource_id} from snapshot {snapshot.snapshot_id}"]
        try:
            with metrics_collector.start_timer(StageTimer.ROLLBACK):
                await self.snapshots.restore(snapshot)
        except Exception as e:
            log_with_context(
                logger,
                "error",
                "Rollback failed",
                resource_id=snapshot.resource_id,
                snapshot_id=snapshot.snapshot_id,
                error=str(e),
            )
            return RollbackResult(
                execution_id=execution.execution_id,
                success=False,
                steps_executed=steps,
                restored_snapshot_id=None,
                error=str(e) or type(e).__name__,
            )

        steps.append(f"Configuration restored from backup {execution.backup_id or snapshot.snapshot_id}")
        log_with_context(
            logger,
            "info",
            "Rolled back execution",
            resource_id=snapshot.resource_id,
            snapshot_id=snapshot.snapshot_id,
        )
        return RollbackResult(
            execution_id=execution.execution_id,
            success=True,
            steps_executed=steps,
            restored_snapshot_id=snapshot.snapshot_id,
        )

    def decide(
        self,
        execution: RemediationExecution,
        approved: bool,
        approver: str,
        comments: str | None = None,
    ) -> None:
        """
        Record an approval decision on a PENDING execution.

        Approval moves the execution to APPROVED and leaves it registered
        as pending until it is explicitly executed. Rejection is terminal.
        """
        execution.approved_by = approver
        execution.approved_at = utcnow()
        execution.approval_comments = comments
        metrics_collector.increment(
            MetricNames.APPROVALS_TOTAL,
            labels={"decision": "approved" if approved else "rejected"},
        )

        if approved:
            self._transition(execution, ExecutionStatus.APPROVED)
            execution.message = f"Approved by {approver}; awaiting execution"
            return

        self._transition(execution, ExecutionStatus.REJECTED)
        execution.message = f"Remediation rejected by {approver}"
        self.tracker.registry.pop_pending(execution.execution_id)
        self._finalize(execution)

    def _transition(self, execution: RemediationExecution, target: ExecutionStatus) -> None:
        if not execution.status.can_transition_to(target):
            raise InvalidTransitionError(
                execution.execution_id,
                execution.status.value,
                target.value,
            )
        log_with_context(
            logger,
            "debug",
            "Execution status changed",
            from_status=execution.status.value,
            to_status=target.value,
        )
        execution.status = target

    def _finalize(self, execution: RemediationExecution) -> None:
        execution.completed_at = utcnow()
        self.tracker.registry.remove_running(execution.execution_id)
        self.tracker.record(execution)

        counter = _STATUS_COUNTERS.get(execution.status)
        if counter:
            metrics_collector.increment(counter)
        log_with_context(
            logger,
            "info" if execution.success else "warning",
            "Remediation finished",
            finding_id=execution.finding_id,
            status=execution.status.value,
            success=execution.success,
            strategy=execution.strategy.value if execution.strategy else None,
            change_count=len(execution.changes_applied),
        )
