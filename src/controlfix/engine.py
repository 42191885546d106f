"""
Public entry point of the remediation engine.

RemediationEngine wires the planner, strategy chain, coordinator, batch
scheduler and history tracker together and exposes the operations callers
use:

    generate_plan          ordered, dependency-aware plan for findings
    execute_one            run (or suspend for approval) one finding
    execute_batch          run many findings under a concurrency cap
    process_approval       approve or reject a suspended execution
    execute_approved       resume an approved execution
    rollback_execution     restore the before-snapshot of a past execution
    get_progress           summary of recent executions
    get_history            executions in a time range with daily metrics
    generate_manual_guide  structured guide for a human operator
    analyze_impact         projected effect of remediating findings
    prioritize_findings    ranking that weighs business context

Usage:
    engine = RemediationEngine.from_settings(get_settings(), cloud=CloudControlResourceClient())
    execution = await engine.execute_one(finding, ExecutionOptions(require_approval=False))
"""

from datetime import datetime

from controlfix.batch import BatchScheduler
from controlfix.collaborators import (
    CloudResourceClient,
    DomainRemediationService,
    ScriptExecutor,
    TextGenerationService,
)
from controlfix.config import Settings
from controlfix.coordinator import ExecutionCoordinator
from controlfix.errors import ExecutionNotFoundError
from controlfix.history import HistoryStore, HistoryTracker, InMemoryHistoryStore, RedisHistoryStore
from controlfix.logging_config import ExecutionLogContext, get_logger, log_with_context
from controlfix.models import (
    ApprovalResult,
    BatchOptions,
    BatchRemediationResult,
    ExecutionOptions,
    ExecutionStatus,
    Finding,
    ManualRemediationGuide,
    PlanOptions,
    PrioritizedFinding,
    RemediationExecution,
    RemediationHistory,
    RemediationImpactAnalysis,
    RemediationPlan,
    RemediationProgress,
    RollbackResult,
)
from controlfix.path_resolver import RemediationPathResolver
from controlfix.planner import PlanGenerator
from controlfix.snapshots import SnapshotStore
from controlfix.text_generation import BedrockTextGenerationService
from controlfix.validation import ValidationEngine

logger = get_logger(__name__)


class RemediationEngine:
    """
    Facade over planning, execution and history.

    Attributes:
        settings: Engine settings
        tracker: History and active executions
        planner: Plan generation and analysis
        coordinator: Single-execution state machine
        scheduler: Batch execution
    """

    def __init__(
        self,
        settings: Settings,
        cloud: CloudResourceClient,
        domain_service: DomainRemediationService | None = None,
        text_generator: TextGenerationService | None = None,
        script_executor: ScriptExecutor | None = None,
        history_store: HistoryStore | None = None,
        validator: ValidationEngine | None = None,
    ) -> None:
        self.settings = settings
        self.resolver = RemediationPathResolver(
            cloud=cloud,
            settings=settings,
            domain_service=domain_service,
            text_generator=text_generator,
            script_executor=script_executor,
        )
        self.tracker = HistoryTracker(
            store=history_store if history_store is not None else InMemoryHistoryStore(),
            progress_window_days=settings.progress_window_days,
        )
        self.planner = PlanGenerator(self.resolver)
        self.coordinator = ExecutionCoordinator(
            settings=settings,
            resolver=self.resolver,
            snapshots=SnapshotStore(cloud),
            validator=validator or ValidationEngine(),
            tracker=self.tracker,
        )
        self.scheduler = BatchScheduler(self.coordinator, settings)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cloud: CloudResourceClient,
        domain_service: DomainRemediationService | None = None,
        text_generator: TextGenerationService | None = None,
        script_executor: ScriptExecutor | None = None,
    ) -> "RemediationEngine":
        """
        Build an engine, wiring Bedrock and Redis when settings enable them.

        Raises:
            HistoryStoreError: If REDIS_URL is set but Redis is unreachable
        """
        if text_generator is None and settings.enable_ai_scripts:
            text_generator = BedrockTextGenerationService(
                model_id=settings.bedrock_model_id,
                region=settings.aws_region,
            )

        history_store: HistoryStore | None = None
        if settings.redis_url:
            history_store = RedisHistoryStore(
                redis_url=settings.redis_url,
                retention_days=settings.history_retention_days,
            )

        return cls(
            settings=settings,
            cloud=cloud,
            domain_service=domain_service,
            text_generator=text_generator,
            script_executor=script_executor,
            history_store=history_store,
        )

    async def generate_plan(
        self,
        findings: list[Finding],
        options: PlanOptions | None = None,
    ) -> RemediationPlan:
        return await self.planner.generate_plan(findings, options)

    async def execute_one(
        self,
        finding: Finding,
        options: ExecutionOptions | None = None,
    ) -> RemediationExecution:
        """
        Remediate one finding.

        With the default options the execution is suspended in PENDING
        until process_approval and execute_approved are called.
        """
        return await self.coordinator.run(finding, options or ExecutionOptions())

    async def execute_batch(
        self,
        findings: list[Finding],
        options: BatchOptions | None = None,
    ) -> BatchRemediationResult:
        return await self.scheduler.run_batch(findings, options)

    def process_approval(
        self,
        execution_id: str,
        approved: bool,
        approver: str,
        comments: str | None = None,
    ) -> ApprovalResult:
        """
        Approve or reject an execution suspended for approval.

        Idempotent: once a decision is recorded, later calls return that
        decision unchanged whatever they ask for.

        Raises:
            ExecutionNotFoundError: If no execution has the id
        """
        execution = self.tracker.find(execution_id)

        with ExecutionLogContext(execution_id):
            if execution.status is ExecutionStatus.PENDING and execution.approved_by is None:
                self.coordinator.decide(execution, approved, approver, comments)
                log_with_context(
                    logger,
                    "info",
                    "Approval decision recorded",
                    approved=approved,
                    approver=approver,
                )
            else:
                log_with_context(
                    logger,
                    "info",
                    "Approval already decided",
                    status=execution.status.value,
                    approver=execution.approved_by,
                )

        decided = execution.status is not ExecutionStatus.PENDING and execution.approved_by is not None
        was_approved = decided and execution.status is not ExecutionStatus.REJECTED
        return ApprovalResult(
            execution_id=execution_id,
            approved=was_approved,
            approver=execution.approved_by or approver,
            comments=execution.approval_comments,
            decided_at=execution.approved_at or execution.started_at,
            status=execution.status,
            can_proceed=execution.status is ExecutionStatus.APPROVED,
        )

    async def execute_approved(self, execution_id: str) -> RemediationExecution:
        """
        Run an execution that has been approved.

        Returns the execution unchanged when it is not waiting in APPROVED
        (still pending, or already finished).

        Raises:
            ExecutionNotFoundError: If no execution has the id
        """
        pending = self.tracker.registry.get_pending(execution_id)
        if pending is None:
            return self.tracker.find(execution_id)
        if pending.execution.status is not ExecutionStatus.APPROVED:
            return pending.execution

        self.tracker.registry.pop_pending(execution_id)
        return await self.coordinator.run(pending.finding, pending.options, pending.execution)

    async def rollback_execution(self, execution_id: str) -> RollbackResult:
        """
        Restore the before-snapshot of a finished execution.

        The historical record is left unchanged; the returned result
        describes the restore.

        Raises:
            ExecutionNotFoundError: If no finished execution has the id
        """
        execution = self.tracker.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        with ExecutionLogContext(execution_id):
            return await self.coordinator.rollback(execution)

    def get_progress(self, since: datetime | None = None) -> RemediationProgress:
        return self.tracker.get_progress(since)

    def get_history(self, start: datetime, end: datetime) -> RemediationHistory:
        return self.tracker.get_history(start, end)

    async def generate_manual_guide(self, finding: Finding) -> ManualRemediationGuide:
        return await self.resolver.build_manual_guide(finding)

    def analyze_impact(self, findings: list[Finding]) -> RemediationImpactAnalysis:
        return self.planner.analyze_impact(findings)

    async def prioritize_findings(
        self,
        findings: list[Finding],
        business_context: str = "",
    ) -> list[PrioritizedFinding]:
        return await self.planner.prioritize_with_context(findings, business_context)
