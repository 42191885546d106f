"""
Domain models for the remediation engine.

Input records (findings and their declarative actions) are frozen pydantic
models: the engine reads them but never changes them. Plans, executions and
reports are regular pydantic models so they serialize to JSON for the CLI
and for the Redis history store.

Ordering helpers live on the enums: ``Severity.rank`` orders severities,
``RemediationPriority.order`` orders priority buckets, and
``ExecutionStatus.can_transition_to`` encodes the execution state machine.

Usage:
    from controlfix.models import Finding, Severity

    finding = Finding.model_validate(json.loads(raw))
    if finding.severity.rank >= Severity.HIGH.rank:
        ...
"""

import uuid
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Return a random identifier for plans, executions and snapshots."""
    return str(uuid.uuid4())


# =============================================================================
# Enumerations
# =============================================================================


class Severity(str, Enum):
    """Finding severity, ordered from INFORMATIONAL up to CRITICAL."""

    INFORMATIONAL = "informational"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank used for ordering (higher is more severe)."""
        return _SEVERITY_RANK[self]

    @property
    def risk_score(self) -> float:
        """Risk weight used for risk-reduction projections."""
        return _RISK_SCORES[self]


_SEVERITY_RANK = {
    Severity.INFORMATIONAL: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

_RISK_SCORES = {
    Severity.CRITICAL: 10.0,
    Severity.HIGH: 7.5,
    Severity.MEDIUM: 5.0,
    Severity.LOW: 2.5,
    Severity.INFORMATIONAL: 1.0,
}


def estimate_effort(severity: Severity, automated: bool) -> timedelta:
    """
    Estimated hands-on effort for one finding.

    Automated fixes take minutes; manual fixes take hours for the
    most severe findings.
    """
    if automated:
        return {
            Severity.CRITICAL: timedelta(minutes=30),
            Severity.HIGH: timedelta(minutes=20),
        }.get(severity, timedelta(minutes=10))
    return {
        Severity.CRITICAL: timedelta(hours=4),
        Severity.HIGH: timedelta(hours=2),
        Severity.MEDIUM: timedelta(hours=1),
    }.get(severity, timedelta(minutes=30))


class RemediationPriority(str, Enum):
    """Priority bucket of a remediation item, derived from severity."""

    IMMEDIATE = "Immediate"
    WITHIN_24H = "Within 24h"
    WITHIN_7_DAYS = "Within 7 days"
    WITHIN_30_DAYS = "Within 30 days"
    BEST_EFFORT = "Best effort"

    @property
    def order(self) -> int:
        """Position of the bucket in the schedule (0 runs first)."""
        return list(RemediationPriority).index(self)

    @classmethod
    def from_severity(cls, severity: Severity) -> "RemediationPriority":
        return {
            Severity.CRITICAL: cls.IMMEDIATE,
            Severity.HIGH: cls.WITHIN_24H,
            Severity.MEDIUM: cls.WITHIN_7_DAYS,
            Severity.LOW: cls.WITHIN_30_DAYS,
        }.get(severity, cls.BEST_EFFORT)


class ActionKind(str, Enum):
    """
    Closed set of declarative remediation actions.

    Every member must have a handler in ``controlfix.actions.ACTION_HANDLERS``.
    """

    APPLY_POLICY = "apply_policy"
    ENABLE_ENCRYPTION = "enable_encryption"
    ENFORCE_MINIMUM_TLS = "enforce_minimum_tls"
    CONFIGURE_DIAGNOSTIC_LOGGING = "configure_diagnostic_logging"
    CONFIGURE_NETWORK_RULE = "configure_network_rule"


class RemediationPath(str, Enum):
    """Strategy that produced a step or carried out an execution."""

    AI_SCRIPT = "ai_script"
    DOMAIN_SERVICE = "domain_service"
    DECLARATIVE = "declarative"
    MANUAL = "manual"


class SkillLevel(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"


class ExecutionStatus(str, Enum):
    """
    Status of a remediation execution.

    Attributes:
        PENDING: Created, possibly waiting for approval
        APPROVED: Approval granted, waiting for an explicit execute call
        REJECTED: Approval denied (terminal)
        IN_PROGRESS: Strategy chain running against the resource
        VALIDATING: Post-execution checks running
        COMPLETED: Finished; see success and validation_result (terminal)
        FAILED: Denied, faulted or strategy failed (terminal)
        ROLLED_BACK: Validation failed and the before-snapshot was restored (terminal)
        CANCELLED: Interrupted by cancellation (terminal)
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_transition_to(self, target: "ExecutionStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.APPROVED,
            ExecutionStatus.REJECTED,
            ExecutionStatus.IN_PROGRESS,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.APPROVED: frozenset(
        {
            ExecutionStatus.IN_PROGRESS,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.IN_PROGRESS: frozenset(
        {
            ExecutionStatus.VALIDATING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.VALIDATING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.ROLLED_BACK,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.REJECTED: frozenset(),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.ROLLED_BACK: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


# =============================================================================
# Findings
# =============================================================================


class RemediationAction(BaseModel):
    """
    A declarative remediation step attached to a finding by the scanner.

    Attributes:
        action_type: Kind of change to apply
        description: Human-readable summary of the change
        tool_command: Equivalent CLI command, shown in plans
        script_path: Reference to an external script, informational only
        parameters: Handler-specific parameters
    """

    model_config = ConfigDict(frozen=True)

    action_type: ActionKind
    description: str
    tool_command: str | None = None
    script_path: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class Finding(BaseModel):
    """
    A compliance violation detected on one cloud resource.

    Findings are produced upstream by scanning and are read-only here.

    Attributes:
        finding_id: Unique identifier of the finding
        title: Short title (e.g., "Storage account allows TLS 1.0")
        description: Human-readable description of the violation
        severity: Severity of the violation
        resource_id: Identifier of the affected resource
        resource_type: Resource type (e.g., "AWS::S3::Bucket")
        resource_name: Display name of the resource
        affected_controls: Control IDs this violation maps to (e.g., "SC-8")
        is_auto_remediable: Whether automation may attempt a fix
        remediation_actions: Ordered declarative actions
        recommendation: Short remediation recommendation
        remediation_guidance: Free-text, often numbered, manual guidance
    """

    model_config = ConfigDict(frozen=True)

    finding_id: str = Field(..., description="Unique finding identifier")
    title: str = Field(default="", description="Short finding title")
    description: str = Field(default="", description="Violation description")
    severity: Severity = Field(..., description="Finding severity")
    resource_id: str = Field(..., description="Affected resource identifier")
    resource_type: str = Field(default="", description="Affected resource type")
    resource_name: str | None = Field(default=None, description="Resource display name")
    affected_controls: list[str] = Field(
        default_factory=list,
        description="Control identifiers this finding maps to",
    )
    is_auto_remediable: bool = Field(default=False)
    remediation_actions: list[RemediationAction] = Field(default_factory=list)
    recommendation: str = Field(default="")
    remediation_guidance: str = Field(default="")

    @property
    def control_id(self) -> str:
        """First affected control, or "Unknown" when none is mapped."""
        return self.affected_controls[0] if self.affected_controls else "Unknown"

    @property
    def control_families(self) -> set[str]:
        """Control families (the part before the first dash, upper-cased)."""
        return {c.split("-")[0].strip().upper() for c in self.affected_controls if c.strip()}

    @property
    def display_name(self) -> str:
        return self.resource_name or self.resource_id


# =============================================================================
# Plans
# =============================================================================


class RemediationStep(BaseModel):
    """
    One step of a remediation, planned or executed.

    ``source`` records which strategy produced the step.
    """

    order: int
    description: str
    command: str | None = None
    source: RemediationPath
    automated: bool = False


class RollbackPlan(BaseModel):
    description: str
    steps: list[str] = Field(default_factory=list)
    estimated_duration: timedelta = timedelta(minutes=30)


class RemediationItem(BaseModel):
    """
    Planned unit of work for one finding.

    Attributes:
        item_id: Unique item identifier
        finding_id: Finding this item remediates
        control_id: First affected control or "Unknown"
        dependencies: Finding IDs that should be remediated first
        automation_available: Whether an automated strategy applies
        estimated_effort: Effort from the severity/automation table
    """

    item_id: str = Field(default_factory=new_id)
    finding_id: str
    title: str
    control_id: str
    resource_id: str
    resource_type: str
    severity: Severity
    priority: RemediationPriority
    steps: list[RemediationStep] = Field(default_factory=list)
    validation_steps: list[str] = Field(default_factory=list)
    rollback_plan: RollbackPlan
    dependencies: list[str] = Field(default_factory=list)
    automation_available: bool
    estimated_effort: timedelta


class TimelinePhase(BaseModel):
    name: str
    priority: RemediationPriority
    start: datetime
    end: datetime
    item_ids: list[str] = Field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class ImplementationTimeline(BaseModel):
    start: datetime
    end: datetime
    phases: list[TimelinePhase] = Field(default_factory=list)

    @property
    def total_duration(self) -> timedelta:
        return self.end - self.start


class RemediationPlan(BaseModel):
    """
    Prioritized, dependency-aware plan for a set of findings.

    Attributes:
        plan_id: Unique plan identifier
        created_at: When the plan was generated
        items: Items in execution order
        total_findings: Number of findings submitted (before filtering)
        total_estimated_effort: Sum of item effort
        projected_risk_reduction: Percentage of total risk covered by the plan
        executive_summary: One-paragraph summary for humans
        timeline: Phases grouped by priority bucket
    """

    plan_id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    items: list[RemediationItem] = Field(default_factory=list)
    total_findings: int = 0
    total_estimated_effort: timedelta = timedelta(0)
    projected_risk_reduction: float = 0.0
    executive_summary: str = ""
    timeline: ImplementationTimeline


class PrioritizedFinding(BaseModel):
    finding_id: str
    rank: int
    rationale: str = ""


class ResourceImpact(BaseModel):
    resource_id: str
    resource_type: str
    finding_count: int
    automatable_count: int
    highest_severity: Severity


class RemediationImpactAnalysis(BaseModel):
    """Projected effect of remediating a set of findings."""

    analysis_id: str = Field(default_factory=new_id)
    analyzed_at: datetime = Field(default_factory=utcnow)
    total_findings: int
    automatable_findings: int
    manual_findings: int
    estimated_duration: timedelta
    current_risk_score: float
    projected_risk_score: float
    risk_reduction_percentage: float
    resource_impacts: list[ResourceImpact] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ManualStep(BaseModel):
    order: int
    description: str
    substeps: list[str] = Field(default_factory=list)


class ManualRemediationGuide(BaseModel):
    """
    Structured instructions for a finding no automation could fix.

    Attributes:
        steps: Numbered steps parsed from the finding's guidance text
        required_permissions: Permissions the operator needs
        skill_level: Expected operator experience
        ai_guidance: Natural-language explanation, when a model is available
    """

    guide_id: str = Field(default_factory=new_id)
    finding_id: str
    title: str
    overview: str
    steps: list[ManualStep] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    validation_steps: list[str] = Field(default_factory=list)
    required_permissions: list[str] = Field(default_factory=list)
    skill_level: SkillLevel
    estimated_duration: timedelta
    rollback_steps: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)
    ai_guidance: str | None = None


# =============================================================================
# Execution
# =============================================================================


class Snapshot(BaseModel):
    """
    Point-in-time capture of a resource's configuration.

    Snapshots are frozen. Restoring one writes a copy of ``configuration``
    back to the resource and leaves the snapshot untouched.
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: str = Field(default_factory=new_id)
    resource_id: str
    resource_type: str
    captured_at: datetime = Field(default_factory=utcnow)
    configuration: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)


class ValidationCheck(BaseModel):
    name: str
    description: str
    passed: bool
    detail: str | None = None


class ValidationResult(BaseModel):
    is_valid: bool
    checks: list[ValidationCheck] = Field(default_factory=list)
    failure_reason: str | None = None
    validated_at: datetime = Field(default_factory=utcnow)


class RollbackResult(BaseModel):
    execution_id: str
    success: bool
    steps_executed: list[str] = Field(default_factory=list)
    restored_snapshot_id: str | None = None
    error: str | None = None
    rolled_back_at: datetime = Field(default_factory=utcnow)


class RemediationExecution(BaseModel):
    """
    Runtime record of one remediation attempt.

    Mutated only by the ExecutionCoordinator that owns it; treated as
    immutable once appended to history.

    Attributes:
        status: Current state machine status
        success: Whether the remediation ran successfully
        message: Human-readable outcome, always set on terminal states
        error_message: Short error text when something went wrong
        error: Full error detail (traceback) for execution faults
        steps_executed: Steps actually carried out, in order
        changes_applied: Concrete changes made to the resource
        strategy: Strategy that handled the execution
        requires_manual_action: No automation applied; see manual_guide
    """

    execution_id: str = Field(default_factory=new_id)
    finding_id: str
    resource_id: str
    resource_type: str = ""
    severity: Severity
    control_ids: list[str] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    success: bool = False
    dry_run: bool = False
    message: str = ""
    error_message: str | None = None
    error: str | None = None
    steps_executed: list[RemediationStep] = Field(default_factory=list)
    changes_applied: list[str] = Field(default_factory=list)
    before_snapshot: Snapshot | None = None
    after_snapshot: Snapshot | None = None
    backup_id: str | None = None
    requires_approval: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None
    approval_comments: str | None = None
    executed_by: str = "system"
    strategy: RemediationPath | None = None
    requires_manual_action: bool = False
    manual_guide: ManualRemediationGuide | None = None
    validation_result: ValidationResult | None = None
    rollback_result: RollbackResult | None = None

    @property
    def duration(self) -> timedelta | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at


class ApprovalResult(BaseModel):
    execution_id: str
    approved: bool
    approver: str
    comments: str | None = None
    decided_at: datetime
    status: ExecutionStatus
    can_proceed: bool


class BatchSummary(BaseModel):
    success_rate: float = 0.0
    remediated_by_severity: dict[str, int] = Field(default_factory=dict)
    critical_remediated: int = 0
    high_remediated: int = 0
    control_families_affected: list[str] = Field(default_factory=list)
    estimated_risk_reduction: float = 0.0


class BatchRemediationResult(BaseModel):
    """
    Outcome of a batch: one execution per submitted finding, in input order.

    Attributes:
        succeeded: Executions that report success
        failed: Executions that ended FAILED, ROLLED_BACK or CANCELLED
        skipped: Executions left PENDING for approval or REJECTED
    """

    batch_id: str = Field(default_factory=new_id)
    started_at: datetime
    completed_at: datetime
    total: int
    succeeded: int
    failed: int
    skipped: int
    executions: list[RemediationExecution] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)

    @property
    def duration(self) -> timedelta:
        return self.completed_at - self.started_at


class RemediationProgress(BaseModel):
    since: datetime
    total_findings: int = 0
    total_executions: int = 0
    completed: int = 0
    in_progress: int = 0
    failed: int = 0
    rolled_back: int = 0
    pending_approval: int = 0
    auto_remediations_executed: int = 0
    average_duration: timedelta | None = None
    active_execution_ids: list[str] = Field(default_factory=list)
    recent_executions: list[RemediationExecution] = Field(default_factory=list)


class RemediationMetric(BaseModel):
    day: date
    total: int
    successful: int
    failed: int
    average_duration_minutes: float


class RemediationHistory(BaseModel):
    start: datetime
    end: datetime
    executions: list[RemediationExecution] = Field(default_factory=list)
    metrics: list[RemediationMetric] = Field(default_factory=list)
    by_status: dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Options
# =============================================================================


class PlanOptions(BaseModel):
    """
    Filters and layout for plan generation.

    Attributes:
        minimum_severity: Findings below this severity are dropped
        include_families: Keep only findings in these control families
        exclude_families: Drop findings in these control families
        automatable_only: Keep only auto-remediable findings
        group_by_resource: Order items by resource, then priority
    """

    minimum_severity: Severity = Severity.INFORMATIONAL
    include_families: set[str] | None = None
    exclude_families: set[str] = Field(default_factory=set)
    automatable_only: bool = False
    group_by_resource: bool = False


class ExecutionOptions(BaseModel):
    """
    Per-execution switches.

    Attributes:
        dry_run: Compute steps only; never touch cloud state
        require_approval: Suspend in PENDING until approved
        auto_validate: Run the ValidationEngine after a successful run
        auto_rollback_on_failure: Restore the before-snapshot when validation fails
        capture_snapshots: Capture before/after snapshots
        use_ai_script: Opt in to the AI script strategy
        script_dialect: Dialect for generated scripts (settings default when None)
        executed_by: Principal recorded on the execution
    """

    dry_run: bool = False
    require_approval: bool = True
    auto_validate: bool = True
    auto_rollback_on_failure: bool = True
    capture_snapshots: bool = True
    use_ai_script: bool = False
    script_dialect: str | None = None
    executed_by: str = "system"


class BatchOptions(BaseModel):
    """
    Batch switches.

    Attributes:
        max_concurrent: Concurrency cap (settings default when None)
        fail_fast: Abort the batch on the first failed execution
        serialize_per_resource: Run findings on the same resource one at a time
        execution: Options applied to every execution in the batch
    """

    max_concurrent: int | None = Field(default=None, ge=1)
    fail_fast: bool = False
    serialize_per_resource: bool = False
    execution: ExecutionOptions = Field(default_factory=ExecutionOptions)
