"""
Remediation path selection.

A finding is handled by the first strategy in a fixed chain that applies:

    1. AI script      generate a script with the text-generation model and
                      run it through the sanitized script executor
                      (opt-in; any failure falls through)
    2. Domain service a domain remediation service that claims the finding
                      builds and runs its own plan
    3. Declarative    the finding's RemediationAction entries are applied
                      by read-modify-write against the cloud client
    4. Manual         a structured ManualRemediationGuide is produced

Findings that are not auto-remediable go straight to the manual guide.

The resolver has two entry points. ``resolve_steps`` describes what the
chain would do without side effects (used for plans and dry runs);
``execute`` runs the chain for real.

Usage:
    resolver = RemediationPathResolver(cloud=client, settings=settings)
    resolved = await resolver.resolve_steps(finding)
    outcome = await resolver.execute(finding, ExecutionOptions(require_approval=False))
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from controlfix.actions import apply_action
from controlfix.collaborators import (
    CloudResourceClient,
    DomainRemediationService,
    NullDomainRemediationService,
    NullTextGenerationService,
    ScriptExecutor,
    ScriptOptions,
    TextGenerationService,
)
from controlfix.config import Settings
from controlfix.errors import ControlFixError
from controlfix.logging_config import get_logger, log_with_context
from controlfix.metrics import MetricNames, StageTimer, metrics_collector
from controlfix.models import (
    ExecutionOptions,
    Finding,
    ManualRemediationGuide,
    ManualStep,
    RemediationPath,
    RemediationStep,
    Severity,
    SkillLevel,
    estimate_effort,
)
from controlfix.script_executor import SubprocessScriptExecutor

logger = get_logger(__name__)

_NUMBERED_LINE = re.compile(r"^\s*(\d+)\.\s+(.+)$")
_BULLETS = ("-", "*", "•")
_METADATA_PREFIXES = ("**", "##", "---", "IMMEDIATE")
_ACTION_VERBS = (
    "enable",
    "configure",
    "implement",
    "review",
    "create",
    "navigate",
    "set",
    "verify",
    "ensure",
    "deploy",
    "install",
    "update",
)


@dataclass
class ResolvedSteps:
    """Steps the chain would run, and whether they are automated."""

    steps: list[RemediationStep]
    is_automated: bool
    path: RemediationPath


@dataclass
class StrategyOutcome:
    """
    Result of running the strategy chain for one finding.

    Attributes:
        path: Strategy that handled the finding
        success: Whether the remediation was applied
        steps: Steps actually carried out
        changes: Concrete changes applied to the resource
        message: Human-readable summary
        error_message: Short failure text
        manual_guide: Guide for findings that need a human
    """

    path: RemediationPath
    success: bool
    message: str
    steps: list[RemediationStep] = field(default_factory=list)
    changes: list[str] = field(default_factory=list)
    error_message: str | None = None
    manual_guide: ManualRemediationGuide | None = None

    @property
    def requires_manual_action(self) -> bool:
        return self.path is RemediationPath.MANUAL


def _number(steps: list[RemediationStep]) -> list[RemediationStep]:
    for index, step in enumerate(steps, start=1):
        step.order = index
    return steps


class RemediationStrategy(ABC):
    """One link of the strategy chain."""

    path: RemediationPath

    @abstractmethod
    async def describe(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> list[RemediationStep] | None:
        """Return planned steps, or None when the strategy does not apply."""

    @abstractmethod
    async def execute(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> StrategyOutcome | None:
        """Run the strategy, or return None to fall through to the next one."""


class AiScriptStrategy(RemediationStrategy):
    """Generate a script with the model and run it through the executor."""

    path = RemediationPath.AI_SCRIPT

    def __init__(
        self,
        text_generator: TextGenerationService,
        script_executor: ScriptExecutor,
        script_options: ScriptOptions,
        default_dialect: str,
    ) -> None:
        self.text_generator = text_generator
        self.script_executor = script_executor
        self.script_options = script_options
        self.default_dialect = default_dialect

    def _applies(self, options: ExecutionOptions) -> bool:
        return options.use_ai_script and self.text_generator.enabled

    async def describe(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> list[RemediationStep] | None:
        if not self._applies(options):
            return None
        dialect = options.script_dialect or self.default_dialect
        return [
            RemediationStep(
                order=1,
                description=f"Generate a {dialect} remediation script for {finding.display_name}",
                source=self.path,
                automated=True,
            ),
            RemediationStep(
                order=2,
                description="Run the sanitized script and record reported changes",
                source=self.path,
                automated=True,
            ),
        ]

    async def execute(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> StrategyOutcome | None:
        if not self._applies(options):
            return None
        dialect = options.script_dialect or self.default_dialect

        try:
            script = await self.text_generator.generate_script(finding, dialect)
            result = await self.script_executor.execute(script, dialect, self.script_options)
        except Exception as e:
            metrics_collector.increment(
                MetricNames.STRATEGY_FALLTHROUGH_TOTAL,
                labels={"strategy": self.path.value},
            )
            log_with_context(
                logger,
                "warning",
                "AI script path failed, falling through",
                finding_id=finding.finding_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if not result.success:
            metrics_collector.increment(
                MetricNames.STRATEGY_FALLTHROUGH_TOTAL,
                labels={"strategy": self.path.value},
            )
            log_with_context(
                logger,
                "warning",
                "AI script did not succeed, falling through",
                finding_id=finding.finding_id,
                error=result.error,
                attempts=result.attempts,
            )
            return None

        steps = [
            RemediationStep(
                order=1,
                description=f"Ran generated {dialect} remediation script",
                command=script,
                source=self.path,
                automated=True,
            )
        ]
        steps.extend(
            RemediationStep(order=0, description=change, source=self.path, automated=True)
            for change in result.changes
        )
        return StrategyOutcome(
            path=self.path,
            success=True,
            steps=_number(steps),
            changes=list(result.changes),
            message=f"Applied {len(result.changes)} change(s) to {finding.display_name} "
            f"with a generated {dialect} script",
        )


class DomainServiceStrategy(RemediationStrategy):
    """
    Delegate to a domain remediation service that claims the finding.

    Once the service has claimed a finding its result is final; a failure
    is reported as the execution's failure rather than falling through,
    because the service may already have changed the resource.
    """

    path = RemediationPath.DOMAIN_SERVICE

    def __init__(self, service: DomainRemediationService) -> None:
        self.service = service

    async def describe(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> list[RemediationStep] | None:
        if not await self.service.can_auto_remediate(finding):
            return None
        return [
            RemediationStep(
                order=1,
                description=f"Apply domain remediation plan to {finding.display_name}",
                source=self.path,
                automated=True,
            )
        ]

    async def execute(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> StrategyOutcome | None:
        if not await self.service.can_auto_remediate(finding):
            return None

        plan = await self.service.build_plan(finding)
        result = await self.service.execute(plan, dry_run=False)

        steps = _number(
            [
                RemediationStep(order=0, description=action, source=self.path, automated=True)
                for action in result.applied_actions
            ]
        )
        if result.success:
            message = f"Domain service applied {len(result.applied_actions)} action(s) to {finding.display_name}"
        else:
            message = f"Domain service failed to remediate {finding.display_name}"
        return StrategyOutcome(
            path=self.path,
            success=result.success,
            steps=steps,
            changes=list(result.applied_actions),
            message=message,
            error_message="; ".join(result.errors) if result.errors else None,
        )


class DeclarativeActionStrategy(RemediationStrategy):
    """Apply the finding's RemediationAction entries by read-modify-write."""

    path = RemediationPath.DECLARATIVE

    def __init__(self, cloud: CloudResourceClient) -> None:
        self.cloud = cloud

    async def describe(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> list[RemediationStep] | None:
        if not finding.remediation_actions:
            return None
        return [
            RemediationStep(
                order=index,
                description=action.description,
                command=action.tool_command,
                source=self.path,
                automated=True,
            )
            for index, action in enumerate(finding.remediation_actions, start=1)
        ]

    async def execute(
        self,
        finding: Finding,
        options: ExecutionOptions,
    ) -> StrategyOutcome | None:
        if not finding.remediation_actions:
            return None

        steps: list[RemediationStep] = []
        changes: list[str] = []
        for index, action in enumerate(finding.remediation_actions, start=1):
            current = await self.cloud.get_resource(finding.resource_id, finding.resource_type)
            updated, change = apply_action(action, current)
            if updated != current:
                await self.cloud.update_resource(finding.resource_id, finding.resource_type, updated)
                changes.append(change)
            steps.append(
                RemediationStep(
                    order=index,
                    description=f"{action.description}: {change}",
                    command=action.tool_command,
                    source=self.path,
                    automated=True,
                )
            )
            log_with_context(
                logger,
                "info",
                "Applied declarative action",
                finding_id=finding.finding_id,
                action_type=action.action_type.value,
                change=change,
            )

        return StrategyOutcome(
            path=self.path,
            success=True,
            steps=steps,
            changes=changes,
            message=f"Applied {len(changes)} change(s) to {finding.display_name}",
        )


def parse_guidance_steps(guidance: str) -> list[ManualStep]:
    """
    Extract numbered steps from free-text remediation guidance.

    Numbered lines become steps (bold markers removed, section headers
    ending in ":" or written in capitals skipped); bullets after a
    numbered line become sub-steps. Text without numbered lines falls
    back to lines that start with an action verb or a bullet.

    Example:
        >>> steps = parse_guidance_steps("1. Enable logging\\n- pick a bucket\\n2. Verify")
        >>> [s.description for s in steps]
        ['Enable logging', 'Verify']
    """
    lines = [line.strip() for line in guidance.splitlines() if line.strip()]
    steps: list[ManualStep] = []
    in_action_section = False

    for line in lines:
        match = _NUMBERED_LINE.match(line)
        if match:
            in_action_section = True
            text = match.group(2).replace("**", "").strip()
            if text.endswith(":") or text.upper() == text:
                continue
            steps.append(ManualStep(order=len(steps) + 1, description=text))
            continue

        if in_action_section and line.startswith(_BULLETS):
            if line.startswith(_METADATA_PREFIXES):
                continue
            substep = line[1:].strip()
            if substep.startswith(_METADATA_PREFIXES) or "NIST" in substep or "REFERENCES" in substep:
                continue
            substep = substep.replace("**", "").strip()
            if steps:
                steps[-1].substeps.append(substep)
            else:
                steps.append(ManualStep(order=1, description=substep))

    if steps:
        return steps

    for line in lines:
        if line.startswith(_METADATA_PREFIXES) or line.startswith(("REFERENCES", "NIST")) or "800-53" in line:
            continue
        if line.lower().startswith(_ACTION_VERBS) or line.startswith(_BULLETS):
            text = line.lstrip("-*• ").replace("**", "").strip()
            if len(text) > 10:
                steps.append(ManualStep(order=len(steps) + 1, description=text))
    return steps


def skill_level_for(severity: Severity) -> SkillLevel:
    if severity is Severity.CRITICAL:
        return SkillLevel.ADVANCED
    if severity is Severity.HIGH:
        return SkillLevel.INTERMEDIATE
    return SkillLevel.BEGINNER


class RemediationPathResolver:
    """
    Chooses and runs the remediation strategy for a finding.

    Attributes:
        text_generator: Model used for scripts and guidance (null object when absent)
        strategies: Automated strategies in evaluation order
    """

    def __init__(
        self,
        cloud: CloudResourceClient,
        settings: Settings,
        domain_service: DomainRemediationService | None = None,
        text_generator: TextGenerationService | None = None,
        script_executor: ScriptExecutor | None = None,
    ) -> None:
        self.text_generator: TextGenerationService = text_generator or NullTextGenerationService()
        self.strategies: list[RemediationStrategy] = [
            AiScriptStrategy(
                text_generator=self.text_generator,
                script_executor=script_executor or SubprocessScriptExecutor(),
                script_options=ScriptOptions(
                    timeout_seconds=settings.script_timeout_seconds,
                    max_retries=settings.script_max_retries,
                    sanitize=True,
                ),
                default_dialect=settings.script_dialect,
            ),
            DomainServiceStrategy(domain_service or NullDomainRemediationService()),
            DeclarativeActionStrategy(cloud),
        ]

    async def resolve_steps(
        self,
        finding: Finding,
        options: ExecutionOptions | None = None,
    ) -> ResolvedSteps:
        """
        Describe what the chain would do for a finding, without side effects.

        Args:
            finding: Finding to plan for
            options: Execution options (decides whether the AI path is considered)

        Returns:
            ResolvedSteps with the steps of the first applicable strategy
        """
        options = options or ExecutionOptions()
        if finding.is_auto_remediable:
            for strategy in self.strategies:
                steps = await strategy.describe(finding, options)
                if steps is not None:
                    return ResolvedSteps(steps=steps, is_automated=True, path=strategy.path)

        return ResolvedSteps(
            steps=self._manual_steps(finding),
            is_automated=False,
            path=RemediationPath.MANUAL,
        )

    async def execute(self, finding: Finding, options: ExecutionOptions) -> StrategyOutcome:
        """
        Run the strategy chain for a finding.

        Exceptions raised by the domain and declarative strategies propagate
        to the caller; the AI strategy swallows its own failures and falls
        through.

        Returns:
            StrategyOutcome of the first applicable strategy, or a manual outcome
        """
        outcome: StrategyOutcome | None = None
        with metrics_collector.start_timer(StageTimer.STRATEGY_EXECUTION):
            if finding.is_auto_remediable:
                for strategy in self.strategies:
                    outcome = await strategy.execute(finding, options)
                    if outcome is not None:
                        break

        if outcome is None:
            guide = await self.build_manual_guide(finding)
            outcome = StrategyOutcome(
                path=RemediationPath.MANUAL,
                success=False,
                message=f"Manual remediation required for {finding.title or finding.finding_id}",
                error_message="Manual remediation required",
                manual_guide=guide,
            )

        metrics_collector.increment(
            MetricNames.STRATEGY_USED_TOTAL,
            labels={"strategy": outcome.path.value},
        )
        log_with_context(
            logger,
            "info",
            "Strategy chain finished",
            finding_id=finding.finding_id,
            strategy=outcome.path.value,
            success=outcome.success,
            change_count=len(outcome.changes),
        )
        return outcome

    async def build_manual_guide(self, finding: Finding) -> ManualRemediationGuide:
        """
        Build a structured guide for remediating a finding by hand.

        Natural-language guidance from the model is attached when the
        model is available; failures to get it are logged and ignored.
        """
        ai_guidance: str | None = None
        if self.text_generator.enabled:
            try:
                ai_guidance = await self.text_generator.generate_guidance(finding)
            except ControlFixError as e:
                log_with_context(
                    logger,
                    "warning",
                    "Could not generate guidance text",
                    finding_id=finding.finding_id,
                    error=str(e),
                )

        title = finding.title or finding.finding_id
        permissions = (
            [f"{finding.resource_type}/read", f"{finding.resource_type}/write"]
            if finding.resource_type
            else []
        )
        references = [
            f"https://csrc.nist.gov/projects/cprt/catalog#/{control}"
            for control in finding.affected_controls
        ]
        references.append("https://docs.aws.amazon.com/securityhub/latest/userguide/")

        return ManualRemediationGuide(
            finding_id=finding.finding_id,
            title=f"Manual Remediation: {title}",
            overview=finding.description or title,
            steps=self._manual_guide_steps(finding),
            prerequisites=[
                f"Access to the account that owns {finding.display_name}",
                "The permissions listed under required permissions",
                "A backup or snapshot of the current resource configuration",
            ],
            validation_steps=[
                f"Verify that {finding.display_name} no longer exhibits the finding",
                "Re-run the compliance scan to confirm remediation",
                "Document the changes made and evidence of remediation",
            ],
            required_permissions=permissions,
            skill_level=skill_level_for(finding.severity),
            estimated_duration=estimate_effort(finding.severity, automated=False),
            rollback_steps=[
                "Restore configuration from the backup taken before the change",
                "Verify resource functionality",
                "Document the rollback reason",
            ],
            references=references,
            ai_guidance=ai_guidance,
        )

    @staticmethod
    def _manual_guide_steps(finding: Finding) -> list[ManualStep]:
        if finding.remediation_actions:
            return [
                ManualStep(
                    order=index,
                    description=action.description,
                    substeps=[f"Run: {action.tool_command}"] if action.tool_command else [],
                )
                for index, action in enumerate(finding.remediation_actions, start=1)
            ]

        guidance = finding.recommendation or finding.remediation_guidance
        steps = parse_guidance_steps(guidance) if guidance else []
        if not steps:
            fallback = finding.remediation_guidance.strip() or f"Review and remediate {finding.title}"
            steps = [ManualStep(order=1, description=fallback)]
        return steps

    def _manual_steps(self, finding: Finding) -> list[RemediationStep]:
        steps: list[RemediationStep] = []
        for manual in self._manual_guide_steps(finding):
            steps.append(
                RemediationStep(order=0, description=manual.description, source=RemediationPath.MANUAL)
            )
            steps.extend(
                RemediationStep(order=0, description=f"  - {sub}", source=RemediationPath.MANUAL)
                for sub in manual.substeps
            )
        return _number(steps)
