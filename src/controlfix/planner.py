"""
Remediation plan generation and impact analysis.

PlanGenerator turns a set of findings into an ordered, dependency-aware
RemediationPlan:

    1. filter by severity floor, control families and automatability
    2. sort by severity (desc), automatable first, estimated effort (asc)
    3. resolve steps for each finding and estimate effort
    4. link same-resource dependencies
    5. reorder by priority bucket (or by resource, then priority)
    6. lay out timeline phases back to back from now
    7. project risk reduction

Sorting is stable, so findings that tie on every key keep their input
order and the same input always produces the same plan order.
"""

from collections import defaultdict
from datetime import timedelta

from controlfix.errors import ControlFixError
from controlfix.logging_config import get_logger, log_with_context
from controlfix.metrics import StageTimer, metrics_collector
from controlfix.models import (
    Finding,
    ImplementationTimeline,
    PlanOptions,
    PrioritizedFinding,
    RemediationImpactAnalysis,
    RemediationItem,
    RemediationPlan,
    RemediationPriority,
    ResourceImpact,
    RollbackPlan,
    Severity,
    TimelinePhase,
    estimate_effort,
    utcnow,
)
from controlfix.path_resolver import RemediationPathResolver, ResolvedSteps

logger = get_logger(__name__)

PLAN_VALIDATION_STEPS = (
    "Verify remediation has been applied successfully",
    "Run compliance scan to confirm finding is resolved",
    "Document remediation in change management system",
    "Update compliance tracking dashboard",
)

ROLLBACK_STEPS = (
    "Take snapshot/backup before applying remediation",
    "Document current configuration",
    "If issues occur, restore from backup",
    "Notify compliance team of rollback",
)


def filter_findings(findings: list[Finding], options: PlanOptions) -> list[Finding]:
    """Apply the severity floor, family include/exclude sets and automatable-only filter."""
    include = {f.upper() for f in options.include_families} if options.include_families is not None else None
    exclude = {f.upper() for f in options.exclude_families}

    kept = []
    for finding in findings:
        if finding.severity.rank < options.minimum_severity.rank:
            continue
        families = finding.control_families
        if include is not None and not families & include:
            continue
        if families & exclude:
            continue
        if options.automatable_only and not finding.is_auto_remediable:
            continue
        kept.append(finding)
    return kept


def total_risk(findings: list[Finding]) -> float:
    return sum(f.severity.risk_score for f in findings)


def _risk_reduction(included: list[Finding], submitted: list[Finding]) -> float:
    submitted_risk = total_risk(submitted)
    if submitted_risk == 0:
        return 0.0
    return round(total_risk(included) / submitted_risk * 100, 2)


def _deterministic_order(findings: list[Finding]) -> list[Finding]:
    return sorted(
        findings,
        key=lambda f: (
            -f.severity.rank,
            not f.is_auto_remediable,
            estimate_effort(f.severity, f.is_auto_remediable),
        ),
    )


class PlanGenerator:
    """
    Builds remediation plans, impact analyses and prioritized lists.

    Attributes:
        resolver: Supplies the steps for each item
    """

    def __init__(self, resolver: RemediationPathResolver) -> None:
        self.resolver = resolver

    async def generate_plan(
        self,
        findings: list[Finding],
        options: PlanOptions | None = None,
    ) -> RemediationPlan:
        """
        Generate a remediation plan.

        Args:
            findings: Findings to plan for
            options: Filters and layout (defaults keep everything)

        Returns:
            RemediationPlan with items in execution order
        """
        options = options or PlanOptions()
        with metrics_collector.start_timer(StageTimer.PLAN_GENERATION):
            selected = filter_findings(findings, options)

            resolved = {}
            for finding in selected:
                resolved[finding.finding_id] = await self.resolver.resolve_steps(finding)

            items = [
                self._build_item(f, resolved[f.finding_id]) for f in _deterministic_order(selected)
            ]
            self._link_dependencies(items)

            if options.group_by_resource:
                items.sort(key=lambda i: (i.resource_id, i.priority.order))
            else:
                items.sort(key=lambda i: i.priority.order)

            timeline = self._build_timeline(items)
            total_effort = sum((i.estimated_effort for i in items), timedelta(0))
            risk_reduction = _risk_reduction(selected, findings)

            plan = RemediationPlan(
                items=items,
                total_findings=len(findings),
                total_estimated_effort=total_effort,
                projected_risk_reduction=risk_reduction,
                executive_summary=self._summarize(items, total_effort, risk_reduction),
                timeline=timeline,
            )

        log_with_context(
            logger,
            "info",
            "Generated remediation plan",
            plan_id=plan.plan_id,
            submitted=len(findings),
            items=len(items),
            projected_risk_reduction=risk_reduction,
        )
        return plan

    @staticmethod
    def _build_item(finding: Finding, resolved: ResolvedSteps) -> RemediationItem:
        return RemediationItem(
            finding_id=finding.finding_id,
            title=finding.title or finding.finding_id,
            control_id=finding.control_id,
            resource_id=finding.resource_id,
            resource_type=finding.resource_type,
            severity=finding.severity,
            priority=RemediationPriority.from_severity(finding.severity),
            steps=resolved.steps,
            validation_steps=list(PLAN_VALIDATION_STEPS),
            rollback_plan=RollbackPlan(
                description=f"Rollback plan for {finding.resource_type or 'resource'}",
                steps=list(ROLLBACK_STEPS),
            ),
            automation_available=finding.is_auto_remediable,
            estimated_effort=estimate_effort(finding.severity, finding.is_auto_remediable),
        )

    @staticmethod
    def _link_dependencies(items: list[RemediationItem]) -> None:
        # items are in severity order here, so "earlier" breaks equal-severity ties
        for index, item in enumerate(items):
            item.dependencies = [
                other.finding_id
                for other_index, other in enumerate(items)
                if other.resource_id == item.resource_id
                and other.finding_id != item.finding_id
                and (
                    other.severity.rank > item.severity.rank
                    or (other.severity.rank == item.severity.rank and other_index < index)
                )
            ]

    @staticmethod
    def _build_timeline(items: list[RemediationItem]) -> ImplementationTimeline:
        start = utcnow()
        by_priority: dict[RemediationPriority, list[RemediationItem]] = defaultdict(list)
        for item in items:
            by_priority[item.priority].append(item)

        phases = []
        cursor = start
        for priority in sorted(by_priority, key=lambda p: p.order):
            group = by_priority[priority]
            end = cursor + sum((i.estimated_effort for i in group), timedelta(0))
            phases.append(
                TimelinePhase(
                    name=f"{priority.value} Remediations",
                    priority=priority,
                    start=cursor,
                    end=end,
                    item_ids=[i.item_id for i in group],
                )
            )
            cursor = end
        return ImplementationTimeline(start=start, end=cursor, phases=phases)

    @staticmethod
    def _summarize(items: list[RemediationItem], effort: timedelta, risk_reduction: float) -> str:
        critical = sum(1 for i in items if i.severity is Severity.CRITICAL)
        high = sum(1 for i in items if i.severity is Severity.HIGH)
        automated = sum(1 for i in items if i.automation_available)
        hours = effort.total_seconds() / 3600
        return (
            f"Remediation plan contains {len(items)} items: {critical} critical, "
            f"{high} high priority. {automated} items can be automated. "
            f"Estimated effort: {hours:.1f} hours. "
            f"Projected risk reduction: {risk_reduction:.1f}%."
        )

    def analyze_impact(self, findings: list[Finding]) -> RemediationImpactAnalysis:
        """
        Project the effect of remediating a set of findings.

        Automatable findings are assumed fixed; the projected risk score is
        what the manual findings leave behind until someone acts on them.
        """
        automatable = [f for f in findings if f.is_auto_remediable]
        manual = [f for f in findings if not f.is_auto_remediable]
        current = total_risk(findings)
        projected = total_risk(manual)
        reduction = round((current - projected) / current * 100, 2) if current else 0.0

        by_resource: dict[str, list[Finding]] = defaultdict(list)
        for finding in findings:
            by_resource[finding.resource_id].append(finding)

        impacts = [
            ResourceImpact(
                resource_id=resource_id,
                resource_type=group[0].resource_type,
                finding_count=len(group),
                automatable_count=sum(1 for f in group if f.is_auto_remediable),
                highest_severity=max((f.severity for f in group), key=lambda s: s.rank),
            )
            for resource_id, group in by_resource.items()
        ]
        impacts.sort(key=lambda r: (-r.highest_severity.rank, -r.finding_count))

        recommendations = []
        critical = sum(1 for f in findings if f.severity is Severity.CRITICAL)
        if critical:
            recommendations.append(f"Remediate {critical} critical finding(s) immediately")
        if automatable:
            recommendations.append(
                f"Run automated remediation for {len(automatable)} finding(s) "
                f"to reduce risk by {reduction:.1f}%"
            )
        if manual:
            recommendations.append(f"Schedule manual remediation for {len(manual)} finding(s)")
        for impact in impacts:
            if impact.finding_count > 1:
                recommendations.append(
                    f"Remediate the {impact.finding_count} findings on {impact.resource_id} together"
                )

        return RemediationImpactAnalysis(
            total_findings=len(findings),
            automatable_findings=len(automatable),
            manual_findings=len(manual),
            estimated_duration=sum(
                (estimate_effort(f.severity, f.is_auto_remediable) for f in findings),
                timedelta(0),
            ),
            current_risk_score=current,
            projected_risk_score=projected,
            risk_reduction_percentage=reduction,
            resource_impacts=impacts,
            recommendations=recommendations,
        )

    async def prioritize_with_context(
        self,
        findings: list[Finding],
        business_context: str,
    ) -> list[PrioritizedFinding]:
        """
        Rank findings, weighing business context when a model is available.

        Findings the model leaves out are appended in deterministic order;
        without a model (or when it fails) the deterministic order is used.
        """
        ranked: list[PrioritizedFinding] = []
        text_generator = self.resolver.text_generator
        if text_generator.enabled:
            try:
                ranked = await text_generator.prioritize_with_context(findings, business_context)
            except ControlFixError as e:
                log_with_context(
                    logger,
                    "warning",
                    "Context prioritization failed, using severity order",
                    error=str(e),
                )
                ranked = []

        seen = {p.finding_id for p in ranked}
        for finding in _deterministic_order(findings):
            if finding.finding_id in seen:
                continue
            kind = "automatable" if finding.is_auto_remediable else "manual"
            ranked.append(
                PrioritizedFinding(
                    finding_id=finding.finding_id,
                    rank=0,
                    rationale=f"{finding.severity.value} severity, {kind}",
                )
            )

        return [
            PrioritizedFinding(finding_id=p.finding_id, rank=index, rationale=p.rationale)
            for index, p in enumerate(ranked, start=1)
        ]
