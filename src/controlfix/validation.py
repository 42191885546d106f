"""
Post-execution validation.

Runs a list of checks against a finished execution and reports whether the
remediation can be trusted. The coordinator rolls the resource back when
validation fails and rollback is enabled.

Checks are plain callables taking the execution and returning a
ValidationCheck, so callers can add resource-specific checks:

    def bucket_is_encrypted(execution: RemediationExecution) -> ValidationCheck:
        ...

    engine = ValidationEngine(checks=[*DEFAULT_CHECKS, bucket_is_encrypted])
"""

from collections.abc import Callable

from controlfix.logging_config import get_logger, log_with_context
from controlfix.metrics import StageTimer, metrics_collector
from controlfix.models import RemediationExecution, ValidationCheck, ValidationResult

logger = get_logger(__name__)

ValidationCheckFn = Callable[[RemediationExecution], ValidationCheck]


def check_execution_status(execution: RemediationExecution) -> ValidationCheck:
    return ValidationCheck(
        name="Execution Status",
        description="Remediation executed successfully",
        passed=execution.success,
        detail=None if execution.success else execution.error_message,
    )


def check_steps_completed(execution: RemediationExecution) -> ValidationCheck:
    count = len(execution.steps_executed)
    return ValidationCheck(
        name="Steps Completed",
        description="At least one remediation step was executed",
        passed=count > 0,
        detail=f"{count} step(s) executed",
    )


def check_configuration_changed(execution: RemediationExecution) -> ValidationCheck:
    """
    The resource configuration differs from the before-snapshot.

    Only meaningful when both snapshots were captured and the strategy
    reported changes; otherwise the check passes with a note.
    """
    before, after = execution.before_snapshot, execution.after_snapshot
    if before is None or after is None or not execution.changes_applied:
        return ValidationCheck(
            name="Configuration Changed",
            description="Resource configuration updated",
            passed=True,
            detail="Skipped: no snapshots or no reported changes",
        )
    changed = before.configuration != after.configuration
    return ValidationCheck(
        name="Configuration Changed",
        description="Resource configuration updated",
        passed=changed,
        detail=None if changed else "Reported changes are not visible on the resource",
    )


DEFAULT_CHECKS: tuple[ValidationCheckFn, ...] = (
    check_execution_status,
    check_steps_completed,
    check_configuration_changed,
)


class ValidationEngine:
    """
    Evaluates validation checks for an execution.

    Attributes:
        checks: Checks run in order on every validation
    """

    def __init__(self, checks: list[ValidationCheckFn] | None = None) -> None:
        self.checks: list[ValidationCheckFn] = list(checks) if checks is not None else list(DEFAULT_CHECKS)

    def validate(self, execution: RemediationExecution) -> ValidationResult:
        """
        Run every check against an execution.

        A check that raises is recorded as failed with the exception text.

        Returns:
            ValidationResult; failure_reason joins the failed checks' descriptions
        """
        results: list[ValidationCheck] = []
        with metrics_collector.start_timer(StageTimer.VALIDATION):
            for check in self.checks:
                try:
                    results.append(check(execution))
                except Exception as e:
                    name = getattr(check, "__name__", "check")
                    log_with_context(
                        logger,
                        "warning",
                        "Validation check raised",
                        check=name,
                        error=str(e),
                    )
                    results.append(
                        ValidationCheck(
                            name=name,
                            description=f"Check {name} could not run",
                            passed=False,
                            detail=str(e),
                        )
                    )

        failed = [c for c in results if not c.passed]
        result = ValidationResult(
            is_valid=not failed,
            checks=results,
            failure_reason="; ".join(c.description for c in failed) if failed else None,
        )
        log_with_context(
            logger,
            "info" if result.is_valid else "warning",
            "Validation finished",
            execution_id=execution.execution_id,
            is_valid=result.is_valid,
            failed_checks=[c.name for c in failed],
        )
        return result
