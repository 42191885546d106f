"""
Unit tests for the post-execution ValidationEngine.
"""

from controlfix.models import (
    RemediationExecution,
    RemediationPath,
    RemediationStep,
    Severity,
    Snapshot,
    ValidationCheck,
)
from controlfix.validation import (
    DEFAULT_CHECKS,
    ValidationEngine,
    check_configuration_changed,
)


def _execution(**overrides: object) -> RemediationExecution:
    fields: dict[str, object] = {
        "finding_id": "f-1",
        "resource_id": "bucket-1",
        "severity": Severity.HIGH,
        "success": True,
        "steps_executed": [
            RemediationStep(order=1, description="Require TLS 1.2", source=RemediationPath.DECLARATIVE)
        ],
        "changes_applied": ["Set MinimumTlsVersion from 1.0 to 1.2"],
        "before_snapshot": Snapshot(
            resource_id="bucket-1",
            resource_type="AWS::S3::Bucket",
            configuration={"MinimumTlsVersion": "1.0"},
        ),
        "after_snapshot": Snapshot(
            resource_id="bucket-1",
            resource_type="AWS::S3::Bucket",
            configuration={"MinimumTlsVersion": "1.2"},
        ),
    }
    fields.update(overrides)
    return RemediationExecution.model_validate(fields)


class TestDefaultChecks:
    """Tests for the built-in checks."""

    def test_successful_execution_is_valid(self) -> None:
        """Test that a clean execution passes every check."""
        result = ValidationEngine().validate(_execution())

        assert result.is_valid is True
        assert result.failure_reason is None
        assert [c.name for c in result.checks] == [
            "Execution Status",
            "Steps Completed",
            "Configuration Changed",
        ]

    def test_unsuccessful_execution_fails(self) -> None:
        """Test that a failed execution is invalid."""
        result = ValidationEngine().validate(_execution(success=False, error_message="boom"))

        assert result.is_valid is False
        assert result.failure_reason == "Remediation executed successfully"

    def test_multiple_failures_joined(self) -> None:
        """Test that failure descriptions are joined in check order."""
        result = ValidationEngine().validate(_execution(success=False, steps_executed=[]))

        assert result.failure_reason == (
            "Remediation executed successfully; At least one remediation step was executed"
        )

    def test_invisible_change_fails(self) -> None:
        """Test that identical snapshots fail when changes were reported."""
        same = Snapshot(
            resource_id="bucket-1",
            resource_type="AWS::S3::Bucket",
            configuration={"MinimumTlsVersion": "1.0"},
        )

        check = check_configuration_changed(_execution(after_snapshot=same))

        assert check.passed is False

    def test_configuration_check_skipped_without_snapshots(self) -> None:
        """Test that missing snapshots skip the configuration check."""
        check = check_configuration_changed(_execution(before_snapshot=None))

        assert check.passed is True
        assert check.detail is not None
        assert check.detail.startswith("Skipped")


class TestCustomChecks:
    """Tests for caller-supplied checks."""

    def test_custom_check_runs(self) -> None:
        """Test that extra checks are evaluated after the defaults."""

        def always_fails(execution: RemediationExecution) -> ValidationCheck:
            return ValidationCheck(name="Encrypted", description="Bucket is encrypted", passed=False)

        result = ValidationEngine(checks=[*DEFAULT_CHECKS, always_fails]).validate(_execution())

        assert result.is_valid is False
        assert result.failure_reason == "Bucket is encrypted"

    def test_raising_check_recorded_as_failed(self) -> None:
        """Test that a check that raises does not abort validation."""

        def explodes(execution: RemediationExecution) -> ValidationCheck:
            raise RuntimeError("probe unavailable")

        result = ValidationEngine(checks=[explodes]).validate(_execution())

        assert result.is_valid is False
        assert result.checks[0].name == "explodes"
        assert result.checks[0].detail == "probe unavailable"
