"""
Shared pytest fixtures for ControlFix tests.

This module provides common fixtures used across the unit tests: settings,
sample findings, and in-memory fakes for the external collaborators
(cloud control plane, domain remediation service, text generation and
script execution).

Usage:
    async def test_something(engine, critical_finding):
        # Fixtures are injected automatically by pytest
        execution = await engine.execute_one(critical_finding)
"""

import asyncio
import copy
from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import fakeredis
import pytest
from _pytest.monkeypatch import MonkeyPatch

from controlfix.collaborators import DomainExecutionResult, ScriptExecutionResult, ScriptOptions
from controlfix.config import Settings
from controlfix.engine import RemediationEngine
from controlfix.errors import CloudResourceError, TextGenerationError
from controlfix.models import (
    ActionKind,
    Finding,
    PrioritizedFinding,
    RemediationAction,
    Severity,
)

# =============================================================================
# Collaborator Fakes
# =============================================================================


class FakeCloudClient:
    """
    In-memory cloud control plane.

    Counts reads and writes and records the highest number of calls that
    were in flight at the same time.
    """

    def __init__(
        self,
        resources: dict[str, dict[str, Any]] | None = None,
        latency: float = 0.0,
    ) -> None:
        self.resources: dict[str, dict[str, Any]] = resources or {}
        self.latency = latency
        self.get_calls = 0
        self.update_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_updates_for: set[str] = set()

    def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

    async def get_resource(self, resource_id: str, resource_type: str) -> dict[str, Any]:
        self._enter()
        try:
            await asyncio.sleep(self.latency)
            self.get_calls += 1
            if resource_id not in self.resources:
                raise CloudResourceError(
                    f"Resource {resource_id} not found",
                    resource_id=resource_id,
                    operation="get",
                    error_code="ResourceNotFoundException",
                )
            return copy.deepcopy(self.resources[resource_id])
        finally:
            self.in_flight -= 1

    async def update_resource(
        self,
        resource_id: str,
        resource_type: str,
        properties: dict[str, Any],
    ) -> None:
        self._enter()
        try:
            await asyncio.sleep(self.latency)
            self.update_calls += 1
            if resource_id in self.fail_updates_for:
                raise CloudResourceError(
                    "Throttled",
                    resource_id=resource_id,
                    operation="update",
                    error_code="ThrottlingException",
                    retryable=True,
                )
            self.resources[resource_id] = copy.deepcopy(properties)
        finally:
            self.in_flight -= 1


class FakeDomainService:
    """Domain service that claims findings whose ids are in ``claims``."""

    def __init__(
        self,
        claims: set[str] | None = None,
        result: DomainExecutionResult | None = None,
    ) -> None:
        self.claims = claims or set()
        self.result = result or DomainExecutionResult(
            success=True,
            applied_actions=["Enabled default encryption"],
        )
        self.executed: list[str] = []

    async def can_auto_remediate(self, finding: Finding) -> bool:
        return finding.finding_id in self.claims

    async def build_plan(self, finding: Finding) -> dict[str, str]:
        return {"finding_id": finding.finding_id}

    async def execute(self, plan: Any, dry_run: bool) -> DomainExecutionResult:
        self.executed.append(plan["finding_id"])
        return self.result


class FakeTextGenerator:
    """Text generator with canned answers; set ``fail`` to make every call raise."""

    def __init__(
        self,
        script: str = "aws s3api put-bucket-encryption --bucket b\necho 'CHANGE: Enabled encryption'",
        fail: bool = False,
    ) -> None:
        self.script = script
        self.fail = fail
        self.script_requests: list[tuple[str, str]] = []

    @property
    def enabled(self) -> bool:
        return True

    async def generate_script(self, finding: Finding, dialect: str) -> str:
        self.script_requests.append((finding.finding_id, dialect))
        if self.fail:
            raise TextGenerationError("ThrottlingException", error_code="ThrottlingException")
        return self.script

    async def generate_guidance(self, finding: Finding) -> str:
        if self.fail:
            raise TextGenerationError("ThrottlingException", error_code="ThrottlingException")
        return f"Fix {finding.title} by following the steps."

    async def prioritize_with_context(
        self,
        findings: list[Finding],
        business_context: str,
    ) -> list[PrioritizedFinding]:
        if self.fail:
            raise TextGenerationError("ThrottlingException", error_code="ThrottlingException")
        return [
            PrioritizedFinding(finding_id=f.finding_id, rank=i, rationale=business_context)
            for i, f in enumerate(reversed(findings), start=1)
        ]


class FakeScriptExecutor:
    """Script executor returning a fixed result."""

    def __init__(self, result: ScriptExecutionResult | None = None) -> None:
        self.result = result or ScriptExecutionResult(
            success=True,
            changes=["Enabled encryption"],
            exit_code=0,
            attempts=1,
        )
        self.scripts: list[str] = []

    async def execute(
        self,
        script: str,
        dialect: str,
        options: ScriptOptions,
    ) -> ScriptExecutionResult:
        self.scripts.append(script)
        return self.result


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch: MonkeyPatch) -> dict[str, str]:
    """
    Set up mock environment variables for testing.

    Args:
        monkeypatch: pytest monkeypatch fixture

    Returns:
        Dictionary of environment variable names and values
    """
    env_vars = {
        "ENABLE_AUTOMATED_REMEDIATION": "true",
        "MAX_CONCURRENT_REMEDIATIONS": "3",
        "SCRIPT_TIMEOUT_SECONDS": "30",
        "SCRIPT_MAX_RETRIES": "2",
        "SCRIPT_DIALECT": "aws_cli",
        "ENABLE_AI_SCRIPTS": "false",
        "AWS_REGION": "us-west-2",
        "BEDROCK_MODEL_ID": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "HISTORY_RETENTION_DAYS": "30",
        "PROGRESS_WINDOW_DAYS": "7",
        "LOG_LEVEL": "DEBUG",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("REDIS_URL", raising=False)

    return env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Settings:
    """
    Provide a Settings instance built from mock_env_vars.

    Settings is created directly to bypass the lru_cache on get_settings.
    """
    _ = mock_env_vars
    return Settings()  # pyright: ignore[reportCallIssue]


@pytest.fixture
def disabled_settings(mock_settings: Settings) -> Settings:
    """Settings with automated remediation switched off."""
    return mock_settings.model_copy(update={"enable_automated_remediation": False})


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def critical_finding() -> Finding:
    """
    Provide a critical, auto-remediable finding with a declarative action.

    Returns:
        Finding for an unencrypted S3 bucket
    """
    return Finding(
        finding_id="finding-crit-001",
        title="S3 bucket is not encrypted at rest",
        description="Bucket data-bucket has no default encryption.",
        severity=Severity.CRITICAL,
        resource_id="data-bucket",
        resource_type="AWS::S3::Bucket",
        resource_name="data-bucket",
        affected_controls=["SC-28", "SC-13"],
        is_auto_remediable=True,
        remediation_actions=[
            RemediationAction(
                action_type=ActionKind.ENABLE_ENCRYPTION,
                description="Enable default bucket encryption",
                tool_command="aws s3api put-bucket-encryption --bucket data-bucket",
            )
        ],
    )


@pytest.fixture
def medium_manual_finding() -> Finding:
    """Provide a medium-severity finding that needs a human."""
    return Finding(
        finding_id="finding-med-002",
        title="Access reviews are not performed",
        description="No quarterly access review is recorded for the account.",
        severity=Severity.MEDIUM,
        resource_id="account-root",
        resource_type="AWS::IAM::Account",
        affected_controls=["AC-2"],
        is_auto_remediable=False,
        remediation_guidance=(
            "IMMEDIATE ACTIONS:\n"
            "1. **Review IAM users**\n"
            "- List users with console access\n"
            "- **NIST AC-2 reference**\n"
            "2. Remove unused credentials\n"
            "3. Document the review"
        ),
    )


@pytest.fixture
def tls_finding() -> Finding:
    """Provide a high-severity TLS finding on the same bucket as critical_finding."""
    return Finding(
        finding_id="finding-high-003",
        title="Bucket accepts TLS 1.0",
        severity=Severity.HIGH,
        resource_id="data-bucket",
        resource_type="AWS::S3::Bucket",
        affected_controls=["SC-8"],
        is_auto_remediable=True,
        remediation_actions=[
            RemediationAction(
                action_type=ActionKind.ENFORCE_MINIMUM_TLS,
                description="Require TLS 1.2",
                parameters={"minimum_version": "1.2"},
            )
        ],
    )


@pytest.fixture
def many_findings() -> list[Finding]:
    """Ten auto-remediable low findings on ten different buckets."""
    return [
        Finding(
            finding_id=f"finding-batch-{i:03d}",
            title=f"Bucket {i} accepts old TLS",
            severity=Severity.LOW,
            resource_id=f"bucket-{i}",
            resource_type="AWS::S3::Bucket",
            affected_controls=["SC-8"],
            is_auto_remediable=True,
            remediation_actions=[
                RemediationAction(
                    action_type=ActionKind.ENFORCE_MINIMUM_TLS,
                    description="Require TLS 1.2",
                )
            ],
        )
        for i in range(10)
    ]


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def fake_cloud() -> FakeCloudClient:
    """Provide a fake cloud holding the resources used by the sample findings."""
    resources: dict[str, dict[str, Any]] = {
        "data-bucket": {"BucketName": "data-bucket", "Tags": [{"Key": "env", "Value": "prod"}]},
        "account-root": {"AccountId": "123456789012"},
    }
    for i in range(10):
        resources[f"bucket-{i}"] = {"BucketName": f"bucket-{i}", "MinimumTlsVersion": "1.0"}
    return FakeCloudClient(resources)


@pytest.fixture
def engine(mock_settings: Settings, fake_cloud: FakeCloudClient) -> RemediationEngine:
    """Provide an engine wired to the fake cloud and in-memory history."""
    return RemediationEngine(settings=mock_settings, cloud=fake_cloud)


@pytest.fixture
def mock_redis_client() -> Generator[fakeredis.FakeRedis, None, None]:
    """
    Provide an in-memory Redis via fakeredis.

    Patches ``redis.from_url`` so RedisHistoryStore connects to it.

    Yields:
        FakeRedis instance
    """
    fake_redis = fakeredis.FakeRedis(decode_responses=True)
    with patch("redis.from_url", return_value=fake_redis):
        yield fake_redis


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """
    Reset cached settings and metrics between tests.

    Yields:
        None (used for cleanup after test)
    """
    from controlfix.config import get_settings
    from controlfix.metrics import metrics_collector

    get_settings.cache_clear()
    metrics_collector.reset()

    yield

    get_settings.cache_clear()
    metrics_collector.reset()
