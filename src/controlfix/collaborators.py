"""
Contracts for the external collaborators the engine calls.

The engine depends only on these protocols. Concrete implementations live
in ``cloud_control`` (AWS Cloud Control), ``text_generation`` (Bedrock) and
``script_executor`` (local subprocess). Optional capabilities have a null
implementation here so call sites never test for ``None``.

All methods are coroutines: every call is a suspension point where a
cancelled batch stops.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from controlfix.errors import DomainServiceError, TextGenerationError
from controlfix.models import Finding, PrioritizedFinding


@dataclass
class DomainExecutionResult:
    """Result reported by a domain remediation service."""

    success: bool
    applied_actions: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ScriptOptions:
    """
    How a script should be run.

    Attributes:
        timeout_seconds: Timeout for each attempt
        max_retries: Total attempts before reporting failure
        sanitize: Reject scripts that fail the safety checks
    """

    timeout_seconds: int = 300
    max_retries: int = 3
    sanitize: bool = True


@dataclass
class ScriptExecutionResult:
    """
    Outcome of running a remediation script.

    Attributes:
        success: Whether the script exited cleanly
        changes: Concrete changes the script reported
        error: Error text when the script failed or was rejected
        exit_code: Exit code of the last attempt
        attempts: Number of attempts made
        output: Captured stdout of the last attempt
        violations: Sanitization findings that blocked the script
    """

    success: bool
    changes: list[str] = field(default_factory=list)
    error: str | None = None
    exit_code: int | None = None
    attempts: int = 0
    output: str = ""
    violations: list[str] = field(default_factory=list)


class CloudResourceClient(Protocol):
    """Reads and writes resource configuration on the cloud control plane."""

    async def get_resource(self, resource_id: str, resource_type: str) -> dict[str, Any]: ...

    async def update_resource(
        self,
        resource_id: str,
        resource_type: str,
        properties: dict[str, Any],
    ) -> None: ...


class DomainRemediationService(Protocol):
    """A service that knows how to remediate some findings on its own."""

    async def can_auto_remediate(self, finding: Finding) -> bool: ...

    async def build_plan(self, finding: Finding) -> Any: ...

    async def execute(self, plan: Any, dry_run: bool) -> DomainExecutionResult: ...


class TextGenerationService(Protocol):
    """Language model used for scripts, guidance and prioritization."""

    @property
    def enabled(self) -> bool: ...

    async def generate_script(self, finding: Finding, dialect: str) -> str: ...

    async def generate_guidance(self, finding: Finding) -> str: ...

    async def prioritize_with_context(
        self,
        findings: list[Finding],
        business_context: str,
    ) -> list[PrioritizedFinding]: ...


class ScriptExecutor(Protocol):
    """Runs a remediation script in a sandbox."""

    async def execute(
        self,
        script: str,
        dialect: str,
        options: ScriptOptions,
    ) -> ScriptExecutionResult: ...


class NullDomainRemediationService:
    """Domain service that never claims a finding."""

    async def can_auto_remediate(self, finding: Finding) -> bool:
        return False

    async def build_plan(self, finding: Finding) -> Any:
        raise DomainServiceError("No domain remediation service is configured")

    async def execute(self, plan: Any, dry_run: bool) -> DomainExecutionResult:
        raise DomainServiceError("No domain remediation service is configured")


class NullTextGenerationService:
    """Text generation that is switched off; every call raises."""

    @property
    def enabled(self) -> bool:
        return False

    async def generate_script(self, finding: Finding, dialect: str) -> str:
        raise TextGenerationError("Text generation is not configured", retryable=False)

    async def generate_guidance(self, finding: Finding) -> str:
        raise TextGenerationError("Text generation is not configured", retryable=False)

    async def prioritize_with_context(
        self,
        findings: list[Finding],
        business_context: str,
    ) -> list[PrioritizedFinding]:
        raise TextGenerationError("Text generation is not configured", retryable=False)
