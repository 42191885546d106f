"""
Sanitized local execution of generated remediation scripts.

Scripts produced by a language model are checked by ScriptSanitizer before
they run: any blocked command or dangerous shell construct rejects the
script outright. Accepted scripts run in a subprocess with a per-attempt
timeout and are retried with exponential backoff when they exit non-zero.

Scripts report what they changed by printing lines of the form
``CHANGE: <description>``; those lines become the execution's change list.

Usage:
    from controlfix.script_executor import SubprocessScriptExecutor

    executor = SubprocessScriptExecutor()
    result = await executor.execute(script, "aws_cli", ScriptOptions(timeout_seconds=60))
"""

import asyncio
import re
from dataclasses import dataclass, field

from controlfix.collaborators import ScriptExecutionResult, ScriptOptions
from controlfix.logging_config import get_logger, log_with_context
from controlfix.metrics import MetricNames, metrics_collector

logger = get_logger(__name__)

INITIAL_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 60.0
MAX_OUTPUT_CHARS = 10_000
CHANGE_PREFIX = "CHANGE:"

BLOCKED_COMMANDS = frozenset(
    {
        "rm",
        "rmdir",
        "del",
        "delete",
        "format",
        "fdisk",
        "shutdown",
        "reboot",
        "halt",
        "poweroff",
        "curl",
        "wget",
        "nc",
        "netcat",
        "telnet",
        "eval",
        "exec",
        "system",
        "sudo",
        "su",
        "runas",
        "chmod",
        "chown",
        "chgrp",
        "export",
    }
)

DANGEROUS_PATTERNS = (
    re.compile(r";\s*rm\s+-rf", re.IGNORECASE),
    re.compile(r"\|\s*sh\b", re.IGNORECASE),
    re.compile(r"\|\s*bash\b", re.IGNORECASE),
    re.compile(r"\$\(.*\)", re.IGNORECASE),
    re.compile(r"`.*`", re.IGNORECASE),
    re.compile(r">\s*/dev/", re.IGNORECASE),
    re.compile(r"&&\s*curl", re.IGNORECASE),
    re.compile(r"\|\s*base64", re.IGNORECASE),
    re.compile(r"--force\b", re.IGNORECASE),
    re.compile(r"-f\b.*delete", re.IGNORECASE),
)

INTERPRETERS: dict[str, tuple[str, ...]] = {
    "aws_cli": ("bash", "-c"),
    "bash": ("bash", "-c"),
    "powershell": ("pwsh", "-NoProfile", "-NonInteractive", "-Command"),
}


@dataclass
class SanitizationReport:
    """
    Result of checking a script.

    Attributes:
        violations: Problems that block execution
        warnings: Suspicious but allowed constructs
    """

    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_safe(self) -> bool:
        return not self.violations


class ScriptSanitizer:
    """Static safety checks for generated scripts."""

    def validate(self, script: str, dialect: str) -> SanitizationReport:
        """
        Check a script for blocked commands and dangerous constructs.

        Comment lines are ignored when looking for blocked commands but
        still count for pattern checks.

        Args:
            script: Script text
            dialect: Script dialect

        Returns:
            SanitizationReport listing violations and warnings
        """
        report = SanitizationReport()
        if not script.strip():
            report.violations.append("Script is empty")
            return report

        for pattern in DANGEROUS_PATTERNS:
            if pattern.search(script):
                report.violations.append(f"Dangerous pattern detected: {pattern.pattern}")

        for line in script.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith(("#", "//")):
                continue
            for word in stripped.split():
                if word.lower() in BLOCKED_COMMANDS:
                    report.violations.append(f"Blocked command detected: {word}")

        if dialect == "aws_cli":
            aws_lines = [ln.strip() for ln in script.splitlines() if ln.strip().startswith("aws ")]
            if not aws_lines:
                report.warnings.append("Script does not invoke the AWS CLI")
            for ln in aws_lines:
                if re.search(r"\s(delete|remove|terminate)-", ln):
                    report.violations.append(f"Destructive AWS CLI call: {ln[:80]}")
        if dialect not in INTERPRETERS:
            report.violations.append(f"Unsupported script dialect: {dialect}")

        return report


def parse_changes(output: str) -> list[str]:
    """Return the descriptions of ``CHANGE:`` lines in script output."""
    return [
        line.strip()[len(CHANGE_PREFIX):].strip()
        for line in output.splitlines()
        if line.strip().startswith(CHANGE_PREFIX) and line.strip()[len(CHANGE_PREFIX):].strip()
    ]


class SubprocessScriptExecutor:
    """
    Runs scripts in a local subprocess.

    Attributes:
        sanitizer: Safety checks applied when options.sanitize is set
        initial_backoff_seconds: Delay before the second attempt
    """

    def __init__(
        self,
        sanitizer: ScriptSanitizer | None = None,
        initial_backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
    ) -> None:
        self.sanitizer = sanitizer or ScriptSanitizer()
        self.initial_backoff_seconds = initial_backoff_seconds

    async def execute(
        self,
        script: str,
        dialect: str,
        options: ScriptOptions,
    ) -> ScriptExecutionResult:
        """
        Sanitize and run a script with retries.

        Never raises for script failures; rejection, timeouts and non-zero
        exits are reported on the result.

        Args:
            script: Script text
            dialect: Script dialect (selects the interpreter)
            options: Timeout, retry and sanitization settings

        Returns:
            ScriptExecutionResult for the last attempt
        """
        if options.sanitize:
            report = self.sanitizer.validate(script, dialect)
            for warning in report.warnings:
                log_with_context(logger, "warning", "Script warning", warning=warning)
            if not report.is_safe:
                metrics_collector.increment(MetricNames.SCRIPTS_REJECTED_TOTAL)
                log_with_context(
                    logger,
                    "warning",
                    "Script rejected by sanitizer",
                    dialect=dialect,
                    violations=report.violations,
                )
                return ScriptExecutionResult(
                    success=False,
                    error="Script failed safety checks: " + "; ".join(report.violations),
                    violations=report.violations,
                )

        interpreter = INTERPRETERS.get(dialect)
        if interpreter is None:
            return ScriptExecutionResult(
                success=False,
                error=f"Unsupported script dialect: {dialect}",
            )

        attempts = max(1, options.max_retries)
        last = ScriptExecutionResult(success=False, error="Script was not run")
        for attempt in range(1, attempts + 1):
            last = await self._run_once(interpreter, script, options.timeout_seconds)
            last.attempts = attempt
            if last.success:
                break

            log_with_context(
                logger,
                "warning",
                "Script attempt failed",
                dialect=dialect,
                attempt=attempt,
                max_attempts=attempts,
                exit_code=last.exit_code,
                error=(last.error or "")[:200],
            )
            if last.exit_code is None and last.error and "not found" in last.error:
                break
            if attempt < attempts:
                backoff = min(
                    self.initial_backoff_seconds * (2 ** (attempt - 1)),
                    MAX_BACKOFF_SECONDS,
                )
                await asyncio.sleep(backoff)

        if last.success:
            last.changes = parse_changes(last.output) or [f"Executed {dialect} remediation script"]
            log_with_context(
                logger,
                "info",
                "Script executed",
                dialect=dialect,
                attempts=last.attempts,
                change_count=len(last.changes),
            )
        return last

    async def _run_once(
        self,
        interpreter: tuple[str, ...],
        script: str,
        timeout_seconds: int,
    ) -> ScriptExecutionResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *interpreter,
                script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return ScriptExecutionResult(
                success=False,
                error=f"Interpreter not found: {interpreter[0]}",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
            return ScriptExecutionResult(
                success=False,
                error=f"Script execution timed out after {timeout_seconds} seconds",
                exit_code=process.returncode,
            )
        except asyncio.CancelledError:
            # the script must not keep changing resources after cancellation
            process.kill()
            await process.wait()
            raise

        output = stdout.decode(errors="replace")[:MAX_OUTPUT_CHARS]
        error_text = stderr.decode(errors="replace")[:MAX_OUTPUT_CHARS]
        exit_code = process.returncode
        if exit_code == 0:
            return ScriptExecutionResult(success=True, exit_code=0, output=output)
        return ScriptExecutionResult(
            success=False,
            exit_code=exit_code,
            output=output,
            error=error_text.strip() or f"Script exited with code {exit_code}",
        )
