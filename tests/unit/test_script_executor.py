"""
Unit tests for the script sanitizer and subprocess executor.

Subprocesses are never started: asyncio.create_subprocess_exec is patched
with a fake process.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from controlfix.collaborators import ScriptOptions
from controlfix.metrics import MetricNames, metrics_collector
from controlfix.script_executor import (
    ScriptSanitizer,
    SubprocessScriptExecutor,
    parse_changes,
)

SAFE_SCRIPT = (
    "aws s3api put-bucket-encryption --bucket data-bucket "
    "--server-side-encryption-configuration file://enc.json\n"
    "echo 'CHANGE: Enabled bucket encryption'\n"
)


def _process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> MagicMock:
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    process.returncode = returncode
    return process


class TestScriptSanitizer:
    """Tests for ScriptSanitizer."""

    def test_safe_script_passes(self) -> None:
        """Test that a plain AWS CLI script is accepted."""
        report = ScriptSanitizer().validate(SAFE_SCRIPT, "aws_cli")

        assert report.is_safe
        assert report.warnings == []

    def test_empty_script_rejected(self) -> None:
        """Test that an empty script is a violation."""
        report = ScriptSanitizer().validate("   \n", "bash")

        assert not report.is_safe
        assert report.violations == ["Script is empty"]

    def test_blocked_command_rejected(self) -> None:
        """Test that blocked commands are rejected."""
        report = ScriptSanitizer().validate("sudo aws s3 ls\n", "aws_cli")

        assert not report.is_safe
        assert any("sudo" in v for v in report.violations)

    def test_blocked_word_in_comment_ignored(self) -> None:
        """Test that blocked words in comments do not count."""
        script = "# never rm anything here\naws s3 ls\n"

        report = ScriptSanitizer().validate(script, "aws_cli")

        assert report.is_safe

    def test_command_substitution_rejected(self) -> None:
        """Test that $(...) is treated as dangerous."""
        report = ScriptSanitizer().validate("aws s3 ls $(cat buckets)\n", "aws_cli")

        assert not report.is_safe
        assert any("Dangerous pattern" in v for v in report.violations)

    def test_pipe_to_shell_rejected(self) -> None:
        """Test that piping into a shell is rejected."""
        report = ScriptSanitizer().validate("aws s3 ls | bash\n", "aws_cli")

        assert not report.is_safe

    def test_destructive_aws_call_rejected(self) -> None:
        """Test that delete-style AWS CLI calls are rejected."""
        report = ScriptSanitizer().validate("aws s3api delete-bucket --bucket b\n", "aws_cli")

        assert not report.is_safe
        assert any("Destructive" in v for v in report.violations)

    def test_aws_cli_without_aws_calls_warns(self) -> None:
        """Test the warning for aws_cli scripts that never call aws."""
        report = ScriptSanitizer().validate("echo hello\n", "aws_cli")

        assert report.is_safe
        assert report.warnings == ["Script does not invoke the AWS CLI"]

    def test_unknown_dialect_rejected(self) -> None:
        """Test that a dialect without an interpreter is rejected."""
        report = ScriptSanitizer().validate("print('x')\n", "python")

        assert not report.is_safe


class TestParseChanges:
    """Tests for CHANGE: line parsing."""

    def test_parse_changes(self) -> None:
        """Test that only non-empty CHANGE lines are returned."""
        output = "starting\nCHANGE: Enabled logging\n  CHANGE:   Set TLS 1.2  \nCHANGE:\ndone\n"

        assert parse_changes(output) == ["Enabled logging", "Set TLS 1.2"]


class TestSubprocessScriptExecutor:
    """Tests for SubprocessScriptExecutor."""

    async def test_successful_run_reports_changes(self) -> None:
        """Test that CHANGE lines become the change list."""
        process = _process(stdout=b"CHANGE: Enabled bucket encryption\n")
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=process),
        ) as mock_exec:
            result = await executor.execute(SAFE_SCRIPT, "aws_cli", ScriptOptions())

        assert result.success is True
        assert result.changes == ["Enabled bucket encryption"]
        assert result.attempts == 1
        args = mock_exec.call_args.args
        assert args[:2] == ("bash", "-c")
        assert args[2] == SAFE_SCRIPT

    async def test_success_without_change_lines(self) -> None:
        """Test the generic change description when none are printed."""
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=_process())):
            result = await executor.execute(SAFE_SCRIPT, "aws_cli", ScriptOptions())

        assert result.changes == ["Executed aws_cli remediation script"]

    async def test_rejected_script_never_runs(self) -> None:
        """Test that unsafe scripts are not executed."""
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch("asyncio.create_subprocess_exec", new=AsyncMock()) as mock_exec:
            result = await executor.execute("rm -rf /tmp/x", "bash", ScriptOptions())

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("Script failed safety checks")
        assert result.violations
        mock_exec.assert_not_called()
        assert metrics_collector.get_counter(MetricNames.SCRIPTS_REJECTED_TOTAL) == 1

    async def test_retries_until_success(self) -> None:
        """Test that a failed attempt is retried."""
        processes = [
            _process(stderr=b"throttled", returncode=1),
            _process(stdout=b"CHANGE: done\n"),
        ]
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=processes),
        ) as mock_exec:
            result = await executor.execute(
                SAFE_SCRIPT,
                "aws_cli",
                ScriptOptions(max_retries=3),
            )

        assert result.success is True
        assert result.attempts == 2
        assert mock_exec.call_count == 2

    async def test_all_attempts_fail(self) -> None:
        """Test that the last error is reported after the final attempt."""
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=lambda *a, **k: _process(stderr=b"denied", returncode=2)),
        ) as mock_exec:
            result = await executor.execute(
                SAFE_SCRIPT,
                "aws_cli",
                ScriptOptions(max_retries=2),
            )

        assert result.success is False
        assert result.exit_code == 2
        assert result.error == "denied"
        assert result.attempts == 2
        assert mock_exec.call_count == 2

    async def test_missing_interpreter_is_not_retried(self) -> None:
        """Test that a missing interpreter stops retrying."""
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=FileNotFoundError("pwsh")),
        ) as mock_exec:
            result = await executor.execute(
                "Write-Output 'CHANGE: x'",
                "powershell",
                ScriptOptions(max_retries=3),
            )

        assert result.success is False
        assert result.error == "Interpreter not found: pwsh"
        assert mock_exec.call_count == 1

    async def test_timeout_kills_process(self) -> None:
        """Test that a hung script is killed and reported as timed out."""

        async def hang() -> tuple[bytes, bytes]:
            await asyncio.sleep(10)
            return b"", b""

        process = _process(returncode=-9)
        process.communicate = AsyncMock(side_effect=hang)
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=process)):
            result = await executor.execute(
                SAFE_SCRIPT,
                "aws_cli",
                ScriptOptions(timeout_seconds=0, max_retries=1),
            )

        assert result.success is False
        assert result.error is not None
        assert "timed out" in result.error
        process.kill.assert_called_once()

    async def test_cancellation_kills_process(self) -> None:
        """Test that cancelling a running script kills the child process."""
        started = asyncio.Event()

        async def hang() -> tuple[bytes, bytes]:
            started.set()
            await asyncio.sleep(30)
            return b"", b""

        process = _process(returncode=-9)
        process.communicate = AsyncMock(side_effect=hang)
        executor = SubprocessScriptExecutor(initial_backoff_seconds=0)

        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=process)):
            task = asyncio.create_task(
                executor.execute(SAFE_SCRIPT, "aws_cli", ScriptOptions(timeout_seconds=60))
            )
            _ = await started.wait()
            _ = task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        process.kill.assert_called_once()
        process.wait.assert_awaited_once()
