"""
CLI interface for ControlFix.

Provides command-line access to planning, execution and reporting. Findings
are read from a JSON file holding a list of findings (or an object with a
``findings`` list); results are printed as JSON.

Usage:
    controlfix plan --findings-json findings.json --min-severity medium
    controlfix execute --findings-json findings.json --finding-id f-001 --dry-run
    controlfix batch --findings-json findings.json --max-concurrent 2
    controlfix history --days 7
"""

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError

from controlfix.cloud_control import CloudControlResourceClient
from controlfix.config import Settings, get_settings
from controlfix.engine import RemediationEngine
from controlfix.logging_config import get_logger, log_with_context, setup_logging
from controlfix.models import (
    BatchOptions,
    ExecutionOptions,
    ExecutionStatus,
    Finding,
    PlanOptions,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """
    CLI main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    command: str | None = str(args.command) if args.command else None
    if not command:
        parser.print_help()
        return 1

    try:
        settings = get_settings()
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    # stdout carries command output
    setup_logging(settings.log_level, stream=sys.stderr)

    handlers = {
        "plan": cmd_plan,
        "execute": cmd_execute,
        "batch": cmd_batch,
        "guide": cmd_guide,
        "impact": cmd_impact,
        "progress": cmd_progress,
        "history": cmd_history,
    }
    handler = handlers.get(command)
    if handler is None:
        print(f"Unknown command: {command}", file=sys.stderr)
        return 1

    try:
        return handler(args, settings)
    except Exception as e:
        log_with_context(
            logger,
            "error",
            "Command failed",
            command=command,
            error=str(e),
        )
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ControlFix CLI - Compliance Remediation Orchestration"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    severities = [s.value for s in Severity]

    plan_parser = subparsers.add_parser("plan", help="Generate a remediation plan")
    _add_findings_arg(plan_parser)
    _ = plan_parser.add_argument(
        "--min-severity",
        choices=severities,
        default=Severity.INFORMATIONAL.value,
        help="Drop findings below this severity",
    )
    _ = plan_parser.add_argument(
        "--include-family",
        action="append",
        default=None,
        help="Keep only findings in this control family (repeatable)",
    )
    _ = plan_parser.add_argument(
        "--exclude-family",
        action="append",
        default=[],
        help="Drop findings in this control family (repeatable)",
    )
    _ = plan_parser.add_argument("--automatable-only", action="store_true")
    _ = plan_parser.add_argument("--group-by-resource", action="store_true")

    execute_parser = subparsers.add_parser("execute", help="Remediate a single finding")
    _add_findings_arg(execute_parser)
    _add_finding_id_arg(execute_parser)
    _add_execution_args(execute_parser)

    batch_parser = subparsers.add_parser("batch", help="Remediate every finding in the file")
    _add_findings_arg(batch_parser)
    _add_execution_args(batch_parser)
    _ = batch_parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Concurrency cap (default: MAX_CONCURRENT_REMEDIATIONS)",
    )
    _ = batch_parser.add_argument("--fail-fast", action="store_true")
    _ = batch_parser.add_argument(
        "--serialize-per-resource",
        action="store_true",
        help="Run findings on the same resource one at a time",
    )

    guide_parser = subparsers.add_parser("guide", help="Print a manual remediation guide")
    _add_findings_arg(guide_parser)
    _add_finding_id_arg(guide_parser)

    impact_parser = subparsers.add_parser("impact", help="Analyze remediation impact")
    _add_findings_arg(impact_parser)

    progress_parser = subparsers.add_parser("progress", help="Show remediation progress")
    _ = progress_parser.add_argument(
        "--since-days",
        type=int,
        default=None,
        help="Look-back window in days (default: PROGRESS_WINDOW_DAYS)",
    )

    history_parser = subparsers.add_parser("history", help="Show execution history")
    _ = history_parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Days of history to show (default: 7)",
    )

    return parser


def _add_findings_arg(parser: argparse.ArgumentParser) -> None:
    _ = parser.add_argument(
        "--findings-json",
        type=str,
        required=True,
        help="Path to JSON file containing findings",
    )


def _add_finding_id_arg(parser: argparse.ArgumentParser) -> None:
    _ = parser.add_argument(
        "--finding-id",
        type=str,
        default=None,
        help="Finding to use (default: first finding in the file)",
    )


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    _ = parser.add_argument("--dry-run", action="store_true", help="Describe changes only")
    _ = parser.add_argument(
        "--require-approval",
        action="store_true",
        help="Suspend executions until approved",
    )
    _ = parser.add_argument("--no-validate", action="store_true", help="Skip validation")
    _ = parser.add_argument(
        "--no-rollback",
        action="store_true",
        help="Keep changes when validation fails",
    )
    _ = parser.add_argument("--use-ai-script", action="store_true")
    _ = parser.add_argument("--executed-by", type=str, default="cli")


def load_findings(path: Path) -> list[Finding]:
    """
    Read findings from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file does not hold valid findings
    """
    with open(path, "r") as f:
        data: object = json.load(f)

    if isinstance(data, dict) and "findings" in data:
        data = data["findings"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError("Findings file must contain a list of findings")

    try:
        return [Finding.model_validate(item) for item in data]
    except ValidationError as e:
        raise ValueError(f"Invalid finding JSON: {e}") from e


def _select(findings: list[Finding], finding_id: str | None) -> Finding:
    if not findings:
        raise ValueError("Findings file is empty")
    if finding_id is None:
        return findings[0]
    for finding in findings:
        if finding.finding_id == finding_id:
            return finding
    raise ValueError(f"Finding {finding_id} not found in file")


def _execution_options(args: argparse.Namespace) -> ExecutionOptions:
    return ExecutionOptions(
        dry_run=bool(args.dry_run),
        require_approval=bool(args.require_approval),
        auto_validate=not args.no_validate,
        auto_rollback_on_failure=not args.no_rollback,
        use_ai_script=bool(args.use_ai_script),
        executed_by=str(args.executed_by),
    )


def build_engine(settings: Settings) -> RemediationEngine:
    return RemediationEngine.from_settings(
        settings,
        cloud=CloudControlResourceClient(region=settings.aws_region),
    )


def cmd_plan(args: argparse.Namespace, settings: Settings) -> int:
    findings = load_findings(Path(args.findings_json))
    options = PlanOptions(
        minimum_severity=Severity(args.min_severity),
        include_families=set(args.include_family) if args.include_family else None,
        exclude_families=set(args.exclude_family),
        automatable_only=bool(args.automatable_only),
        group_by_resource=bool(args.group_by_resource),
    )
    plan = asyncio.run(build_engine(settings).generate_plan(findings, options))
    print(plan.model_dump_json(indent=2))
    return 0


def cmd_execute(args: argparse.Namespace, settings: Settings) -> int:
    finding = _select(load_findings(Path(args.findings_json)), args.finding_id)
    execution = asyncio.run(build_engine(settings).execute_one(finding, _execution_options(args)))
    print(execution.model_dump_json(indent=2))
    if execution.success or execution.status is ExecutionStatus.PENDING:
        return 0
    return 1


def cmd_batch(args: argparse.Namespace, settings: Settings) -> int:
    findings = load_findings(Path(args.findings_json))
    options = BatchOptions(
        max_concurrent=args.max_concurrent,
        fail_fast=bool(args.fail_fast),
        serialize_per_resource=bool(args.serialize_per_resource),
        execution=_execution_options(args),
    )
    result = asyncio.run(build_engine(settings).execute_batch(findings, options))
    print(result.model_dump_json(indent=2))
    return 0 if result.failed == 0 else 1


def cmd_guide(args: argparse.Namespace, settings: Settings) -> int:
    finding = _select(load_findings(Path(args.findings_json)), args.finding_id)
    guide = asyncio.run(build_engine(settings).generate_manual_guide(finding))
    print(guide.model_dump_json(indent=2))
    return 0


def cmd_impact(args: argparse.Namespace, settings: Settings) -> int:
    findings = load_findings(Path(args.findings_json))
    analysis = build_engine(settings).analyze_impact(findings)
    print(analysis.model_dump_json(indent=2))
    return 0


def cmd_progress(args: argparse.Namespace, settings: Settings) -> int:
    since = utcnow() - timedelta(days=args.since_days) if args.since_days else None
    progress = build_engine(settings).get_progress(since)
    print(progress.model_dump_json(indent=2))
    return 0


def cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    end = utcnow()
    history = build_engine(settings).get_history(end - timedelta(days=args.days), end)
    print(history.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
