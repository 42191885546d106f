"""
ControlFix: Compliance Remediation Orchestration Engine.

ControlFix takes compliance findings (violations detected on cloud
resources), turns them into a prioritized, dependency-aware remediation
plan, and executes remediations with approval gates, snapshot-based
rollback, post-execution validation and an auditable history.

Key Components:
    - PlanGenerator: Filters, orders and schedules findings into a plan
    - RemediationPathResolver: Strategy chain (AI script, domain service,
      declarative actions, manual guide)
    - ExecutionCoordinator: Per-finding state machine with dry-run,
      approval and rollback
    - BatchScheduler: Bounded-concurrency execution of many findings
    - ValidationEngine / SnapshotStore: Post-checks and restore
    - HistoryTracker: Execution ledger, progress and history reports
    - RemediationEngine: Facade exposing the public operations

Architecture:
    Findings → PlanGenerator → BatchScheduler → ExecutionCoordinator
                                                  ↓            ↓
                                     AWS Cloud Control    Bedrock Claude
                                                  ↓
                                       HistoryTracker (memory / Redis)

Environment Variables:
    ENABLE_AUTOMATED_REMEDIATION: Global automation switch (default: true)
    MAX_CONCURRENT_REMEDIATIONS: Default batch concurrency cap (default: 3)
    SCRIPT_TIMEOUT_SECONDS: Timeout per script attempt (default: 300)
    SCRIPT_MAX_RETRIES: Script attempts before failure (default: 3)
    SCRIPT_DIALECT: Dialect for generated scripts (default: aws_cli)
    ENABLE_AI_SCRIPTS: Use Bedrock for scripts and guidance (default: false)
    AWS_REGION: AWS region for Bedrock and Cloud Control (default: us-east-1)
    BEDROCK_MODEL_ID: Claude model ID
    REDIS_URL: Redis URL for shared history (optional)
    HISTORY_RETENTION_DAYS: Redis history retention (default: 90)
    PROGRESS_WINDOW_DAYS: Default progress window (default: 30)
    LOG_LEVEL: Logging level (default: INFO)

Usage:
    # Generate a plan
    controlfix plan --findings-json findings.json

    # Remediate one finding without touching anything
    controlfix execute --findings-json findings.json --dry-run

Version: 0.1.0
License: MIT
"""

__version__ = "0.1.0"
__author__ = "ControlFix Team"

__all__ = [
    "__version__",
    "__author__",
]
