"""
Custom exception classes for ControlFix.

This module defines the exception hierarchy used by the remediation engine.
Each class names one failure mode and states whether a caller may retry it.
Execution faults raised by collaborators are captured on the execution
record by the coordinator, so most of these never reach engine callers.

Exception Hierarchy:
    ControlFixError (base)
    ├── ConfigurationError (invalid settings, permanent)
    ├── RemediationDisabledError (automation switched off, permanent)
    ├── InvalidTransitionError (illegal execution status change)
    ├── ExecutionNotFoundError (unknown execution id)
    ├── CloudResourceError (control-plane failures, often transient)
    ├── TextGenerationError (Bedrock failures, often transient)
    ├── DomainServiceError (domain remediation service unavailable or failing)
    ├── UnsupportedActionError (no handler for a declarative action)
    ├── HistoryStoreError (history persistence failures)
    └── BatchAbortedError (fail-fast batch stopped early)

Retry Semantics:
    - Throttling and timeouts from AWS are retryable
    - Configuration and validation problems are permanent
    - The configuration-denied gate is never retried
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from controlfix.models import RemediationExecution


class ControlFixError(Exception):
    """
    Base exception for all ControlFix errors.

    Attributes:
        message: Human-readable error description
        retryable: Whether this error should be retried
        context: Additional context dictionary for structured logging
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: dict[str, object] | None = None,
    ) -> None:
        """
        Initialize ControlFix error.

        Args:
            message: Human-readable error description
            retryable: Whether this error should be retried
            context: Additional context for structured logging
        """
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context = context or {}

    def __str__(self) -> str:
        """Return string representation of error."""
        return self.message


class ConfigurationError(ControlFixError):
    """
    Error in ControlFix configuration.

    Raised during startup when configuration is missing or invalid.

    Attributes:
        config_key: Configuration key that is invalid
        reason: Specific validation failure reason
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        reason: str | None = None,
    ) -> None:
        context = {
            "config_key": config_key,
            "reason": reason,
        }
        super().__init__(message, retryable=False, context=context)
        self.config_key = config_key
        self.reason = reason


class RemediationDisabledError(ControlFixError):
    """
    Automated remediation is switched off in configuration.

    This is the fail-closed safety gate. An execution that hits it lands
    in FAILED and is never retried.
    """

    def __init__(self, finding_id: str | None = None) -> None:
        super().__init__(
            "Automated remediation is disabled in engine configuration",
            retryable=False,
            context={"finding_id": finding_id},
        )
        self.finding_id = finding_id


class InvalidTransitionError(ControlFixError):
    """
    An execution was asked to move to a status its state machine forbids.

    Attributes:
        execution_id: Execution whose transition was rejected
        from_status: Status the execution is currently in
        to_status: Status that was requested
    """

    def __init__(self, execution_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Execution {execution_id} cannot move from {from_status} to {to_status}",
            retryable=False,
            context={
                "execution_id": execution_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )
        self.execution_id = execution_id
        self.from_status = from_status
        self.to_status = to_status


class ExecutionNotFoundError(ControlFixError):
    """No pending or historical execution matches the requested id."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            f"Execution {execution_id} not found",
            retryable=False,
            context={"execution_id": execution_id},
        )
        self.execution_id = execution_id


class CloudResourceError(ControlFixError):
    """
    Error reading or writing resource configuration on the control plane.

    Attributes:
        resource_id: Identifier of the resource being accessed
        operation: Control-plane operation that failed (get, update)
        error_code: AWS error code when available
    """

    def __init__(
        self,
        message: str,
        resource_id: str | None = None,
        operation: str | None = None,
        error_code: str | None = None,
        retryable: bool = False,
    ) -> None:
        context = {
            "resource_id": resource_id,
            "operation": operation,
            "error_code": error_code,
        }
        super().__init__(message, retryable=retryable, context=context)
        self.resource_id = resource_id
        self.operation = operation
        self.error_code = error_code


class TextGenerationError(ControlFixError):
    """
    Error calling the text-generation model.

    Common failures include throttling (retryable), missing model access
    (permanent) and responses that contain no usable script.

    Attributes:
        error_code: AWS error code
        request_id: AWS request ID for debugging
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        request_id: str | None = None,
        retryable: bool = True,
    ) -> None:
        context = {
            "error_code": error_code,
            "request_id": request_id,
        }
        super().__init__(message, retryable=retryable, context=context)
        self.error_code = error_code
        self.request_id = request_id


class DomainServiceError(ControlFixError):
    """The domain remediation service is not configured or could not be called."""


class UnsupportedActionError(ControlFixError):
    """A declarative remediation action has no registered handler."""

    def __init__(self, action_kind: str) -> None:
        super().__init__(
            f"No handler registered for remediation action '{action_kind}'",
            retryable=False,
            context={"action_kind": action_kind},
        )
        self.action_kind = action_kind


class HistoryStoreError(ControlFixError):
    """
    Error accessing the execution history store.

    Attributes:
        operation: Store operation that failed (e.g., "append", "list")
        backend_error: Original error message from the backend
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        backend_error: str | None = None,
    ) -> None:
        context = {
            "operation": operation,
            "backend_error": backend_error,
        }
        super().__init__(message, retryable=False, context=context)
        self.operation = operation
        self.backend_error = backend_error


class BatchAbortedError(ControlFixError):
    """
    A fail-fast batch stopped at its first failure.

    Attributes:
        batch_id: Batch that was aborted
        failed_finding_id: Finding whose failure triggered the abort
        executions: Executions that had finished before the abort
    """

    def __init__(
        self,
        batch_id: str,
        failed_finding_id: str,
        reason: str,
        executions: list["RemediationExecution"] | None = None,
    ) -> None:
        super().__init__(
            f"Batch {batch_id} aborted on finding {failed_finding_id}: {reason}",
            retryable=False,
            context={
                "batch_id": batch_id,
                "failed_finding_id": failed_finding_id,
            },
        )
        self.batch_id = batch_id
        self.failed_finding_id = failed_finding_id
        self.executions = executions or []
