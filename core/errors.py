"""
Error Handling Module
---------------------
Typed errors with classification, retry eligibility and user-facing reports.

Every failure raised by the execution core derives from ToolOSError and
carries a category, a recoverable flag and a remediation hint. Callers turn
them into FailureReport objects through ErrorHandler; a bare message is never
the user-facing surface.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Dict, List, Optional
import logging
import traceback


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""
    VALIDATION = auto()       # Spec failed the compile gate
    SPEC_DEFECT = auto()      # Spec references something that does not exist
    PERMISSION = auto()       # Operation not allowed by the capability
    CALLER_ACTION = auto()    # Caller must act (approve, reconnect, wait)
    EXECUTION = auto()        # Integration or run failure
    TIMEOUT = auto()          # Deadman timeout elapsed
    INVARIANT = auto()        # Structurally impossible state detected
    STORAGE = auto()          # Memory or database failure
    INTEGRATION = auto()      # Raw error raised by an integration


class ToolOSError(Exception):
    """Base class for all execution-core errors."""

    category: ErrorCategory = ErrorCategory.EXECUTION
    recoverable: bool = False
    retryable: bool = False
    remediation: str = "Contact support with the run id."

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SpecValidationError(ToolOSError):
    """The spec failed the compile gate."""
    category = ErrorCategory.VALIDATION
    remediation = "Fix the referenced id in the tool specification and recompile."


class ActionNotFound(ToolOSError):
    category = ErrorCategory.SPEC_DEFECT
    remediation = "The action is not part of the compiled tool. Recompile the spec."

    def __init__(self, action_id: str):
        super().__init__(f"Action {action_id} not found", {"action_id": action_id})
        self.action_id = action_id


class CapabilityNotFound(ToolOSError):
    category = ErrorCategory.SPEC_DEFECT
    remediation = "Register the capability or point the action at an existing one."

    def __init__(self, capability_id: str):
        super().__init__(
            f"Capability {capability_id} not found",
            {"capability_id": capability_id},
        )
        self.capability_id = capability_id


class ReducerNotFound(ToolOSError):
    category = ErrorCategory.SPEC_DEFECT
    remediation = "Declare the reducer in the spec state section or pin it on the run."

    def __init__(self, reducer_id: str):
        super().__init__(f"Reducer {reducer_id} not found", {"reducer_id": reducer_id})
        self.reducer_id = reducer_id


class PermissionDenied(ToolOSError):
    category = ErrorCategory.PERMISSION
    remediation = "Use a capability that allows this operation type."


class ApprovalRequired(ToolOSError):
    category = ErrorCategory.CALLER_ACTION
    recoverable = True
    remediation = "Approve the action and retry with approved=true."

    def __init__(self, action_id: str):
        super().__init__(f"Action {action_id} requires approval", {"action_id": action_id})
        self.action_id = action_id


class CredentialUnavailable(ToolOSError):
    category = ErrorCategory.CALLER_ACTION
    recoverable = True
    remediation = "Reconnect the integration and retry."

    def __init__(self, integration_id: str, reason: str = "no valid credential"):
        super().__init__(
            f"Integration {integration_id} is not connected: {reason}",
            {"integration_id": integration_id},
        )
        self.integration_id = integration_id


class RateLimitExceeded(ToolOSError):
    category = ErrorCategory.CALLER_ACTION
    recoverable = True
    remediation = "Wait for the rate limit window to elapse and retry."

    def __init__(self, integration_id: str, limit: int, retry_after_seconds: float = 0.0):
        super().__init__(
            f"Rate limit exceeded for {integration_id} ({limit}/min)",
            {"integration_id": integration_id, "limit": limit},
        )
        self.integration_id = integration_id
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds


class WorkflowHasCycles(SpecValidationError):
    remediation = "Remove the cyclic edge from the workflow graph."

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} has cycles", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class RetryExhausted(ToolOSError):
    """An action node failed on every attempt; the run halts."""
    category = ErrorCategory.EXECUTION
    remediation = "Inspect the failed step and retry the run once the integration recovers."

    def __init__(self, node_id: str, attempts: int, last_error: Exception):
        super().__init__(
            f"Node {node_id} failed after {attempts} attempt(s): {last_error}",
            {"node_id": node_id, "attempts": attempts},
        )
        self.node_id = node_id
        self.attempts = attempts
        self.last_error = last_error


class ExecutionTimeout(ToolOSError):
    category = ErrorCategory.TIMEOUT
    recoverable = True
    retryable = True
    remediation = "The action took too long. Retry later."

    def __init__(self, action_id: str, timeout_seconds: float):
        super().__init__(
            f"Action {action_id} timed out after {timeout_seconds}s",
            {"action_id": action_id, "timeout_seconds": timeout_seconds},
        )
        self.action_id = action_id
        self.timeout_seconds = timeout_seconds


class RunNotFound(ToolOSError):
    category = ErrorCategory.SPEC_DEFECT
    remediation = "Check the run id; runs are pruned after the retention limit."

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} not found", {"run_id": run_id})
        self.run_id = run_id


class RunNotRetryable(ToolOSError):
    category = ErrorCategory.CALLER_ACTION
    remediation = "Only failed or blocked runs can be retried."

    def __init__(self, run_id: str, status: str):
        super().__init__(f"Run {run_id} is {status} and cannot be retried", {"run_id": run_id, "status": status})
        self.run_id = run_id
        self.status = status


class StaleWriteRejected(ToolOSError):
    """A write attempted after the caller already received a timeout."""
    category = ErrorCategory.EXECUTION
    remediation = "Nothing to do; the late result was discarded."


class FatalInvariantViolation(ToolOSError):
    category = ErrorCategory.INVARIANT
    remediation = "The tool record is inconsistent. Rebuild the tool."


class LifecycleTransitionError(ToolOSError):
    category = ErrorCategory.INVARIANT
    remediation = "Finalize or reset the tool before requesting this transition."


class InvalidMemoryScope(ToolOSError, ValueError):
    category = ErrorCategory.STORAGE
    remediation = "Pass well-formed identifiers for the memory scope."


class MemoryWriteError(ToolOSError):
    category = ErrorCategory.STORAGE
    recoverable = True
    remediation = "The memory store is unavailable. Retry once storage recovers."


@dataclass
class FailureReport:
    """User-facing failure: a reason paired with a remediation."""
    reason: str
    remediation: str
    category: ErrorCategory
    recoverable: bool
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "remediation": self.remediation,
            "category": self.category.name,
            "recoverable": self.recoverable,
            "details": self.details,
        }


def is_retryable(error: BaseException) -> bool:
    """
    Whether the workflow engine may retry after this error.

    Raw integration errors are retryable; ToolOSError subclasses opt in.
    """
    if isinstance(error, ToolOSError):
        return error.retryable
    return isinstance(error, Exception)


class ErrorHandler:
    """
    Central error handler with logging and bounded history.
    """

    LEVELS: Dict[ErrorCategory, int] = {
        ErrorCategory.VALIDATION: logging.WARNING,
        ErrorCategory.SPEC_DEFECT: logging.ERROR,
        ErrorCategory.PERMISSION: logging.WARNING,
        ErrorCategory.CALLER_ACTION: logging.INFO,
        ErrorCategory.EXECUTION: logging.ERROR,
        ErrorCategory.TIMEOUT: logging.WARNING,
        ErrorCategory.INVARIANT: logging.CRITICAL,
        ErrorCategory.STORAGE: logging.ERROR,
        ErrorCategory.INTEGRATION: logging.ERROR,
    }

    def __init__(self, max_history: int = 100):
        self._logger = logging.getLogger("toolos.errors")
        self._history: List[FailureReport] = []
        self._max_history = max_history

    def handle(self, error: BaseException) -> FailureReport:
        """Log an error and return its user-facing report."""
        report = self.describe(error)

        level = self.LEVELS.get(report.category, logging.ERROR)
        self._logger.log(level, f"{report.category.name}: {report.reason}")
        if report.stack_trace and level >= logging.ERROR:
            self._logger.debug(f"Stack trace:\n{report.stack_trace}")

        self._history.append(report)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        return report

    @staticmethod
    def describe(error: BaseException) -> FailureReport:
        """Build a FailureReport without logging."""
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if isinstance(error, ToolOSError):
            return FailureReport(
                reason=error.message,
                remediation=error.remediation,
                category=error.category,
                recoverable=error.recoverable,
                details=dict(error.details),
                stack_trace=trace,
            )
        return FailureReport(
            reason=f"Integration call failed: {error}",
            remediation="Check the integration status and retry.",
            category=ErrorCategory.INTEGRATION,
            recoverable=True,
            details={"type": type(error).__name__},
            stack_trace=trace,
        )

    def get_error_stats(self) -> Dict[str, int]:
        """Count handled errors per category."""
        stats: Dict[str, int] = {}
        for report in self._history:
            key = report.category.name
            stats[key] = stats.get(key, 0) + 1
        return stats
