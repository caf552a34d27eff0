# Core module - Error taxonomy and graph traversal
# The orchestrator and lifecycle machine live in core.orchestrator and
# core.lifecycle; import them from there (they depend on tools/ and memory/).

from .errors import (
    ToolOSError, ErrorCategory, ErrorHandler, FailureReport,
    SpecValidationError, ActionNotFound, CapabilityNotFound, ReducerNotFound,
    PermissionDenied, ApprovalRequired, CredentialUnavailable, RateLimitExceeded,
    WorkflowHasCycles, RetryExhausted, ExecutionTimeout, StaleWriteRejected,
    FatalInvariantViolation, LifecycleTransitionError, InvalidMemoryScope,
    MemoryWriteError, RunNotFound, RunNotRetryable, is_retryable,
)
from .graph import (
    GraphTraversal, TopologicalTraversal, ConditionalTraversal, TypedEdge,
    StepOutcome, topological_order, start_nodes, resolve_path,
)

__all__ = [
    "ToolOSError", "ErrorCategory", "ErrorHandler", "FailureReport",
    "SpecValidationError", "ActionNotFound", "CapabilityNotFound", "ReducerNotFound",
    "PermissionDenied", "ApprovalRequired", "CredentialUnavailable", "RateLimitExceeded",
    "WorkflowHasCycles", "RetryExhausted", "ExecutionTimeout", "StaleWriteRejected",
    "FatalInvariantViolation", "LifecycleTransitionError", "InvalidMemoryScope",
    "MemoryWriteError", "RunNotFound", "RunNotRetryable", "is_retryable",
    "GraphTraversal", "TopologicalTraversal", "ConditionalTraversal", "TypedEdge",
    "StepOutcome", "topological_order", "start_nodes", "resolve_path",
]
