# Tools module - Spec models, capability registry, compiler and action runtime
# Every action runs through a registered capability; the compiler is the gate

from .spec import ToolSystemSpec, ActionSpec, ActionType, spec_hash, diff_specs, SpecDiff
from .registry import CapabilityRegistry, Capability, CapabilityNotBound
from .reducers import apply_reducer, ReducerError
from .rate_limit import MemoryRateLimiter, RateLimitConfig
from .compiler import (
    ExecutableTool, ToolCompiler, Clarification, compile_tool, parse_spec,
    validate_spec_advisory
)
from .runtime import ActionRuntime, ActionResult, WriteFence

__all__ = [
    "ToolSystemSpec",
    "ActionSpec",
    "ActionType",
    "spec_hash",
    "diff_specs",
    "SpecDiff",
    "CapabilityRegistry",
    "Capability",
    "CapabilityNotBound",
    "apply_reducer",
    "ReducerError",
    "MemoryRateLimiter",
    "RateLimitConfig",
    "ExecutableTool",
    "ToolCompiler",
    "Clarification",
    "compile_tool",
    "parse_spec",
    "validate_spec_advisory",
    "ActionRuntime",
    "ActionResult",
    "WriteFence",
]
