"""
Log Redaction
-------------
Sanitizes action inputs and outputs before they are written to run logs.

Rules:
- Credential-like keys are static regex only (no heuristics)
- Redaction is recursive down to a fixed depth, deeper values are truncated
- Long strings are cut, long arrays are sampled
- The input value is never mutated
"""

from dataclasses import dataclass, field
from typing import Any, List, Pattern
import logging
import re


@dataclass
class RedactionPolicy:
    """
    Policy for sanitizing log payloads.

    Keep the patterns deterministic and auditable.
    """
    max_depth: int = 3
    max_items: int = 10
    max_string_length: int = 500
    sensitive_key_patterns: List[str] = field(default_factory=lambda: [
        r"token",
        r"secret",
        r"password",
        r"authorization",
        r"api[_-]?key",
    ])
    redaction_placeholder: str = "[redacted]"
    truncation_placeholder: str = "[truncated]"

    def __post_init__(self):
        self._compiled_patterns: List[Pattern] = []
        for pattern in self.sensitive_key_patterns:
            try:
                self._compiled_patterns.append(re.compile(pattern, re.IGNORECASE))
            except re.error as e:
                logging.getLogger("toolos.infra.redaction").warning(
                    f"Invalid redaction pattern: {pattern} - {e}"
                )

    def is_sensitive_key(self, key: str) -> bool:
        return any(p.search(str(key)) for p in self._compiled_patterns)


DEFAULT_POLICY = RedactionPolicy()


def sanitize_log_data(value: Any, policy: RedactionPolicy = DEFAULT_POLICY, depth: int = 0) -> Any:
    """
    Return a log-safe copy of `value`.

    Depth counts container levels; anything nested deeper than
    `policy.max_depth` is replaced by the truncation placeholder.
    """
    if depth > policy.max_depth:
        return policy.truncation_placeholder

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        if len(value) > policy.max_string_length:
            return value[:policy.max_string_length]
        return value

    if isinstance(value, (list, tuple, set)):
        items = list(value)[:policy.max_items]
        return [sanitize_log_data(item, policy, depth + 1) for item in items]

    if isinstance(value, dict):
        sanitized = {}
        for key, item in value.items():
            if policy.is_sensitive_key(key):
                sanitized[key] = policy.redaction_placeholder
            else:
                sanitized[key] = sanitize_log_data(item, policy, depth + 1)
        return sanitized

    return sanitize_log_data(str(value), policy, depth)
