"""
Rate Limiter
------------
Fixed-window call counter per (tool, integration), stored in memory.

The window start and count live in tool+org memory so every invocation of a
tool shares them. Read-modify-write without a lock: concurrent invocations
can undercount, which is accepted.
"""

from dataclasses import dataclass
from typing import Callable, Optional
import logging
import time

from core.errors import RateLimitExceeded
from memory.adapters import TOOL_BUILDER_NAMESPACE
from memory.scopes import MemoryScope
from memory.store import MemoryStore


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    requests_per_minute: int = 60
    window_seconds: float = 60.0


@dataclass
class RateWindow:
    window_start_ms: int
    count: int


class MemoryRateLimiter:
    """
    Rate limiter backed by the scoped memory store.

    Usage:
        limiter = MemoryRateLimiter(memory)
        limiter.enforce(org_id, tool_id, "github")  # raises RateLimitExceeded
    """

    def __init__(
        self,
        memory: MemoryStore,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.memory = memory
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._logger = logging.getLogger("toolos.tools.rate_limit")

    @staticmethod
    def key_for(integration_id: str) -> str:
        return f"rate_limit.{integration_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def current_window(self, org_id: str, tool_id: str, integration_id: str) -> Optional[RateWindow]:
        raw = self.memory.get(
            MemoryScope.tool_org(tool_id, org_id), TOOL_BUILDER_NAMESPACE, self.key_for(integration_id)
        )
        if not isinstance(raw, dict):
            return None
        return RateWindow(int(raw.get("window_start", 0)), int(raw.get("count", 0)))

    def enforce(
        self,
        org_id: str,
        tool_id: str,
        integration_id: str,
        max_per_minute: Optional[int] = None,
    ) -> RateWindow:
        """Count one call or raise RateLimitExceeded."""
        limit = max_per_minute if max_per_minute is not None else self.config.requests_per_minute
        window_ms = int(self.config.window_seconds * 1000)
        now = self._now_ms()

        window = self.current_window(org_id, tool_id, integration_id)
        if window is None or now - window.window_start_ms > window_ms:
            window = RateWindow(now, 0)

        if window.count >= limit:
            retry_after = max(0.0, (window.window_start_ms + window_ms - now) / 1000)
            self._logger.warning(
                f"Rate limit hit for tool {tool_id} on {integration_id} ({window.count}/{limit})"
            )
            raise RateLimitExceeded(integration_id, limit, retry_after)

        window = RateWindow(window.window_start_ms, window.count + 1)
        self.memory.set(
            MemoryScope.tool_org(tool_id, org_id),
            TOOL_BUILDER_NAMESPACE,
            self.key_for(integration_id),
            {"window_start": window.window_start_ms, "count": window.count},
        )
        return window
