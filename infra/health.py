"""
Integration Health
------------------
Batched, independent health checks for connected integrations.

Design:
- Passive observability only (no auto-actions)
- One check callable per integration, run concurrently in a thread pool
- Per-check timeout; a check that does not answer in time is UNHEALTHY
- Slow but successful checks are DEGRADED
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional
import concurrent.futures
import logging
import threading
import time

from .credentials import CredentialResolver

# A check returns False for "not working"; anything else (or None) is a pass
HealthCheck = Callable[[], Optional[bool]]


class HealthStatus(Enum):
    """Integration health status."""
    HEALTHY = auto()     # Normal operation
    DEGRADED = auto()    # Working, but slow
    UNHEALTHY = auto()   # Not working


@dataclass
class IntegrationHealth:
    """Result of one health check."""
    integration_id: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API/logging."""
        return {
            "integration_id": self.integration_id,
            "status": self.status.name,
            "latency_ms": round(self.latency_ms, 2),
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }


def credential_check(resolver: CredentialResolver, org_id: str, integration_id: str) -> HealthCheck:
    """A check that passes when a live credential resolves."""
    def check() -> bool:
        return bool(resolver.get_valid_access_token(org_id, integration_id))
    return check


class IntegrationHealthChecker:
    """
    Runs registered integration checks concurrently.

    Usage:
        checker = IntegrationHealthChecker()
        checker.register("github", lambda: client.ping())
        results = checker.check_all()
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        degraded_latency_ms: float = 2000.0,
        max_workers: int = 8,
    ):
        self.timeout_seconds = timeout_seconds
        self.degraded_latency_ms = degraded_latency_ms
        self.max_workers = max_workers
        self._checks: Dict[str, HealthCheck] = {}
        self._last: Dict[str, IntegrationHealth] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger("toolos.health")

    def register(self, integration_id: str, check: HealthCheck) -> None:
        with self._lock:
            self._checks[integration_id] = check

    def unregister(self, integration_id: str) -> None:
        with self._lock:
            self._checks.pop(integration_id, None)
            self._last.pop(integration_id, None)

    def _run_check(self, integration_id: str, check: HealthCheck) -> IntegrationHealth:
        started = time.monotonic()
        try:
            ok = check()
        except Exception as e:
            latency = (time.monotonic() - started) * 1000
            return IntegrationHealth(integration_id, HealthStatus.UNHEALTHY, latency, str(e))
        latency = (time.monotonic() - started) * 1000
        if ok is False:
            return IntegrationHealth(integration_id, HealthStatus.UNHEALTHY, latency, "check failed")
        if latency > self.degraded_latency_ms:
            return IntegrationHealth(integration_id, HealthStatus.DEGRADED, latency)
        return IntegrationHealth(integration_id, HealthStatus.HEALTHY, latency)

    def check_all(self) -> Dict[str, IntegrationHealth]:
        """Run every registered check and return results keyed by integration."""
        with self._lock:
            checks = dict(self._checks)
        if not checks:
            return {}

        results: Dict[str, IntegrationHealth] = {}
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(checks)),
            thread_name_prefix="toolos-health",
        )
        try:
            futures = {
                integration_id: pool.submit(self._run_check, integration_id, check)
                for integration_id, check in checks.items()
            }
            deadline = time.monotonic() + self.timeout_seconds
            for integration_id, future in futures.items():
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    results[integration_id] = future.result(timeout=remaining)
                except concurrent.futures.TimeoutError:
                    results[integration_id] = IntegrationHealth(
                        integration_id,
                        HealthStatus.UNHEALTHY,
                        self.timeout_seconds * 1000,
                        f"timed out after {self.timeout_seconds}s",
                    )
        finally:
            pool.shutdown(wait=False)

        for integration_id, health in results.items():
            if health.status != HealthStatus.HEALTHY:
                self._logger.warning(
                    f"Integration {integration_id} is {health.status.name}"
                    + (f": {health.error}" if health.error else "")
                )

        with self._lock:
            self._last.update(results)
        return results

    def get_unhealthy(self) -> List[str]:
        with self._lock:
            return [i for i, h in self._last.items() if h.status == HealthStatus.UNHEALTHY]

    def get_summary(self) -> Dict[str, Any]:
        """Overall status of the last check round."""
        with self._lock:
            statuses = [h.status for h in self._last.values()]
            if any(s == HealthStatus.UNHEALTHY for s in statuses):
                overall = HealthStatus.UNHEALTHY
            elif any(s == HealthStatus.DEGRADED for s in statuses):
                overall = HealthStatus.DEGRADED
            else:
                overall = HealthStatus.HEALTHY
            return {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "overall_status": overall.name,
                "integrations": {i: h.to_dict() for i, h in self._last.items()},
            }
