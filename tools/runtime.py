"""
Action Runtime
--------------
Executes one bound action against its integration capability.

Sequence per call:
1. Resolve the action and its reducer, approval gate (no run yet)
2. Open the run
3. Capability permission check, live credential, per-(tool, integration) rate limit
4. Invoke the capability
5. Reduce output into tool state, persist state, history, outputs, events

Every attempt (success or failure) appends one sanitized log entry to its
run. Integration errors are logged and re-raised unchanged.

Deadman timeout:
- execute_with_deadline races the call against a fixed clock in a worker
- the worker is not cancelled; its WriteFence is revoked instead
- every late write checks the fence and raises StaleWriteRejected
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import concurrent.futures
import contextvars
import copy
import logging
import threading
import time

from core.errors import (
    ActionNotFound, ApprovalRequired, CapabilityNotFound, CredentialUnavailable,
    ExecutionTimeout, PermissionDenied, ReducerNotFound, StaleWriteRejected, ToolOSError,
)
from infra.config import RuntimeConfig
from infra.credentials import CredentialResolver
from infra.database import DatabaseManager, ExecutionRun, RunStatus
from infra.logging import ExecutionTracer, RunContext, log_run_end
from infra.redaction import sanitize_log_data
from memory.adapters import TOOL_BUILDER_NAMESPACE
from memory.scopes import MemoryScope
from memory.store import MemoryStore
from .compiler import ExecutableTool
from .rate_limit import MemoryRateLimiter, RateLimitConfig
from .reducers import apply_reducer
from .registry import Capability, CapabilityRegistry
from .spec import ActionSpec, StateReducer

OUTPUT_NAMESPACE = "action_outputs"
STATE_HISTORY_KEY = "state_history"


class WriteFence:
    """Per-attempt fencing token; revoked when the caller stops waiting."""

    def __init__(self):
        self._revoked = threading.Event()

    def revoke(self) -> None:
        self._revoked.set()

    @property
    def revoked(self) -> bool:
        return self._revoked.is_set()

    def check(self, what: str) -> None:
        if self._revoked.is_set():
            raise StaleWriteRejected(f"Late write rejected after timeout: {what}", {"write": what})


@dataclass
class ActionResult:
    """Outcome of one successful action call."""
    action_id: str
    state: Dict[str, Any]
    output: Any
    events: List[Dict[str, Any]] = field(default_factory=list)
    run_id: Optional[str] = None
    duration_ms: float = 0.0


class ActionRuntime:
    """
    Runs actions of a compiled tool.

    Usage:
        runtime = ActionRuntime(db, memory, registry, credentials)
        result = runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues", {})
    """

    def __init__(
        self,
        db: DatabaseManager,
        memory: MemoryStore,
        registry: CapabilityRegistry,
        credentials: CredentialResolver,
        config: Optional[RuntimeConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.memory = memory
        self.registry = registry
        self.credentials = credentials
        self.config = config or RuntimeConfig()
        self._clock = clock
        self.rate_limiter = MemoryRateLimiter(
            memory,
            RateLimitConfig(
                requests_per_minute=self.config.rate_limit_per_minute,
                window_seconds=self.config.rate_window_seconds,
            ),
            clock=clock,
        )
        self._logger = logging.getLogger("toolos.tools.runtime")

    # ===== State =====

    def load_state(self, compiled: ExecutableTool, org_id: str, tool_id: str) -> Dict[str, Any]:
        """Current tool state, or the spec's initial state."""
        state = self.db.get_tool_state(tool_id, org_id)
        if state is None:
            return copy.deepcopy(compiled.spec.state.initial)
        return state

    @staticmethod
    def resolve_reducer(
        compiled: ExecutableTool,
        action: ActionSpec,
        pinned: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> Optional[StateReducer]:
        """Pinned definition wins over the current spec."""
        if not action.reducer_id:
            return None
        if pinned and action.reducer_id in pinned:
            return StateReducer.model_validate(pinned[action.reducer_id])
        reducer = compiled.reducers.get(action.reducer_id)
        if reducer is None:
            raise ReducerNotFound(action.reducer_id)
        return reducer

    # ===== Pre-checks =====

    def _resolve(self, compiled: ExecutableTool, action_id: str, payload: Dict[str, Any]) -> ActionSpec:
        action = compiled.actions.get(action_id)
        if action is None:
            raise ActionNotFound(action_id)

        if action.requires_approval and payload.get("approved") is not True:
            self._logger.info(f"Action {action_id} awaiting approval")
            raise ApprovalRequired(action_id)
        return action

    def _capability(self, action: ActionSpec) -> Capability:
        capability = self.registry.get_capability(action.capability_id)
        if capability is None:
            raise CapabilityNotFound(action.capability_id)

        if not capability.allows(action.type):
            raise PermissionDenied(
                f"Capability {capability.id} does not allow {action.type.value} operations",
                {"action_id": action.id, "capability_id": capability.id},
            )
        return capability

    def _credential(self, org_id: str, integration_id: str) -> str:
        try:
            token = self.credentials.get_valid_access_token(org_id, integration_id)
        except Exception as e:
            raise CredentialUnavailable(integration_id, str(e)) from e
        if not token:
            raise CredentialUnavailable(integration_id)
        return token

    # ===== Execution =====

    def execute_tool_action(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        action_id: str,
        input: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        run: Optional[ExecutionRun] = None,
        fence: Optional[WriteFence] = None,
    ) -> ActionResult:
        """
        Execute one action.

        When `run` is given (orchestrated call) log entries are appended to
        it and its status is left to the caller; otherwise a run is created
        and closed here.
        """
        payload = dict(input or {})
        action = self._resolve(compiled, action_id, payload)
        reducer = self.resolve_reducer(compiled, action, run.pinned_reducers if run else None)

        owns_run = run is None
        if owns_run:
            run = ExecutionRun(
                org_id=org_id,
                tool_id=tool_id,
                trigger_id=trigger_id,
                action_id=action_id,
                status=RunStatus.RUNNING,
                input=sanitize_log_data(payload),
                state_snapshot=self.load_state(compiled, org_id, tool_id),
            )
            if reducer is not None:
                run.pinned_reducers[reducer.id] = reducer.model_dump(mode="json")
            self.db.save_run(run)

        with RunContext(run.id):
            try:
                capability = self._capability(action)
                token = self._credential(org_id, action.integration_id)
                self.rate_limiter.enforce(
                    org_id, tool_id, action.integration_id, self.config.rate_limit_per_minute
                )
            except ToolOSError as e:
                self._logger.warning(f"Action {action_id} refused: {e.message}")
                self._append_log(run, action, "failed", 0.0, payload, error=e.message)
                if owns_run:
                    self._close_run(run, RunStatus.FAILED, error=e.message)
                raise

            try:
                result = self._invoke(
                    org_id, tool_id, compiled, action, capability, reducer,
                    payload, token, user_id, run, fence,
                )
            except StaleWriteRejected as e:
                self._logger.warning(f"Discarded late result of {action_id}: {e.message}")
                if owns_run:
                    self._close_run(run, RunStatus.FAILED, error="Discarded after deadman timeout")
                raise
            except Exception as e:
                if owns_run:
                    self._close_run(run, RunStatus.FAILED, error=str(e))
                raise

            if owns_run:
                self._close_run(run, RunStatus.COMPLETED, final_state=result.state)
            result.run_id = run.id
            return result

    def _invoke(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        action: ActionSpec,
        capability: Capability,
        reducer: Optional[StateReducer],
        payload: Dict[str, Any],
        token: str,
        user_id: Optional[str],
        run: ExecutionRun,
        fence: Optional[WriteFence],
    ) -> ActionResult:
        context = dict(self.registry.resolve_context(action.integration_id, token))
        context.update({"org_id": org_id, "tool_id": tool_id, "user_id": user_id})
        tracer = ExecutionTracer(action.id, capability.id)

        started = time.monotonic()
        try:
            output = capability.executor(payload, context, tracer)
        except Exception as e:
            duration_ms = round((time.monotonic() - started) * 1000, 2)
            self._append_log(run, action, "failed", duration_ms, payload, error=str(e))
            self._logger.error(
                f"Action {action.id} failed via {capability.id}: {e}",
                extra={"action_id": action.id, "capability_id": capability.id, "duration_ms": duration_ms},
            )
            raise
        duration_ms = round((time.monotonic() - started) * 1000, 2)

        if fence is not None:
            fence.check(f"{action.id} log")
        self._append_log(run, action, "succeeded", duration_ms, payload, output=output)

        state = self.load_state(compiled, org_id, tool_id)
        new_state = apply_reducer(reducer, state, output) if reducer is not None else state

        if fence is not None:
            fence.check(f"{action.id} state")
        self.db.save_tool_state(tool_id, org_id, new_state)
        self._record_history(org_id, tool_id, action.id, new_state)

        if fence is not None:
            fence.check(f"{action.id} outputs")
        self.memory.set(MemoryScope.tool(tool_id), OUTPUT_NAMESPACE, action.id, output)
        if user_id:
            self.memory.set(MemoryScope.tool_user(tool_id, user_id), OUTPUT_NAMESPACE, action.id, output)

        events = [{"type": name, "payload": output} for name in action.emits]
        self._logger.info(
            f"Action {action.id} succeeded in {duration_ms}ms",
            extra={"action_id": action.id, "integration_id": action.integration_id, "duration_ms": duration_ms},
        )
        return ActionResult(
            action_id=action.id,
            state=new_state,
            output=output,
            events=events,
            duration_ms=duration_ms,
        )

    def _append_log(
        self,
        run: ExecutionRun,
        action: ActionSpec,
        status: str,
        duration_ms: float,
        payload: Dict[str, Any],
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        entry = {
            "id": f"{action.id}:{len(run.logs)}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status": status,
            "action_id": action.id,
            "integration_id": action.integration_id,
            "capability_id": action.capability_id,
            "duration_ms": duration_ms,
            "input": sanitize_log_data(payload),
        }
        if error is not None:
            entry["error"] = error
        else:
            entry["output"] = sanitize_log_data(output)
        run.logs.append(entry)
        self.db.save_run(run)

    def _record_history(self, org_id: str, tool_id: str, action_id: str, state: Dict[str, Any]) -> None:
        scope = MemoryScope.tool_org(tool_id, org_id)
        history = self.memory.get(scope, TOOL_BUILDER_NAMESPACE, STATE_HISTORY_KEY, default=[])
        if not isinstance(history, list):
            history = []
        history.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action_id": action_id,
            "state": state,
        })
        self.memory.set(
            scope, TOOL_BUILDER_NAMESPACE, STATE_HISTORY_KEY,
            history[-self.config.state_history_size:],
        )

    def _close_run(
        self,
        run: ExecutionRun,
        status: RunStatus,
        final_state: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        run.status = status
        run.final_state = final_state
        run.error = error
        self.db.save_run(run)
        log_run_end(run.id, status.value, steps_executed=len(run.logs), error=error)

    def state_history(self, org_id: str, tool_id: str) -> List[Dict[str, Any]]:
        """Rolling window of recent state snapshots, oldest first."""
        return self.memory.get(
            MemoryScope.tool_org(tool_id, org_id), TOOL_BUILDER_NAMESPACE, STATE_HISTORY_KEY, default=[]
        )

    # ===== Deadman timeout =====

    def execute_with_deadline(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        action_id: str,
        input: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> ActionResult:
        """
        Race the action against a fixed timeout.

        The underlying call keeps running after a timeout; its fence is
        revoked so none of its late writes commit.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.config.deadman_timeout_seconds
        fence = WriteFence()
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="toolos-action")
        ctx = contextvars.copy_context()
        future = pool.submit(
            ctx.run, self.execute_tool_action,
            org_id, tool_id, compiled, action_id, input, user_id, trigger_id, None, fence,
        )
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            fence.revoke()
            self._logger.warning(f"Action {action_id} exceeded deadman timeout of {timeout}s")
            raise ExecutionTimeout(action_id, timeout) from None
        finally:
            pool.shutdown(wait=False)
