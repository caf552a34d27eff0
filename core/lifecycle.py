"""
Lifecycle State Machine
-----------------------
Tracks a tool from creation to a terminal execution status.

Terminal statuses (READY, MATERIALIZED, DEGRADED, FAILED) are written only
by the finalize barrier. The barrier enforces that success needs a data
snapshot or a view specification, writes every field in one statement and
verifies the write by reading it back.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set
import logging
import threading

from infra.database import DatabaseManager, LifecycleRecord, ToolVersion
from tools.compiler import ExecutableTool
from tools.spec import ToolSystemSpec, spec_hash

from .errors import FatalInvariantViolation, LifecycleTransitionError


class LifecycleState(str, Enum):
    """Lifecycle states of a tool."""
    CREATED = "CREATED"
    PLANNED = "PLANNED"
    AWAITING_CLARIFICATION = "AWAITING_CLARIFICATION"  # Blocks readiness until answered
    EXECUTING = "EXECUTING"
    READY = "READY"
    MATERIALIZED = "MATERIALIZED"
    FAILED = "FAILED"
    DEGRADED = "DEGRADED"
    CORRUPTED = "CORRUPTED"        # Readback mismatch; only a rebuild recovers


VALID_TRANSITIONS: Dict[LifecycleState, Set[LifecycleState]] = {
    LifecycleState.CREATED: {LifecycleState.PLANNED, LifecycleState.FAILED},
    LifecycleState.PLANNED: {
        LifecycleState.AWAITING_CLARIFICATION, LifecycleState.EXECUTING, LifecycleState.FAILED,
    },
    LifecycleState.AWAITING_CLARIFICATION: {LifecycleState.PLANNED, LifecycleState.FAILED},
    LifecycleState.EXECUTING: {
        LifecycleState.READY, LifecycleState.MATERIALIZED, LifecycleState.DEGRADED,
        LifecycleState.FAILED,
    },
    LifecycleState.READY: {
        LifecycleState.EXECUTING, LifecycleState.MATERIALIZED, LifecycleState.DEGRADED,
        LifecycleState.FAILED,
    },
    LifecycleState.MATERIALIZED: {LifecycleState.EXECUTING, LifecycleState.DEGRADED, LifecycleState.FAILED},
    LifecycleState.DEGRADED: {LifecycleState.EXECUTING, LifecycleState.FAILED},
    LifecycleState.FAILED: {LifecycleState.PLANNED, LifecycleState.EXECUTING},
    LifecycleState.CORRUPTED: set(),
}

TERMINAL_STATES: Set[LifecycleState] = {
    LifecycleState.READY,
    LifecycleState.MATERIALIZED,
    LifecycleState.DEGRADED,
    LifecycleState.FAILED,
}

SUCCESS_STATES: Set[LifecycleState] = TERMINAL_STATES - {LifecycleState.FAILED}

BLOCKED_FOR_EXECUTION: Set[LifecycleState] = {
    LifecycleState.CREATED,
    LifecycleState.PLANNED,
    LifecycleState.AWAITING_CLARIFICATION,
    LifecycleState.EXECUTING,
    LifecycleState.FAILED,
    LifecycleState.CORRUPTED,
}

NO_OUTPUT_REASON = "Execution finished without a data snapshot or a view specification"

_REMEDIATIONS: Dict[LifecycleState, str] = {
    LifecycleState.CREATED: "Plan and compile the tool before running it.",
    LifecycleState.PLANNED: "Finish building the tool before running it.",
    LifecycleState.AWAITING_CLARIFICATION: "Answer the pending clarification questions.",
    LifecycleState.EXECUTING: "Wait for the current execution to finish.",
    LifecycleState.FAILED: "Fix the reported error and rebuild the tool.",
    LifecycleState.CORRUPTED: "The tool record is inconsistent. Rebuild the tool.",
}


@dataclass
class StateTransition:
    """Record of a lifecycle transition."""
    tool_id: str
    from_state: LifecycleState
    to_state: LifecycleState
    reason: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return (
            f"StateTransition({self.from_state.value} -> {self.to_state.value}, "
            f"reason='{self.reason}')"
        )


@dataclass
class ExecutionGate:
    """Answer of can_execute_tool."""
    allowed: bool
    reason: Optional[str] = None
    remediation: Optional[str] = None


def _non_empty(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (dict, list, tuple, str)):
        return len(value) > 0
    return True


class LifecycleStateMachine:
    """
    Persistent lifecycle machine for tools.

    Usage:
        lifecycle = LifecycleStateMachine(db)
        lifecycle.transition(tool_id, org_id, LifecycleState.PLANNED, "spec compiled")
        lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.MATERIALIZED, snapshot={...})
    """

    # tool_id -> [lock, callers holding or waiting]; entries go once unused
    _tool_locks: Dict[str, list] = {}
    _locks_guard = threading.Lock()

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._history: List[StateTransition] = []
        self._logger = logging.getLogger("toolos.lifecycle")

    @classmethod
    @contextmanager
    def _lock_for(cls, tool_id: str) -> Iterator[None]:
        with cls._locks_guard:
            entry = cls._tool_locks.setdefault(tool_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with cls._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    cls._tool_locks.pop(tool_id, None)

    @property
    def history(self) -> List[StateTransition]:
        return self._history.copy()

    def get_state(self, tool_id: str) -> LifecycleState:
        record = self.db.get_lifecycle(tool_id)
        return LifecycleState(record.state) if record else LifecycleState.CREATED

    def can_transition(self, tool_id: str, to_state: LifecycleState) -> bool:
        return to_state in VALID_TRANSITIONS.get(self.get_state(tool_id), set())

    def _record(self, tool_id: str, from_state: LifecycleState, to_state: LifecycleState, reason: str) -> StateTransition:
        transition = StateTransition(tool_id, from_state, to_state, reason)
        self._history.append(transition)
        self._logger.info(
            f"Tool {tool_id} lifecycle: {from_state.value} -> {to_state.value} (reason: {reason})"
        )
        return transition

    def transition(self, tool_id: str, org_id: str, to_state: LifecycleState, reason: str) -> StateTransition:
        """
        Move a tool through a non-terminal step.

        Raises:
            LifecycleTransitionError: terminal target or move not in VALID_TRANSITIONS
        """
        to_state = LifecycleState(to_state)
        if to_state in TERMINAL_STATES or to_state == LifecycleState.CORRUPTED:
            raise LifecycleTransitionError(
                f"{to_state.value} can only be reached through finalize_tool_execution",
                {"tool_id": tool_id, "to_state": to_state.value},
            )

        with self._lock_for(tool_id):
            record = self.db.get_lifecycle(tool_id) or LifecycleRecord(tool_id=tool_id, org_id=org_id)
            current = LifecycleState(record.state)
            if to_state not in VALID_TRANSITIONS.get(current, set()):
                valid = sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))
                raise LifecycleTransitionError(
                    f"Invalid transition: {current.value} -> {to_state.value}. Valid targets: {valid}",
                    {"tool_id": tool_id, "from_state": current.value, "to_state": to_state.value},
                )
            record.org_id = org_id
            record.state = to_state.value
            record.error_message = None
            self.db.write_lifecycle(record)
            return self._record(tool_id, current, to_state, reason)

    def finalize_tool_execution(
        self,
        tool_id: str,
        org_id: str,
        requested: LifecycleState,
        snapshot: Optional[Any] = None,
        view_spec: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        decision: Optional[Any] = None,
    ) -> LifecycleRecord:
        """
        The only writer of terminal statuses.

        Args:
            requested: READY, MATERIALIZED, DEGRADED or FAILED
            snapshot: fetched data backing the result
            view_spec: view definition the result renders with
            decision: optional RenderDecision; decides view readiness

        Returns:
            The lifecycle record as read back from storage

        Raises:
            LifecycleTransitionError: requested status is not terminal, or the tool is corrupted
            FatalInvariantViolation: the readback differs from the write
        """
        requested = LifecycleState(requested)
        if requested not in TERMINAL_STATES:
            raise LifecycleTransitionError(
                f"{requested.value} is not a terminal status",
                {"tool_id": tool_id, "requested": requested.value},
            )

        with self._lock_for(tool_id):
            existing = self.db.get_lifecycle(tool_id)
            current = LifecycleState(existing.state) if existing else LifecycleState.CREATED
            if current == LifecycleState.CORRUPTED:
                raise LifecycleTransitionError(
                    f"Tool {tool_id} is corrupted and cannot be finalized",
                    {"tool_id": tool_id},
                )

            has_data = _non_empty(snapshot)
            has_view = _non_empty(view_spec)
            final = requested
            reason = error_message

            if final in SUCCESS_STATES and not (has_data or has_view):
                self._logger.warning(f"Tool {tool_id} requested {final.value} with no output; forcing FAILED")
                final = LifecycleState.FAILED
                reason = NO_OUTPUT_REASON

            view_ready = has_view
            if decision is not None:
                view_ready = has_view and decision.kind == "render"
                if decision.partial and final == LifecycleState.MATERIALIZED:
                    final = LifecycleState.DEGRADED

            if final in SUCCESS_STATES:
                reason = None
            elif not reason:
                reason = "Execution failed"

            record = LifecycleRecord(
                tool_id=tool_id,
                org_id=org_id,
                state=final.value,
                error_message=reason,
                finalized_at=datetime.now(timezone.utc),
                data_ready=has_data and final != LifecycleState.FAILED,
                view_ready=view_ready and final != LifecycleState.FAILED,
                snapshot=snapshot if has_data else None,
                view_spec=view_spec if has_view else None,
            )
            self.db.write_lifecycle(record)
            self._verify(record)
            self._record(tool_id, current, final, reason or "finalized")
            return self.db.get_lifecycle(tool_id)

    def _verify(self, written: LifecycleRecord) -> None:
        stored = self.db.get_lifecycle(written.tool_id)
        if stored is not None and (
            stored.state == written.state
            and stored.data_ready == written.data_ready
            and stored.view_ready == written.view_ready
            and stored.error_message == written.error_message
        ):
            return

        self._logger.critical(f"Lifecycle readback mismatch for tool {written.tool_id}; marking CORRUPTED")
        corrupted = LifecycleRecord(
            tool_id=written.tool_id,
            org_id=written.org_id,
            state=LifecycleState.CORRUPTED.value,
            error_message="Lifecycle readback did not match the finalized record",
        )
        self.db.write_lifecycle(corrupted)
        raise FatalInvariantViolation(
            f"Lifecycle record for tool {written.tool_id} did not persist as written",
            {"tool_id": written.tool_id, "expected_state": written.state},
        )

    # ===== Compiled artifacts =====

    def register_artifact(self, org_id: str, compiled: ExecutableTool, activate: bool = True) -> ToolVersion:
        """Record a compiled spec revision, optionally making it the active one."""
        version = ToolVersion(
            tool_id=compiled.tool_id,
            org_id=org_id,
            spec_hash=compiled.spec_hash,
            spec=compiled.spec.model_dump(mode="json", by_alias=True),
        )
        self.db.save_version(version)
        if activate:
            self.db.activate_version(compiled.tool_id, version.id)
            version.status = "active"
        self._logger.info(f"Registered artifact {compiled.spec_hash[:12]} for tool {compiled.tool_id}")
        return version

    def can_execute_tool(self, tool_id: str, spec: ToolSystemSpec) -> ExecutionGate:
        """Execution is allowed only for a ready tool whose active artifact matches `spec`."""
        state = self.get_state(tool_id)
        if state in BLOCKED_FOR_EXECUTION:
            return ExecutionGate(False, f"Tool is {state.value}", _REMEDIATIONS[state])

        version = self.db.get_active_version(tool_id)
        if version is None:
            return ExecutionGate(False, "No active compiled artifact", "Compile the spec and activate it.")

        if version.spec_hash != spec_hash(spec):
            return ExecutionGate(
                False,
                "Spec changed since the active artifact was compiled",
                "Recompile the spec and activate the new artifact.",
            )
        return ExecutionGate(True)
