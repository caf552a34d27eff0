"""
Lifecycle State Machine Tests
-----------------------------
Tests for tool lifecycle transitions and the finalize barrier.

Test Cases:
1. Non-terminal transitions follow VALID_TRANSITIONS
2. Terminal statuses are only reachable through finalize
3. Success without data or view is forced to FAILED
4. Render decisions adjust view readiness and degrade partial results
5. Readback mismatch marks the tool CORRUPTED
6. Execution gate checks state, active artifact and spec hash
"""

import copy
import threading
import uuid

import pytest

from core.errors import FatalInvariantViolation, LifecycleTransitionError
from core.lifecycle import (
    LifecycleState, LifecycleStateMachine, NO_OUTPUT_REASON, VALID_TRANSITIONS,
)
from goals.models import RenderDecision
from infra.database import LifecycleRecord
from tools.compiler import parse_spec


@pytest.fixture
def lifecycle(temp_db):
    return LifecycleStateMachine(temp_db)


def _ready_tool(lifecycle, org_id, tool_id):
    lifecycle.transition(tool_id, org_id, LifecycleState.PLANNED, "spec compiled")
    lifecycle.transition(tool_id, org_id, LifecycleState.EXECUTING, "running")
    return lifecycle.finalize_tool_execution(
        tool_id, org_id, LifecycleState.READY, snapshot={"issues": [{"id": "1"}]},
    )


class TestTransitions:
    """Test non-terminal transitions."""

    def test_new_tool_is_created(self, lifecycle, tool_id):
        assert lifecycle.get_state(tool_id) == LifecycleState.CREATED

    def test_valid_path(self, lifecycle, org_id, tool_id):
        lifecycle.transition(tool_id, org_id, LifecycleState.PLANNED, "spec compiled")
        lifecycle.transition(tool_id, org_id, LifecycleState.AWAITING_CLARIFICATION, "needs repo")
        lifecycle.transition(tool_id, org_id, LifecycleState.PLANNED, "answered")
        lifecycle.transition(tool_id, org_id, LifecycleState.EXECUTING, "running")

        assert lifecycle.get_state(tool_id) == LifecycleState.EXECUTING
        assert [t.to_state for t in lifecycle.history] == [
            LifecycleState.PLANNED,
            LifecycleState.AWAITING_CLARIFICATION,
            LifecycleState.PLANNED,
            LifecycleState.EXECUTING,
        ]

    def test_invalid_transition_rejected(self, lifecycle, org_id, tool_id):
        with pytest.raises(LifecycleTransitionError) as exc_info:
            lifecycle.transition(tool_id, org_id, LifecycleState.EXECUTING, "skip planning")

        assert "CREATED -> EXECUTING" in str(exc_info.value)
        assert lifecycle.get_state(tool_id) == LifecycleState.CREATED

    def test_terminal_target_rejected(self, lifecycle, org_id, tool_id):
        """READY can only be written by the finalize barrier."""
        lifecycle.transition(tool_id, org_id, LifecycleState.PLANNED, "spec compiled")
        lifecycle.transition(tool_id, org_id, LifecycleState.EXECUTING, "running")

        with pytest.raises(LifecycleTransitionError):
            lifecycle.transition(tool_id, org_id, LifecycleState.READY, "done")

    def test_can_transition(self, lifecycle, tool_id):
        assert lifecycle.can_transition(tool_id, LifecycleState.PLANNED)
        assert not lifecycle.can_transition(tool_id, LifecycleState.EXECUTING)

    def test_corrupted_has_no_exits(self):
        assert VALID_TRANSITIONS[LifecycleState.CORRUPTED] == set()


class TestFinalize:
    """Test the finalize barrier."""

    def test_success_with_snapshot(self, lifecycle, org_id, tool_id):
        record = _ready_tool(lifecycle, org_id, tool_id)

        assert record.state == "READY"
        assert record.data_ready is True
        assert record.view_ready is False
        assert record.error_message is None
        assert record.finalized_at is not None

    def test_empty_output_forced_to_failed(self, lifecycle, org_id, tool_id):
        record = lifecycle.finalize_tool_execution(
            tool_id, org_id, LifecycleState.MATERIALIZED, snapshot={}, view_spec={},
        )

        assert record.state == "FAILED"
        assert record.error_message == NO_OUTPUT_REASON
        assert record.data_ready is False

    def test_view_only_success(self, lifecycle, org_id, tool_id):
        record = lifecycle.finalize_tool_execution(
            tool_id, org_id, LifecycleState.MATERIALIZED, view_spec={"id": "issues_table"},
        )

        assert record.state == "MATERIALIZED"
        assert record.view_ready is True
        assert record.data_ready is False

    def test_partial_decision_degrades(self, lifecycle, org_id, tool_id):
        decision = RenderDecision(kind="render", partial=True, explanation="No related emails")

        record = lifecycle.finalize_tool_execution(
            tool_id, org_id, LifecycleState.MATERIALIZED,
            snapshot=[{"id": "1"}], view_spec={"id": "issues_table"}, decision=decision,
        )

        assert record.state == "DEGRADED"
        assert record.view_ready is True

    def test_explain_decision_clears_view_ready(self, lifecycle, org_id, tool_id):
        decision = RenderDecision(kind="explain", explanation="No failed builds")

        record = lifecycle.finalize_tool_execution(
            tool_id, org_id, LifecycleState.READY,
            snapshot=[{"id": "1"}], view_spec={"id": "issues_table"}, decision=decision,
        )

        assert record.state == "READY"
        assert record.view_ready is False

    def test_failed_keeps_error(self, lifecycle, org_id, tool_id):
        record = lifecycle.finalize_tool_execution(
            tool_id, org_id, LifecycleState.FAILED, error_message="github is down",
        )

        assert record.state == "FAILED"
        assert record.error_message == "github is down"

    def test_non_terminal_request_rejected(self, lifecycle, org_id, tool_id):
        with pytest.raises(LifecycleTransitionError):
            lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.EXECUTING, snapshot=[1])

    def test_refinalize_after_failure(self, lifecycle, org_id, tool_id):
        lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.FAILED, error_message="boom")

        record = lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.READY, snapshot=[1])

        assert record.state == "READY"

    def test_tool_locks_released(self, lifecycle, org_id):
        """Per-tool locks do not outlive the calls that use them."""
        tool_ids = [str(uuid.uuid4()) for _ in range(20)]

        for tool_id in tool_ids:
            _ready_tool(lifecycle, org_id, tool_id)

        assert not set(tool_ids) & set(LifecycleStateMachine._tool_locks)

    def test_lock_released_after_failure(self, lifecycle, temp_db, org_id, tool_id):
        temp_db.write_lifecycle(LifecycleRecord(tool_id=tool_id, org_id=org_id, state="CORRUPTED"))

        with pytest.raises(LifecycleTransitionError):
            lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.READY, snapshot=[1])

        assert tool_id not in LifecycleStateMachine._tool_locks

    def test_concurrent_finalize_serialized(self, temp_db, org_id, tool_id):
        """Two machines in one process finalize the same tool one at a time."""
        machines = [LifecycleStateMachine(temp_db), LifecycleStateMachine(temp_db)]
        errors = []

        def finalize(machine, rows):
            try:
                machine.finalize_tool_execution(tool_id, org_id, LifecycleState.READY, snapshot=rows)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=finalize, args=(machine, [i]))
            for i, machine in enumerate(machines)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert temp_db.get_lifecycle(tool_id).snapshot in ([0], [1])
        assert tool_id not in LifecycleStateMachine._tool_locks


class TestReadbackVerification:
    """Test corruption detection."""

    def test_mismatch_marks_corrupted(self, lifecycle, temp_db, org_id, tool_id, monkeypatch):
        real_get = temp_db.get_lifecycle
        calls = {"count": 0}

        def stale_read(requested_tool_id):
            calls["count"] += 1
            record = real_get(requested_tool_id)
            # The second read is the barrier's readback
            if calls["count"] == 2 and record is not None:
                record = copy.copy(record)
                record.state = "EXECUTING"
            return record

        monkeypatch.setattr(temp_db, "get_lifecycle", stale_read)

        with pytest.raises(FatalInvariantViolation):
            lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.READY, snapshot=[1])

        monkeypatch.setattr(temp_db, "get_lifecycle", real_get)
        assert lifecycle.get_state(tool_id) == LifecycleState.CORRUPTED

    def test_corrupted_cannot_be_finalized(self, lifecycle, temp_db, org_id, tool_id):
        temp_db.write_lifecycle(LifecycleRecord(tool_id=tool_id, org_id=org_id, state="CORRUPTED"))

        with pytest.raises(LifecycleTransitionError):
            lifecycle.finalize_tool_execution(tool_id, org_id, LifecycleState.READY, snapshot=[1])


class TestExecutionGate:
    """Test can_execute_tool."""

    def test_new_tool_blocked(self, lifecycle, spec, tool_id):
        gate = lifecycle.can_execute_tool(tool_id, spec)

        assert not gate.allowed
        assert gate.reason == "Tool is CREATED"
        assert gate.remediation

    def test_ready_tool_without_artifact(self, lifecycle, spec, org_id, tool_id):
        _ready_tool(lifecycle, org_id, tool_id)

        gate = lifecycle.can_execute_tool(tool_id, spec)

        assert not gate.allowed
        assert gate.reason == "No active compiled artifact"

    def test_ready_tool_with_matching_artifact(self, lifecycle, spec, compiled, temp_db, org_id, tool_id):
        _ready_tool(lifecycle, org_id, tool_id)
        version = lifecycle.register_artifact(org_id, compiled)

        gate = lifecycle.can_execute_tool(tool_id, spec)

        assert gate.allowed
        assert version.status == "active"
        assert temp_db.get_active_version(tool_id).spec_hash == compiled.spec_hash

    def test_changed_spec_blocked(self, lifecycle, spec_data, compiled, org_id, tool_id):
        _ready_tool(lifecycle, org_id, tool_id)
        lifecycle.register_artifact(org_id, compiled)
        spec_data["purpose"] = "Changed after compile"

        gate = lifecycle.can_execute_tool(tool_id, parse_spec(spec_data))

        assert not gate.allowed
        assert "Recompile" in gate.remediation


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
