"""
Action Runtime Tests
--------------------
Tests for single-action execution.

Test Cases:
1. Success path: reduced state, history window, outputs, events, run record
2. Pre-call gates: approval, operation permission, credentials
3. Failure path: integration errors are logged and re-raised
4. Log sanitization
5. Deadman timeout and the write fence
"""

import threading
import time

import pytest

from core.errors import (
    ActionNotFound, ApprovalRequired, CredentialUnavailable, ExecutionTimeout,
    PermissionDenied, StaleWriteRejected,
)
from infra.database import RunStatus
from memory.scopes import MemoryScope
from tools.compiler import compile_tool, parse_spec
from tools.runtime import OUTPUT_NAMESPACE, WriteFence


def _wait_for_terminal_run(db, tool_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        runs = db.list_runs(tool_id)
        if runs and runs[0].is_terminal:
            return runs[0]
        time.sleep(0.01)
    raise AssertionError("run never reached a terminal status")


class TestSuccessPath:
    """Test a successful action call."""

    def test_state_is_reduced_and_persisted(self, runtime, compiled, temp_db, org_id, tool_id):
        result = runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")

        assert [i["id"] for i in result.state["issues"]] == ["1", "2"]
        assert result.state["meta"] == {}
        assert temp_db.get_tool_state(tool_id, org_id) == result.state

    def test_events_follow_emits(self, runtime, compiled, org_id, tool_id):
        result = runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")

        assert [e["type"] for e in result.events] == ["issues_loaded"]
        assert result.events[0]["payload"] == result.output

    def test_output_written_to_tool_and_user_memory(self, runtime, compiled, memory, org_id, tool_id, user_id):
        result = runtime.execute_tool_action(org_id, tool_id, compiled, "notify", user_id=user_id)

        assert memory.get(MemoryScope.tool(tool_id), OUTPUT_NAMESPACE, "notify") == result.output
        assert memory.get(MemoryScope.tool_user(tool_id, user_id), OUTPUT_NAMESPACE, "notify") == result.output

    def test_run_recorded_with_one_log_entry(self, runtime, compiled, temp_db, org_id, tool_id):
        result = runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues", trigger_id="manual")

        run = temp_db.get_run(result.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.action_id == "list_issues"
        assert run.trigger_id == "manual"
        assert run.final_state == result.state
        assert run.pinned_reducers["set_issues"]["type"] == "set"
        assert len(run.logs) == 1
        assert run.logs[0]["status"] == "succeeded"
        assert run.logs[0]["capability_id"] == "github.list_issues"

    def test_state_history_keeps_last_four(self, runtime, compiled, org_id, tool_id):
        """History is a rolling window of the most recent snapshots."""
        for i in range(6):
            runtime.execute_tool_action(org_id, tool_id, compiled, "create_issue", {"title": f"issue {i}"})

        history = runtime.state_history(org_id, tool_id)

        assert len(history) == 4
        assert [len(h["state"]["issues"]) for h in history] == [3, 4, 5, 6]

    def test_executor_receives_context(self, runtime, compiled, executors, org_id, tool_id, user_id):
        seen = {}

        def capture(params, context, tracer):
            seen.update(context)
            return []

        executors["github.list_issues"] = capture
        runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues", user_id=user_id)

        assert seen["access_token"] == "gh-token"
        assert seen["org_id"] == org_id
        assert seen["user_id"] == user_id

    def test_successive_actions_share_state(self, runtime, compiled, org_id, tool_id):
        runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")
        result = runtime.execute_tool_action(
            org_id, tool_id, compiled, "close_issue", {"approved": True, "issue_id": "1"}
        )

        assert [i["id"] for i in result.state["issues"]] == ["2"]


class TestPreCallGates:
    """Test checks that run before the capability is invoked."""

    def test_unknown_action(self, runtime, compiled, org_id, tool_id):
        with pytest.raises(ActionNotFound):
            runtime.execute_tool_action(org_id, tool_id, compiled, "nope")

    def test_approval_required(self, runtime, compiled, temp_db, org_id, tool_id):
        """No run is created when approval is missing."""
        with pytest.raises(ApprovalRequired) as exc_info:
            runtime.execute_tool_action(org_id, tool_id, compiled, "close_issue", {"issue_id": "1"})

        assert exc_info.value.action_id == "close_issue"
        assert temp_db.list_runs(tool_id) == []

    def test_truthy_approval_is_not_enough(self, runtime, compiled, org_id, tool_id):
        with pytest.raises(ApprovalRequired):
            runtime.execute_tool_action(org_id, tool_id, compiled, "close_issue", {"approved": "yes"})

    def test_operation_not_allowed(self, runtime, spec_data, registry, temp_db, org_id, tool_id):
        """A capability only runs the operation types it allows."""
        spec_data["actions"][0]["type"] = "MUTATE"
        compiled = compile_tool(parse_spec(spec_data), registry)

        with pytest.raises(PermissionDenied):
            runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")

        assert temp_db.list_runs(tool_id)[0].status == RunStatus.FAILED

    def test_missing_credential(self, runtime, compiled, credentials, temp_db, executors, org_id, tool_id):
        """A refused call still leaves a failed run with one log entry."""
        credentials.revoke("github")
        calls = []
        executors["github.list_issues"] = lambda params, context, tracer: calls.append(1) or []

        with pytest.raises(CredentialUnavailable) as exc_info:
            runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")

        assert exc_info.value.integration_id == "github"
        assert calls == []
        runs = temp_db.list_runs(tool_id)
        assert len(runs) == 1
        assert runs[0].status == RunStatus.FAILED
        assert "not connected" in runs[0].error
        assert runs[0].logs[0]["status"] == "failed"
        assert runs[0].logs[0]["integration_id"] == "github"

    def test_org_scoped_credential(self, runtime, compiled, credentials, org_id, tool_id):
        credentials.revoke("github")
        credentials.set_token("github", "org-token", org_id=org_id)

        result = runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")

        assert result.output


class TestFailurePath:
    """Test integration failures."""

    def test_integration_error_reraised_and_logged(self, runtime, compiled, executors, temp_db, org_id, tool_id):
        def broken(params, context, tracer):
            raise RuntimeError("github is down")

        executors["github.list_issues"] = broken

        with pytest.raises(RuntimeError, match="github is down"):
            runtime.execute_tool_action(org_id, tool_id, compiled, "list_issues")

        run = temp_db.list_runs(tool_id)[0]
        assert run.status == RunStatus.FAILED
        assert run.error == "github is down"
        assert run.logs[0]["status"] == "failed"
        assert run.logs[0]["error"] == "github is down"
        assert temp_db.get_tool_state(tool_id, org_id) is None

    def test_log_entries_are_sanitized(self, runtime, compiled, temp_db, org_id, tool_id):
        result = runtime.execute_tool_action(
            org_id, tool_id, compiled, "create_issue", {"title": "x", "api_token": "s3cret"}
        )

        run = temp_db.get_run(result.run_id)
        assert run.input["api_token"] == "[redacted]"
        assert run.logs[0]["input"]["api_token"] == "[redacted]"
        assert run.logs[0]["input"]["title"] == "x"


class TestDeadmanTimeout:
    """Test the deadman timeout and write fencing."""

    def test_fast_call_returns_result(self, runtime, compiled, org_id, tool_id):
        result = runtime.execute_with_deadline(org_id, tool_id, compiled, "list_issues", timeout_seconds=5)

        assert len(result.state["issues"]) == 2

    def test_timeout_discards_late_writes(self, runtime, compiled, executors, temp_db, org_id, tool_id):
        """The caller gets ExecutionTimeout; the late result never commits."""
        release = threading.Event()

        def slow(params, context, tracer):
            release.wait(5)
            return [{"id": "9", "title": "Late build failure"}]

        executors["github.list_issues"] = slow

        with pytest.raises(ExecutionTimeout) as exc_info:
            runtime.execute_with_deadline(org_id, tool_id, compiled, "list_issues", timeout_seconds=0.05)
        assert exc_info.value.action_id == "list_issues"

        release.set()
        run = _wait_for_terminal_run(temp_db, tool_id)

        assert run.status == RunStatus.FAILED
        assert run.error == "Discarded after deadman timeout"
        assert temp_db.get_tool_state(tool_id, org_id) is None
        assert runtime.state_history(org_id, tool_id) == []

    def test_revoked_fence_rejects_writes(self):
        fence = WriteFence()
        fence.check("before")

        fence.revoke()

        assert fence.revoked
        with pytest.raises(StaleWriteRejected):
            fence.check("after")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
