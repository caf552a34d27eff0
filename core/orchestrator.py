"""
Orchestrator
------------
Runs workflows and action graphs of a compiled tool.

Both strategies share one step pipeline:
- one ExecutionRun per invocation, reducers pinned at creation
- one WorkflowStep per executed node; nodes never reached are stored as skipped
- node input = run input merged with earlier node outputs keyed by node id
- action nodes go through the Action Runtime (reducers, memory, events)

Workflow DAG halts on the first failed or blocked node. The action graph
catches node failures and follows failure edges instead; it never retries.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
import logging
import time

from infra.database import (
    DatabaseManager, ExecutionRun, RunStatus, StepStatus, WorkflowStep,
)
from infra.logging import RunContext, log_run_end
from infra.redaction import sanitize_log_data
from memory.adapters import TOOL_BUILDER_NAMESPACE
from memory.scopes import MemoryScope
from memory.store import MemoryStore
from tools.compiler import ExecutableTool
from tools.runtime import ActionRuntime
from tools.spec import ActionGraph, NodeKind, WorkflowSpec

from .errors import (
    ReducerNotFound, RetryExhausted, RunNotFound, RunNotRetryable,
    SpecValidationError, is_retryable,
)
from .graph import (
    ConditionalTraversal, GraphTraversal, StepOutcome, TopologicalTraversal,
    TypedEdge, resolve_path,
)

ACTION_GRAPH_ID = "action-graph"
AUTOMATION_PAUSED_KEY = "automation_paused"


@dataclass
class RunResult:
    """Outcome of one workflow, action-graph or single-action run."""
    run_id: str
    status: RunStatus
    state: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    steps: List[WorkflowStep] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass
class _RunScope:
    """Mutable bookkeeping for one run."""
    run: ExecutionRun
    compiled: ExecutableTool
    user_id: Optional[str]
    state: Dict[str, Any]
    outputs: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    steps: List[WorkflowStep] = field(default_factory=list)

    def node_input(self) -> Dict[str, Any]:
        return {**self.run.input, **self.outputs}


@dataclass
class _StepRecord:
    outcome: StepOutcome
    attempts: int = 1
    error: Optional[BaseException] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """
    Entry point for multi-step execution.

    Usage:
        orchestrator = Orchestrator(db, runtime)
        result = orchestrator.run_workflow(org_id, tool_id, compiled, "triage")
    """

    def __init__(
        self,
        db: DatabaseManager,
        runtime: ActionRuntime,
        memory: Optional[MemoryStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.runtime = runtime
        self.memory = memory or runtime.memory
        self._sleep = sleep
        self._logger = logging.getLogger("toolos.orchestrator")

    # ===== Kill switch =====

    def is_automation_paused(self, org_id: str, tool_id: str) -> bool:
        value = self.memory.get(
            MemoryScope.tool_org(tool_id, org_id), TOOL_BUILDER_NAMESPACE, AUTOMATION_PAUSED_KEY
        )
        return value is True

    def set_automation_paused(self, org_id: str, tool_id: str, paused: bool) -> None:
        """Flip the per-tool kill switch. Raises MemoryWriteError on failure."""
        self.memory.set_required(
            MemoryScope.tool_org(tool_id, org_id), TOOL_BUILDER_NAMESPACE, AUTOMATION_PAUSED_KEY, bool(paused)
        )
        self._logger.info(f"Automation for tool {tool_id} {'paused' if paused else 'resumed'}")

    # ===== Run bookkeeping =====

    def _pin_reducers(
        self,
        compiled: ExecutableTool,
        action_ids: Iterable[str],
        pinned: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for action_id in action_ids:
            action = compiled.actions.get(action_id)
            if action is None or not action.reducer_id:
                continue
            if pinned and action.reducer_id in pinned:
                result[action.reducer_id] = pinned[action.reducer_id]
                continue
            reducer = compiled.reducers.get(action.reducer_id)
            if reducer is None:
                raise ReducerNotFound(action.reducer_id)
            result[action.reducer_id] = reducer.model_dump(mode="json")
        return result

    def _open_run(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        payload: Dict[str, Any],
        pinned_reducers: Dict[str, Dict[str, Any]],
        user_id: Optional[str],
        workflow_id: Optional[str] = None,
        action_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        retry_of: Optional[str] = None,
    ) -> _RunScope:
        state = self.runtime.load_state(compiled, org_id, tool_id)
        run = ExecutionRun(
            org_id=org_id,
            tool_id=tool_id,
            trigger_id=trigger_id,
            action_id=action_id,
            workflow_id=workflow_id,
            status=RunStatus.RUNNING,
            input=dict(payload),
            state_snapshot=state,
            pinned_reducers=pinned_reducers,
            retry_of=retry_of,
        )
        self.db.save_run(run)
        self._logger.info(f"Run {run.id} started for tool {tool_id} ({workflow_id or action_id})")
        return _RunScope(run=run, compiled=compiled, user_id=user_id, state=state)

    def _finish(self, scope: _RunScope, status: RunStatus, error: Optional[str] = None) -> RunResult:
        run = scope.run
        run.status = status
        run.error = error
        run.current_step = None
        run.final_state = scope.state
        self.db.save_run(run)
        log_run_end(run.id, status.value, steps_executed=len(scope.steps), error=error)
        return RunResult(
            run_id=run.id,
            status=status,
            state=scope.state,
            outputs=dict(scope.outputs),
            events=list(scope.events),
            steps=list(scope.steps),
            error=error,
        )

    def _blocked_by_pause(self, scope: _RunScope) -> Optional[RunResult]:
        run = scope.run
        if not self.is_automation_paused(run.org_id, run.tool_id):
            return None
        self._logger.warning(f"Run {run.id} blocked: automation paused for tool {run.tool_id}")
        return self._finish(scope, RunStatus.BLOCKED, error="Automation paused")

    def _log_node(self, scope: _RunScope, node_id: str, kind: str, status: StepStatus, detail: Optional[str] = None) -> None:
        entry = {
            "id": f"{node_id}:{len(scope.run.logs)}",
            "timestamp": _now().isoformat(),
            "status": status.value,
            "node_id": node_id,
            "kind": kind,
        }
        if detail:
            entry["detail"] = detail
        scope.run.logs.append(entry)
        self.db.save_run(scope.run)

    # ===== Step pipeline =====

    def _execute_step(
        self,
        scope: _RunScope,
        node_id: str,
        action_id: str,
        max_attempts: int = 1,
        backoff_ms: int = 0,
    ) -> _StepRecord:
        """Run one action node with bounded retries and constant backoff."""
        run = scope.run
        node_input = scope.node_input()
        step = WorkflowStep(
            run_id=run.id,
            node_id=node_id,
            action_id=action_id,
            status=StepStatus.RUNNING,
            input=sanitize_log_data(node_input),
            started_at=_now(),
        )
        run.current_step = node_id
        self.db.save_step(step)

        started = time.monotonic()
        last_error: Optional[BaseException] = None
        attempts = 0
        while attempts < max_attempts:
            attempts += 1
            try:
                result = self.runtime.execute_tool_action(
                    run.org_id,
                    run.tool_id,
                    scope.compiled,
                    action_id,
                    node_input,
                    user_id=scope.user_id,
                    trigger_id=run.trigger_id,
                    run=run,
                )
            except Exception as e:
                last_error = e
                self._logger.warning(f"Node {node_id} attempt {attempts}/{max_attempts} failed: {e}")
                if not is_retryable(e):
                    break
                if attempts < max_attempts and backoff_ms:
                    self._sleep(backoff_ms / 1000)
                continue

            scope.state = result.state
            scope.outputs[node_id] = result.output
            scope.events.extend(result.events)
            step.status = StepStatus.COMPLETED
            step.output = sanitize_log_data(result.output)
            step.retries = attempts - 1
            self._close_step(scope, step, started)
            return _StepRecord(StepOutcome(node_id, StepStatus.COMPLETED, result.output), attempts)

        step.status = StepStatus.FAILED
        step.error = str(last_error)
        step.retries = attempts - 1
        self._close_step(scope, step, started)
        return _StepRecord(StepOutcome(node_id, StepStatus.FAILED, error=str(last_error)), attempts, last_error)

    def _close_step(self, scope: _RunScope, step: WorkflowStep, started: float) -> None:
        step.completed_at = _now()
        step.duration_ms = round((time.monotonic() - started) * 1000, 2)
        scope.run.retries += step.retries
        self.db.save_step(step)
        scope.steps.append(step)

    def _record_control_step(
        self,
        scope: _RunScope,
        node_id: str,
        kind: NodeKind,
        status: StepStatus,
        error: Optional[str] = None,
    ) -> StepOutcome:
        step = WorkflowStep(
            run_id=scope.run.id,
            node_id=node_id,
            status=status,
            input=sanitize_log_data(scope.node_input()),
            error=error,
            started_at=_now(),
            completed_at=_now(),
            duration_ms=0.0,
        )
        self.db.save_step(step)
        scope.steps.append(step)
        self._log_node(scope, node_id, kind.value, status, error)
        return StepOutcome(node_id, status, error=error)

    def _skip_unreached(
        self,
        scope: _RunScope,
        node_ids: Iterable[str],
        action_ids: Dict[str, Optional[str]],
        outcomes: List[StepOutcome],
    ) -> None:
        """Record nodes the run never reached as SKIPPED; they stay out of RunResult.steps."""
        reached = {o.node_id for o in outcomes}
        for node_id in node_ids:
            if node_id in reached:
                continue
            self.db.save_step(WorkflowStep(
                run_id=scope.run.id,
                node_id=node_id,
                action_id=action_ids.get(node_id),
                status=StepStatus.SKIPPED,
            ))

    def _traverse(
        self,
        traversal: GraphTraversal,
        scope: _RunScope,
        run_node: Callable[[str], StepOutcome],
        halt: Callable[[StepOutcome], bool],
    ) -> List[StepOutcome]:
        """Visit nodes breadth-first; each node executes at most once."""
        queue = deque(traversal.initial())
        visited: Set[str] = set()
        outcomes: List[StepOutcome] = []
        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)
            outcome = run_node(node_id)
            outcomes.append(outcome)
            if halt(outcome):
                break
            queue.extend(t for t in traversal.successors(outcome, scope.state) if t not in visited)
        return outcomes

    # ===== Workflow DAG =====

    def run_workflow(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        user_id: Optional[str] = None,
        retry_of: Optional[str] = None,
        pinned_reducers: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> RunResult:
        """
        Execute a workflow in topological order.

        Raises:
            WorkflowHasCycles: before any run is recorded
            RetryExhausted: a retryable action failed on every attempt
            ToolOSError: a non-retryable action error, re-raised as is
        """
        workflow = compiled.workflows.get(workflow_id)
        if workflow is None:
            raise SpecValidationError(f"Workflow {workflow_id} not found", {"workflow_id": workflow_id})

        nodes = {node.id: node for node in workflow.nodes}
        traversal = TopologicalTraversal(
            workflow.id, list(nodes), [(e.from_node, e.to) for e in workflow.edges]
        )

        action_ids = [n.action_id for n in workflow.nodes if n.action_id]
        scope = self._open_run(
            org_id, tool_id, compiled, dict(input or {}),
            self._pin_reducers(compiled, action_ids, pinned_reducers),
            user_id, workflow_id=workflow.id, trigger_id=trigger_id, retry_of=retry_of,
        )

        with RunContext(scope.run.id):
            blocked = self._blocked_by_pause(scope)
            if blocked is not None:
                return blocked

            failure: Dict[str, Any] = {}

            def run_node(node_id: str) -> StepOutcome:
                node = nodes[node_id]
                if node.type == NodeKind.ACTION:
                    record = self._execute_step(
                        scope, node_id, node.action_id,
                        max_attempts=workflow.retry_policy.max_retries + 1,
                        backoff_ms=workflow.retry_policy.backoff_ms,
                    )
                    if record.outcome.failed:
                        failure["record"] = record
                    return record.outcome
                return self._run_control_node(scope, workflow, node_id)

            outcomes = self._traverse(
                traversal, scope, run_node,
                halt=lambda o: o.status in (StepStatus.FAILED, StepStatus.BLOCKED),
            )
            self._skip_unreached(
                scope, traversal.order, {n: nodes[n].action_id for n in nodes}, outcomes,
            )

            last = outcomes[-1] if outcomes else None
            if last is not None and last.status == StepStatus.BLOCKED:
                return self._finish(scope, RunStatus.BLOCKED, error=last.error)

            record = failure.get("record")
            if record is not None:
                self._finish(scope, RunStatus.FAILED, error=record.outcome.error)
                if is_retryable(record.error):
                    raise RetryExhausted(record.outcome.node_id, record.attempts, record.error) from record.error
                raise record.error

            return self._finish(scope, RunStatus.COMPLETED)

    def _run_control_node(self, scope: _RunScope, workflow: WorkflowSpec, node_id: str) -> StepOutcome:
        node = next(n for n in workflow.nodes if n.id == node_id)

        if node.type == NodeKind.CONDITION:
            value = resolve_path(scope.state, node.condition)
            if not value:
                self._logger.info(f"Condition {node.condition!r} is falsy; blocking at node {node_id}")
                return self._record_control_step(
                    scope, node_id, node.type, StepStatus.BLOCKED,
                    error=f"Condition {node.condition} not met",
                )
            return self._record_control_step(scope, node_id, node.type, StepStatus.COMPLETED)

        if node.type == NodeKind.WAIT:
            if node.wait_ms > 0:
                self._sleep(node.wait_ms / 1000)
            return self._record_control_step(scope, node_id, node.type, StepStatus.COMPLETED)

        # transform: passthrough
        return self._record_control_step(scope, node_id, node.type, StepStatus.COMPLETED)

    # ===== Action graph =====

    def run_action_graph(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        graph: Optional[ActionGraph] = None,
        input: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        user_id: Optional[str] = None,
        retry_of: Optional[str] = None,
        pinned_reducers: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> RunResult:
        """
        Traverse the action graph breadth-first from its entry nodes.

        Node failures never raise; the run fails only when a failed node
        declares no failure edge.
        """
        graph = graph or compiled.spec.action_graph
        if graph is None:
            raise SpecValidationError("Tool has no action graph", {"tool_id": tool_id})

        nodes = {node.id: node for node in graph.nodes}
        traversal = ConditionalTraversal(
            ACTION_GRAPH_ID,
            list(nodes),
            [TypedEdge(e.from_node, e.to, e.type.value, e.condition) for e in graph.edges],
        )

        scope = self._open_run(
            org_id, tool_id, compiled, dict(input or {}),
            self._pin_reducers(compiled, [n.action_id for n in graph.nodes], pinned_reducers),
            user_id, workflow_id=ACTION_GRAPH_ID, trigger_id=trigger_id, retry_of=retry_of,
        )

        with RunContext(scope.run.id):
            blocked = self._blocked_by_pause(scope)
            if blocked is not None:
                return blocked

            outcomes = self._traverse(
                traversal, scope,
                lambda node_id: self._execute_step(scope, node_id, nodes[node_id].action_id).outcome,
                halt=lambda o: False,
            )
            self._skip_unreached(
                scope, list(nodes), {n: nodes[n].action_id for n in nodes}, outcomes,
            )

            unhandled = [o for o in outcomes if o.failed and not traversal.handles_failure(o.node_id)]
            if unhandled:
                return self._finish(scope, RunStatus.FAILED, error=unhandled[0].error)
            return self._finish(scope, RunStatus.COMPLETED)

    # ===== Single action =====

    def run_action(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        action_id: str,
        input: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        user_id: Optional[str] = None,
        retry_of: Optional[str] = None,
        pinned_reducers: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> RunResult:
        """One action as a run, honouring the kill switch. Errors propagate."""
        scope = self._open_run(
            org_id, tool_id, compiled, dict(input or {}),
            self._pin_reducers(compiled, [action_id], pinned_reducers),
            user_id, action_id=action_id, trigger_id=trigger_id, retry_of=retry_of,
        )
        with RunContext(scope.run.id):
            blocked = self._blocked_by_pause(scope)
            if blocked is not None:
                return blocked

            record = self._execute_step(scope, action_id, action_id)
            if record.outcome.failed:
                self._finish(scope, RunStatus.FAILED, error=record.outcome.error)
                raise record.error
            return self._finish(scope, RunStatus.COMPLETED)

    # ===== Triggers and retries =====

    def fire_trigger(
        self,
        org_id: str,
        tool_id: str,
        compiled: ExecutableTool,
        trigger_id: str,
        input: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[RunResult]:
        """Dispatch a trigger to its workflow or action. Disabled triggers return None."""
        trigger = compiled.triggers.get(trigger_id)
        if trigger is None:
            raise SpecValidationError(f"Trigger {trigger_id} not found", {"trigger_id": trigger_id})
        if not trigger.enabled:
            self._logger.info(f"Trigger {trigger_id} is disabled; skipping")
            return None

        self._logger.info(f"Firing trigger {trigger_id} ({trigger.type.value})")
        if trigger.workflow_id:
            return self.run_workflow(
                org_id, tool_id, compiled, trigger.workflow_id, input,
                trigger_id=trigger_id, user_id=user_id,
            )
        return self.run_action(
            org_id, tool_id, compiled, trigger.action_id, input,
            trigger_id=trigger_id, user_id=user_id,
        )

    def retry_run(self, run_id: str, compiled: ExecutableTool, user_id: Optional[str] = None) -> RunResult:
        """
        Replay a failed or blocked run with its pinned reducers.

        Raises ReducerNotFound when a reducer resolves from neither the pin
        nor the current spec.
        """
        original = self.db.get_run(run_id)
        if original is None:
            raise RunNotFound(run_id)
        if original.status not in (RunStatus.FAILED, RunStatus.BLOCKED):
            raise RunNotRetryable(run_id, RunStatus(original.status).value)

        self._logger.info(f"Retrying run {run_id}")
        kwargs = dict(
            input=original.input,
            trigger_id=original.trigger_id,
            user_id=user_id,
            retry_of=original.id,
            pinned_reducers=original.pinned_reducers,
        )
        if original.workflow_id == ACTION_GRAPH_ID:
            return self.run_action_graph(original.org_id, original.tool_id, compiled, **kwargs)
        if original.workflow_id:
            return self.run_workflow(original.org_id, original.tool_id, compiled, original.workflow_id, **kwargs)
        return self.run_action(original.org_id, original.tool_id, compiled, original.action_id, **kwargs)
