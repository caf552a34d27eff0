"""
Spec Compiler
-------------
Resolves a ToolSystemSpec into an ExecutableTool or fails fast.

The hard gate (`compile_tool`) raises on the first violation and never
returns a partial artifact. The advisory validator
(`validate_spec_advisory`) runs the same checks but collects clarification
prompts for an interactive completion flow; it is never a substitute for the
hard gate before execution.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from pydantic import ValidationError

from core.errors import SpecValidationError, WorkflowHasCycles
from core.graph import topological_order
from .registry import CapabilityRegistry
from .spec import (
    ActionSpec, NodeKind, StateReducer, ToolSystemSpec, TriggerSpec, ViewSpec,
    WorkflowSpec, spec_hash,
)


@dataclass
class ExecutableTool:
    """Compiled id -> entity maps for one spec revision."""
    spec: ToolSystemSpec
    spec_hash: str
    actions: Dict[str, ActionSpec] = field(default_factory=dict)
    workflows: Dict[str, WorkflowSpec] = field(default_factory=dict)
    triggers: Dict[str, TriggerSpec] = field(default_factory=dict)
    views: Dict[str, ViewSpec] = field(default_factory=dict)
    reducers: Dict[str, StateReducer] = field(default_factory=dict)

    @property
    def tool_id(self) -> str:
        return self.spec.id


@dataclass
class Clarification:
    """A user-facing prompt produced by the advisory validator."""
    field: str
    message: str
    ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "message": self.message, "ref": self.ref}


def parse_spec(data: Dict[str, Any]) -> ToolSystemSpec:
    """Validate a raw mapping into a ToolSystemSpec."""
    try:
        return ToolSystemSpec.model_validate(data)
    except ValidationError as e:
        raise SpecValidationError(f"Spec failed schema validation: {e}") from e


# Each check reports (field, message, offending id[, original error]) through `report`.
Report = Callable[..., None]


def _check_capabilities(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    for action in spec.actions:
        capability = registry.get_capability(action.capability_id)
        if capability is None:
            report("actions", f"Action {action.id} uses unknown capability {action.capability_id}", action.id)
        elif capability.integration_id != action.integration_id:
            report(
                "actions",
                f"Action {action.id} capability {action.capability_id} belongs to "
                f"{capability.integration_id}, not {action.integration_id}",
                action.id,
            )


def _check_integrations(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    declared = {integration.id for integration in spec.integrations}
    for action in spec.actions:
        if action.integration_id not in declared:
            report(
                "integrations",
                f"Action {action.id} uses undeclared integration {action.integration_id}",
                action.id,
            )


def _check_duplicates(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    collections = (
        ("actions", [a.id for a in spec.actions]),
        ("workflows", [w.id for w in spec.workflows]),
        ("triggers", [t.id for t in spec.triggers]),
        ("views", [v.id for v in spec.views]),
    )
    for name, ids in collections:
        seen = set()
        for item_id in ids:
            if item_id in seen:
                report(name, f"Duplicate {name[:-1]} id: {item_id}", item_id)
            seen.add(item_id)


def _check_references(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    actions = {a.id for a in spec.actions}
    workflows = {w.id for w in spec.workflows}

    for workflow in spec.workflows:
        for node in workflow.nodes:
            if node.type == NodeKind.ACTION and not node.action_id:
                report("workflows", f"Workflow {workflow.id} action node {node.id} has no action", node.id)
            elif node.action_id and node.action_id not in actions:
                report(
                    "workflows",
                    f"Workflow {workflow.id} references missing action {node.action_id}",
                    node.action_id,
                )

    for trigger in spec.triggers:
        if not trigger.action_id and not trigger.workflow_id:
            report("triggers", f"Trigger {trigger.id} is not bound to an action or workflow", trigger.id)
        if trigger.action_id and trigger.action_id not in actions:
            report("triggers", f"Trigger {trigger.id} references missing action {trigger.action_id}", trigger.action_id)
        if trigger.workflow_id and trigger.workflow_id not in workflows:
            report(
                "triggers",
                f"Trigger {trigger.id} references missing workflow {trigger.workflow_id}",
                trigger.workflow_id,
            )


def _check_views(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    entities = {e.name for e in spec.entities}
    actions = {a.id for a in spec.actions}
    for view in spec.views:
        if view.source.entity not in entities:
            report("views", f"View {view.id} references missing entity {view.source.entity}", view.source.entity)
        for action_id in view.actions:
            if action_id not in actions:
                report("views", f"View {view.id} references missing action {action_id}", action_id)


def _check_reducers(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    reducers = {r.id for r in spec.state.reducers}
    for action in spec.actions:
        if action.reducer_id and action.reducer_id not in reducers:
            report("state", f"Action {action.id} references missing reducer {action.reducer_id}", action.reducer_id)


def _check_graphs(spec: ToolSystemSpec, registry: CapabilityRegistry, report: Report) -> None:
    for workflow in spec.workflows:
        try:
            topological_order(
                [n.id for n in workflow.nodes],
                [(e.from_node, e.to) for e in workflow.edges],
                workflow.id,
            )
        except (SpecValidationError, WorkflowHasCycles) as e:
            report("workflows", e.message, workflow.id, e)

    graph = spec.action_graph
    if graph is None:
        return
    actions = {a.id for a in spec.actions}
    for node in graph.nodes:
        if node.action_id not in actions:
            report("action_graph", f"Action graph node {node.id} references missing action {node.action_id}", node.id)
    try:
        topological_order(
            [n.id for n in graph.nodes],
            [(e.from_node, e.to) for e in graph.edges],
            "action-graph",
        )
    except (SpecValidationError, WorkflowHasCycles) as e:
        report("action_graph", e.message, "action-graph", e)


CHECKS = (
    _check_capabilities,
    _check_integrations,
    _check_duplicates,
    _check_references,
    _check_views,
    _check_reducers,
    _check_graphs,
)


def compile_tool(spec: ToolSystemSpec, registry: CapabilityRegistry) -> ExecutableTool:
    """Hard compile gate. Raises SpecValidationError on the first violation."""

    def fail(field_name: str, message: str, ref: Optional[str], error: Optional[SpecValidationError] = None) -> None:
        if error is not None:
            raise error
        raise SpecValidationError(message, {"field": field_name, "ref": ref})

    for check in CHECKS:
        check(spec, registry, fail)

    return ExecutableTool(
        spec=spec,
        spec_hash=spec_hash(spec),
        actions={a.id: a for a in spec.actions},
        workflows={w.id: w for w in spec.workflows},
        triggers={t.id: t for t in spec.triggers},
        views={v.id: v for v in spec.views},
        reducers={r.id: r for r in spec.state.reducers},
    )


def validate_spec_advisory(spec: ToolSystemSpec, registry: CapabilityRegistry) -> List[Clarification]:
    """Run every check and collect clarifications instead of failing."""
    clarifications: List[Clarification] = []

    def collect(field_name: str, message: str, ref: Optional[str], error: Optional[SpecValidationError] = None) -> None:
        clarifications.append(Clarification(field=field_name, message=message, ref=ref))

    for check in CHECKS:
        check(spec, registry, collect)

    if not spec.actions:
        collect("actions", "Which data should this tool fetch? No actions are declared.", None)
    if not spec.views:
        collect("views", "How should results be shown? No views are declared.", None)
    for question in spec.clarifications:
        collect("clarifications", question, None)

    return clarifications


class ToolCompiler:
    """
    Compiles specs and caches artifacts by spec hash (bounded LRU).

    Usage:
        compiler = ToolCompiler(registry)
        compiled = compiler.compile(spec)
    """

    def __init__(self, registry: CapabilityRegistry, cache_size: int = 64):
        self._registry = registry
        self._cache_size = cache_size
        self._cache: "OrderedDict[str, ExecutableTool]" = OrderedDict()
        self._lock = threading.Lock()
        self._logger = logging.getLogger("toolos.tools.compiler")

    def compile(self, spec: ToolSystemSpec) -> ExecutableTool:
        digest = spec_hash(spec)
        with self._lock:
            cached = self._cache.get(digest)
            if cached is not None:
                self._cache.move_to_end(digest)
                return cached

        try:
            compiled = compile_tool(spec, self._registry)
        except SpecValidationError as e:
            self._logger.warning(f"Compile failed for tool {spec.id}: {e.message}")
            raise

        with self._lock:
            self._cache[digest] = compiled
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

        self._logger.info(f"Compiled tool {spec.id} ({digest[:12]})")
        return compiled

    def invalidate(self, digest: Optional[str] = None) -> None:
        with self._lock:
            if digest is None:
                self._cache.clear()
            else:
                self._cache.pop(digest, None)

    def __len__(self) -> int:
        return len(self._cache)
