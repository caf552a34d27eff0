"""
Graph Traversal
---------------
One traversal abstraction for both orchestration strategies.

- TopologicalTraversal: strict DAG, Kahn order computed up front, a cycle
  fails before anything runs.
- ConditionalTraversal: general graph, breadth-first from nodes with no
  incoming edge; outgoing edges are typed success/failure/default and may
  carry a dotted-path condition over {output, error, state}.

The orchestrator owns the visited set and the step pipeline; a traversal only
answers "where do I start" and "where do I go next".
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from infra.database import StepStatus
from .errors import SpecValidationError, WorkflowHasCycles

Edge = Tuple[str, str]

_MISSING = object()


def resolve_path(source: Any, path: Optional[str]) -> Any:
    """
    Resolve a dotted path ("issues.open.0") against nested dicts and lists.

    Returns None when any segment is missing.
    """
    if not path:
        return None
    current = source
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


def _adjacency(node_ids: Sequence[str], edges: Iterable[Edge], graph_id: str) -> Dict[str, List[str]]:
    known = set(node_ids)
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for source, target in edges:
        if source not in known or target not in known:
            missing = source if source not in known else target
            raise SpecValidationError(
                f"Graph {graph_id} has an edge referencing missing node {missing}",
                {"graph_id": graph_id, "node_id": missing},
            )
        adjacency[source].append(target)
    return adjacency


def topological_order(node_ids: Sequence[str], edges: Iterable[Edge], graph_id: str) -> List[str]:
    """
    Kahn topological sort preserving declaration order among ready nodes.

    Raises WorkflowHasCycles if not every node can be ordered.
    """
    adjacency = _adjacency(node_ids, edges, graph_id)
    indegree = {node_id: 0 for node_id in node_ids}
    for targets in adjacency.values():
        for target in targets:
            indegree[target] += 1

    queue = deque(node_id for node_id in node_ids if indegree[node_id] == 0)
    order: List[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for target in adjacency[node_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    if len(order) != len(node_ids):
        raise WorkflowHasCycles(graph_id)
    return order


def start_nodes(node_ids: Sequence[str], edges: Iterable[Edge]) -> List[str]:
    """Nodes without incoming edges, in declaration order."""
    targets = {target for _, target in edges}
    return [node_id for node_id in node_ids if node_id not in targets]


@dataclass
class StepOutcome:
    """What one executed node produced."""
    node_id: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED


class GraphTraversal:
    """Strategy interface used by the orchestrator's step pipeline."""

    graph_id: str = ""

    def initial(self) -> List[str]:
        raise NotImplementedError

    def successors(self, outcome: StepOutcome, state: Dict[str, Any]) -> List[str]:
        raise NotImplementedError


class TopologicalTraversal(GraphTraversal):
    """Strict DAG: everything is scheduled up front in topological order."""

    def __init__(self, graph_id: str, node_ids: Sequence[str], edges: Iterable[Edge]):
        self.graph_id = graph_id
        self._order = topological_order(node_ids, list(edges), graph_id)

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def initial(self) -> List[str]:
        return list(self._order)

    def successors(self, outcome: StepOutcome, state: Dict[str, Any]) -> List[str]:
        return []


@dataclass
class TypedEdge:
    source: str
    target: str
    type: str = "default"
    condition: Optional[str] = None


class ConditionalTraversal(GraphTraversal):
    """General graph with success/failure/default edges."""

    def __init__(self, graph_id: str, node_ids: Sequence[str], edges: Sequence[TypedEdge]):
        self.graph_id = graph_id
        self._node_ids = list(node_ids)
        self._edges = list(edges)
        _adjacency(self._node_ids, [(e.source, e.target) for e in self._edges], graph_id)

    def initial(self) -> List[str]:
        return start_nodes(self._node_ids, [(e.source, e.target) for e in self._edges])

    def outgoing(self, node_id: str) -> List[TypedEdge]:
        return [e for e in self._edges if e.source == node_id]

    def successors(self, outcome: StepOutcome, state: Dict[str, Any]) -> List[str]:
        error = {"message": outcome.error} if outcome.failed else None
        context = {"output": outcome.output, "error": error, "state": state}
        targets = []
        for edge in self.outgoing(outcome.node_id):
            if edge.type == "success" and outcome.failed:
                continue
            if edge.type == "failure" and not outcome.failed:
                continue
            if edge.condition and not resolve_path(context, edge.condition):
                continue
            targets.append(edge.target)
        return targets

    def handles_failure(self, node_id: str) -> bool:
        """Whether the node declares a failure edge."""
        return any(e.type == "failure" for e in self.outgoing(node_id))
