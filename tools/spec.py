"""
Tool System Specification
-------------------------
Pydantic models for the declarative spec a tool is built from.

Field names are snake_case; camelCase aliases are accepted on input so specs
produced by the upstream compiler load unchanged.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import hashlib
import json

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SpecModel(BaseModel):
    """Base for every spec model."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class ActionType(str, Enum):
    """Operation type of an action, checked against capability permissions."""
    READ = "READ"
    WRITE = "WRITE"
    MUTATE = "MUTATE"
    NOTIFY = "NOTIFY"


class ReducerType(str, Enum):
    SET = "set"
    MERGE = "merge"
    APPEND = "append"
    REMOVE = "remove"


class NodeKind(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    WAIT = "wait"
    TRANSFORM = "transform"


class EdgeType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DEFAULT = "default"


class TriggerType(str, Enum):
    CRON = "cron"
    WEBHOOK = "webhook"
    INTEGRATION_EVENT = "integration_event"
    STATE_CONDITION = "state_condition"


class EntityField(SpecModel):
    name: str
    type: str = "string"
    required: bool = False


class EntitySpec(SpecModel):
    name: str
    fields: List[EntityField] = Field(default_factory=list)
    source_integration: str
    identifiers: List[str] = Field(default_factory=list)


class IntegrationSpec(SpecModel):
    id: str
    capabilities: List[str] = Field(default_factory=list)


class StateReducer(SpecModel):
    id: str
    type: ReducerType
    target: str = Field(..., description="Top-level state key the reducer writes")


class StateSpec(SpecModel):
    initial: Dict[str, Any] = Field(default_factory=dict)
    reducers: List[StateReducer] = Field(default_factory=list)


class ActionSpec(SpecModel):
    id: str
    name: str = ""
    description: str = ""
    type: ActionType = ActionType.READ
    integration_id: str
    capability_id: str
    reducer_id: Optional[str] = None
    requires_approval: bool = False
    emits: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class WorkflowNode(SpecModel):
    id: str
    type: NodeKind
    action_id: Optional[str] = None
    condition: Optional[str] = Field(None, description="Dotted state path for condition nodes")
    transform: Optional[str] = None
    wait_ms: int = 0


class WorkflowEdge(SpecModel):
    from_node: str = Field(..., alias="from")
    to: str


class RetryPolicy(SpecModel):
    max_retries: int = Field(0, ge=0)
    backoff_ms: int = Field(0, ge=0)


class WorkflowSpec(SpecModel):
    id: str
    name: str = ""
    description: str = ""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_ms: int = 0


class TriggerSpec(SpecModel):
    id: str
    name: str = ""
    type: TriggerType = TriggerType.CRON
    condition: Dict[str, Any] = Field(default_factory=dict)
    action_id: Optional[str] = None
    workflow_id: Optional[str] = None
    enabled: bool = True


class ViewSource(SpecModel):
    entity: str
    state_path: Optional[str] = None


class ViewSpec(SpecModel):
    id: str
    name: str = ""
    type: str = "table"
    source: ViewSource
    fields: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)


class ActionNode(SpecModel):
    id: str
    action_id: str


class ConditionalEdge(SpecModel):
    from_node: str = Field(..., alias="from")
    to: str
    condition: Optional[str] = Field(None, description="Dotted path over {output, error, state}")
    type: EdgeType = EdgeType.DEFAULT


class ActionGraph(SpecModel):
    nodes: List[ActionNode] = Field(default_factory=list)
    edges: List[ConditionalEdge] = Field(default_factory=list)


class MemorySpec(SpecModel):
    tool_namespaces: List[str] = Field(default_factory=list)
    user_namespaces: List[str] = Field(default_factory=list)


class PermissionSpec(SpecModel):
    roles: List[str] = Field(default_factory=list)
    grants: List[Dict[str, Any]] = Field(default_factory=list)


class ToolSystemSpec(SpecModel):
    id: str
    name: str
    purpose: str = ""
    entities: List[EntitySpec] = Field(default_factory=list)
    integrations: List[IntegrationSpec] = Field(default_factory=list)
    actions: List[ActionSpec] = Field(default_factory=list)
    workflows: List[WorkflowSpec] = Field(default_factory=list)
    triggers: List[TriggerSpec] = Field(default_factory=list)
    views: List[ViewSpec] = Field(default_factory=list)
    state: StateSpec = Field(default_factory=StateSpec)
    memory: MemorySpec = Field(default_factory=MemorySpec)
    permissions: PermissionSpec = Field(default_factory=PermissionSpec)
    action_graph: Optional[ActionGraph] = None
    clarifications: List[str] = Field(default_factory=list)

    def to_canonical_json(self) -> str:
        """Key-sorted, whitespace-free JSON used for hashing."""
        return json.dumps(
            self.model_dump(mode="json", by_alias=True),
            sort_keys=True,
            separators=(",", ":"),
        )


def spec_hash(spec: ToolSystemSpec) -> str:
    """sha256 hex digest of the canonical spec JSON."""
    return hashlib.sha256(spec.to_canonical_json().encode("utf-8")).hexdigest()


@dataclass
class SpecDiff:
    """Ids added and removed between two spec revisions."""
    entities_added: List[str] = field(default_factory=list)
    entities_removed: List[str] = field(default_factory=list)
    actions_added: List[str] = field(default_factory=list)
    actions_removed: List[str] = field(default_factory=list)
    workflows_added: List[str] = field(default_factory=list)
    workflows_removed: List[str] = field(default_factory=list)
    triggers_added: List[str] = field(default_factory=list)
    triggers_removed: List[str] = field(default_factory=list)
    views_added: List[str] = field(default_factory=list)
    views_removed: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in self.__dataclass_fields__)

    def to_dict(self) -> Dict[str, List[str]]:
        return {name: list(getattr(self, name)) for name in self.__dataclass_fields__}


def _added(old: List[str], new: List[str]) -> List[str]:
    existing = set(old)
    return [item for item in new if item not in existing]


def _removed(old: List[str], new: List[str]) -> List[str]:
    remaining = set(new)
    return [item for item in old if item not in remaining]


def diff_specs(base: ToolSystemSpec, nxt: ToolSystemSpec) -> SpecDiff:
    """Compare two revisions by entity name and by id for everything else."""
    pairs = {
        "entities": ([e.name for e in base.entities], [e.name for e in nxt.entities]),
        "actions": ([a.id for a in base.actions], [a.id for a in nxt.actions]),
        "workflows": ([w.id for w in base.workflows], [w.id for w in nxt.workflows]),
        "triggers": ([t.id for t in base.triggers], [t.id for t in nxt.triggers]),
        "views": ([v.id for v in base.views], [v.id for v in nxt.views]),
    }
    diff = SpecDiff()
    for name, (old, new) in pairs.items():
        setattr(diff, f"{name}_added", _added(old, new))
        setattr(diff, f"{name}_removed", _removed(old, new))
    return diff
