"""
Goal Models
-----------
Contracts describing what fetched data must look like, and the results of
checking data against them.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GoalModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SatisfactionLevel(str, Enum):
    SATISFIED = "satisfied"
    PARTIAL = "partial"
    UNSATISFIED = "unsatisfied"


class AbsenceReason(str, Enum):
    NO_FAILED_BUILDS = "no_failed_builds"
    FAILED_BUILDS_NO_NOTIFICATIONS = "failed_builds_exist_no_notifications"
    EMAILS_NOT_RELATED = "emails_exist_not_related"
    INTEGRATION_PERMISSION_MISSING = "integration_permission_missing"
    AMBIGUOUS_QUERY = "ambiguous_query"
    NO_DATA = "no_data"


class ContractConstraint(GoalModel):
    field: str = "query"
    operator: str = "contains"
    value: str


class ResultShape(GoalModel):
    kind: str = "list"
    order_by: Optional[str] = None
    order_direction: str = Field("desc", pattern="^(asc|desc)$")
    limit: Optional[int] = Field(None, ge=0)


class AnswerContract(GoalModel):
    """Expected shape and constraints of fetched data."""
    entity_type: str
    required_constraints: List[ContractConstraint] = Field(default_factory=list)
    required_fields: List[str] = Field(default_factory=list)
    list_shape: str = "array"
    result_shape: Optional[ResultShape] = None


class IntentContract(GoalModel):
    success_criteria: List[str] = Field(default_factory=list)
    forbidden_outputs: List[str] = Field(default_factory=list)
    required_integrations: List[str] = Field(default_factory=list)


class GoalPlan(GoalModel):
    kind: str = "DATA_RETRIEVAL"
    primary_goal: str = ""
    sub_goals: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)


class GoalEvidence(GoalModel):
    failed_commits: int = 0
    failure_incidents: int = 0
    related_emails: int = 0
    total_emails: int = 0
    missing_integrations: List[str] = Field(default_factory=list)


class IntegrationStatus(GoalModel):
    status: str = "connected"
    reason: Optional[str] = None
    required: bool = False


class ActionOutput(GoalModel):
    """Raw output of one action, as fed to the contract layer."""
    action_id: str
    output: Any = None


class ContractViolation(GoalModel):
    action_id: str
    dropped: int
    rule: str


class ContractValidation(GoalModel):
    outputs: List[ActionOutput] = Field(default_factory=list)
    violations: List[ContractViolation] = Field(default_factory=list)

    @property
    def total_dropped(self) -> int:
        return sum(v.dropped for v in self.violations)


class RelevanceGateResult(GoalModel):
    ok: bool
    issues: List[str] = Field(default_factory=list)


class GoalSatisfactionResult(GoalModel):
    level: SatisfactionLevel
    satisfied: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    failure_reason: Optional[str] = None
    absence_reason: Optional[AbsenceReason] = None
    missing_requirements: List[str] = Field(default_factory=list)


class RenderDecision(GoalModel):
    """How a result should be presented: ask, explain or render."""
    kind: str
    question: Optional[str] = None
    explanation: Optional[str] = None
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
