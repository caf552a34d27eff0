# Goals module - Answer contract and goal validation
# Stage one normalizes fetched data; stage two decides how to present it.

from .models import (
    AnswerContract, ContractConstraint, ResultShape, IntentContract, GoalPlan,
    GoalEvidence, IntegrationStatus, ActionOutput, ContractViolation,
    ContractValidation, RelevanceGateResult, GoalSatisfactionResult,
    RenderDecision, SatisfactionLevel, AbsenceReason,
)
from .contract import validate_fetched_data, normalize_rows, normalize_email_row, parse_time_window
from .validation import (
    evaluate_relevance_gate, build_evidence_from_incidents, evaluate_goal_satisfaction,
    decide_rendering, build_absence_explanation, is_ambiguous_prompt,
)

__all__ = [
    "AnswerContract", "ContractConstraint", "ResultShape", "IntentContract", "GoalPlan",
    "GoalEvidence", "IntegrationStatus", "ActionOutput", "ContractViolation",
    "ContractValidation", "RelevanceGateResult", "GoalSatisfactionResult",
    "RenderDecision", "SatisfactionLevel", "AbsenceReason",
    "validate_fetched_data", "normalize_rows", "normalize_email_row", "parse_time_window",
    "evaluate_relevance_gate", "build_evidence_from_incidents", "evaluate_goal_satisfaction",
    "decide_rendering", "build_absence_explanation", "is_ambiguous_prompt",
]
