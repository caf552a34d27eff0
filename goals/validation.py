"""
Goal Validation
---------------
Stage two of goal validation: decide whether fetched data answers the
request, and how the result should be presented.

The satisfaction chain is ordered and short-circuits on the first match:
1. missing success criteria or goal plan (only when nothing was fetched)
2. ambiguous prompt
3. required integration lacks permission
4. relevance gate failed
5. correlation requirement ("failed builds" needs failed commits and
   related notifications)
6. no data
7. satisfied
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import logging
import re

from .models import (
    AbsenceReason, ActionOutput, GoalEvidence, GoalPlan, GoalSatisfactionResult,
    IntegrationStatus, IntentContract, RelevanceGateResult, RenderDecision,
    SatisfactionLevel,
)

logger = logging.getLogger("toolos.goals.validation")

RENDER_CONFIDENCE_THRESHOLD = 0.8
PERMISSION_FAILURE_STATUSES = {"reauth_required", "permission_missing", "disconnected"}

_HEX_ID_RE = re.compile(r"^[a-f0-9-]{8,}$", re.IGNORECASE)

_EXPLANATIONS: Dict[Optional[AbsenceReason], str] = {
    AbsenceReason.NO_FAILED_BUILDS: "No failed builds were found, so no related emails exist.",
    AbsenceReason.FAILED_BUILDS_NO_NOTIFICATIONS: "Failed builds were found, but no related email notifications exist.",
    AbsenceReason.EMAILS_NOT_RELATED: "Emails were found, but none were related to the failed commits.",
    AbsenceReason.INTEGRATION_PERMISSION_MISSING: "An integration needs to be reconnected to continue. Reconnect it to re-authorize.",
    AbsenceReason.AMBIGUOUS_QUERY: "The request is ambiguous. Provide a repo or time window to continue.",
}
_DEFAULT_EXPLANATION = "No results were found for the requested goal."


# ===== Relevance gate =====

def _rows(output: Any) -> List[Dict[str, Any]]:
    if isinstance(output, list):
        return [row for row in output if isinstance(row, dict)]
    if isinstance(output, dict):
        return [row for row in output.values() if isinstance(row, dict)]
    return []


def is_readable_value(value: Any) -> bool:
    """A string a person could read: not an id, not a bare number."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    if len(text) < 3:
        return False
    if _HEX_ID_RE.match(text) or text.isdigit():
        return False
    return any(ch.isalpha() for ch in text)


def evaluate_relevance_gate(
    outputs: Iterable[Union[ActionOutput, Dict[str, Any]]],
    intent_contract: Optional[IntentContract] = None,
) -> RelevanceGateResult:
    """Check fetched data is non-empty, human readable and free of forbidden phrases."""
    rows: List[Dict[str, Any]] = []
    for entry in outputs:
        output = entry.output if isinstance(entry, ActionOutput) else entry.get("output")
        rows.extend(_rows(output))

    issues: List[str] = []
    if not rows:
        issues.append("non_empty")
    if not any(is_readable_value(value) for row in rows for value in row.values()):
        issues.append("human_readable")

    if intent_contract and intent_contract.forbidden_outputs:
        phrases = [phrase.lower() for phrase in intent_contract.forbidden_outputs]
        hit = any(
            phrase in str(value if value is not None else "").lower()
            for phrase in phrases
            for row in rows
            for value in row.values()
        )
        if hit:
            issues.append("forbidden_output")

    return RelevanceGateResult(ok=not issues, issues=issues)


# ===== Evidence =====

def build_evidence_from_incidents(incidents: Iterable[Mapping[str, Any]]) -> GoalEvidence:
    """Derive correlation evidence from failure incidents carrying an email count."""
    incidents = list(incidents)
    related = 0
    for incident in incidents:
        count = incident.get("email_count", incident.get("emailCount", 0)) if incident else 0
        related += int(count or 0)
    return GoalEvidence(
        failed_commits=len(incidents),
        failure_incidents=len(incidents),
        related_emails=related,
        total_emails=related,
    )


# ===== Prompt heuristics =====

def names_correlation_domain(prompt: str) -> bool:
    normalized = prompt.lower()
    return "build" in normalized and "fail" in normalized


def is_ambiguous_prompt(prompt: str) -> bool:
    normalized = f" {prompt.lower().strip()} "
    if " or " in normalized or "maybe" in normalized:
        return True
    if len(prompt.split()) < 4:
        return not names_correlation_domain(prompt)
    return False


def requires_failure_correlation(prompt: str, goal_plan: Optional[GoalPlan]) -> bool:
    if names_correlation_domain(prompt):
        return True
    if goal_plan is None:
        return False
    constraint_text = " ".join(goal_plan.constraints).lower()
    return "fail" in constraint_text


def build_clarification_question(prompt: str) -> str:
    if "build" in prompt.lower():
        return "Which repository and time window should I check for build failures?"
    return "Can you clarify the exact goal and scope for this request?"


# ===== Satisfaction =====

def _unsatisfied(confidence: float, failure: str, missing: List[str], absence: AbsenceReason) -> GoalSatisfactionResult:
    return GoalSatisfactionResult(
        level=SatisfactionLevel.UNSATISFIED,
        satisfied=False,
        confidence=confidence,
        failure_reason=failure,
        missing_requirements=missing,
        absence_reason=absence,
    )


def _permission_failure(
    statuses: Mapping[str, Union[IntegrationStatus, Dict[str, Any]]],
    required: Iterable[str],
) -> Optional[str]:
    required = set(required)
    for integration_id, raw in statuses.items():
        status = raw if isinstance(raw, IntegrationStatus) else IntegrationStatus.model_validate(raw)
        if not (status.required or integration_id in required):
            continue
        if status.status in PERMISSION_FAILURE_STATUSES:
            return integration_id
    return None


def evaluate_goal_satisfaction(
    prompt: str,
    goal_plan: Optional[GoalPlan] = None,
    intent_contract: Optional[IntentContract] = None,
    evidence: Optional[GoalEvidence] = None,
    relevance: Optional[RelevanceGateResult] = None,
    has_data: bool = True,
    integration_statuses: Optional[Mapping[str, Union[IntegrationStatus, Dict[str, Any]]]] = None,
) -> GoalSatisfactionResult:
    """Classify whether the fetched data satisfies the user's goal."""
    evidence = evidence or GoalEvidence()

    if not has_data:
        if intent_contract is not None and not intent_contract.success_criteria:
            return _unsatisfied(
                0.5, "intent_missing_success_criteria", ["success_criteria"], AbsenceReason.AMBIGUOUS_QUERY,
            )
        if goal_plan is None:
            return _unsatisfied(0.2, "goal_plan_missing", ["goal_plan"], AbsenceReason.AMBIGUOUS_QUERY)

    if is_ambiguous_prompt(prompt):
        return _unsatisfied(0.4, "ambiguous_query", ["clarification"], AbsenceReason.AMBIGUOUS_QUERY)

    blocked = _permission_failure(
        integration_statuses or {},
        intent_contract.required_integrations if intent_contract else [],
    )
    if blocked is not None:
        logger.info(f"Goal blocked: integration {blocked} needs re-authorization")
        return _unsatisfied(
            0.9, f"{blocked}_reauth_required", [f"{blocked}_reauth"],
            AbsenceReason.INTEGRATION_PERMISSION_MISSING,
        )

    if relevance is not None and not relevance.ok:
        return _unsatisfied(0.6, "irrelevant_data", list(relevance.issues), AbsenceReason.AMBIGUOUS_QUERY)

    if requires_failure_correlation(prompt, goal_plan):
        if evidence.failed_commits == 0:
            return _unsatisfied(0.7, "no_failed_builds", ["failed_commits"], AbsenceReason.NO_FAILED_BUILDS)
        if evidence.related_emails == 0:
            absence = (
                AbsenceReason.EMAILS_NOT_RELATED
                if evidence.total_emails > 0
                else AbsenceReason.FAILED_BUILDS_NO_NOTIFICATIONS
            )
            return GoalSatisfactionResult(
                level=SatisfactionLevel.PARTIAL,
                satisfied=False,
                confidence=0.75,
                failure_reason="missing_related_emails",
                missing_requirements=["related_emails"],
                absence_reason=absence,
            )
        return GoalSatisfactionResult(level=SatisfactionLevel.SATISFIED, satisfied=True, confidence=0.9)

    if not has_data:
        return _unsatisfied(0.7, "no_data", ["data"], AbsenceReason.NO_DATA)

    return GoalSatisfactionResult(level=SatisfactionLevel.SATISFIED, satisfied=True, confidence=0.8)


# ===== Rendering =====

def build_absence_explanation(result: GoalSatisfactionResult) -> str:
    return _EXPLANATIONS.get(result.absence_reason, _DEFAULT_EXPLANATION)


def decide_rendering(prompt: str, result: GoalSatisfactionResult) -> RenderDecision:
    """Map a satisfaction result to ask, explain or render."""
    if result.absence_reason == AbsenceReason.AMBIGUOUS_QUERY:
        return RenderDecision(kind="ask", question=build_clarification_question(prompt))
    if result.confidence < RENDER_CONFIDENCE_THRESHOLD:
        return RenderDecision(kind="explain", explanation=build_absence_explanation(result))
    if result.level == SatisfactionLevel.SATISFIED:
        return RenderDecision(kind="render")
    if result.level == SatisfactionLevel.PARTIAL:
        return RenderDecision(kind="render", partial=True, explanation=build_absence_explanation(result))
    return RenderDecision(kind="explain", explanation=build_absence_explanation(result))
