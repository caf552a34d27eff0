"""
Answer Contract
---------------
Stage one of goal validation: normalize fetched rows into the canonical
shape of the contract's entity type, apply ordering and limit, and drop rows
that break the contract.

Rows are only dropped where the contract asks for it:
- required fields (declared, or the email defaults for email contracts)
- the contract's single required constraint: a keyword substring match, or a
  relative time window ("last N hours/days/weeks/months/years")

Unparseable time constraints pass every row. Running the validation twice
yields the same result.
"""

from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import logging
import re

from .models import ActionOutput, AnswerContract, ContractValidation, ContractViolation, ResultShape

logger = logging.getLogger("toolos.goals.contract")

EMAIL_REQUIRED_FIELDS = ("from", "subject", "snippet", "date")

_WINDOW_RE = re.compile(r"last\s+(\d+)\s+(hour|day|week|month|year)s?")
_NEWER_THAN_RE = re.compile(r"newer_than:\s*(\d+)\s*([hdwmy])")

_UNIT_SECONDS = {
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}
_SHORT_UNITS = {"h": "hour", "d": "day", "w": "week", "m": "month", "y": "year"}


# ===== Normalization =====

def _header(headers: List[Dict[str, Any]], name: str) -> str:
    for header in headers:
        if str(header.get("name", "")).lower() == name:
            return header.get("value") or ""
    return ""


def normalize_email_row(row: Any) -> Optional[Dict[str, Any]]:
    """Flatten a header-array message into named fields. Normalized rows pass unchanged."""
    if not isinstance(row, dict):
        return None
    if "from" in row or "subject" in row:
        return row
    payload = row.get("payload") or {}
    headers = payload.get("headers") if isinstance(payload, dict) else None
    if not isinstance(headers, list) or not headers:
        return None
    return {
        "id": row.get("id"),
        "thread_id": row.get("threadId", row.get("thread_id")),
        "from": _header(headers, "from"),
        "subject": _header(headers, "subject"),
        "snippet": row.get("snippet") or "",
        "body": row.get("snippet") or "",
        "date": _header(headers, "date"),
        "internal_date": row.get("internalDate", row.get("internal_date")),
    }


def _normalize_row(row: Any, entity_type: str) -> Any:
    if entity_type == "email":
        normalized = normalize_email_row(row)
        return normalized if normalized is not None else row
    return row


def normalize_rows(output: Any, entity_type: str = "") -> List[Any]:
    """Extract a flat list of rows from a list, a {messages: [...]} wrapper, or a mapping of rows."""
    if isinstance(output, list):
        return [_normalize_row(row, entity_type) for row in output]
    if isinstance(output, dict):
        if isinstance(output.get("messages"), list):
            return [_normalize_row(row, entity_type) for row in output["messages"]]
        rows: List[Any] = []
        for value in output.values():
            if isinstance(value, list):
                rows.extend(_normalize_row(inner, entity_type) for inner in value)
            elif isinstance(value, dict):
                rows.append(_normalize_row(value, entity_type))
        return rows
    return []


# ===== Ordering and limit =====

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def apply_ordering(rows: List[Any], shape: Optional[ResultShape]) -> List[Any]:
    if shape is None or not shape.order_by:
        return rows
    key = shape.order_by
    reverse = shape.order_direction != "asc"
    values = [row.get(key) if isinstance(row, dict) else None for row in rows]
    numbers = [_as_number(v) for v in values]
    if all(n is not None for n in numbers):
        pairs = sorted(zip(numbers, range(len(rows))), key=lambda p: p[0], reverse=reverse)
    else:
        texts = ["" if v is None else str(v) for v in values]
        pairs = sorted(zip(texts, range(len(rows))), key=lambda p: p[0], reverse=reverse)
    return [rows[index] for _, index in pairs]


def apply_limit(rows: List[Any], shape: Optional[ResultShape]) -> List[Any]:
    if shape is None or not shape.limit:
        return rows
    return rows[: shape.limit]


# ===== Constraints =====

def parse_time_window(value: str) -> Tuple[bool, Optional[timedelta]]:
    """
    Returns (is_time_constraint, window).

    A time constraint with no parseable window returns (True, None).
    """
    text = value.lower()
    match = _WINDOW_RE.search(text)
    if match:
        return True, timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])
    match = _NEWER_THAN_RE.search(text)
    if match:
        unit = _SHORT_UNITS[match.group(2)]
        return True, timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[unit])
    if "newer_than" in text or "since" in text:
        return True, None
    return False, None


def parse_row_time(row: Dict[str, Any]) -> Optional[datetime]:
    """Parse a row's date (RFC 2822 or ISO 8601) or internal epoch-ms date."""
    raw = row.get("date") or row.get("internal_date") or row.get("internalDate")
    if raw in (None, ""):
        return None
    number = _as_number(raw)
    if number is not None:
        try:
            return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None
    text = str(raw).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _within_window(row: Any, window: Optional[timedelta], now: datetime) -> bool:
    if window is None:
        return True
    if not isinstance(row, dict):
        return False
    timestamp = parse_row_time(row)
    if timestamp is None:
        return False
    return timestamp >= now - window


def _matches_keyword(row: Any, keyword: str) -> bool:
    if not isinstance(row, dict):
        return False
    for name in ("subject", "snippet", "body", "title", "name", "message"):
        if keyword in str(row.get(name) or "").lower():
            return True
    return False


def _has_fields(row: Any, fields: Iterable[str]) -> bool:
    if not isinstance(row, dict):
        return False
    for name in fields:
        value = row.get(name)
        if name == "date" and not value:
            value = row.get("internal_date") or row.get("internalDate")
        if not str(value if value is not None else "").strip():
            return False
    return True


# ===== Entry point =====

def _coerce(entry: Union[ActionOutput, Dict[str, Any]]) -> ActionOutput:
    if isinstance(entry, ActionOutput):
        return entry
    return ActionOutput.model_validate(entry)


def validate_fetched_data(
    outputs: Iterable[Union[ActionOutput, Dict[str, Any]]],
    contract: Optional[AnswerContract],
    now: Optional[datetime] = None,
) -> ContractValidation:
    """Normalize and filter action outputs against an answer contract."""
    entries = [_coerce(entry) for entry in outputs]
    if contract is None:
        return ContractValidation(outputs=entries)

    now = now or datetime.now(timezone.utc)
    entity_type = contract.entity_type.lower()
    shape = contract.result_shape
    is_list = (
        contract.list_shape == "array"
        or (shape is not None and shape.kind == "list")
        or entity_type == "email"
    )

    required_fields = list(contract.required_fields)
    if not required_fields and entity_type == "email":
        required_fields = list(EMAIL_REQUIRED_FIELDS)

    constraint = contract.required_constraints[0] if contract.required_constraints else None
    value = constraint.value.lower().strip() if constraint else ""
    is_time, window = parse_time_window(value) if value else (False, None)

    validated: List[ActionOutput] = []
    violations: List[ContractViolation] = []
    for entry in entries:
        if not is_list:
            validated.append(entry)
            continue

        rows = normalize_rows(entry.output, entity_type)

        if required_fields:
            kept = [row for row in rows if _has_fields(row, required_fields)]
            if len(kept) < len(rows):
                violations.append(ContractViolation(
                    action_id=entry.action_id, dropped=len(rows) - len(kept), rule="required_fields",
                ))
            rows = kept

        if value:
            if is_time:
                kept = [row for row in rows if _within_window(row, window, now)]
            else:
                kept = [row for row in rows if _matches_keyword(row, value)]
            if len(kept) < len(rows):
                violations.append(ContractViolation(
                    action_id=entry.action_id, dropped=len(rows) - len(kept), rule="required_constraint",
                ))
            rows = kept

        rows = apply_limit(apply_ordering(rows, shape), shape)
        validated.append(ActionOutput(action_id=entry.action_id, output=rows))

    if violations:
        logger.info(f"Answer contract dropped {sum(v.dropped for v in violations)} row(s) for {entity_type}")
    return ContractValidation(outputs=validated, violations=violations)
