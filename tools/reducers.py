"""
State Reducers
--------------
Fold an action's output into tool state.

- set: replace state[target] with the output
- merge: shallow-merge a mapping output into state[target]
- append: concatenate onto the list at state[target]
- remove: drop items from state[target] whose id matches the output ids

Reducers are pure: they return a new state and never mutate their inputs.
"""

from collections.abc import Mapping
from typing import Any, Dict, List, Optional
import copy

from core.errors import ToolOSError
from .spec import ReducerType, StateReducer


class ReducerError(ToolOSError):
    """Output shape incompatible with the reducer."""
    remediation = "Adjust the reducer type or the capability output shape."


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _item_id(item: Any) -> str:
    if isinstance(item, Mapping) and item.get("id") is not None:
        return str(item["id"])
    return str(item)


def apply_reducer(reducer: StateReducer, state: Optional[Dict[str, Any]], output: Any) -> Dict[str, Any]:
    """Return the new state produced by applying `reducer` to `output`."""
    next_state = copy.deepcopy(dict(state or {}))
    target = reducer.target
    value = copy.deepcopy(output)
    kind = ReducerType(reducer.type)

    if kind == ReducerType.SET:
        next_state[target] = value

    elif kind == ReducerType.MERGE:
        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            raise ReducerError(
                f"Reducer {reducer.id} (merge) needs a mapping output, got {type(value).__name__}",
                {"reducer_id": reducer.id},
            )
        current = next_state.get(target)
        base = dict(current) if isinstance(current, Mapping) else {}
        base.update(value)
        next_state[target] = base

    elif kind == ReducerType.APPEND:
        current = next_state.get(target)
        next_state[target] = _as_list(current) + _as_list(value)

    elif kind == ReducerType.REMOVE:
        ids = {_item_id(item) for item in _as_list(value)}
        current = _as_list(next_state.get(target))
        next_state[target] = [item for item in current if _item_id(item) not in ids]

    return next_state
