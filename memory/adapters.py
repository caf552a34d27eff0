"""
Memory Adapters
---------------
Storage backends for the scoped memory store.

Adapters receive scopes that were already normalized. They raise on failure;
the store decides which failures are swallowed.
"""

from typing import Any, Dict, Optional, Tuple
import json
import logging
import threading

from infra.database import DatabaseManager
from .scopes import MemoryScope, ScopeKind

# Namespace holding the tool builder's own bookkeeping keys
TOOL_BUILDER_NAMESPACE = "tool_builder"

# Reserved tool+org keys denormalized into dedicated tables
RESERVED_KEYS: Dict[Tuple[str, str], str] = {
    (TOOL_BUILDER_NAMESPACE, "lifecycle_state"): "tool_lifecycle_state",
    (TOOL_BUILDER_NAMESPACE, "build_logs"): "tool_build_logs",
}


def reserved_table(scope: MemoryScope, namespace: str, key: str) -> Optional[str]:
    """Dedicated table for a reserved tool+org pair, if any."""
    if scope.kind != ScopeKind.TOOL_ORG:
        return None
    return RESERVED_KEYS.get((namespace, key))


class MemoryAdapter:
    """Interface every backend implements."""

    name = "abstract"
    durable = False

    def get(self, scope: MemoryScope, namespace: str, key: str) -> Any:
        raise NotImplementedError

    def set(self, scope: MemoryScope, namespace: str, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, scope: MemoryScope, namespace: str, key: str) -> None:
        raise NotImplementedError


class EphemeralMemoryAdapter(MemoryAdapter):
    """
    In-process dictionary backend.

    Consistent within the process, lost on restart. Values are stored as
    JSON round-trips so callers observe the same copy semantics as the
    durable backend.
    """

    name = "ephemeral"
    durable = False

    def __init__(self):
        self._data: Dict[Tuple, Any] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(scope: MemoryScope, namespace: str, key: str) -> Tuple:
        return (
            scope.kind.value, scope.session_id, scope.tool_id,
            scope.user_id, scope.org_id, namespace, key,
        )

    def get(self, scope: MemoryScope, namespace: str, key: str) -> Any:
        with self._lock:
            raw = self._data.get(self._key(scope, namespace, key))
        return None if raw is None else json.loads(raw)

    def set(self, scope: MemoryScope, namespace: str, key: str, value: Any) -> None:
        raw = json.dumps(value, default=str)
        with self._lock:
            self._data[self._key(scope, namespace, key)] = raw

    def delete(self, scope: MemoryScope, namespace: str, key: str) -> None:
        with self._lock:
            self._data.pop(self._key(scope, namespace, key), None)


class SQLiteMemoryAdapter(MemoryAdapter):
    """
    Durable backend over DatabaseManager.

    Routing:
    - session -> session_memory
    - user -> user_memory, org -> org_memory
    - tool, tool_user, tool_org -> tool_memory (owner_kind column)
    - reserved tool_org pairs -> tool_lifecycle_state / tool_build_logs
    """

    name = "sqlite"
    durable = True

    def __init__(self, db: DatabaseManager):
        self._db = db
        self._logger = logging.getLogger("toolos.memory.sqlite")

    def _route(self, scope: MemoryScope, namespace: str, key: str) -> Tuple[str, Dict[str, str]]:
        table = reserved_table(scope, namespace, key)
        if table:
            return table, {"tool_id": scope.tool_id, "org_id": scope.org_id}

        if scope.kind == ScopeKind.SESSION:
            return "session_memory", {
                "session_id": scope.session_id, "namespace": namespace, "key": key,
            }
        if scope.kind == ScopeKind.USER:
            return "user_memory", {"user_id": scope.user_id, "namespace": namespace, "key": key}
        if scope.kind == ScopeKind.ORG:
            return "org_memory", {"org_id": scope.org_id, "namespace": namespace, "key": key}

        owner_kind, owner_id = {
            ScopeKind.TOOL: ("tool", ""),
            ScopeKind.TOOL_USER: ("user", scope.user_id),
            ScopeKind.TOOL_ORG: ("org", scope.org_id),
        }[scope.kind]
        return "tool_memory", {
            "tool_id": scope.tool_id,
            "owner_kind": owner_kind,
            "owner_id": owner_id,
            "namespace": namespace,
            "key": key,
        }

    def get(self, scope: MemoryScope, namespace: str, key: str) -> Any:
        table, keys = self._route(scope, namespace, key)
        _, value = self._db.read_memory(table, keys)
        return value

    def set(self, scope: MemoryScope, namespace: str, key: str, value: Any) -> None:
        table, keys = self._route(scope, namespace, key)
        self._db.write_memory(table, keys, value)

    def delete(self, scope: MemoryScope, namespace: str, key: str) -> None:
        table, keys = self._route(scope, namespace, key)
        self._db.delete_memory(table, keys)
