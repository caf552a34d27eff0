"""
Scoped Memory Store
-------------------
Namespaced key/value persistence across six isolation scopes.

Tiers:
- set/delete are best-effort: failures are logged, never raised
- set_required/delete_required must succeed: failures raise MemoryWriteError
- get propagates failures so callers can tell "absent" from "unavailable"

The adapter is resolved once, lazily, through an injectable factory.
"""

from typing import Any, Callable, Optional
import logging
import threading

from core.errors import MemoryWriteError, ToolOSError
from infra.database import DatabaseManager
from .adapters import EphemeralMemoryAdapter, MemoryAdapter, SQLiteMemoryAdapter
from .scopes import MemoryScope, normalize_scope, validate_key

AdapterFactory = Callable[[], MemoryAdapter]

_logger = logging.getLogger("toolos.memory")


def default_adapter_factory(db: Optional[DatabaseManager] = None) -> AdapterFactory:
    """
    Factory that picks the durable backend when one is configured.

    Falls back to the ephemeral adapter when `db` is None or not initialized.
    """
    def factory() -> MemoryAdapter:
        if db is not None and db.is_initialized:
            return SQLiteMemoryAdapter(db)
        _logger.warning(
            "Durable memory backend not configured; using ephemeral in-process memory"
        )
        return EphemeralMemoryAdapter()
    return factory


class MemoryStore:
    """
    Front door for all memory access.

    Usage:
        store = MemoryStore(default_adapter_factory(db))
        store.set(MemoryScope.tool(tool_id), "outputs", "list_issues", rows)
        rows = store.get(MemoryScope.tool(tool_id), "outputs", "list_issues")
    """

    def __init__(self, adapter_factory: Optional[AdapterFactory] = None):
        self._factory = adapter_factory or default_adapter_factory()
        self._adapter: Optional[MemoryAdapter] = None
        self._lock = threading.Lock()
        self._logger = logging.getLogger("toolos.memory.store")

    @property
    def adapter(self) -> MemoryAdapter:
        if self._adapter is None:
            with self._lock:
                if self._adapter is None:
                    self._adapter = self._factory()
                    self._logger.info(f"Memory adapter resolved: {self._adapter.name}")
        return self._adapter

    def get(self, scope: MemoryScope, namespace: str, key: str, default: Any = None) -> Any:
        """Read a value; storage failures propagate."""
        validate_key(namespace, key)
        value = self.adapter.get(normalize_scope(scope), namespace, key)
        return default if value is None else value

    def set(self, scope: MemoryScope, namespace: str, key: str, value: Any) -> bool:
        """Best-effort write. Returns False when the write failed."""
        try:
            self.set_required(scope, namespace, key, value)
            return True
        except ToolOSError as e:
            self._logger.error(f"Memory write dropped: {e}")
            return False

    def delete(self, scope: MemoryScope, namespace: str, key: str) -> bool:
        """Best-effort delete. Returns False when the delete failed."""
        try:
            self.delete_required(scope, namespace, key)
            return True
        except ToolOSError as e:
            self._logger.error(f"Memory delete dropped: {e}")
            return False

    def set_required(self, scope: MemoryScope, namespace: str, key: str, value: Any) -> None:
        """Must-succeed write."""
        validate_key(namespace, key)
        normalized = normalize_scope(scope)
        try:
            self.adapter.set(normalized, namespace, key, value)
        except Exception as e:
            raise MemoryWriteError(
                f"Failed to write {namespace}/{key} in {normalized.describe()}: {e}"
            ) from e

    def delete_required(self, scope: MemoryScope, namespace: str, key: str) -> None:
        """Must-succeed delete."""
        validate_key(namespace, key)
        normalized = normalize_scope(scope)
        try:
            self.adapter.delete(normalized, namespace, key)
        except Exception as e:
            raise MemoryWriteError(
                f"Failed to delete {namespace}/{key} in {normalized.describe()}: {e}"
            ) from e
