# Memory module - Scoped key/value persistence
# Six isolation scopes, swappable adapter, best-effort and must-succeed tiers

from .scopes import MemoryScope, ScopeKind, normalize_scope
from .adapters import (
    MemoryAdapter, EphemeralMemoryAdapter, SQLiteMemoryAdapter,
    TOOL_BUILDER_NAMESPACE, RESERVED_KEYS,
)
from .store import MemoryStore, default_adapter_factory

__all__ = [
    "MemoryScope",
    "ScopeKind",
    "normalize_scope",
    "MemoryAdapter",
    "EphemeralMemoryAdapter",
    "SQLiteMemoryAdapter",
    "TOOL_BUILDER_NAMESPACE",
    "RESERVED_KEYS",
    "MemoryStore",
    "default_adapter_factory",
]
