"""
Memory Scopes
-------------
Isolation boundaries for the scoped memory store.

A scope is one of six kinds. Tool, user and org ids must be UUIDs; session
ids that are not UUIDs are hashed into a stable UUID so arbitrary session
keys can still be stored under a uniform column type.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import hashlib
import uuid

from core.errors import InvalidMemoryScope


class ScopeKind(str, Enum):
    SESSION = "session"
    TOOL = "tool"
    TOOL_USER = "tool_user"
    TOOL_ORG = "tool_org"
    USER = "user"
    ORG = "org"


# Which ids each kind requires
REQUIRED_IDS = {
    ScopeKind.SESSION: ("session_id",),
    ScopeKind.TOOL: ("tool_id",),
    ScopeKind.TOOL_USER: ("tool_id", "user_id"),
    ScopeKind.TOOL_ORG: ("tool_id", "org_id"),
    ScopeKind.USER: ("user_id",),
    ScopeKind.ORG: ("org_id",),
}


@dataclass(frozen=True)
class MemoryScope:
    """Tagged union of isolation boundaries."""
    kind: ScopeKind
    session_id: Optional[str] = None
    tool_id: Optional[str] = None
    user_id: Optional[str] = None
    org_id: Optional[str] = None

    @classmethod
    def session(cls, session_id: str) -> "MemoryScope":
        return cls(ScopeKind.SESSION, session_id=session_id)

    @classmethod
    def tool(cls, tool_id: str) -> "MemoryScope":
        return cls(ScopeKind.TOOL, tool_id=tool_id)

    @classmethod
    def tool_user(cls, tool_id: str, user_id: str) -> "MemoryScope":
        return cls(ScopeKind.TOOL_USER, tool_id=tool_id, user_id=user_id)

    @classmethod
    def tool_org(cls, tool_id: str, org_id: str) -> "MemoryScope":
        return cls(ScopeKind.TOOL_ORG, tool_id=tool_id, org_id=org_id)

    @classmethod
    def user(cls, user_id: str) -> "MemoryScope":
        return cls(ScopeKind.USER, user_id=user_id)

    @classmethod
    def org(cls, org_id: str) -> "MemoryScope":
        return cls(ScopeKind.ORG, org_id=org_id)

    def describe(self) -> str:
        ids = [f"{name}={getattr(self, name)}" for name in REQUIRED_IDS[self.kind]]
        return f"{self.kind.value}({', '.join(ids)})"


def normalize_uuid(value: Optional[str], field_name: str) -> str:
    """Return the canonical lowercase UUID string or raise InvalidMemoryScope."""
    if value is None or not str(value).strip():
        raise InvalidMemoryScope(f"Missing {field_name}")
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        raise InvalidMemoryScope(f"Malformed {field_name}: {value!r}") from None


def session_uuid(session_id: Optional[str]) -> str:
    """Map any non-empty session key to a stable UUID."""
    if session_id is None or not str(session_id).strip():
        raise InvalidMemoryScope("Missing session_id")
    raw = str(session_id).strip()
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
        return str(uuid.UUID(digest[:32]))


def normalize_scope(scope: MemoryScope) -> MemoryScope:
    """
    Validate and canonicalize a scope before it reaches an adapter.

    Ids not required by the scope kind are dropped.
    """
    if not isinstance(scope, MemoryScope):
        raise InvalidMemoryScope(f"Not a memory scope: {scope!r}")

    kind = ScopeKind(scope.kind)
    values = {}
    for name in REQUIRED_IDS[kind]:
        if name == "session_id":
            values[name] = session_uuid(scope.session_id)
        else:
            values[name] = normalize_uuid(getattr(scope, name), name)
    return MemoryScope(kind, **values)


def validate_key(namespace: str, key: str) -> None:
    if not isinstance(namespace, str) or not namespace.strip():
        raise InvalidMemoryScope("Memory namespace must be a non-empty string")
    if not isinstance(key, str) or not key.strip():
        raise InvalidMemoryScope("Memory key must be a non-empty string")
