"""
Scoped Memory Tests
-------------------
Tests for scope validation, adapter routing and write tiers.

Test Cases:
1. Scope validation and UUID normalization
2. Scope isolation
3. Reserved keys routed to dedicated tables
4. Ephemeral fallback when no durable backend is configured
5. Best-effort vs must-succeed writes
"""

import logging
import uuid

import pytest

from core.errors import InvalidMemoryScope, MemoryWriteError
from memory import (
    EphemeralMemoryAdapter, MemoryAdapter, MemoryScope, MemoryStore,
    ScopeKind, SQLiteMemoryAdapter, TOOL_BUILDER_NAMESPACE, default_adapter_factory,
)
from memory.scopes import normalize_scope, session_uuid


class FailingAdapter(MemoryAdapter):
    name = "failing"

    def get(self, scope, namespace, key):
        raise OSError("disk gone")

    def set(self, scope, namespace, key, value):
        raise OSError("disk gone")

    def delete(self, scope, namespace, key):
        raise OSError("disk gone")


class TestScopes:
    """Test scope validation."""

    def test_uuid_is_lowercased(self):
        raw = str(uuid.uuid4()).upper()

        scope = normalize_scope(MemoryScope.tool(raw))

        assert scope.tool_id == raw.lower()

    def test_malformed_id_rejected(self):
        with pytest.raises(InvalidMemoryScope):
            normalize_scope(MemoryScope.tool("not-a-uuid"))

    def test_missing_id_rejected(self, tool_id):
        with pytest.raises(InvalidMemoryScope):
            normalize_scope(MemoryScope(ScopeKind.TOOL_USER, tool_id=tool_id))

    def test_session_keys_hash_stably(self):
        """Non-UUID session keys map to the same UUID every time."""
        first = session_uuid("browser-tab-42")

        assert first == session_uuid("browser-tab-42")
        assert first != session_uuid("browser-tab-43")
        assert str(uuid.UUID(first)) == first

    def test_unrequired_ids_dropped(self, tool_id, user_id):
        scope = normalize_scope(MemoryScope(ScopeKind.TOOL, tool_id=tool_id, user_id=user_id))

        assert scope.user_id is None

    def test_empty_key_rejected(self, memory, tool_id):
        with pytest.raises(InvalidMemoryScope):
            memory.get(MemoryScope.tool(tool_id), "outputs", " ")


class TestDurableStore:
    """Test the SQLite-backed store."""

    def test_durable_adapter_selected(self, memory):
        assert isinstance(memory.adapter, SQLiteMemoryAdapter)

    def test_round_trip(self, memory, tool_id):
        memory.set(MemoryScope.tool(tool_id), "outputs", "list_issues", [{"id": "1"}])

        assert memory.get(MemoryScope.tool(tool_id), "outputs", "list_issues") == [{"id": "1"}]

    def test_scopes_are_isolated(self, memory, tool_id, org_id, user_id):
        memory.set(MemoryScope.tool_org(tool_id, org_id), "prefs", "theme", "dark")

        assert memory.get(MemoryScope.tool(tool_id), "prefs", "theme") is None
        assert memory.get(MemoryScope.tool_user(tool_id, user_id), "prefs", "theme") is None
        assert memory.get(MemoryScope.org(org_id), "prefs", "theme") is None

    def test_default_for_missing(self, memory, user_id):
        assert memory.get(MemoryScope.user(user_id), "prefs", "missing", default=[]) == []

    def test_reserved_key_uses_dedicated_table(self, memory, temp_db, tool_id, org_id):
        memory.set(MemoryScope.tool_org(tool_id, org_id), TOOL_BUILDER_NAMESPACE, "lifecycle_state", {"s": 1})

        found, value = temp_db.read_memory("tool_lifecycle_state", {"tool_id": tool_id, "org_id": org_id})

        assert found
        assert value == {"s": 1}

    def test_delete(self, memory, org_id):
        scope = MemoryScope.org(org_id)
        memory.set(scope, "prefs", "tz", "UTC")

        assert memory.delete(scope, "prefs", "tz")
        assert memory.get(scope, "prefs", "tz") is None

    def test_session_scope(self, memory):
        scope = MemoryScope.session("chat-7")
        memory.set(scope, "draft", "text", "hello")

        assert memory.get(MemoryScope.session("chat-7"), "draft", "text") == "hello"


class TestFallbackAndTiers:
    """Test adapter fallback and write tiers."""

    def test_ephemeral_fallback_warns(self, caplog, tool_id):
        store = MemoryStore(default_adapter_factory(None))

        with caplog.at_level(logging.WARNING, logger="toolos.memory"):
            adapter = store.adapter

        assert isinstance(adapter, EphemeralMemoryAdapter)
        assert "ephemeral" in caplog.text

    def test_ephemeral_returns_copies(self, tool_id):
        store = MemoryStore(lambda: EphemeralMemoryAdapter())
        value = {"rows": [1]}
        store.set(MemoryScope.tool(tool_id), "outputs", "a", value)

        value["rows"].append(2)

        assert store.get(MemoryScope.tool(tool_id), "outputs", "a") == {"rows": [1]}

    def test_adapter_resolved_once(self, tool_id):
        created = []

        def factory():
            created.append(1)
            return EphemeralMemoryAdapter()

        store = MemoryStore(factory)
        store.set(MemoryScope.tool(tool_id), "outputs", "a", 1)
        store.get(MemoryScope.tool(tool_id), "outputs", "a")

        assert len(created) == 1

    def test_best_effort_write_swallows(self, tool_id):
        store = MemoryStore(FailingAdapter)

        assert store.set(MemoryScope.tool(tool_id), "outputs", "a", 1) is False

    def test_best_effort_rejects_bad_scope_quietly(self, caplog):
        store = MemoryStore(default_adapter_factory(None))

        with caplog.at_level(logging.ERROR, logger="toolos.memory"):
            assert store.set(MemoryScope.tool("not-a-uuid"), "outputs", "a", 1) is False
            assert store.delete(MemoryScope.tool("not-a-uuid"), "outputs", "a") is False

        assert "Malformed tool_id" in caplog.text

    def test_required_write_rejects_bad_scope(self):
        store = MemoryStore(default_adapter_factory(None))

        with pytest.raises(InvalidMemoryScope):
            store.set_required(MemoryScope.tool("not-a-uuid"), "outputs", "a", 1)

    def test_required_write_raises(self, tool_id):
        store = MemoryStore(FailingAdapter)

        with pytest.raises(MemoryWriteError):
            store.set_required(MemoryScope.tool(tool_id), "outputs", "a", 1)

    def test_required_delete(self, memory, tool_id, org_id):
        scope = MemoryScope.tool_org(tool_id, org_id)
        memory.set_required(scope, TOOL_BUILDER_NAMESPACE, "automation_paused", True)

        memory.delete_required(scope, TOOL_BUILDER_NAMESPACE, "automation_paused")

        assert memory.get(scope, TOOL_BUILDER_NAMESPACE, "automation_paused") is None
        with pytest.raises(MemoryWriteError):
            MemoryStore(FailingAdapter).delete_required(MemoryScope.tool(tool_id), "outputs", "a")

    def test_read_failure_propagates(self, tool_id):
        """Reads distinguish unavailable storage from a missing key."""
        store = MemoryStore(FailingAdapter)

        with pytest.raises(OSError):
            store.get(MemoryScope.tool(tool_id), "outputs", "a")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
