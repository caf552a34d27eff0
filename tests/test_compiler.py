"""
Spec Compiler Tests
-------------------
Tests for the hard compile gate, the advisory validator and spec utilities.

Test Cases:
1. Valid specs compile into id maps
2. Every dangling reference fails with the offending id in the message
3. Cycles in workflows and action graphs fail at compile time
4. Compiled artifacts are cached by spec hash
5. Advisory validation collects instead of failing
6. Spec hashing and diffing
"""

import copy

import pytest

from core.errors import SpecValidationError, WorkflowHasCycles
from tools.compiler import ToolCompiler, compile_tool, parse_spec, validate_spec_advisory
from tools.spec import diff_specs, spec_hash


def _compile(data, registry):
    return compile_tool(parse_spec(data), registry)


class TestCompileGate:
    """Test the hard compile gate."""

    def test_valid_spec_compiles(self, spec, registry):
        """A valid spec produces id maps for every collection."""
        compiled = compile_tool(spec, registry)

        assert set(compiled.actions) == {"list_issues", "create_issue", "close_issue", "notify"}
        assert set(compiled.workflows) == {"triage"}
        assert set(compiled.triggers) == {"nightly", "on_push"}
        assert set(compiled.views) == {"issues_table"}
        assert set(compiled.reducers) == {"set_issues", "append_issue", "remove_issue", "merge_meta"}
        assert compiled.spec_hash == spec_hash(spec)
        assert compiled.tool_id == spec.id

    def test_unknown_capability_fails(self, spec_data, registry):
        """An action pointing at an unregistered capability fails."""
        spec_data["actions"][0]["capabilityId"] = "github.nope"

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "github.nope" in str(exc_info.value)

    def test_capability_integration_mismatch_fails(self, spec_data, registry):
        """The capability must belong to the action's declared integration."""
        spec_data["actions"][0]["capabilityId"] = "slack.post_message"

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "list_issues" in str(exc_info.value)

    def test_undeclared_integration_fails(self, spec_data, registry):
        """Actions can only use integrations the spec declares."""
        spec_data["integrations"] = [{"id": "github"}]

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "slack" in str(exc_info.value)

    def test_duplicate_action_id_fails(self, spec_data, registry):
        spec_data["actions"].append(copy.deepcopy(spec_data["actions"][0]))

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "Duplicate action id: list_issues" in str(exc_info.value)

    def test_dangling_workflow_action_fails(self, spec_data, registry):
        spec_data["workflows"][0]["nodes"][0]["actionId"] = "ghost_action"

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "ghost_action" in str(exc_info.value)

    def test_dangling_trigger_workflow_fails(self, spec_data, registry):
        spec_data["triggers"][0]["workflowId"] = "ghost_workflow"

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "ghost_workflow" in str(exc_info.value)

    def test_dangling_view_entity_fails(self, spec_data, registry):
        spec_data["views"][0]["source"]["entity"] = "Ghost"

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "Ghost" in str(exc_info.value)

    def test_dangling_view_action_fails(self, spec_data, registry):
        spec_data["views"][0]["actions"] = ["ghost_view_action"]

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "ghost_view_action" in str(exc_info.value)

    def test_missing_reducer_fails(self, spec_data, registry):
        spec_data["actions"][0]["reducerId"] = "ghost_reducer"

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "ghost_reducer" in str(exc_info.value)

    def test_failed_compile_returns_no_artifact(self, spec_data, registry):
        """Nothing is cached or returned when the gate fails."""
        spec_data["triggers"][0]["workflowId"] = "ghost_workflow"
        compiler = ToolCompiler(registry)

        with pytest.raises(SpecValidationError):
            compiler.compile(parse_spec(spec_data))

        assert len(compiler) == 0

    def test_schema_error_maps_to_spec_validation_error(self):
        """Missing required fields surface as SpecValidationError."""
        with pytest.raises(SpecValidationError):
            parse_spec({"name": "no id"})


class TestGraphChecks:
    """Test compile-time graph checks."""

    def test_workflow_cycle_fails(self, spec_data, registry):
        spec_data["workflows"][0]["edges"].append({"from": "announce", "to": "fetch"})

        with pytest.raises(WorkflowHasCycles) as exc_info:
            _compile(spec_data, registry)

        assert exc_info.value.workflow_id == "triage"

    def test_workflow_edge_to_missing_node_fails(self, spec_data, registry):
        spec_data["workflows"][0]["edges"].append({"from": "fetch", "to": "nowhere"})

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "nowhere" in str(exc_info.value)

    def test_action_graph_cycle_fails(self, spec_data, registry):
        """Action graph cycles are rejected before anything runs."""
        spec_data["actionGraph"] = {
            "nodes": [
                {"id": "a", "actionId": "list_issues"},
                {"id": "b", "actionId": "notify"},
            ],
            "edges": [
                {"from": "a", "to": "b", "type": "success"},
                {"from": "b", "to": "a", "type": "failure"},
            ],
        }

        with pytest.raises(WorkflowHasCycles):
            _compile(spec_data, registry)

    def test_action_graph_missing_action_fails(self, spec_data, registry):
        spec_data["actionGraph"] = {"nodes": [{"id": "a", "actionId": "ghost"}], "edges": []}

        with pytest.raises(SpecValidationError) as exc_info:
            _compile(spec_data, registry)

        assert "ghost" in str(exc_info.value)


class TestToolCompiler:
    """Test the compiled-artifact cache."""

    def test_identical_spec_is_cached(self, spec_data, registry):
        compiler = ToolCompiler(registry)

        first = compiler.compile(parse_spec(spec_data))
        second = compiler.compile(parse_spec(copy.deepcopy(spec_data)))

        assert first is second
        assert len(compiler) == 1

    def test_cache_is_bounded(self, spec_data, registry):
        compiler = ToolCompiler(registry, cache_size=2)

        for name in ("one", "two", "three"):
            data = copy.deepcopy(spec_data)
            data["name"] = name
            compiler.compile(parse_spec(data))

        assert len(compiler) == 2

    def test_invalidate(self, spec, registry):
        compiler = ToolCompiler(registry)
        compiled = compiler.compile(spec)

        compiler.invalidate(compiled.spec_hash)

        assert len(compiler) == 0


class TestAdvisoryValidation:
    """Test the advisory validator."""

    def test_collects_all_problems(self, spec_data, registry):
        """Every violation becomes a clarification instead of an exception."""
        spec_data["actions"][0]["capabilityId"] = "github.nope"
        spec_data["views"][0]["actions"] = ["ghost_view_action"]

        clarifications = validate_spec_advisory(parse_spec(spec_data), registry)
        refs = {c.ref for c in clarifications}

        assert "list_issues" in refs
        assert "ghost_view_action" in refs

    def test_prompts_for_empty_spec(self, registry, tool_id):
        spec = parse_spec({"id": tool_id, "name": "Empty", "clarifications": ["Which repo?"]})

        messages = [c.message for c in validate_spec_advisory(spec, registry)]

        assert any("No actions" in m for m in messages)
        assert any("No views" in m for m in messages)
        assert "Which repo?" in messages

    def test_valid_spec_has_no_clarifications(self, spec, registry):
        assert validate_spec_advisory(spec, registry) == []


class TestSpecUtilities:
    """Test spec hashing and diffing."""

    def test_hash_ignores_alias_style(self, spec_data):
        """camelCase and snake_case inputs hash identically."""
        snake = copy.deepcopy(spec_data)
        snake["actions"][0]["capability_id"] = snake["actions"][0].pop("capabilityId")

        assert spec_hash(parse_spec(spec_data)) == spec_hash(parse_spec(snake))

    def test_hash_changes_with_content(self, spec_data):
        changed = copy.deepcopy(spec_data)
        changed["purpose"] = "Something else"

        assert spec_hash(parse_spec(spec_data)) != spec_hash(parse_spec(changed))

    def test_diff_reports_added_and_removed(self, spec_data):
        nxt = copy.deepcopy(spec_data)
        nxt["views"] = []
        nxt["triggers"].append({"id": "hourly", "type": "cron", "workflowId": "triage"})

        diff = diff_specs(parse_spec(spec_data), parse_spec(nxt))

        assert diff.views_removed == ["issues_table"]
        assert diff.triggers_added == ["hourly"]
        assert not diff.is_empty

    def test_diff_of_identical_specs_is_empty(self, spec):
        assert diff_specs(spec, spec).is_empty


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
