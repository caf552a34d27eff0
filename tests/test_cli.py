"""
CLI Tests
---------
Tests for the operator commands in main.py.
"""

import copy

import pytest
import yaml

from main import main


CATALOG = {
    "capabilities": [
        {"id": "github.list_issues", "integration_id": "github"},
        {"id": "github.create_issue", "integration_id": "github", "allowed_operations": ["read", "write"]},
        {"id": "github.close_issue", "integration_id": "github", "allowed_operations": ["mutate"]},
        {"id": "slack.post_message", "integration_id": "slack", "allowed_operations": ["notify"]},
    ]
}


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(yaml.safe_dump(CATALOG))
    return str(path)


@pytest.fixture
def spec_file(tmp_path, spec_data):
    path = tmp_path / "spec.yaml"
    path.write_text(yaml.safe_dump(spec_data))
    return str(path)


@pytest.fixture
def broken_spec_file(tmp_path, spec_data):
    data = copy.deepcopy(spec_data)
    data["actions"][0]["capabilityId"] = "github.delete_repo"
    path = tmp_path / "broken.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestCommands:
    """Test exit codes of each command."""

    def test_compile_succeeds(self, spec_file, catalog_file):
        assert main(["compile", spec_file, "--catalog", catalog_file]) == 0

    def test_compile_gate_failure(self, broken_spec_file, catalog_file, capsys):
        assert main(["compile", broken_spec_file, "--catalog", catalog_file]) == 2

        assert "github.delete_repo" in capsys.readouterr().out

    def test_validate_clean_spec(self, spec_file, catalog_file):
        assert main(["validate", spec_file, "--catalog", catalog_file]) == 0

    def test_validate_lists_clarifications(self, broken_spec_file, catalog_file, capsys):
        assert main(["validate", broken_spec_file, "--catalog", catalog_file]) == 1

        assert "Clarifications" in capsys.readouterr().out

    def test_diff(self, spec_file, broken_spec_file):
        assert main(["diff", spec_file, broken_spec_file]) == 0

    def test_runs_empty(self, tmp_path, tool_id, capsys):
        db_path = str(tmp_path / "toolos.db")

        assert main(["runs", "--db", db_path, "--tool", tool_id]) == 0
        assert "No runs recorded" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
