"""
ToolOS Test Configuration
-------------------------
Shared fixtures and configuration for all tests.

Capability executors are scripted per test through `executors`: a dict of
capability id -> callable(params, context, tracer).
"""

import sys
import tempfile
import uuid
from pathlib import Path
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from infra.config import RuntimeConfig
from infra.credentials import StaticCredentialResolver
from infra.database import DatabaseManager
from memory.store import MemoryStore, default_adapter_factory
from tools.compiler import compile_tool, parse_spec
from tools.registry import Capability, CapabilityRegistry
from tools.runtime import ActionRuntime
from tools.spec import ActionType


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = DatabaseManager(db_path)
    db.initialize()

    yield db

    db.close()
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def memory(temp_db):
    """Memory store over the temporary database."""
    return MemoryStore(default_adapter_factory(temp_db))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def org_id():
    return str(uuid.uuid4())


@pytest.fixture
def tool_id():
    return str(uuid.uuid4())


@pytest.fixture
def user_id():
    return str(uuid.uuid4())


@pytest.fixture
def executors():
    """Per-test scripted capability behaviour."""
    return {
        "github.list_issues": lambda params, context, tracer: [
            {"id": "1", "title": "Build failed on main"},
            {"id": "2", "title": "Flaky login test"},
        ],
        "github.create_issue": lambda params, context, tracer: {"id": "3", "title": params.get("title", "")},
        "github.close_issue": lambda params, context, tracer: [{"id": params.get("issue_id", "1")}],
        "slack.post_message": lambda params, context, tracer: {"ok": True, "channel": "#builds"},
    }


@pytest.fixture
def registry(executors):
    """Registry whose executors dispatch through the `executors` dict."""
    registry = CapabilityRegistry()

    def dispatch(capability_id):
        def execute(params, context, tracer):
            tracer.event("dispatch", capability=capability_id)
            return executors[capability_id](params, context, tracer)
        return execute

    registry.register(Capability(
        id="github.list_issues",
        integration_id="github",
        executor=dispatch("github.list_issues"),
        allowed_operations={ActionType.READ},
    ))
    registry.register(Capability(
        id="github.create_issue",
        integration_id="github",
        executor=dispatch("github.create_issue"),
        allowed_operations={ActionType.READ, ActionType.WRITE},
    ))
    registry.register(Capability(
        id="github.close_issue",
        integration_id="github",
        executor=dispatch("github.close_issue"),
        allowed_operations={ActionType.MUTATE},
    ))
    registry.register(Capability(
        id="slack.post_message",
        integration_id="slack",
        executor=dispatch("slack.post_message"),
        allowed_operations={ActionType.NOTIFY},
    ))
    return registry


@pytest.fixture
def credentials():
    return StaticCredentialResolver({"github": "gh-token", "slack": "slack-token"})


@pytest.fixture
def spec_data(tool_id):
    """A valid spec covering actions, reducers, a workflow, triggers and a view."""
    return {
        "id": tool_id,
        "name": "Build Triage",
        "purpose": "Track failing builds and notify the team",
        "entities": [
            {"name": "Issue", "sourceIntegration": "github", "fields": [{"name": "title"}], "identifiers": ["id"]},
        ],
        "integrations": [{"id": "github"}, {"id": "slack"}],
        "actions": [
            {
                "id": "list_issues",
                "integrationId": "github",
                "capabilityId": "github.list_issues",
                "reducerId": "set_issues",
                "emits": ["issues_loaded"],
            },
            {
                "id": "create_issue",
                "type": "WRITE",
                "integrationId": "github",
                "capabilityId": "github.create_issue",
                "reducerId": "append_issue",
            },
            {
                "id": "close_issue",
                "type": "MUTATE",
                "integrationId": "github",
                "capabilityId": "github.close_issue",
                "reducerId": "remove_issue",
                "requiresApproval": True,
            },
            {
                "id": "notify",
                "type": "NOTIFY",
                "integrationId": "slack",
                "capabilityId": "slack.post_message",
                "reducerId": "merge_meta",
            },
        ],
        "workflows": [
            {
                "id": "triage",
                "nodes": [
                    {"id": "fetch", "type": "action", "actionId": "list_issues"},
                    {"id": "check", "type": "condition", "condition": "issues.0"},
                    {"id": "announce", "type": "action", "actionId": "notify"},
                ],
                "edges": [{"from": "fetch", "to": "check"}, {"from": "check", "to": "announce"}],
                "retryPolicy": {"maxRetries": 2, "backoffMs": 100},
            },
        ],
        "triggers": [
            {"id": "nightly", "type": "cron", "condition": {"cron": "0 2 * * *"}, "workflowId": "triage"},
            {"id": "on_push", "type": "webhook", "actionId": "list_issues", "enabled": False},
        ],
        "views": [
            {"id": "issues_table", "source": {"entity": "Issue", "statePath": "issues"}, "actions": ["list_issues"]},
        ],
        "state": {
            "initial": {"issues": [], "meta": {}},
            "reducers": [
                {"id": "set_issues", "type": "set", "target": "issues"},
                {"id": "append_issue", "type": "append", "target": "issues"},
                {"id": "remove_issue", "type": "remove", "target": "issues"},
                {"id": "merge_meta", "type": "merge", "target": "meta"},
            ],
        },
    }


@pytest.fixture
def spec(spec_data):
    return parse_spec(spec_data)


@pytest.fixture
def compiled(spec, registry):
    return compile_tool(spec, registry)


@pytest.fixture
def runtime(temp_db, memory, registry, credentials, clock):
    return ActionRuntime(temp_db, memory, registry, credentials, RuntimeConfig(), clock=clock)
