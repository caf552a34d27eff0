"""
Capability Registry
-------------------
Integration-scoped operations the action runtime may invoke.

Each capability defines:
- Owning integration id
- Allowed operation types (checked against the action's type)
- An executor `execute(params, context, tracer) -> output`

Integrations optionally register a context resolver that turns an access
token into the `context` handed to executors.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set
import logging

import yaml

from infra.logging import ExecutionTracer
from .spec import ActionType

CapabilityExecutor = Callable[[Dict[str, Any], Dict[str, Any], ExecutionTracer], Any]
ContextResolver = Callable[[str], Dict[str, Any]]


class CapabilityNotBound(RuntimeError):
    """A catalog-loaded capability was invoked before an executor was bound."""
    pass


@dataclass
class Capability:
    """Capability definition with executor."""
    id: str
    integration_id: str
    executor: CapabilityExecutor
    allowed_operations: Set[ActionType] = field(default_factory=lambda: {ActionType.READ})
    description: str = ""

    def allows(self, operation: ActionType) -> bool:
        return ActionType(operation) in self.allowed_operations

    def __repr__(self) -> str:
        ops = ",".join(sorted(op.value for op in self.allowed_operations))
        return f"Capability({self.id} @ {self.integration_id} [{ops}])"


def default_context_resolver(token: str) -> Dict[str, Any]:
    return {"access_token": token}


class CapabilityRegistry:
    """
    Registry for all integration capabilities.

    The compiler reads metadata from it; the runtime reads executors.
    """

    def __init__(self):
        self._capabilities: Dict[str, Capability] = {}
        self._context_resolvers: Dict[str, ContextResolver] = {}
        self._logger = logging.getLogger("toolos.tools.registry")

    def register(self, capability: Capability) -> None:
        """Register a capability."""
        if capability.id in self._capabilities:
            self._logger.warning(f"Overwriting existing capability: {capability.id}")

        self._capabilities[capability.id] = capability
        self._logger.debug(f"Registered capability: {capability!r}")

    def unregister(self, capability_id: str) -> bool:
        if capability_id in self._capabilities:
            del self._capabilities[capability_id]
            return True
        return False

    def get_capability(self, capability_id: str) -> Optional[Capability]:
        """Get a capability by id, or None."""
        return self._capabilities.get(capability_id)

    def list_capabilities(self) -> List[Capability]:
        return list(self._capabilities.values())

    def list_by_integration(self, integration_id: str) -> List[Capability]:
        return [c for c in self._capabilities.values() if c.integration_id == integration_id]

    def bind(self, capability_id: str, executor: CapabilityExecutor) -> None:
        """Attach an executor to an already-registered capability."""
        capability = self._capabilities.get(capability_id)
        if capability is None:
            raise KeyError(f"Unknown capability: {capability_id}")
        capability.executor = executor

    def register_context_resolver(self, integration_id: str, resolver: ContextResolver) -> None:
        self._context_resolvers[integration_id] = resolver

    def resolve_context(self, integration_id: str, token: str) -> Dict[str, Any]:
        """Build the executor context for an integration from its access token."""
        resolver = self._context_resolvers.get(integration_id, default_context_resolver)
        return resolver(token)

    def load_from_yaml(self, path: str) -> int:
        """
        Load capability metadata from a YAML catalog.

        Executors are placeholders until bound. Returns number loaded.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        count = 0
        for item in data.get("capabilities", []):
            try:
                self.register(self._parse_capability(item))
                count += 1
            except (KeyError, ValueError) as e:
                self._logger.error(f"Failed to load capability: {e}")

        return count

    @staticmethod
    def _parse_capability(data: Dict[str, Any]) -> Capability:
        capability_id = data["id"]

        def placeholder_executor(params, context, tracer):
            raise CapabilityNotBound(f"Capability {capability_id} has no executor bound")

        operations = data.get("allowed_operations") or [ActionType.READ.value]
        return Capability(
            id=capability_id,
            integration_id=data["integration_id"],
            executor=placeholder_executor,
            allowed_operations={ActionType(str(op).upper()) for op in operations},
            description=data.get("description", ""),
        )

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, capability_id: str) -> bool:
        return capability_id in self._capabilities
