"""
Credential Resolution
---------------------
Resolves a live access token for an (org, integration) pair.

Rules:
- Secrets never in code
- Tokens come from the environment or from an injected store
- Token values are never logged
"""

from typing import Dict, Optional, Tuple
import logging
import os


class CredentialResolver:
    """Interface consumed by the action runtime."""

    def get_valid_access_token(self, org_id: str, integration_id: str) -> Optional[str]:
        raise NotImplementedError


class EnvCredentialResolver(CredentialResolver):
    """
    Reads tokens from environment variables.

    Lookup order:
        TOOLOS_<ORG>_<INTEGRATION>_TOKEN
        TOOLOS_<INTEGRATION>_TOKEN
    """

    PREFIX = "TOOLOS_"

    def __init__(self):
        self._logger = logging.getLogger("toolos.infra.credentials")

    @staticmethod
    def _env_name(*parts: str) -> str:
        cleaned = [p.upper().replace("-", "_").replace(".", "_") for p in parts]
        return "_".join(cleaned)

    def get_valid_access_token(self, org_id: str, integration_id: str) -> Optional[str]:
        candidates = [
            f"{self.PREFIX}{self._env_name(org_id, integration_id)}_TOKEN",
            f"{self.PREFIX}{self._env_name(integration_id)}_TOKEN",
        ]
        for name in candidates:
            value = os.getenv(name)
            if value:
                self._logger.debug(f"Resolved credential for {integration_id} from {name}")
                return value
        self._logger.warning(f"No credential found for integration {integration_id}")
        return None


class StaticCredentialResolver(CredentialResolver):
    """In-memory token map keyed by integration or (org, integration)."""

    def __init__(self, tokens: Optional[Dict[object, str]] = None):
        self._tokens: Dict[object, str] = dict(tokens or {})

    def set_token(self, integration_id: str, token: str, org_id: Optional[str] = None) -> None:
        key = (org_id, integration_id) if org_id else integration_id
        self._tokens[key] = token

    def revoke(self, integration_id: str, org_id: Optional[str] = None) -> None:
        key = (org_id, integration_id) if org_id else integration_id
        self._tokens.pop(key, None)

    def get_valid_access_token(self, org_id: str, integration_id: str) -> Optional[str]:
        scoped: Tuple[str, str] = (org_id, integration_id)
        return self._tokens.get(scoped) or self._tokens.get(integration_id)
