"""Shared intent router configuration utilities.

Centralises reading of ~/.intent-router/configuration.json (execution
defaults) and gaff.json (agent endpoints) so the engine and the HTTP agent
transport share one implementation.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from intent_router.schemas.requirements import ExecutionConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ROUTER_CONFIG_FILE = Path.home() / ".intent-router" / "configuration.json"
ROUTER_CONFIG_ENV_VAR = "INTENT_ROUTER_CONFIG"
GAFF_CONFIG_ENV_VAR = "GAFF_CONFIG_PATH"
DEFAULT_AGENT_TIMEOUT_MS = 30_000


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        logger.warning(f"Ignoring unreadable configuration file {path}")
        return {}
    return data if isinstance(data, dict) else {}


def get_router_config_path() -> Path:
    override = os.environ.get(ROUTER_CONFIG_ENV_VAR)
    return Path(override).expanduser() if override else ROUTER_CONFIG_FILE


def get_router_config() -> dict[str, Any]:
    """Load router configuration (empty dict when missing or unreadable)."""
    return _read_json(get_router_config_path())


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_execution_config(**overrides: Any) -> ExecutionConfig:
    """Build an ExecutionConfig from the ``execution`` section plus overrides."""
    defaults = get_router_config().get("execution", {})
    if not isinstance(defaults, dict):
        defaults = {}
    return ExecutionConfig.model_validate({**defaults, **overrides})


# ---------------------------------------------------------------------------
# Agent definitions (gaff.json)
# ---------------------------------------------------------------------------


@dataclass
class AgentDefinition:
    """One entry of the ``agents`` map in gaff.json."""

    name: str
    type: str = "api"
    endpoint: str | None = None
    timeout_ms: int = DEFAULT_AGENT_TIMEOUT_MS
    api_key_env_var: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def api_key(self) -> str | None:
        if self.api_key_env_var:
            return os.environ.get(self.api_key_env_var)
        return None

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "AgentDefinition":
        return cls(
            name=name,
            type=data.get("type", "api"),
            endpoint=data.get("endpoint"),
            timeout_ms=data.get("timeout_ms") or DEFAULT_AGENT_TIMEOUT_MS,
            api_key_env_var=data.get("api_key_env_var"),
            headers=dict(data.get("headers") or {}),
        )


def get_gaff_config_path() -> Path:
    return Path(os.environ.get(GAFF_CONFIG_ENV_VAR, "gaff.json")).expanduser()


def load_agent_definitions(path: Path | str | None = None) -> dict[str, AgentDefinition]:
    """Load agent definitions from gaff.json (empty when the file is absent)."""
    config_path = Path(path) if path is not None else get_gaff_config_path()
    agents = _read_json(config_path).get("agents", {})
    if not isinstance(agents, dict):
        return {}
    return {
        name: AgentDefinition.from_dict(name, data)
        for name, data in agents.items()
        if isinstance(data, dict)
    }
