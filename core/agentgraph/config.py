"""Engine configuration.

Reads ~/.agentgraph/configuration.json once per lookup and lets a handful of
environment variables override individual values, so the CLI, the execution
service and tests all resolve defaults through one place.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

AGENTGRAPH_HOME = Path(os.environ.get("AGENTGRAPH_HOME", Path.home() / ".agentgraph"))
AGENTGRAPH_CONFIG_FILE = AGENTGRAPH_HOME / "configuration.json"

DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_MAX_ITERATIONS = 10


def get_agentgraph_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.agentgraph/configuration.json (or ``path``)."""
    config_file = path or AGENTGRAPH_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_model() -> str:
    """Return the model used by agent nodes that do not name one."""
    env_model = os.environ.get("AGENTGRAPH_MODEL")
    if env_model:
        return env_model
    llm = get_agentgraph_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return llm.get("model", DEFAULT_MODEL)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_agentgraph_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_timeout(kind: str, default: float) -> float:
    """Return the timeout in seconds for ``kind`` (http, tool, code, node, model).

    ``AGENTGRAPH_<KIND>_TIMEOUT`` wins over ``timeouts.<kind>`` in the file.
    """
    env_value = _env_float(f"AGENTGRAPH_{kind.upper()}_TIMEOUT")
    if env_value is not None:
        return env_value
    value = get_agentgraph_config().get("timeouts", {}).get(kind)
    return float(value) if value is not None else default


def get_mcp_config_path() -> Path | None:
    raw = os.environ.get("AGENTGRAPH_MCP_CONFIG") or get_agentgraph_config().get("mcp_config")
    return Path(raw).expanduser() if raw else None


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor, the service and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine defaults loaded from ~/.agentgraph/configuration.json."""

    model: str = field(default_factory=get_default_model)
    temperature: float = 0.7
    max_tokens: int | None = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None

    http_timeout: float = field(default_factory=lambda: get_timeout("http", 30.0))
    tool_timeout: float = field(default_factory=lambda: get_timeout("tool", 60.0))
    code_timeout: float = field(default_factory=lambda: get_timeout("code", 5.0))
    model_timeout: float = field(default_factory=lambda: get_timeout("model", 120.0))
    # None means a node may run as long as its own I/O timeouts allow
    node_timeout: float | None = None

    failure_policy: str = "fail_fast"
    max_retained_executions: int = 1000
    event_history_size: int = 1000
