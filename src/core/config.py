from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import SecretStr

from mcp_client.types import ServerConfig

from .errors import ConfigError

# re-export for contract/tests
__all__ = [
    "AppConfig",
    "ConfigError",
    "McpConfig",
    "ModelConfig",
    "ToolsConfig",
    "load_config",
]


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env_in_str(value: str, *, path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in os.environ or os.environ[key] == "":
            raise ConfigError(f"environment variable {key!r} is not set", path=path)
        return os.environ[key]

    return _ENV_PATTERN.sub(repl, value)


def _expand_env(obj: Any, *, path: str) -> Any:
    if isinstance(obj, str):
        return _expand_env_in_str(obj, path=path)
    if isinstance(obj, list):
        return [_expand_env(v, path=path) for v in obj]
    if isinstance(obj, dict):
        return {k: _expand_env(v, path=f"{path}.{k}" if path else str(k)) for k, v in obj.items()}
    return obj


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError("must be a mapping", path=key)
    return value


def _positive_float(d: dict[str, Any], key: str, default: float, *, path: str) -> float:
    try:
        value = float(d.get(key, default))
    except (TypeError, ValueError):
        raise ConfigError("must be a number", path=f"{path}.{key}") from None
    if value <= 0:
        raise ConfigError("must be > 0", path=f"{path}.{key}")
    return value


def _int_at_least(d: dict[str, Any], key: str, default: int, minimum: int, *, path: str) -> int:
    try:
        value = int(d.get(key, default))
    except (TypeError, ValueError):
        raise ConfigError("must be an integer", path=f"{path}.{key}") from None
    if value < minimum:
        raise ConfigError(f"must be an integer >= {minimum}", path=f"{path}.{key}")
    return value


@dataclass(frozen=True)
class ModelConfig:
    api_key: SecretStr | None = None
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    model: str = "gemini-2.0-flash-001"
    timeout_s: float = 60.0
    # The turn loop never retries; this only covers the SDK's connection-level retries.
    max_retries: int = 0
    system_prompt: str | None = None


@dataclass(frozen=True)
class ToolsConfig:
    enabled: bool = True
    max_iterations: int = 10
    max_concurrency: int = 1
    call_timeout_s: float = 120.0


@dataclass(frozen=True)
class McpConfig:
    """Client-side MCP configuration: timeouts plus the servers to connect at startup."""

    connect_timeout_s: float = 30.0
    request_timeout_s: float = 60.0
    close_timeout_s: float = 5.0
    servers: dict[str, ServerConfig] = field(default_factory=dict)


@dataclass(frozen=True)
class AppConfig:
    model: ModelConfig = field(default_factory=ModelConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    mcp: McpConfig = field(default_factory=McpConfig)


def _parse_model(raw: dict[str, Any]) -> ModelConfig:
    # Contract: api_key can default from env.
    api_key = raw.get("api_key")
    if api_key is None or api_key == "":
        api_key = os.getenv("GEMINI_API_KEY")
    if api_key is not None and (not isinstance(api_key, str) or not api_key.strip()):
        raise ConfigError("must be a non-empty string (or set GEMINI_API_KEY)", path="model.api_key")

    system_prompt = raw.get("system_prompt")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise ConfigError("must be a string", path="model.system_prompt")

    return ModelConfig(
        api_key=SecretStr(api_key) if api_key else None,
        base_url=str(raw.get("base_url", ModelConfig.base_url)),
        model=str(raw.get("model", ModelConfig.model)),
        timeout_s=_positive_float(raw, "timeout_s", ModelConfig.timeout_s, path="model"),
        max_retries=_int_at_least(raw, "max_retries", ModelConfig.max_retries, 0, path="model"),
        system_prompt=system_prompt or None,
    )


def _parse_tools(raw: dict[str, Any]) -> ToolsConfig:
    return ToolsConfig(
        enabled=bool(raw.get("enabled", ToolsConfig.enabled)),
        max_iterations=_int_at_least(raw, "max_iterations", ToolsConfig.max_iterations, 0, path="tools"),
        max_concurrency=_int_at_least(raw, "max_concurrency", ToolsConfig.max_concurrency, 1, path="tools"),
        call_timeout_s=_positive_float(raw, "call_timeout_s", ToolsConfig.call_timeout_s, path="tools"),
    )


def _parse_mcp(raw: dict[str, Any]) -> McpConfig:
    servers_raw = raw.get("servers", {})
    if servers_raw is None:
        servers_raw = {}

    # Both a mapping (id -> config) and a list of configs carrying `id` are accepted.
    items: list[tuple[str, Any]]
    if isinstance(servers_raw, dict):
        items = list(servers_raw.items())
    elif isinstance(servers_raw, list):
        items = []
        for i, entry in enumerate(servers_raw):
            if not isinstance(entry, dict):
                raise ConfigError("server config must be a mapping", path=f"mcp.servers[{i}]")
            items.append((entry.get("id"), entry))
    else:
        raise ConfigError("must be a mapping of id -> server config", path="mcp.servers")

    servers: dict[str, ServerConfig] = {}
    for sid, scfg in items:
        if not isinstance(sid, str) or not sid:
            raise ConfigError("server id must be a non-empty string", path="mcp.servers")
        if not isinstance(scfg, dict):
            raise ConfigError("server config must be a mapping", path=f"mcp.servers.{sid}")
        try:
            servers[sid] = ServerConfig.from_dict(scfg, server_id=sid)
        except ConfigError as e:
            raise ConfigError(e.reason, path=f"mcp.{e.path}" if e.path else "mcp.servers") from e

    return McpConfig(
        connect_timeout_s=_positive_float(raw, "connect_timeout_s", McpConfig.connect_timeout_s, path="mcp"),
        request_timeout_s=_positive_float(raw, "request_timeout_s", McpConfig.request_timeout_s, path="mcp"),
        close_timeout_s=_positive_float(raw, "close_timeout_s", McpConfig.close_timeout_s, path="mcp"),
        servers=servers,
    )


def load_config(path: str | Path) -> AppConfig:
    """Load YAML config and expand ${ENV_VAR}."""

    # Local dev: allow injecting secrets from .env (do not commit it).
    load_dotenv(override=False)

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError("config file does not exist", path=str(config_path))

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse failed: {e}", path=str(config_path)) from e

    if not isinstance(raw, dict):
        raise ConfigError("top level must be a YAML mapping (dict)", path=str(config_path))

    expanded = _expand_env(raw, path="")

    return AppConfig(
        model=_parse_model(_section(expanded, "model")),
        tools=_parse_tools(_section(expanded, "tools")),
        mcp=_parse_mcp(_section(expanded, "mcp")),
    )
