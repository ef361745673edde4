"""Runtime configuration.

Resolution order (later wins):
  1. built-in defaults
  2. user file: ``$XDG_CONFIG_HOME/thiran/config.json`` (default ``~/.config``)
  3. project file: ``.thiran/config.json`` or ``thiran.config.json``
  4. ``.env`` file in the working directory (real env vars still win over it)
  5. environment variables:
       ANTHROPIC_API_KEY, OPENAI_API_KEY, GOOGLE_API_KEY (or GEMINI_API_KEY),
       OLLAMA_BASE_URL, THIRAN_PROVIDER, THIRAN_MODEL, THIRAN_APPROVAL_MODE

List settings (``allowedPaths``, ``blockedCommands``) are concatenated across
layers; ``mcpServers`` from a later file replaces the earlier list.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from thiran.domain.contracts import ApprovalMode

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILES = (Path(".thiran") / "config.json", Path("thiran.config.json"))
DEFAULT_BLOCKED_COMMANDS = ["rm -rf /", "mkfs", "dd if=", ":(){:|:&};:"]
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"


@dataclass
class McpServerConfig:
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    transport: str = "stdio"
    enabled: bool = True
    timeout_ms: int = 30000

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "McpServerConfig":
        name = str(raw.get("name") or "").strip()
        command = str(raw.get("command") or "").strip()
        if not name or not command:
            raise ValueError("MCP server entries need 'name' and 'command'.")
        env = raw.get("env") if isinstance(raw.get("env"), dict) else {}
        return cls(
            name=name,
            command=command,
            args=[str(a) for a in (raw.get("args") or [])],
            env={str(k): str(v) for k, v in env.items()},
            transport=str(raw.get("transport") or "stdio"),
            enabled=raw.get("enabled") is not False,
            timeout_ms=_coerce_positive_int(raw.get("timeout"), 30000),
        )


@dataclass
class ThiranConfig:
    provider: str = "anthropic"
    model: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    approval_mode: ApprovalMode = ApprovalMode.SUGGEST
    auto_commit: bool = False
    max_context_tokens: int = 100000
    allowed_paths: List[str] = field(default_factory=list)
    blocked_commands: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_COMMANDS))
    mcp_servers: List[McpServerConfig] = field(default_factory=list)
    project_config_path: Optional[Path] = None


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def get_env_value(key: str, env_file: Mapping[str, str], env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    source = os.environ if env is None else env
    return source.get(key) or env_file.get(key) or None


def find_project_config(working_directory: Path) -> Optional[Path]:
    for rel in PROJECT_CONFIG_FILES:
        candidate = working_directory / rel
        if candidate.is_file():
            return candidate
    return None


def user_config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    source = os.environ if env is None else env
    base = (source.get("XDG_CONFIG_HOME") or "").strip()
    root = Path(base) if base else Path.home() / ".config"
    return root / "thiran" / "config.json"


def load_config(
    working_directory: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ThiranConfig:
    cwd = Path(working_directory or Path.cwd())
    config = ThiranConfig()

    user_raw = _read_json_config(user_config_path(env), "user")
    if user_raw is not None:
        merge_config(config, user_raw)

    project_path = find_project_config(cwd)
    if project_path is not None:
        project_raw = _read_json_config(project_path, "project")
        if project_raw is not None:
            merge_config(config, project_raw)
            config.project_config_path = project_path

    env_file = load_env_file(cwd / ".env")
    _apply_env(config, env_file, env)
    return config


def _read_json_config(path: Path, layer: str) -> Optional[Dict[str, Any]]:
    if not path.is_file():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring invalid %s config %s: %s", layer, path, exc)
        return None
    return raw if isinstance(raw, dict) else None


def merge_config(config: ThiranConfig, override: Mapping[str, Any]) -> ThiranConfig:
    """Merge a camelCase JSON mapping into ``config`` in place."""
    if override.get("provider"):
        config.provider = str(override["provider"]).strip().lower()
    if override.get("model"):
        config.model = str(override["model"])
    for json_key, attr in (
        ("anthropicApiKey", "anthropic_api_key"),
        ("openaiApiKey", "openai_api_key"),
        ("googleApiKey", "google_api_key"),
        ("ollamaBaseUrl", "ollama_base_url"),
    ):
        if override.get(json_key):
            setattr(config, attr, str(override[json_key]))
    if "approvalMode" in override:
        config.approval_mode = ApprovalMode.parse(override.get("approvalMode"), config.approval_mode)
    if "autoCommit" in override:
        config.auto_commit = bool(override.get("autoCommit"))
    if "maxContextTokens" in override:
        config.max_context_tokens = _coerce_positive_int(override.get("maxContextTokens"), config.max_context_tokens)
    config.allowed_paths = config.allowed_paths + [str(p) for p in override.get("allowedPaths") or []]
    config.blocked_commands = config.blocked_commands + [str(c) for c in override.get("blockedCommands") or []]
    if isinstance(override.get("mcpServers"), list):
        servers: List[McpServerConfig] = []
        for entry in override["mcpServers"]:
            if not isinstance(entry, dict):
                continue
            try:
                servers.append(McpServerConfig.from_dict(entry))
            except ValueError as exc:
                logger.warning("Skipping MCP server entry: %s", exc)
        config.mcp_servers = servers
    return config


def _apply_env(config: ThiranConfig, env_file: Mapping[str, str], env: Optional[Mapping[str, str]]) -> None:
    def lookup(key: str) -> Optional[str]:
        return get_env_value(key, env_file, env)

    config.anthropic_api_key = lookup("ANTHROPIC_API_KEY") or config.anthropic_api_key
    config.openai_api_key = lookup("OPENAI_API_KEY") or config.openai_api_key
    config.google_api_key = lookup("GOOGLE_API_KEY") or lookup("GEMINI_API_KEY") or config.google_api_key
    config.ollama_base_url = lookup("OLLAMA_BASE_URL") or config.ollama_base_url
    config.provider = (lookup("THIRAN_PROVIDER") or config.provider).strip().lower()
    config.model = lookup("THIRAN_MODEL") or config.model
    mode = lookup("THIRAN_APPROVAL_MODE")
    if mode:
        config.approval_mode = ApprovalMode.parse(mode)


def _coerce_positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default
