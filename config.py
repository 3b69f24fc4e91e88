"""
Configuration resolution for backend profiles and MCP tool servers.

Everything here runs once at load time and produces frozen values; nothing
downstream re-reads the environment. Any problem is reported as ConfigError
before a conversation can start.

Profiles file (~/.config/DeskAgent/profiles.json, `system_prompt_file` optional):
    {"default": "local",
     "profiles": {"local": {"backend": "ollama", "model": "llama3.1", ...}}}

Tool servers file (~/.config/DeskAgent/mcp.json, Claude Desktop format):
    {"mcpServers": {"files": {"command": "npx", "args": [...],
                              "env": {"TOKEN": "${env:FILES_TOKEN}"}}}}
"""
import json
import logging
import os
import re
from typing import Mapping, Optional

import constants as C
from errors import ConfigError
from models import BackendKind, Profile, ToolServerConfig
from profiles import ProfileRegistry

logger = logging.getLogger(__name__)

_ENV_PLACEHOLDER = re.compile(r"\$\{env:([^}]*)\}")

_DEFAULT_ENDPOINTS = {
    BackendKind.OPENAI: C.OPENAI_ENDPOINT_DEFAULT,
    BackendKind.ANTHROPIC: C.ANTHROPIC_ENDPOINT_DEFAULT,
    BackendKind.OLLAMA: C.OLLAMA_ENDPOINT_DEFAULT,
    BackendKind.GEMINI: C.GEMINI_ENDPOINT_DEFAULT,
}


def get_config_dir() -> str:
    """Get config directory path."""
    config_dir = os.path.join(os.path.expanduser("~"), ".config", C.APP_NAME)
    os.makedirs(config_dir, exist_ok=True)
    return config_dir


def expand_env_placeholders(value: str, environ: Mapping[str, str], where: str) -> str:
    """Substitute every ${env:NAME} in `value` from `environ`.

    Args:
        value: Raw string from the config document.
        environ: Environment to resolve against.
        where: Location used in error messages (e.g. "mcpServers.files.env.TOKEN").

    Raises:
        ConfigError: If a referenced variable is not set.
    """
    def _replace(match: re.Match) -> str:
        var_name = match.group(1).strip()
        if not var_name:
            raise ConfigError(f"{where}: empty ${{env:}} placeholder")
        if var_name not in environ:
            raise ConfigError(f"{where}: environment variable '{var_name}' is not set")
        return environ[var_name]

    return _ENV_PLACEHOLDER.sub(_replace, value)


def parse_profiles(data: object, environ: Optional[Mapping[str, str]] = None) -> ProfileRegistry:
    """Resolve a profiles document into a ProfileRegistry."""
    environ = os.environ if environ is None else environ
    if not isinstance(data, dict):
        raise ConfigError("Profile configuration must be a mapping")

    default = data.get("default")
    if not isinstance(default, str) or not default.strip():
        raise ConfigError("Profile configuration is missing 'default'")

    raw_profiles = data.get("profiles")
    if not isinstance(raw_profiles, dict) or not raw_profiles:
        raise ConfigError("Profile configuration has no 'profiles' mapping")

    profiles = {}
    for name, raw in raw_profiles.items():
        profiles[name] = _parse_profile(str(name), raw, environ)

    if default not in profiles:
        raise ConfigError(f"Default profile '{default}' is not defined in 'profiles'")

    prompt_file = data.get("system_prompt_file")
    if prompt_file is not None:
        if not isinstance(prompt_file, str):
            raise ConfigError("'system_prompt_file' must be a string")
        prompt_file = expand_env_placeholders(prompt_file, environ, "system_prompt_file") or None

    logger.info("Loaded %d profile(s), default=%s", len(profiles), default)
    return ProfileRegistry(profiles, default, system_prompt_file=prompt_file)


def _parse_profile(name: str, raw: object, environ: Mapping[str, str]) -> Profile:
    where = f"profiles.{name}"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: profile must be a mapping")

    backend = raw.get("backend", "openai")
    try:
        kind = BackendKind.parse(backend)
    except ValueError:
        raise ConfigError(f"{where}: unknown backend '{backend}'") from None

    model = raw.get("model")
    if not isinstance(model, str) or not model.strip():
        raise ConfigError(f"{where}: 'model' is required")

    api_key = raw.get("api_key", "")
    if not isinstance(api_key, str):
        raise ConfigError(f"{where}: 'api_key' must be a string")
    api_key = expand_env_placeholders(api_key, environ, f"{where}.api_key")

    endpoint = raw.get("endpoint") or _DEFAULT_ENDPOINTS.get(kind, "")
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ConfigError(f"{where}: 'endpoint' is required for backend '{kind.value}'")

    threshold = _number(raw, "summarize_threshold", C.SUMMARIZE_THRESHOLD, where, float)
    if not 0.0 < threshold <= 1.0:
        raise ConfigError(f"{where}: 'summarize_threshold' must be in (0, 1]")

    return Profile(
        name=name,
        backend_kind=kind,
        model_id=model.strip(),
        api_key=api_key,
        endpoint=endpoint.strip().rstrip("/"),
        temperature=_number(raw, "temperature", C.DEFAULT_TEMPERATURE, where, float),
        max_tokens=_number(raw, "max_tokens", C.DEFAULT_MAX_TOKENS, where, int),
        context_window_size=_number(raw, "context_window_size", None, where, int),
        summarize_threshold=threshold,
    )


def _number(raw: dict, key: str, default, where: str, cast):
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}: '{key}' must be a number")
    return cast(value)


def parse_tool_servers(
    data: object,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, ToolServerConfig]:
    """Resolve a tool-server document into ToolServerConfig values.

    Accepts both {"mcpServers": {...}} and a bare mapping of server entries.
    Placeholders in command, args and env values are expanded here.
    """
    environ = os.environ if environ is None else environ
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Tool server configuration must be a mapping")

    if "mcpServers" in data:
        servers = data["mcpServers"]
    elif "mcp_servers" in data:
        servers = data["mcp_servers"]
    else:
        servers = data
    if not isinstance(servers, dict):
        raise ConfigError("'mcpServers' must be a mapping")

    resolved: dict[str, ToolServerConfig] = {}
    for name, meta in servers.items():
        where = f"mcpServers.{name}"
        if not name or not isinstance(meta, dict):
            raise ConfigError(f"{where}: server entry must be a mapping")

        command = meta.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ConfigError(f"{where}: 'command' is required")

        args = meta.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ConfigError(f"{where}: 'args' must be a list of strings")

        env = meta.get("env", {})
        if not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values()):
            raise ConfigError(f"{where}: 'env' must map names to strings")

        resolved[name] = ToolServerConfig(
            name=name,
            command=expand_env_placeholders(command.strip(), environ, f"{where}.command"),
            args=tuple(
                expand_env_placeholders(arg, environ, f"{where}.args[{i}]")
                for i, arg in enumerate(args)
            ),
            env={
                str(key): expand_env_placeholders(value, environ, f"{where}.env.{key}")
                for key, value in env.items()
            },
        )
    return resolved


def _read_json(path: str) -> object:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e


def load_profiles(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> ProfileRegistry:
    """Load and resolve the profiles file.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = path or os.path.join(get_config_dir(), C.PROFILES_FILE)
    if not os.path.exists(path):
        raise ConfigError(f"Profile configuration not found: {path}")
    return parse_profiles(_read_json(path), environ)


def load_tool_servers(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, ToolServerConfig]:
    """Load and resolve the MCP tool-server file; a missing file means no servers."""
    path = path or os.path.join(get_config_dir(), C.MCP_CONFIG_FILE)
    if not os.path.exists(path):
        logger.info("No tool server configuration at %s", path)
        return {}
    return parse_tool_servers(_read_json(path), environ)


def load_system_prompt(path: Optional[str] = None) -> Optional[str]:
    """Read the system prompt prepended to new conversations.

    Without `path`, ~/.config/DeskAgent/system_prompt.md is used if present.
    An unreadable file is logged and means no system prompt.
    """
    explicit = bool(path)
    path = os.path.expanduser(path) if path else os.path.join(get_config_dir(), C.SYSTEM_PROMPT_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read().strip()
    except FileNotFoundError:
        if explicit:
            logger.warning("System prompt file not found: %s", path)
        return None
    except OSError as e:
        logger.warning("Failed to load system prompt from %s: %s", path, e)
        return None
    logger.debug("Loaded system prompt from %s", path)
    return text or None
