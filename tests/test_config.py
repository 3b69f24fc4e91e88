"""
Tests for configuration resolution and the profile registry.
"""
import json
import logging

import pytest

import constants as C
from config import (
    expand_env_placeholders,
    load_profiles,
    load_system_prompt,
    load_tool_servers,
    parse_profiles,
    parse_tool_servers,
)
from errors import ConfigError, ProfileNotFound
from models import BackendKind


def profiles_doc(**overrides):
    doc = {
        "default": "local",
        "profiles": {
            "local": {"backend": "ollama", "model": "llama3.1"},
            "cloud": {"backend": "openai", "model": "gpt-4o-mini", "api_key": "${env:OPENAI_KEY}"},
        },
    }
    doc.update(overrides)
    return doc


# =============================================================================
# Environment placeholders
# =============================================================================

class TestPlaceholders:

    def test_substitutes_every_placeholder(self):
        value = expand_env_placeholders("${env:A}-${env:B}", {"A": "x", "B": "y"}, "test")
        assert value == "x-y"

    def test_text_without_placeholder_is_unchanged(self):
        assert expand_env_placeholders("plain", {}, "test") == "plain"

    def test_missing_variable_is_config_error(self):
        with pytest.raises(ConfigError, match="MISSING"):
            expand_env_placeholders("${env:MISSING}", {}, "test")

    def test_empty_name_is_config_error(self):
        with pytest.raises(ConfigError):
            expand_env_placeholders("${env:}", {"": "x"}, "test")

    def test_tool_server_env_round_trip(self):
        doc = {"mcpServers": {"files": {
            "command": "npx",
            "args": ["--root", "${env:ROOT_DIR}"],
            "env": {"TOKEN": "${env:FILES_TOKEN}"},
        }}}
        servers = parse_tool_servers(doc, {"FILES_TOKEN": "s3cret", "ROOT_DIR": "/data"})
        cfg = servers["files"]
        assert cfg.env == {"TOKEN": "s3cret"}
        assert cfg.args == ("--root", "/data")

    def test_tool_server_unresolved_placeholder_is_never_empty(self):
        doc = {"mcpServers": {"files": {"command": "npx", "env": {"TOKEN": "${env:FILES_TOKEN}"}}}}
        with pytest.raises(ConfigError, match="FILES_TOKEN"):
            parse_tool_servers(doc, {})


# =============================================================================
# Profiles
# =============================================================================

class TestParseProfiles:

    def test_resolves_profiles_with_defaults(self):
        registry = parse_profiles(profiles_doc(), {"OPENAI_KEY": "sk-test"})
        local = registry.get("local")
        assert local.backend_kind is BackendKind.OLLAMA
        assert local.endpoint == C.OLLAMA_ENDPOINT_DEFAULT
        assert local.temperature == C.DEFAULT_TEMPERATURE
        assert registry.get("cloud").api_key == "sk-test"
        assert registry.get_default().name == "local"

    def test_backend_aliases(self):
        doc = profiles_doc(profiles={"local": {"backend": "claude", "model": "claude-sonnet"}})
        assert parse_profiles(doc, {}).get("local").backend_kind is BackendKind.ANTHROPIC

    def test_endpoint_trailing_slash_is_stripped(self):
        doc = profiles_doc(profiles={"local": {"backend": "ollama", "model": "m", "endpoint": "http://box:11434/"}})
        assert parse_profiles(doc, {}).get("local").endpoint == "http://box:11434"

    @pytest.mark.parametrize("doc", [
        [],
        {"profiles": {"a": {"model": "m"}}},
        {"default": "b", "profiles": {"a": {"model": "m"}}},
        {"default": "a", "profiles": {}},
        {"default": "a", "profiles": {"a": {"backend": "nope", "model": "m"}}},
        {"default": "a", "profiles": {"a": {"backend": "openai"}}},
        {"default": "a", "profiles": {"a": {"model": "m", "temperature": "hot"}}},
        {"default": "a", "profiles": {"a": {"backend": "custom", "model": "m"}}},
        {"default": "a", "profiles": {"a": {"backend": "azure", "model": "m"}}},
    ])
    def test_invalid_documents(self, doc):
        with pytest.raises(ConfigError):
            parse_profiles(doc, {})

    def test_missing_api_key_variable(self):
        with pytest.raises(ConfigError, match="OPENAI_KEY"):
            parse_profiles(profiles_doc(), {})

    def test_summarize_threshold(self):
        doc = profiles_doc(profiles={"local": {"backend": "ollama", "model": "m", "summarize_threshold": 0.5}})
        assert parse_profiles(doc, {}).get("local").summarize_threshold == 0.5
        assert parse_profiles(profiles_doc(), {"OPENAI_KEY": "k"}).get("local").summarize_threshold == C.SUMMARIZE_THRESHOLD
        doc["profiles"]["local"]["summarize_threshold"] = 1.5
        with pytest.raises(ConfigError, match="summarize_threshold"):
            parse_profiles(doc, {})


class TestProfileRegistry:

    def test_get_unknown_profile(self):
        registry = parse_profiles(profiles_doc(), {"OPENAI_KEY": "k"})
        with pytest.raises(ProfileNotFound):
            registry.get("nope")

    def test_list_is_sorted(self):
        registry = parse_profiles(profiles_doc(), {"OPENAI_KEY": "k"})
        assert registry.list() == ["cloud", "local"]

    def test_set_default(self):
        registry = parse_profiles(profiles_doc(), {"OPENAI_KEY": "k"})
        registry.set_default("cloud")
        assert registry.get_default().name == "cloud"
        with pytest.raises(ProfileNotFound):
            registry.set_default("nope")
        assert registry.default_name == "cloud"

    def test_reload_replaces_wholesale(self):
        registry = parse_profiles(profiles_doc(), {"OPENAI_KEY": "k"})
        other = parse_profiles({"default": "x", "profiles": {"x": {"model": "m"}}}, {})
        registry.reload({"x": other.get("x")}, "x")
        assert registry.list() == ["x"]
        with pytest.raises(ConfigError):
            registry.reload({"x": other.get("x")}, "y")


# =============================================================================
# Tool server documents and files
# =============================================================================

class TestToolServers:

    def test_bare_mapping_accepted(self):
        servers = parse_tool_servers({"echo": {"command": "python3", "args": ["echo.py"]}}, {})
        assert servers["echo"].command == "python3"
        assert servers["echo"].args == ("echo.py",)

    def test_empty_mcp_servers(self):
        assert parse_tool_servers({"mcpServers": {}}, {}) == {}

    @pytest.mark.parametrize("entry", [
        "npx",
        {"args": []},
        {"command": "npx", "args": "x"},
        {"command": "npx", "env": {"A": 1}},
    ])
    def test_invalid_entries(self, entry):
        with pytest.raises(ConfigError):
            parse_tool_servers({"mcpServers": {"s": entry}}, {})

    def test_missing_files(self, tmp_path):
        with pytest.raises(ConfigError):
            load_profiles(str(tmp_path / "profiles.json"))
        assert load_tool_servers(str(tmp_path / "mcp.json")) == {}

    def test_invalid_json_file(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_profiles(str(path))

    def test_load_files(self, tmp_path):
        profiles = tmp_path / "profiles.json"
        profiles.write_text(json.dumps(profiles_doc()), encoding="utf-8")
        mcp = tmp_path / "mcp.json"
        mcp.write_text(json.dumps({"mcpServers": {"e": {"command": "python3"}}}), encoding="utf-8")
        registry = load_profiles(str(profiles), {"OPENAI_KEY": "k"})
        assert registry.default_name == "local"
        assert list(load_tool_servers(str(mcp), {})) == ["e"]


# =============================================================================
# System prompt
# =============================================================================

class TestSystemPrompt:

    def test_prompt_file_from_profiles_document(self, tmp_path):
        doc = profiles_doc(system_prompt_file="${env:PROMPTS}/system.md")
        registry = parse_profiles(doc, {"OPENAI_KEY": "k", "PROMPTS": str(tmp_path)})
        assert registry.system_prompt_file == f"{tmp_path}/system.md"

    def test_prompt_file_must_be_text(self):
        with pytest.raises(ConfigError):
            parse_profiles(profiles_doc(system_prompt_file=3), {"OPENAI_KEY": "k"})

    def test_load_system_prompt(self, tmp_path):
        path = tmp_path / "system.md"
        path.write_text("  You are a careful assistant.\n\n", encoding="utf-8")
        assert load_system_prompt(str(path)) == "You are a careful assistant."

    def test_missing_or_empty_file_means_no_prompt(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="config"):
            assert load_system_prompt(str(tmp_path / "absent.md")) is None
        assert any("not found" in r.getMessage() for r in caplog.records)
        empty = tmp_path / "empty.md"
        empty.write_text("\n", encoding="utf-8")
        assert load_system_prompt(str(empty)) is None
