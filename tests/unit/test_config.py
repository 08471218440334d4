"""Unit tests for configuration loading and provider launch specs."""

import json

import pytest
import yaml

from dab.lib.config import (
    ConfigurationError,
    ConfigurationManager,
    DABConfig,
    LLMConfig,
    load_provider_specs,
)


ENV_OVERRIDES = ["DAB_LOG_LEVEL", "DAB_DEBUG", "LLM_PROVIDER", "SSE_HOST", "SSE_PORT", "OTEL_EXPORTER_OTLP_ENDPOINT"]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDABConfig:
    """Test configuration defaults and validation."""

    def test_defaults(self):
        config = DABConfig()

        assert config.llm.provider == "gemini"
        assert config.llm.active().credential_prefix == "GEMINI"
        assert config.streaming.base_url == "http://localhost:3001"
        assert config.streaming.tools == ["network-ping", "network-traceroute"]
        assert config.streaming.correlation_argument == "sessionId"
        assert config.session.max_workflow_iterations == 10
        assert config.observability.enabled is False

    def test_unknown_llm_provider_rejected(self):
        with pytest.raises(ValueError):
            LLMConfig(provider="anthropic")

    def test_missing_provider_settings(self):
        config = LLMConfig(provider="groq", providers={})
        with pytest.raises(ConfigurationError):
            config.active()


class TestConfigurationManager:
    """Test loading configuration files."""

    def test_default_file_created(self, tmp_path, clean_env):
        path = tmp_path / "config" / "config.yaml"

        config = ConfigurationManager(str(path)).load_config()

        assert path.exists()
        assert config.config_file_path == str(path)
        assert config.session.max_workflow_iterations == 10

    def test_yaml_values_loaded(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "llm": {"provider": "groq", "temperature": 0.2},
            "streaming": {"port": 4000},
            "session": {"max_workflow_iterations": 3},
        }))

        config = ConfigurationManager(str(path)).load_config()

        assert config.llm.provider == "groq"
        assert config.llm.active().model == "openai/gpt-oss-20b"
        assert config.streaming.port == 4000
        assert config.session.max_workflow_iterations == 3

    def test_environment_overrides(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"llm": {"provider": "gemini"}}))
        clean_env.setenv("LLM_PROVIDER", "groq")
        clean_env.setenv("SSE_PORT", "3100")
        clean_env.setenv("DAB_DEBUG", "true")

        config = ConfigurationManager(str(path)).load_config()

        assert config.llm.provider == "groq"
        assert config.streaming.port == 3100
        assert config.debug is True

    def test_invalid_values_raise(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"streaming": {"port": 0}}))

        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path)).load_config()

    def test_invalid_yaml_raises(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("llm: [unclosed")

        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path)).load_config()

    def test_validate_warns_on_missing_servers_file(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"servers_config": str(tmp_path / "missing.json")}))
        manager = ConfigurationManager(str(path))
        manager.load_config()

        warnings = manager.validate_config()

        assert any("does not exist" in warning for warning in warnings)


class TestLoadProviderSpecs:
    """Test servers_config.json parsing."""

    def test_specs_loaded_in_order(self, tmp_path):
        path = tmp_path / "servers_config.json"
        path.write_text(json.dumps({
            "mcpServers": {
                "network-diagnostics": {"command": "dab", "args": ["provider"]},
                "other": {"command": "node", "args": ["server.js"], "env": {"DEBUG": "1"}},
            }
        }))

        specs = load_provider_specs(str(path))

        assert [spec.id for spec in specs] == ["network-diagnostics", "other"]
        assert specs[0].args == ["provider"]
        assert specs[1].env == {"DEBUG": "1"}

    def test_missing_command_rejected(self, tmp_path):
        path = tmp_path / "servers_config.json"
        path.write_text(json.dumps({"mcpServers": {"broken": {"args": []}}}))

        with pytest.raises(ConfigurationError):
            load_provider_specs(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_provider_specs(str(tmp_path / "nope.json"))
