"""Tests for configuration management."""

import pytest
import yaml

from openlens.validation.config import Config, ConfigError, OpenLensConfig


class TestConfig:
    """Tests for Config class."""

    def test_deep_merge(self):
        """Test deep merging of dictionaries."""
        config = Config()

        base = {
            "a": 1,
            "b": {"c": 2, "d": 3},
            "e": [1, 2, 3],
        }

        override = {
            "b": {"c": 10, "f": 5},
            "g": "new",
        }

        result = config._deep_merge(base, override)

        assert result["a"] == 1
        assert result["b"]["c"] == 10
        assert result["b"]["d"] == 3
        assert result["b"]["f"] == 5
        assert result["e"] == [1, 2, 3]
        assert result["g"] == "new"

    def test_local_overrides_global(self):
        """Local agent settings win, untouched global keys survive."""
        global_config = {
            "providers": {"openai": {"api_key": "sk-global"}},
            "agent": {"provider": "openai", "model": "gpt-4o-mini", "max_iterations": 3},
        }
        local_config = {"agent": {"model": "gpt-4o"}}

        config = Config(global_config=global_config, local_config=local_config)

        assert config.agent.provider == "openai"
        assert config.agent.model == "gpt-4o"
        assert config.agent.max_iterations == 3
        assert config.get_provider_config("openai").api_key == "sk-global"

    def test_defaults(self):
        """Test the loop defaults with no config files."""
        agent = Config().agent

        assert agent.provider == "ollama"
        assert agent.max_iterations == 5
        assert agent.generation_timeout == 20.0
        assert agent.preread_timeout == 2.0
        assert agent.preread_max_tokens == 2000
        assert Config().merged.mcp.probe_path == "/mcp"

    def test_invalid_config_raises(self):
        """Invalid values surface as ConfigError."""
        config = Config(global_config={"agent": {"max_iterations": 0}})

        with pytest.raises(ConfigError):
            config.merged

    def test_set_provider_resets_merged(self):
        config = Config()
        assert config.agent.provider == "ollama"

        config.set_provider("anthropic", "claude-sonnet")

        assert config.agent.provider == "anthropic"
        assert config.agent.model == "claude-sonnet"

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        config = Config()

        assert config.get_api_key("openai") == "sk-env"
        assert config.get_api_key("ollama") is None

    def test_config_key_beats_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        config = Config(global_config={"providers": {"anthropic": {"api_key": "sk-file"}}})

        assert config.get_api_key("anthropic") == "sk-file"

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"agent": {"provider": "openrouter"}}))

        assert Config._load_yaml(path) == {"agent": {"provider": "openrouter"}}
        assert Config._load_yaml(tmp_path / "missing.yaml") == {}

    def test_load_broken_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("agent: [unclosed")

        with pytest.raises(ConfigError):
            Config._load_yaml(path)

    def test_save_writes_global_and_local(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Config, "GLOBAL_CONFIG_DIR", tmp_path / "global")
        local_path = tmp_path / "project" / ".openlens" / "config.yaml"
        config = Config(local_path=local_path)
        config.set_provider("openai", "gpt-4o-mini")
        config.save()

        with open(local_path) as f:
            assert yaml.safe_load(f) == {"agent": {"provider": "openai", "model": "gpt-4o-mini"}}
        assert (tmp_path / "global" / "config.yaml").exists()


class TestOpenLensConfig:
    """Tests for the configuration schema."""

    def test_defaults(self):
        config = OpenLensConfig()

        assert config.providers == {}
        assert config.agent.context_limit == 8192
        assert config.mcp.timeout == 15.0

    def test_provider_entries(self):
        config = OpenLensConfig(providers={"ollama": {"api_base": "http://gpu-box:11434"}})

        assert config.providers["ollama"].api_base == "http://gpu-box:11434"
        assert config.providers["ollama"].enabled is True
