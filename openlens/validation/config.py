"""
OpenLens Configuration - Configuration loading and validation.

This module provides the Config class for managing OpenLens configuration
from both global (~/.openlens/config.yaml) and local (.openlens/config.yaml)
sources.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class ProviderConfig(BaseModel):
    """Configuration for an LLM backend."""

    api_key: Optional[str] = None
    api_base: Optional[str] = None
    default_model: Optional[str] = None
    enabled: bool = True


class AgentConfig(BaseModel):
    """Configuration for the orchestration loop."""

    provider: str = "ollama"
    model: str = ""
    max_tokens: int = 1024
    timeout: float = 120
    max_iterations: int = Field(default=5, ge=1)
    generation_timeout: float = 20.0
    preread_timeout: float = 2.0
    tool_timeout: float = 30.0
    preread_max_tokens: int = 2000
    context_limit: int = 8192


class McpConfig(BaseModel):
    """Configuration for remote MCP tool servers."""

    probe_path: str = "/mcp"
    timeout: float = 15.0


class OpenLensConfig(BaseModel):
    """Complete OpenLens configuration schema."""

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)


class Config:
    """
    OpenLens configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.openlens/config.yaml
    - Local: .openlens/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> config.merged.agent.provider
        'ollama'
        >>> config.set_provider("openai", "gpt-4o-mini")
        >>> config.save()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".openlens"
    LOCAL_CONFIG_DIR = Path(".openlens")

    ENV_KEYS = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "openrouter": "OPENROUTER_API_KEY",
    }

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        local_path: Optional[Path] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            local_path: Where the local configuration was read from.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._local_path = local_path
        self._merged: Optional[OpenLensConfig] = None

    @classmethod
    def load(cls) -> "Config":
        """
        Load configuration from default locations.

        Returns:
            Config instance with loaded configuration.
        """
        local_path = cls._find_local_config()
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(local_path)

        return cls(global_config=global_config, local_config=local_config, local_path=local_path)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> OpenLensConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = OpenLensConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    @property
    def agent(self) -> AgentConfig:
        return self.merged.agent

    def set_provider(self, provider: str, model: str, global_: bool = False) -> None:
        """
        Select the backend and model used by the agent.

        Args:
            provider: Backend name (ollama, openai, anthropic, openrouter).
            model: Model identifier understood by that backend.
            global_: Whether to set globally or locally.
        """
        config = self._global_config if global_ else self._local_config
        agent = config.setdefault("agent", {})
        agent["provider"] = provider
        agent["model"] = model
        self._merged = None

    def get_provider_config(self, provider_name: str) -> Optional[ProviderConfig]:
        """Get configuration for a specific provider."""
        return self.merged.providers.get(provider_name)

    def get_api_key(self, provider_name: str) -> Optional[str]:
        """
        Get API key for a provider.

        Checks config first, then environment variables.
        """
        provider = self.get_provider_config(provider_name)
        if provider and provider.api_key:
            return provider.api_key

        env_var = self.ENV_KEYS.get(provider_name)
        if env_var:
            return os.environ.get(env_var)

        return None

    def save(self) -> None:
        """Save configuration to files."""
        self._save_yaml(self.GLOBAL_CONFIG_DIR / "config.yaml", self._global_config)

        if self._local_path:
            self._save_yaml(self._local_path, self._local_config)

    def _save_yaml(self, path: Path, data: Dict[str, Any]) -> None:
        """Save data to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
