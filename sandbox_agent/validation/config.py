"""
Sandbox Agent Configuration - Configuration loading and validation.

This module provides the Config class for managing configuration from both
global (~/.sandbox_agent/config.yaml) and local (.sandbox_agent/config.yaml)
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
    """Configuration for an LLM provider."""

    api_key: Optional[str] = None
    api_base: Optional[str] = None
    enabled: bool = True


class AgentSettings(BaseModel):
    """Configuration for the orchestration loop."""

    model: str = "gpt-4o"
    max_attempts: int = Field(default=5, ge=1)
    retry_min_wait: float = 1.0
    retry_max_wait: float = 10.0
    max_iterations: Optional[int] = Field(default=None, ge=1)
    timeout: int = 120
    max_tokens: int = 4096
    temperature: float = 0.3


class DispatchSettings(BaseModel):
    """Limits applied when executing directives."""

    command_timeout: int = Field(default=30, ge=1)
    default_line_count: int = Field(default=100, ge=1)
    max_line_chars: int = Field(default=1000, ge=1)
    max_output_lines: int = Field(default=100, ge=1)


class SandboxAgentConfig(BaseModel):
    """Complete configuration schema."""

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    state_dir: str = ".sandbox_agent/state"


_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "groq": "GROQ_API_KEY",
    "together": "TOGETHER_API_KEY",
}


class Config:
    """
    Configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.sandbox_agent/config.yaml
    - Local: .sandbox_agent/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> config.merged.agent.max_attempts
        5
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".sandbox_agent"
    LOCAL_CONFIG_DIR = Path(".sandbox_agent")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[SandboxAgentConfig] = None

    @classmethod
    def load(cls, local_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            local_path: Explicit local config file; searched upwards from cwd if None.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(local_path or cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

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
    def merged(self) -> SandboxAgentConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = SandboxAgentConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    @property
    def agent(self) -> AgentSettings:
        return self.merged.agent

    @property
    def dispatch(self) -> DispatchSettings:
        return self.merged.dispatch

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

        env_var = _ENV_KEYS.get(provider_name)
        if env_var:
            return os.environ.get(env_var)

        return None

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
