"""
Sandbox Agent validation module.

This module provides configuration validation and schema enforcement.
"""

from sandbox_agent.validation.config import Config, ConfigError

__all__ = ["Config", "ConfigError"]
