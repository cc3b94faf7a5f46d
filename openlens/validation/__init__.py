"""
OpenLens validation module.

This module provides configuration loading and validation.
"""

from openlens.validation.config import AgentConfig, Config, ConfigError, OpenLensConfig

__all__ = ["AgentConfig", "Config", "ConfigError", "OpenLensConfig"]
