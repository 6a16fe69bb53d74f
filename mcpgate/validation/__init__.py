"""
mcpgate validation module.

This module provides configuration validation and schema enforcement.
"""

from mcpgate.validation.config import Config, ConfigError, GatewayFileConfig, GatewaySettings

__all__ = ["Config", "ConfigError", "GatewayFileConfig", "GatewaySettings"]
