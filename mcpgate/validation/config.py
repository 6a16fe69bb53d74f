"""
mcpgate Configuration - Configuration loading and validation.

This module provides the Config class for managing gateway configuration
from both global (~/.mcpgate/config.yaml) and local (.mcpgate/config.yaml)
sources.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from mcpgate.gateway.schema import ServerConfig


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class GatewaySettings(BaseModel):
    """Settings for the connection manager and tool executor."""

    proxy_url: str = "http://127.0.0.1:8765"
    connect_timeout: float = 30.0
    call_timeout: float = 60.0
    max_result_chars: int = 0  # 0 keeps full tool output


class ProxySettings(BaseModel):
    """Settings for the stdio proxy process."""

    host: str = "127.0.0.1"
    port: int = 8765
    request_timeout: float = 30.0


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: Optional[str] = None
    format: Optional[str] = None


class GatewayFileConfig(BaseModel):
    """Complete mcpgate configuration schema."""

    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    servers: List[ServerConfig] = Field(default_factory=list)


class Config:
    """
    mcpgate configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.mcpgate/config.yaml
    - Local: .mcpgate/config.yaml (project-specific)

    Local configuration overrides global configuration. Lists (such as
    ``servers``) are replaced, not concatenated.

    Example:
        >>> config = Config.load()
        >>> servers = config.enabled_servers()
        >>> config.merged.gateway.call_timeout
        60.0
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".mcpgate"
    LOCAL_CONFIG_DIR = Path(".mcpgate")
    PROXY_URL_ENV = "MCPGATE_PROXY_URL"

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[GatewayFileConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            path: Explicit config file; replaces the local lookup when given.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(path if path is not None else cls._find_local_config())

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
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / ".mcpgate" / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        merged = self._deep_merge(self._global_config.copy(), self._local_config)

        proxy_url = os.environ.get(self.PROXY_URL_ENV)
        if proxy_url:
            merged = self._deep_merge(merged, {"gateway": {"proxy_url": proxy_url}})
        return merged

    @property
    def merged(self) -> GatewayFileConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                merged_dict = self.get_merged_config()
                self._merged = GatewayFileConfig(**merged_dict)
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def get_server(self, server_id: str) -> Optional[ServerConfig]:
        """Get a server definition by id."""
        for server in self.merged.servers:
            if server.id == server_id:
                return server
        return None

    def enabled_servers(self) -> List[ServerConfig]:
        """Server definitions that are switched on."""
        return [s for s in self.merged.servers if s.enabled]

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
