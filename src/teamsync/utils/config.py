"""
Configuration loader for teamsync.

This module provides configuration management with:
- Multiple configuration sources (YAML/JSON files, dicts, env vars)
- Schema validation through pydantic
- Type coercion of environment values
- Priority-ordered deep merging
"""

import os
import json
import yaml
import asyncio
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("teamsync.config")

ENV_PREFIX = "TEAMSYNC_"
ENV_NESTING = "__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class BackendConfig(BaseModel):
    """Managed backend endpoints and credentials."""
    url: str = "http://localhost:54321"
    api_key: str = ""
    access_token: Optional[str] = None
    schema_name: str = "public"
    request_timeout: float = 30.0

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Require an http(s) base URL without trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Backend URL must be http(s): {v}")
        return v.rstrip("/")


class RealtimeConfig(BaseModel):
    """Change channel configuration."""
    enabled: bool = True
    heartbeat_interval: float = 25.0
    join_timeout: float = 10.0
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    max_reconnect_attempts: int = 10
    poll_interval: float = 15.0

    @field_validator('heartbeat_interval', 'join_timeout', 'reconnect_delay', 'poll_interval')
    @classmethod
    def validate_positive(cls, v):
        """Intervals must be positive."""
        if v <= 0:
            raise ValueError("Interval must be positive")
        return v


class StorageConfig(BaseModel):
    """Object storage configuration."""
    attachments_bucket: str = "task-attachments"
    max_upload_bytes: int = 5 * 1024 * 1024  # 5MB


class WorkspaceConfig(BaseModel):
    """Current workspace and user scope."""
    workspace_id: Optional[str] = None
    user_id: Optional[str] = None


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".teamsync" / "logs")
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class TeamSyncConfig(BaseModel):
    """Main teamsync configuration."""
    app_name: str = "teamsync"
    debug: bool = False

    backend: BackendConfig = Field(default_factory=BackendConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration loader.

        Args:
            environ: Environment mapping (defaults to os.environ)
        """
        self._sources: List[ConfigSource] = []
        self._config: Optional[TeamSyncConfig] = None
        self._environ = environ
        self._lock = asyncio.Lock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Ascending, so higher priorities are merged last and win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> TeamSyncConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                data = self._load_source(source)
                merged_data = self._deep_merge(merged_data, data)

            env_data = self._load_env_vars()
            merged_data = self._deep_merge(merged_data, env_data)

            try:
                self._config = TeamSyncConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")

                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))
            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text(encoding="utf-8")

        try:
            if source.source_type == "json":
                data = json.loads(content)
            elif source.source_type == "yaml":
                data = yaml.safe_load(content) or {}
            else:
                raise ConfigurationError(f"Unknown source type: {source.source_type}")
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot parse {source.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {source.path} must be a mapping")
        return data

    def _load_env_vars(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        TEAMSYNC_BACKEND__API_KEY=... becomes {"backend": {"api_key": ...}}.
        """
        environ = os.environ if self._environ is None else self._environ
        result: Dict[str, Any] = {}

        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = result

            for part in parts[:-1]:
                current = current.setdefault(part, {})
                if not isinstance(current, dict):
                    raise ConfigurationError(f"Conflicting environment key: {key}")

            current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        if value.startswith("~"):
            return str(Path(value).expanduser())

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> TeamSyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


# Global configuration instance
_config_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get global configuration loader."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> TeamSyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge

    Returns:
        Loaded configuration
    """
    loader = get_config_loader()

    default_paths = [
        Path.home() / ".teamsync" / "config.yaml",
        Path.home() / ".teamsync" / "config.json",
        Path("./teamsync.yaml"),
        Path("./teamsync.json"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


def get_config() -> TeamSyncConfig:
    """Get current configuration."""
    return get_config_loader().get_config()


__all__ = [
    'TeamSyncConfig',
    'BackendConfig',
    'RealtimeConfig',
    'StorageConfig',
    'WorkspaceConfig',
    'LoggingConfig',
    'ConfigLoader',
    'get_config_loader',
    'load_config',
    'get_config',
]
