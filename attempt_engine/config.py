"""
Centralized Configuration for the Attempt Engine

This module provides the configuration system for the attempt controller.
Values come from defaults, an optional YAML/JSON config file, a ``.env``
file and ``ATTEMPT_*`` environment variables (highest priority). Nested
sections are addressed with a double underscore, for example
``ATTEMPT_STORAGE__BACKEND=redis`` or ``ATTEMPT_ATTEMPT__PASS_RATIO=0.8``.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from attempt_engine.common.logger import APP_LOGGER_NAME, configure_logger

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_ALREADY_SUBMITTED_MARKERS = [
    "already submitted",
    "đã nộp bài",
    "hết lượt làm bài",
    "no attempts remaining",
]

DEFAULT_EXPIRED_MARKERS = [
    "expired",
    "hết hạn",
    "no longer active",
    "không còn hoạt động",
]


class StorageConfig(BaseModel):
    """
    Durable attempt store configuration.

    The default ``memory`` backend lives in the process, so it only resumes
    attempts across controllers within one run; a crash or restart loses
    every in-progress attempt. Use ``redis`` to resume after a restart.
    """
    backend: str = "memory"
    staleness_window_hours: float = 6.0
    memory_max_size: int = 10000
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_key_prefix: str = "attempt_engine:"

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        """Validate storage backend name"""
        valid_backends = ['memory', 'redis']
        if v.lower() not in valid_backends:
            raise ValueError(f"Invalid storage backend: {v}. Must be one of {valid_backends}")
        return v.lower()

    @property
    def staleness_window_ms(self) -> int:
        return int(self.staleness_window_hours * 3600 * 1000)


class ClockConfig(BaseModel):
    """Countdown clock configuration"""
    tick_interval_seconds: float = Field(default=1.0, gt=0)


class AttemptConfig(BaseModel):
    """Attempt lifecycle configuration"""
    default_time_limit_minutes: int = Field(default=15, gt=0)
    default_max_attempts: int = Field(default=1, gt=0)
    pass_ratio: float = 0.7
    flush_on_unload: bool = False
    unload_warning: str = "Your attempt is still in progress. Leaving now may lose your answers."

    @field_validator('pass_ratio')
    @classmethod
    def validate_pass_ratio(cls, v):
        """Validate pass ratio is between 0 and 1"""
        if not 0 <= v <= 1:
            raise ValueError(f"Pass ratio must be between 0 and 1, got {v}")
        return v


class ApiConfig(BaseModel):
    """Assessment API configuration"""
    base_url: str = "http://localhost:3000/api"
    request_timeout_seconds: float = 30.0
    submit_timeout_seconds: Optional[float] = None
    already_submitted_markers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALREADY_SUBMITTED_MARKERS)
    )
    expired_markers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXPIRED_MARKERS)
    )


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    json_format: bool = False
    file_path: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class AppConfig(BaseSettings):
    """Main application configuration"""
    model_config = SettingsConfigDict(
        env_prefix="ATTEMPT_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "attempt-engine"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    clock: ClockConfig = Field(default_factory=ClockConfig)
    attempt: AttemptConfig = Field(default_factory=AttemptConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Config file values arrive as init kwargs and sit beneath the environment
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class ConfigLoader:
    """
    Configuration loader for the attempt engine.

    Loads configuration from:
    1. Default values
    2. Config file
    3. ``.env`` file and environment variables (highest priority)
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to config file (YAML or JSON)
        """
        self.config_path = config_path or os.environ.get("ATTEMPT_CONFIG_PATH")
        self._config = None

    def load(self) -> AppConfig:
        """
        Load configuration from all sources.

        Returns:
            Loaded configuration
        """
        if self._config is not None:
            return self._config

        file_config = {}
        if self.config_path:
            file_config = self._load_from_file(self.config_path)

        self._config = AppConfig(**file_config)
        return self._config

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            path: Path to config file

        Returns:
            Loaded configuration dictionary
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        try:
            if path.suffix.lower() in ['.yaml', '.yml']:
                with open(path, 'r', encoding='utf-8') as f:
                    return yaml.safe_load(f) or {}
            elif path.suffix.lower() == '.json':
                with open(path, 'r', encoding='utf-8') as f:
                    return json.load(f)
            else:
                logger.warning(f"Unsupported config file format: {path.suffix}")
                return {}
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            return {}


def apply_logging_config(config: AppConfig) -> logging.Logger:
    """
    Reconfigure the package logger from a loaded configuration.

    Args:
        config: Loaded configuration

    Returns:
        The reconfigured package logger
    """
    return configure_logger(
        name=APP_LOGGER_NAME,
        level=config.logging.level,
        use_json=config.logging.json_format,
        log_file=config.logging.file_path,
    )


# Global configuration instance, loaded on first use
config_loader = ConfigLoader()
config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the loaded configuration.

    Returns:
        Loaded configuration
    """
    global config
    if config is None:
        config = config_loader.load()
    return config


def reload_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Reload the configuration.

    Args:
        config_path: Path to config file

    Returns:
        Reloaded configuration
    """
    global config_loader, config
    config_loader = ConfigLoader(config_path)
    config = config_loader.load()
    return config
