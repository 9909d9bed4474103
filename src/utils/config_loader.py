"""Configuration loader for the sync engine."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from src.models.config import AppConfig

log = structlog.stdlib.get_logger()


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates engine configuration from YAML files and environment variables."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize the ConfigLoader.

        Args:
            config_dir: Directory holding <env>.yaml files. Defaults to the
                repository's config/ directory.
        """
        self.env_var_pattern = re.compile(r"\$\{([^}]+)\}")
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from a YAML file.

        Values from the file are validated into AppConfig; SYNC_* environment
        variables fill in whatever the file leaves out.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                config/<SYNC_ENV>.yaml or config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info(
            "configuration_loaded_successfully",
            max_concurrency=app_config.engine.max_concurrency,
            default_strategy=app_config.conflicts.default_strategy.value,
            cache_enabled=app_config.cache.enabled,
        )
        return app_config

    def _get_default_config_path(self) -> str:
        """Get the configuration file path for the current SYNC_ENV."""
        env = os.getenv("SYNC_ENV", "default")
        config_file = self.config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = self.config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set SYNC_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Load YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file {config_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path, sections=sorted(config_dict))
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ${VAR_NAME} references with environment values.

        Raises:
            ConfigurationError: If a referenced environment variable is not set
        """
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        for var_name in self.env_var_pattern.findall(value):
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigurationError(
                    f"Required environment variable not set: {var_name}. "
                    f"Please set {var_name} in your environment or .env file."
                )
            value = value.replace(f"${{{var_name}}}", env_value)

        return value

    def validate_config(
        self, config: AppConfig, entity_types: Optional[list[str]] = None
    ) -> list[str]:
        """Check for settings that are valid but likely unintended.

        Args:
            config: Application configuration to validate
            entity_types: Registered entity types, to check strategy overrides against

        Returns:
            List of warning messages (empty if no warnings)
        """
        warnings = []

        if config.engine.batch_size < config.engine.max_concurrency:
            warnings.append(
                f"batch_size ({config.engine.batch_size}) is smaller than "
                f"max_concurrency ({config.engine.max_concurrency})"
            )

        if entity_types is not None:
            unknown = sorted(set(config.conflicts.strategies) - set(entity_types))
            if unknown:
                warnings.append(
                    f"conflict strategy overrides for unregistered entity types: {unknown}"
                )

        cache = config.cache
        if cache.enabled and cache.device_ttl_seconds > cache.default_ttl_seconds:
            warnings.append(
                f"cache.device_ttl_seconds ({config.cache.device_ttl_seconds}) exceeds "
                f"cache.default_ttl_seconds ({config.cache.default_ttl_seconds})"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
