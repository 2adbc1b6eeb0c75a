"""Application settings with Pydantic Settings validation.

Secrets (the PostgreSQL password) are loaded from the environment or ``.env``.
Non-sensitive configuration is loaded from ``config/main.yaml`` and any other
``config/*.yaml`` files, deep-merged and validated against JSON schemas.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.queue_constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BATCH_SIZE,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_JITTER_RATIO,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    MAX_BATCH_SIZE,
    PROCESSING_STALE_AFTER,
)
from inbound_queue.domain.retry_policy import RetryPolicy

CONFIG_DIR: Final[Path] = Path("config")

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "inbound_queue"

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load JSON Schema from ``<config_dir>/schemas/``; empty dict if missing."""
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(e))
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = CONFIG_DIR,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load and merge all YAML configs from ``config_dir``.

    ``main.yaml`` is loaded first, then every other ``*.yaml`` file in
    alphabetical order; later files override earlier ones. Each file is
    validated against the schema of the same name when one exists.
    """
    if not config_dir.is_dir():
        return {}

    yaml_files = sorted(config_dir.glob("*.yaml"), key=lambda p: (p.name != "main.yaml", p.name))
    merged_config: dict[str, Any] = {}

    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(yaml_file), error=str(e))
            continue

        try:
            validate_config_section(file_config, schema_name, str(yaml_file), config_dir)
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env file.
    Non-sensitive config is loaded from config/*.yaml with fallback to defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    # === NON-SENSITIVE CONFIG (from config/*.yaml or defaults) ===

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(
        default="data/inbound_queue.db", description="SQLite database path"
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="inbound_queue", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum number of connections in PostgreSQL pool",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum number of connections in PostgreSQL pool",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="PostgreSQL statement timeout in milliseconds",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connection timeout in seconds",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="Application name for PostgreSQL connections",
    )
    postgres_ssl_mode: str | None = Field(
        default=None,
        description="Optional SSL mode for PostgreSQL connections (e.g., require)",
    )

    # Queue configuration
    queue_max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES,
        ge=1,
        description="Failed attempts before a message is dead-lettered",
    )
    queue_initial_delay_seconds: float = Field(
        default=DEFAULT_INITIAL_DELAY_SECONDS,
        ge=0.0,
        description="Backoff delay before the first retry",
    )
    queue_max_delay_seconds: float = Field(
        default=DEFAULT_MAX_DELAY_SECONDS,
        ge=0.0,
        description="Upper bound for any backoff delay",
    )
    queue_backoff_factor: float = Field(
        default=DEFAULT_BACKOFF_FACTOR, ge=1.0, description="Exponential growth factor"
    )
    queue_jitter_ratio: float = Field(
        default=DEFAULT_JITTER_RATIO,
        ge=0.0,
        le=1.0,
        description="Total width of the multiplicative jitter band",
    )
    queue_batch_size: int = Field(
        default=DEFAULT_BATCH_SIZE,
        ge=1,
        le=MAX_BATCH_SIZE,
        description="Messages loaded per batch run",
    )
    queue_stale_after_minutes: int = Field(
        default=int(PROCESSING_STALE_AFTER.total_seconds() // 60),
        ge=1,
        description="Minutes after which a processing message is reclaimed",
    )
    queue_processor: str | None = Field(
        default=None,
        description="Processor callable as 'package.module:function'",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))
        _assign("postgres_min_connections", postgres_config.get("min_connections"))
        _assign("postgres_max_connections", postgres_config.get("max_connections"))
        _assign(
            "postgres_statement_timeout_ms", postgres_config.get("statement_timeout_ms")
        )
        _assign("postgres_ssl_mode", postgres_config.get("ssl_mode"))

        queue_config = config.get("queue") or {}
        _assign("queue_max_retries", queue_config.get("max_retries"))
        _assign("queue_initial_delay_seconds", queue_config.get("initial_delay_seconds"))
        _assign("queue_max_delay_seconds", queue_config.get("max_delay_seconds"))
        _assign("queue_backoff_factor", queue_config.get("backoff_factor"))
        _assign("queue_jitter_ratio", queue_config.get("jitter_ratio"))
        _assign("queue_batch_size", queue_config.get("batch_size"))
        _assign("queue_stale_after_minutes", queue_config.get("stale_after_minutes"))
        _assign("queue_processor", queue_config.get("processor"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))

    def retry_policy(self) -> RetryPolicy:
        """Build the immutable retry policy from queue settings."""
        return RetryPolicy(
            max_retries=self.queue_max_retries,
            initial_delay_seconds=self.queue_initial_delay_seconds,
            max_delay_seconds=self.queue_max_delay_seconds,
            backoff_factor=self.queue_backoff_factor,
            jitter_ratio=self.queue_jitter_ratio,
        )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


__all__ = [
    "Settings",
    "deep_merge",
    "get_settings",
    "load_all_configs",
    "load_schema",
    "validate_config_section",
]
