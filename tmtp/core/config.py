"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Configuration management for TMTP.

This module provides a central location for all configuration settings in TMTP.
It handles environment variables, default values, and validation of configuration
parameters for logging, the database connection and the import pipeline.
"""

import logging
import os
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator

# Configure logging
logger = logging.getLogger(__name__)


def _env_bool(value: str | None) -> bool:
    return str(value).lower() in ("1", "true", "yes", "on")


class BaseConfig(BaseModel):
    """Base configuration class with common functionality."""

    # Class variable to store environment variable prefixes
    ENV_PREFIX: ClassVar[str] = "TMTP_"

    @classmethod
    def from_env(cls, **overrides) -> "BaseConfig":
        """
        Create a configuration instance from environment variables.

        Args:
        ----
            **overrides: Key-value pairs that override environment variables

        Returns:
        -------
            An instance of the configuration class

        """
        raise NotImplementedError("Subclasses must implement from_env method")

    @classmethod
    def get_env_var(cls, key: str, default: Any = None) -> Any:
        """
        Get an environment variable with the class prefix.

        Args:
        ----
            key: Key name without prefix
            default: Default value if environment variable is not found

        Returns:
        -------
            The environment variable value or default

        """
        env_key = f"{cls.ENV_PREFIX}{key.upper()}"
        return os.environ.get(env_key, default)


class LoggingConfig(BaseConfig):
    """Configuration for logging settings."""

    level: str = Field(
        default_factory=lambda: os.environ.get("TMTP_LOG_LEVEL", "INFO"),
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    format: str = Field(
        default="%(message)s",
        description="Logging format string",
    )
    date_format: str = Field(
        default="[%X]",
        description="Date format for logging timestamps",
    )
    use_rich: bool = Field(
        default=True,
        description="Whether to use rich for logging formatting",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to the log file (None for console-only logging)",
    )
    json_format: bool = Field(
        default=False,
        description="Whether to use JSON format for logs",
    )
    include_correlation_id: bool = Field(
        default=True,
        description="Whether to include correlation IDs in logs",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, value):
        """Validate that the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        value = value.upper()
        if value not in valid_levels:
            logger.warning(f"Invalid log level '{value}', defaulting to INFO")
            return "INFO"
        return value

    @classmethod
    def from_env(cls, **overrides) -> "LoggingConfig":
        """Create a logging configuration from environment variables."""
        config = {
            "level": cls.get_env_var("LOG_LEVEL", "INFO"),
            "format": cls.get_env_var("LOG_FORMAT", "%(message)s"),
            "date_format": cls.get_env_var("LOG_DATE_FORMAT", "[%X]"),
            "use_rich": _env_bool(cls.get_env_var("LOG_USE_RICH", "true")),
            "log_file": cls.get_env_var("LOG_FILE", None),
            "json_format": _env_bool(cls.get_env_var("LOG_JSON", "false")),
            "include_correlation_id": _env_bool(cls.get_env_var("LOG_CORRELATION_ID", "true")),
        }

        # Override with any directly provided values
        config.update(overrides)

        return cls(**config)

    def get_log_level_int(self) -> int:
        """Get the numeric logging level."""
        return getattr(logging, self.level)

    def configure_logging(self, debug: bool = False) -> None:
        """
        Configure logging based on the settings.

        Args:
        ----
            debug: Whether to force debug mode

        """
        from tmtp.core.logging import configure_logging as configure_contextual_logging

        configure_contextual_logging(
            level=logging.DEBUG if debug else self.get_log_level_int(),
            log_file=self.log_file,
            json_format=self.json_format,
            include_timestamp=True,
            use_rich=self.use_rich,
            debug=debug,
        )


class DatabaseConfig(BaseConfig):
    """Configuration for the database holding staging tables and the target schema."""

    db_type: str = Field(
        default="sqlite",
        description="Database type (sqlite, postgresql)",
    )
    db_path: str | None = Field(
        default=None,
        description="Path to SQLite database file, or ':memory:'",
    )
    host: str | None = Field(default=None, description="Database host (PostgreSQL)")
    port: int | None = Field(default=None, description="Database port (PostgreSQL)")
    username: str | None = Field(default=None, description="Database username (PostgreSQL)")
    password: str | None = Field(default=None, description="Database password (PostgreSQL)")
    database: str | None = Field(default=None, description="Database name (PostgreSQL)")
    pool_size: int = Field(
        default=5,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        description="Maximum number of connections to overflow",
    )
    echo: bool = Field(
        default=False,
        description="Whether to echo SQL statements",
    )

    @model_validator(mode="after")
    def validate_db_config(self):
        """Validate database configuration based on the database type."""
        self.db_type = self.db_type.lower()
        if self.db_type == "sqlite" and not self.db_path:
            self.db_path = os.path.join(os.getcwd(), "tmtp_data.db")
        elif self.db_type == "postgresql":
            if not all([self.host, self.username, self.database]):
                raise ValueError("Host, username, and database name are required for PostgreSQL")
        elif self.db_type not in ["sqlite", "postgresql"]:
            raise ValueError(f"Unsupported database type: {self.db_type}")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "DatabaseConfig":
        """Create a database configuration from environment variables."""
        db_type = cls.get_env_var("DB_TYPE", "sqlite").lower()

        config = {
            "db_type": db_type,
            "pool_size": int(cls.get_env_var("DB_POOL_SIZE", "5")),
            "max_overflow": int(cls.get_env_var("DB_MAX_OVERFLOW", "10")),
            "echo": _env_bool(cls.get_env_var("DB_ECHO", "false")),
        }

        if db_type == "sqlite":
            config["db_path"] = cls.get_env_var("DB_PATH")
        elif db_type == "postgresql":
            config.update(
                {
                    "host": cls.get_env_var("PG_HOST"),
                    "port": int(cls.get_env_var("PG_PORT", "5432")),
                    "username": cls.get_env_var("PG_USER"),
                    "password": cls.get_env_var("PG_PASSWORD"),
                    "database": cls.get_env_var("PG_DATABASE"),
                },
            )

        config.update(overrides)

        return cls(**config)

    def get_connection_string(self) -> str:
        """
        Get the database connection string based on the configuration.

        Returns
        -------
            Database connection string for SQLAlchemy

        """
        if self.db_type == "sqlite":
            if self.db_path == ":memory:":
                return "sqlite://"
            db_path = Path(self.db_path) if self.db_path else Path("tmtp_data.db")
            # Ensure parent directory exists
            db_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{db_path}"
        if self.db_type == "postgresql":
            port = self.port or 5432
            password_part = f":{self.password}" if self.password else ""
            return f"postgresql://{self.username}{password_part}@{self.host}:{port}/{self.database}"
        raise ValueError(f"Unsupported database type: {self.db_type}")


class ImportConfig(BaseConfig):
    """
    Tuning knobs for the analyze and import phases.

    Chunk sizes bound how many source rows share one database transaction;
    timeouts bound how long that transaction may run.
    """

    staging_batch_size: int = Field(default=1000, gt=0, description="Rows per staging insert")
    sample_row_limit: int = Field(default=5, ge=0, description="Sample rows kept per dataset")
    progress_update_interval: int = Field(
        default=500, gt=0, description="Items processed between progress writes"
    )
    progress_min_interval_ms: int = Field(
        default=2000, ge=0, description="Minimum time between throttled progress writes"
    )
    default_chunk_size: int = Field(default=250, gt=0)
    repository_case_chunk_size: int = Field(default=500, gt=0)
    test_run_case_chunk_size: int = Field(default=500, gt=0)
    automation_case_chunk_size: int = Field(default=500, gt=0)
    automation_run_chunk_size: int = Field(default=500, gt=0)
    automation_run_test_chunk_size: int = Field(default=2000, gt=0)
    automation_tag_chunk_size: int = Field(default=500, gt=0)
    test_run_result_chunk_size: int = Field(default=2000, gt=0)
    step_result_chunk_size: int = Field(default=500, gt=0)
    issue_relationship_chunk_size: int = Field(default=1000, gt=0)
    transaction_timeout_ms: int = Field(default=15 * 60 * 1000, gt=0)
    automation_transaction_timeout_ms: int = Field(default=45 * 60 * 1000, gt=0)
    folder_transaction_timeout_ms: int = Field(default=2 * 60 * 1000, gt=0)
    transaction_max_wait_ms: int = Field(default=30 * 1000, gt=0)
    temp_dir: str | None = Field(
        default=None, description="Directory for downloaded bundles (system temp if unset)"
    )
    download_timeout: float = Field(default=300.0, gt=0, description="HTTP download timeout")

    # Environment variable name for each tunable field
    ENV_KEYS: ClassVar[dict[str, str]] = {
        "staging_batch_size": "STAGING_BATCH_SIZE",
        "sample_row_limit": "SAMPLE_ROW_LIMIT",
        "progress_update_interval": "PROGRESS_UPDATE_INTERVAL",
        "progress_min_interval_ms": "PROGRESS_MIN_INTERVAL_MS",
        "default_chunk_size": "DEFAULT_CHUNK_SIZE",
        "repository_case_chunk_size": "REPOSITORY_CASE_CHUNK_SIZE",
        "test_run_case_chunk_size": "TEST_RUN_CASE_CHUNK_SIZE",
        "automation_case_chunk_size": "AUTOMATION_CASE_CHUNK_SIZE",
        "automation_run_chunk_size": "AUTOMATION_RUN_CHUNK_SIZE",
        "automation_run_test_chunk_size": "AUTOMATION_RUN_TEST_CHUNK_SIZE",
        "automation_tag_chunk_size": "AUTOMATION_RUN_TAG_CHUNK_SIZE",
        "test_run_result_chunk_size": "TEST_RUN_RESULT_CHUNK_SIZE",
        "step_result_chunk_size": "STEP_RESULT_CHUNK_SIZE",
        "issue_relationship_chunk_size": "ISSUE_RELATIONSHIP_CHUNK_SIZE",
        "transaction_timeout_ms": "IMPORT_TRANSACTION_TIMEOUT_MS",
        "automation_transaction_timeout_ms": "AUTOMATION_TRANSACTION_TIMEOUT_MS",
        "folder_transaction_timeout_ms": "FOLDER_TRANSACTION_TIMEOUT_MS",
        "transaction_max_wait_ms": "IMPORT_TRANSACTION_MAX_WAIT_MS",
        "temp_dir": "TEMP_DIR",
        "download_timeout": "DOWNLOAD_TIMEOUT",
    }

    @classmethod
    def from_env(cls, **overrides) -> "ImportConfig":
        """Create an import configuration from environment variables."""
        config = {}
        for field_name, env_key in cls.ENV_KEYS.items():
            value = cls.get_env_var(env_key)
            if value is not None and value != "":
                config[field_name] = value

        config.update(overrides)

        return cls(**config)

    def chunk_size_for(self, entity: str) -> int:
        """Return the transaction chunk size for an entity type."""
        sizes = {
            "repository_cases": self.repository_case_chunk_size,
            "test_run_cases": self.test_run_case_chunk_size,
            "automation_cases": self.automation_case_chunk_size,
            "automation_runs": self.automation_run_chunk_size,
            "automation_run_tests": self.automation_run_test_chunk_size,
            "automation_run_tags": self.automation_tag_chunk_size,
            "test_run_results": self.test_run_result_chunk_size,
            "test_run_step_results": self.step_result_chunk_size,
            "repository_case_issues": self.issue_relationship_chunk_size,
            "run_issues": self.issue_relationship_chunk_size,
            "run_result_issues": self.issue_relationship_chunk_size,
            "session_issues": self.issue_relationship_chunk_size,
            "session_result_issues": self.issue_relationship_chunk_size,
        }
        return sizes.get(entity, self.default_chunk_size)

    def timeout_for(self, entity: str) -> int:
        """Return the transaction timeout in milliseconds for an entity type."""
        if entity.startswith("automation_"):
            return self.automation_transaction_timeout_ms
        if entity == "repository_folders":
            return self.folder_transaction_timeout_ms
        return self.transaction_timeout_ms


class AppConfig(BaseConfig):
    """Main application configuration that aggregates all other configurations."""

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig,
        description="Database configuration",
    )
    importer: ImportConfig = Field(
        default_factory=ImportConfig,
        description="Import pipeline configuration",
    )
    debug: bool = Field(
        default=False,
        description="Debug mode flag",
    )
    app_name: str = Field(
        default="TMTP",
        description="Application name",
    )
    app_version: str = Field(
        default="0.0.0",
        description="Application version",
    )

    NESTED: ClassVar[dict[str, type[BaseConfig]]] = {
        "logging": LoggingConfig,
        "database": DatabaseConfig,
        "importer": ImportConfig,
    }

    @classmethod
    def from_env(cls, **overrides) -> "AppConfig":
        """Create an application configuration from environment variables."""
        config = {
            "logging": LoggingConfig.from_env(),
            "database": DatabaseConfig.from_env(),
            "importer": ImportConfig.from_env(),
            "debug": _env_bool(cls.get_env_var("DEBUG", "false")),
            "app_name": cls.get_env_var("APP_NAME", "TMTP"),
            "app_version": cls.get_env_var("APP_VERSION", "0.0.0"),
        }

        for key, value in overrides.items():
            if key in cls.NESTED and value is not None:
                # For nested configs, accept either raw dict or instantiated objects
                config[key] = cls.NESTED[key](**value) if isinstance(value, dict) else value
            else:
                config[key] = value

        return cls(**config)

    def configure_logging(self) -> None:
        """Configure logging based on the settings."""
        self.logging.configure_logging(debug=self.debug)


# Global app configuration
_app_config = None


def get_app_config() -> AppConfig:
    """
    Get the global application configuration.

    Returns
    -------
        The application configuration instance

    """
    global _app_config
    if _app_config is None:
        _app_config = AppConfig.from_env()
    return _app_config


def init_app_config(config: AppConfig | None = None, **kwargs) -> AppConfig:
    """
    Initialize the global application configuration.

    Args:
    ----
        config: An existing AppConfig instance
        **kwargs: Key-value pairs for creating a new AppConfig

    Returns:
    -------
        The application configuration instance

    """
    global _app_config
    _app_config = config if config is not None else AppConfig.from_env(**kwargs)
    return _app_config


def configure_logging(debug: bool = False) -> None:
    """
    Configure logging with optional debug mode.

    Args:
    ----
        debug: Whether to force debug mode

    """
    from tmtp.core.logging import configure_logging as configure_contextual_logging

    configure_contextual_logging(
        level="DEBUG" if debug else "INFO",
        use_rich=True,
        include_timestamp=True,
        debug=debug,
    )
