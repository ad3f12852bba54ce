"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from partition_archiver.exceptions import ConfigurationError
from utils import validate_identifier


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2) if match.group(2) is not None else None
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a nested structure."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    name: str = Field(description="Database name")
    host: str = Field(description="Database host")
    port: int = Field(default=5432, description="Database port", gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    connection_pool_size: int = Field(
        default=5,
        description="Connection pool size (lock session, date transaction and trace channel "
        "each need their own connection)",
        ge=3,
        le=50,
    )

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Validate that exactly one password source is provided."""
        if not self.password_env and not self.password:
            raise ValueError(
                "Either 'password_env' or 'password' must be provided. "
                "Use 'password_env' for production (recommended) or 'password' for development only."
            )
        if self.password_env and self.password:
            raise ValueError(
                "Cannot specify both 'password_env' and 'password'. "
                "Use 'password_env' for production (recommended) or 'password' for development only."
            )
        return self

    def get_password(self) -> str:
        """Get password from environment variable or config file.

        Returns:
            Database password

        Raises:
            ValueError: If password cannot be retrieved
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password
        elif self.password:
            import warnings

            warnings.warn(
                f"Using password from config file for database '{self.name}'. "
                f"This is not recommended for production. Use 'password_env' instead.",
                UserWarning,
                stacklevel=2,
            )
            return self.password
        else:
            raise ValueError("No password source configured")


class ControlTablesConfig(BaseModel):
    """Names of the orchestrator's own control tables."""

    schema_name: str = Field(default="public", description="Schema of the control tables", alias="schema")
    config_table: str = Field(
        default="partition_archive_config",
        description="Archival configuration table (source/archive/staging pairs)",
    )
    execution_log_table: str = Field(
        default="partition_archive_execution_log",
        description="Execution log table (one row per archived partition-date)",
    )
    trace_table: str = Field(
        default="partition_archive_trace",
        description="Trace event table (out-of-band step log)",
    )

    model_config = {"populate_by_name": True}

    @field_validator("schema_name", "config_table", "execution_log_table", "trace_table")
    @classmethod
    def validate_names(cls, v: str) -> str:
        """Reject names that are not plain SQL identifiers."""
        return validate_identifier(v)


class DefaultsConfig(BaseModel):
    """Global orchestration defaults."""

    default_schema: str = Field(
        default="public",
        description="Schema used for table names given without a schema prefix",
    )
    statement_timeout_seconds: int = Field(
        default=1800,
        description="Statement timeout for each partition-date transaction",
        gt=0,
    )
    lock_timeout_seconds: int = Field(
        default=30,
        description="Maximum wait for the structural lock on a partition being exchanged",
        gt=0,
    )
    lock_enabled: bool = Field(
        default=True,
        description="Serialize runs per (source, archive) pair with an advisory lock",
    )
    rebuild_indexes_after_exchange: bool = Field(
        default=False,
        description="Rebuild unusable archive indexes after every exchange "
        "(availability trade-off, not required for correctness)",
    )
    executed_by: Optional[str] = Field(
        default=None,
        description="Principal recorded in execution log and trace rows (defaults to the database user)",
    )

    @field_validator("default_schema")
    @classmethod
    def validate_schema(cls, v: str) -> str:
        """Reject schema names that are not plain SQL identifiers."""
        return validate_identifier(v)


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics",
    )
    metrics_server_enabled: bool = Field(
        default=False,
        description="Expose metrics over HTTP while the run is in progress",
    )
    metrics_port: int = Field(
        default=8000,
        description="Port for Prometheus metrics endpoint",
        gt=0,
        lt=65536,
    )


class PartitionArchiverConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    database: DatabaseConfig = Field(description="Database connection")
    control: ControlTablesConfig = Field(
        default_factory=ControlTablesConfig,
        description="Control table names",
    )
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig, description="Global defaults")
    monitoring: MonitoringConfig = Field(
        default_factory=MonitoringConfig,
        description="Monitoring and metrics configuration",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v not in ["1.0"]:
            raise ValueError(f"Unsupported configuration version: {v}")
        return v


def load_config(config_path: Path) -> PartitionArchiverConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is missing or invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            context={"path": str(config_path)},
        ) from None
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in configuration file: {e}",
            context={"path": str(config_path)},
        ) from e

    if not raw_config:
        raise ConfigurationError(
            "Configuration file is empty", context={"path": str(config_path)}
        )

    try:
        config_data = _substitute_env_in_dict(raw_config)
        return PartitionArchiverConfig.model_validate(config_data)
    except Exception as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            context={"path": str(config_path)},
        ) from e
