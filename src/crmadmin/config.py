"""
Configuration system for crmadmin using Pydantic.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


IDENTIFIER_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")


def _check_identifier(value: str) -> str:
    if not IDENTIFIER_PATTERN.match(value):
        raise ValueError(
            f"'{value}' is not a valid SQL identifier (lowercase letters, digits, underscores)"
        )
    return value


class DatabaseConnection(BaseModel):
    """Database connection configuration."""

    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field("crm", description="Database name")
    user: str = Field("postgres", description="Database user")
    password: str = Field("", description="Database password")
    ssl_mode: str = Field("prefer", description="SSL mode")
    min_pool_size: int = Field(1, description="Minimum connections in pool")
    max_pool_size: int = Field(5, description="Maximum connections in pool")
    command_timeout: int = Field(60, description="Command timeout in seconds")
    url: Optional[str] = Field(
        None,
        description="postgresql:// URL; replaces host, port, database, user, password and ssl_mode",
    )


class SchemaManagementConfig(BaseModel):
    """Custom column management configuration."""

    table_schema: str = Field("public", description="Schema of the base table")
    table: str = Field("clients", description="Base table that receives custom columns")
    metadata_schema: str = Field(
        "public", description="Schema holding column_metadata and crm_users"
    )
    column_prefix: str = Field(
        "custom_", description="Prefix marking operator-created columns"
    )
    mode: Literal["apply", "dry_run"] = Field(
        "apply", description="Execute structural changes or only log them"
    )
    transactional: bool = Field(
        True,
        description="Run structural change and metadata write in one transaction",
    )
    timeout_seconds: int = Field(300, description="Statement timeout for DDL")
    compensation_attempts: int = Field(
        3, ge=1, description="Attempts for a compensating structural change"
    )
    compensation_backoff: float = Field(
        0.5, ge=0, description="Base backoff between compensation attempts in seconds"
    )

    @field_validator("table_schema", "table", "metadata_schema", "column_prefix")
    @classmethod
    def validate_identifiers(cls, v: str) -> str:
        return _check_identifier(v)

    @property
    def full_table_name(self) -> str:
        """Get the full table name with schema."""
        return f"{self.table_schema}.{self.table}"


class AuthConfig(BaseModel):
    """Operator authentication configuration."""

    admin_email: str = Field("admin@crm.com", description="Administrator login email")
    admin_password_hash: Optional[str] = Field(
        None, description="Password hash produced by `crmadmin hash-password`"
    )
    secret_key: str = Field("change-me", description="Session token signing key")
    algorithm: str = Field("HS256", description="Session token signing algorithm")
    token_ttl_minutes: int = Field(60, description="Session lifetime in minutes")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")


class CrmAdminConfig(BaseSettings):
    """Main crmadmin configuration."""

    service_name: str = Field("crmadmin", description="Service name")
    debug: bool = Field(False, description="Enable debug mode")

    database: DatabaseConnection = Field(
        default_factory=DatabaseConnection, description="Database connection"
    )
    schema_management: SchemaManagementConfig = Field(
        default_factory=SchemaManagementConfig,
        description="Custom column management configuration",
    )
    auth: AuthConfig = Field(
        default_factory=AuthConfig, description="Authentication configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CRMADMIN_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "CrmAdminConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            # Expand environment variables in the data
            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def validate_config(self) -> None:
        """Validate the configuration for consistency."""
        if self.auth.admin_password_hash is None:
            raise ConfigurationError(
                "auth.admin_password_hash is not set; generate one with `crmadmin hash-password`"
            )
        if self.auth.secret_key == "change-me":
            raise ConfigurationError("auth.secret_key must be changed from its default")

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )
