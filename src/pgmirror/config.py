"""
Configuration system for pgmirror using Pydantic.
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.logging import RichHandler

from .database.connection import ConnectionConfig
from .database.identifiers import validate_identifier
from .exceptions import ConfigurationError, IdentifierError


class TableSyncConfig(BaseModel):
    """A table to reconcile and how its copy direction is chosen."""

    name: str = Field(..., description="Table name")
    mode: Literal["auto", "source_to_target", "target_to_source", "schema_only"] = Field(
        "auto", description="Copy direction policy"
    )


class SyncConfig(BaseModel):
    """Reconciliation behaviour."""

    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field("public", alias="schema", description="Schema to reconcile")
    batch_size: int = Field(50, ge=1, description="Rows read per batch")
    statement_timeout: float = Field(
        5.0, gt=0, description="Timeout in seconds for each DDL statement and row upsert"
    )
    conflict_strategy: Literal["update", "ignore"] = Field(
        "update", description="Behaviour on primary-key conflict"
    )
    dry_run: bool = Field(False, description="Report what would change without writing")
    verify: bool = Field(True, description="Recount all tables after the run")
    include_tables: Optional[List[str]] = Field(
        None, description="Only inspect these tables"
    )
    exclude_tables: List[str] = Field(
        default_factory=list, description="Tables never inspected or reconciled"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log file format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")


class MirrorConfig(BaseSettings):
    """Main pgmirror configuration."""

    source: ConnectionConfig = Field(..., description="Store rows are normally copied from")
    target: ConnectionConfig = Field(..., description="Store schema changes are applied to")

    tables: List[Union[str, TableSyncConfig]] = Field(
        default_factory=list,
        description="Tables whose rows are reconciled, in order",
    )
    sync: SyncConfig = Field(default_factory=SyncConfig, description="Sync configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PGMIRROR_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("tables")
    @classmethod
    def normalize_tables(cls, v):
        return [TableSyncConfig(name=t) if isinstance(t, str) else t for t in v]

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MirrorConfig":
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

    @property
    def table_names(self) -> List[str]:
        return [t.name for t in self.tables]

    def validate_config(self) -> None:
        """Validate the entire configuration for consistency."""
        if not self.tables:
            raise ConfigurationError(
                "No tables configured: data reconciliation needs an explicit 'tables' list"
            )

        seen = set()
        for table in self.tables:
            try:
                validate_identifier(table.name)
            except IdentifierError as e:
                raise ConfigurationError(f"Invalid table name in 'tables': {e}")
            if table.name in seen:
                raise ConfigurationError(f"Table '{table.name}' is listed more than once")
            seen.add(table.name)
            if table.name in self.sync.exclude_tables:
                raise ConfigurationError(
                    f"Table '{table.name}' is both requested and excluded"
                )

        try:
            validate_identifier(self.sync.schema_name)
        except IdentifierError as e:
            raise ConfigurationError(f"Invalid schema name: {e}")

        if self.source.display_name == self.target.display_name:
            raise ConfigurationError(
                f"Source and target point at the same database ({self.source.display_name})"
            )

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        data = self.model_dump(exclude_none=True, by_alias=True, mode="json")
        data["tables"] = [
            t["name"] if t["mode"] == "auto" else t for t in data.get("tables", [])
        ]
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, indent=2, sort_keys=False)


def setup_logging(config: LoggingConfig, debug: bool = False) -> None:
    """Install console and optional rotating file handlers on the root logger."""
    level = logging.DEBUG if debug else getattr(logging, config.level)
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console_handler = RichHandler(rich_tracebacks=True, show_path=debug)
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.file, maxBytes=config.max_size, backupCount=config.backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(config.format))
        root.addHandler(file_handler)

    # asyncpg is chatty at DEBUG
    logging.getLogger("asyncpg").setLevel(max(level, logging.INFO))
