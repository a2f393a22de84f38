"""
Unit tests for the configuration system.
"""

import logging
import logging.handlers

import pytest
import yaml
from rich.logging import RichHandler

from pgmirror.config import LoggingConfig, MirrorConfig, SyncConfig, TableSyncConfig, setup_logging
from pgmirror.exceptions import ConfigurationError


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestMirrorConfig:
    """Test cases for MirrorConfig."""

    def test_from_yaml_expands_environment(self, temp_config_file):
        config = MirrorConfig.from_yaml(temp_config_file)

        assert config.source.password == "local-secret"
        assert config.target.password == "remote-secret"
        assert config.target.connect_retries == 3
        assert config.sync.batch_size == 25
        assert config.sync.schema_name == "public"
        assert config.logging.level == "DEBUG"

    def test_tables_are_normalized(self, temp_config_file):
        config = MirrorConfig.from_yaml(temp_config_file)

        assert config.tables == [
            TableSyncConfig(name="clients", mode="auto"),
            TableSyncConfig(name="quotes", mode="source_to_target"),
        ]
        assert config.table_names == ["clients", "quotes"]

    def test_defaults(self, sample_config_data):
        del sample_config_data["sync"]
        del sample_config_data["tables"]

        config = MirrorConfig(**sample_config_data)

        assert config.tables == []
        assert config.sync.batch_size == 50
        assert config.sync.statement_timeout == 5.0
        assert config.sync.conflict_strategy == "update"
        assert config.sync.verify is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            MirrorConfig.from_yaml(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("source: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            MirrorConfig.from_yaml(path)

    def test_invalid_values(self, tmp_path, sample_config_data):
        sample_config_data["sync"]["batch_size"] = 0
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump(sample_config_data), encoding="utf-8")

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            MirrorConfig.from_yaml(path)

    def test_unknown_table_mode(self, sample_config_data):
        sample_config_data["tables"] = [{"name": "quotes", "mode": "sideways"}]

        with pytest.raises(Exception):
            MirrorConfig(**sample_config_data)

    def test_validate_config_accepts_sample(self, temp_config_file):
        MirrorConfig.from_yaml(temp_config_file).validate_config()

    def test_validate_requires_tables(self, sample_config_data):
        sample_config_data["tables"] = []

        with pytest.raises(ConfigurationError, match="No tables configured"):
            MirrorConfig(**sample_config_data).validate_config()

    def test_validate_rejects_unsafe_table_name(self, sample_config_data):
        sample_config_data["tables"] = ["clients; DROP TABLE clients"]

        with pytest.raises(ConfigurationError, match="Invalid table name"):
            MirrorConfig(**sample_config_data).validate_config()

    def test_validate_rejects_duplicates(self, sample_config_data):
        sample_config_data["tables"] = ["clients", {"name": "clients", "mode": "schema_only"}]

        with pytest.raises(ConfigurationError, match="more than once"):
            MirrorConfig(**sample_config_data).validate_config()

    def test_validate_rejects_requested_and_excluded(self, sample_config_data):
        sample_config_data["sync"]["exclude_tables"] = ["clients"]

        with pytest.raises(ConfigurationError, match="both requested and excluded"):
            MirrorConfig(**sample_config_data).validate_config()

    def test_validate_rejects_same_database(self, sample_config_data):
        sample_config_data["target"] = dict(sample_config_data["source"])

        with pytest.raises(ConfigurationError, match="same database"):
            MirrorConfig(**sample_config_data).validate_config()

    def test_to_yaml_round_trip(self, tmp_path, temp_config_file):
        config = MirrorConfig.from_yaml(temp_config_file)
        path = tmp_path / "out.yaml"

        config.to_yaml(path)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))

        assert data["tables"] == ["clients", {"name": "quotes", "mode": "source_to_target"}]
        assert data["sync"]["schema"] == "public"
        assert MirrorConfig.from_yaml(path).sync.batch_size == 25


class TestSyncConfig:
    """Test cases for SyncConfig."""

    def test_schema_alias(self):
        assert SyncConfig(schema="billing").schema_name == "billing"
        assert SyncConfig(schema_name="billing").schema_name == "billing"

    def test_statement_timeout_must_be_positive(self):
        with pytest.raises(Exception):
            SyncConfig(statement_timeout=0)


class TestSetupLogging:
    """Test logging setup."""

    def test_console_handler(self, restore_root_logger):
        setup_logging(LoggingConfig(level="WARNING"))

        assert restore_root_logger.level == logging.WARNING
        assert [type(h) for h in restore_root_logger.handlers] == [RichHandler]

    def test_debug_overrides_level(self, restore_root_logger):
        setup_logging(LoggingConfig(level="ERROR"), debug=True)

        assert restore_root_logger.level == logging.DEBUG

    def test_rotating_file_handler(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "pgmirror.log"

        setup_logging(LoggingConfig(file=str(log_file), max_size=1024, backup_count=2))
        logging.getLogger("pgmirror.test").info("hello file")

        file_handlers = [
            h for h in restore_root_logger.handlers
            if isinstance(h, logging.handlers.RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 1024
        assert file_handlers[0].backupCount == 2
        file_handlers[0].flush()
        assert "hello file" in log_file.read_text(encoding="utf-8")
