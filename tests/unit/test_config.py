"""
Unit tests for configuration loading and logging setup.
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest
import yaml
from rich.logging import RichHandler

from crmadmin.config import CrmAdminConfig, LoggingConfig, SchemaManagementConfig
from crmadmin.exceptions import ConfigurationError
from crmadmin.log import setup_logging


class TestCrmAdminConfig:
    """Test cases for CrmAdminConfig."""

    def test_defaults(self):
        config = CrmAdminConfig()

        assert config.schema_management.full_table_name == "public.clients"
        assert config.schema_management.column_prefix == "custom_"
        assert config.schema_management.transactional is True
        assert config.schema_management.mode == "apply"
        assert config.auth.admin_email == "admin@crm.com"

    def test_from_yaml(self, config_file):
        config = CrmAdminConfig.from_yaml(config_file)

        assert config.service_name == "crmadmin-test"
        assert config.database.database == "crm_test"
        assert config.auth.secret_key == "test-secret-key"
        assert config.logging.level == "WARNING"
        config.validate_config()

    def test_from_yaml_expands_env_vars(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CRM_DB_PASSWORD", "from-env")
        path = tmp_path / "config.yaml"
        path.write_text("database:\n  password: ${CRM_DB_PASSWORD}\n", encoding="utf-8")

        config = CrmAdminConfig.from_yaml(path)

        assert config.database.password == "from-env"

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            CrmAdminConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("database: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            CrmAdminConfig.from_yaml(path)

    def test_from_yaml_invalid_identifier(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("schema_management:\n  table: \"clients; DROP TABLE x\"\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="not a valid SQL identifier"):
            CrmAdminConfig.from_yaml(path)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CRMADMIN_SCHEMA_MANAGEMENT__TABLE", "leads")
        monkeypatch.setenv("CRMADMIN_SCHEMA_MANAGEMENT__TRANSACTIONAL", "false")

        config = CrmAdminConfig()

        assert config.schema_management.table == "leads"
        assert config.schema_management.transactional is False

    def test_validate_config_requires_password_hash(self):
        with pytest.raises(ConfigurationError, match="admin_password_hash"):
            CrmAdminConfig().validate_config()

    def test_validate_config_requires_secret_key(self):
        config = CrmAdminConfig(auth={"admin_password_hash": "$pbkdf2-sha256$x"})

        with pytest.raises(ConfigurationError, match="secret_key"):
            config.validate_config()

    def test_to_yaml(self, tmp_path, config_file):
        config = CrmAdminConfig.from_yaml(config_file)
        output = tmp_path / "saved.yaml"

        config.to_yaml(output)

        with open(output, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        assert data["schema_management"]["table"] == "clients"
        assert "file" not in data["logging"]
        assert CrmAdminConfig.from_yaml(output).auth == config.auth


class TestSchemaManagementConfig:
    """Test column management settings validation."""

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            SchemaManagementConfig(mode="force")

    def test_compensation_attempts_positive(self):
        with pytest.raises(ValueError):
            SchemaManagementConfig(compensation_attempts=0)

    @pytest.mark.parametrize("prefix", ["Custom_", "custom-", ""])
    def test_invalid_prefix(self, prefix):
        with pytest.raises(ValueError):
            SchemaManagementConfig(column_prefix=prefix)


class TestSetupLogging:
    """Test logging setup."""

    def test_console_handler(self):
        logger = setup_logging(LoggingConfig(level="WARNING"))

        assert logger.name == "crmadmin"
        assert logger.level == logging.WARNING
        assert [type(h) for h in logger.handlers] == [RichHandler]
        assert not logger.propagate

    def test_debug_overrides_level(self):
        logger = setup_logging(LoggingConfig(level="ERROR"), debug=True)

        assert logger.level == logging.DEBUG

    def test_rotating_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "crmadmin.log"
        logger = setup_logging(LoggingConfig(file=str(log_file), max_size=1024, backup_count=2))

        file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 1024
        assert file_handlers[0].backupCount == 2

        logging.getLogger("crmadmin.schema.mutator").info("add_column custom_x: success")
        file_handlers[0].flush()
        assert "add_column custom_x: success" in log_file.read_text(encoding="utf-8")

        setup_logging(LoggingConfig())

    def test_repeated_setup_does_not_stack_handlers(self):
        setup_logging(LoggingConfig())
        logger = setup_logging(LoggingConfig())

        assert len(logger.handlers) == 1
