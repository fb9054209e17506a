"""Tests for ConfigManager."""

import json

import pytest

from clinsync.infrastructure.config_manager import (
    ConfigManager,
    DEFAULT_JWT_SECRET,
    DatabaseConfig,
    RedcapConfig,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DB_TYPE", "DB_PATH", "CACHE_PATH", "REDCAP_URL", "REDCAP_TOKEN", "SYNC_TIMEOUT",
                 "JWT_SECRET", "SEED_DEFAULT_USERS", "SYNC_MAX_CONCURRENCY"):
        monkeypatch.delenv(f"CS_{name}", raising=False)
    return monkeypatch


class TestDatabaseConfig:
    def test_defaults(self):
        config = DatabaseConfig()
        assert config.db_type == "duckdb"
        assert config.db_path is None

    def test_db_type_is_normalized(self):
        assert DatabaseConfig(db_type="MEMORY").db_type == "memory"

    def test_rejects_unknown_db_type(self):
        with pytest.raises(ValueError):
            DatabaseConfig(db_type="postgresql")

    def test_rejects_missing_directory(self, tmp_path):
        with pytest.raises(ValueError):
            DatabaseConfig(db_path=str(tmp_path / "missing" / "db.duckdb"))


class TestRedcapConfig:
    def test_not_configured_without_token(self):
        assert not RedcapConfig(api_url="https://redcap.example.org/api/").is_configured

    def test_rejects_non_http_url(self):
        with pytest.raises(ValueError):
            RedcapConfig(api_url="ftp://redcap.example.org")

    def test_blank_url_is_none(self):
        assert RedcapConfig(api_url="  ").api_url is None


class TestConfigManager:
    """Test suite for loading configuration."""

    def test_from_environment(self, clean_env, tmp_path):
        clean_env.setenv("CS_DB_TYPE", "duckdb")
        clean_env.setenv("CS_DB_PATH", str(tmp_path / "clinsync.duckdb"))
        clean_env.setenv("CS_REDCAP_URL", "https://redcap.example.org/api/")
        clean_env.setenv("CS_REDCAP_TOKEN", "token-123")
        clean_env.setenv("CS_SYNC_TIMEOUT", "12.5")
        clean_env.setenv("CS_SEED_DEFAULT_USERS", "false")

        config = ConfigManager.from_environment(env_file=str(tmp_path / "absent.env"))

        assert config.get_database_config().db_path.endswith("clinsync.duckdb")
        redcap = config.get_redcap_config()
        assert redcap.is_configured
        assert redcap.api_token.get_secret_value() == "token-123"
        assert "token-123" not in repr(redcap)
        assert redcap.timeout_seconds == 12.5
        assert not config.get_security_config().seed_default_users
        assert config.get("redcap.api_url") == "https://redcap.example.org/api/"

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("CS_DB_TYPE=memory\nCS_JWT_SECRET=from-env-file\n")
        # load_dotenv writes os.environ directly; register both names so they are removed afterwards
        for name in ("CS_DB_TYPE", "CS_JWT_SECRET"):
            clean_env.setenv(name, "placeholder")
            clean_env.delenv(name)

        config = ConfigManager.from_environment(env_file=str(env_file))

        assert config.get_database_config().db_type == "memory"
        assert config.get_security_config().jwt_secret.get_secret_value() == "from-env-file"

    def test_default_secret(self, clean_env, tmp_path):
        config = ConfigManager.from_environment(env_file=str(tmp_path / "absent.env"))
        security = config.get_security_config()
        assert security.jwt_secret.get_secret_value() == DEFAULT_JWT_SECRET
        assert security.uses_default_secret

    def test_from_file(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "database": {"db_type": "memory"},
            "sync": {"max_concurrency": 3},
        }))
        config_file.chmod(0o600)

        config = ConfigManager.from_file(str(config_file))

        assert config.get_database_config().db_type == "memory"
        assert config.get_sync_config().max_concurrency == 3
        assert config.get_redcap_config().api_url is None
        assert config.get("logging.level", "INFO") == "INFO"

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager.from_file(str(tmp_path / "missing.json"))

    def test_from_file_invalid_json(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))

    def test_invalid_sync_setting(self):
        with pytest.raises(ValueError):
            ConfigManager({"sync": {"max_concurrency": 0}}).get_sync_config()
