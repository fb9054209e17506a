"""Configuration loading for storage, REDCap, security and sync.

Settings come from the environment (``CS_`` prefix, optionally via a
``.env`` file) or from a JSON file, and are validated as pydantic models
before ``build_container`` wires any component.

Security Impact:
    - The REDCap API token and the JWT signing secret are held as SecretStr
      and never appear in logs, reprs or error messages
    - A JSON config file readable by group or others triggers a warning
"""

import json
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, SecretStr

logger = logging.getLogger(__name__)

ENV_PREFIX = "CS_"

# Development-only signing secret; deployments must set CS_JWT_SECRET
DEFAULT_JWT_SECRET = "clinsync-development-secret-change-me"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class DatabaseConfig(BaseModel):
    """Database configuration.

    Parameters:
        db_type: Storage backend (``memory`` or ``duckdb``)
        db_path: Path to the DuckDB file (``:memory:`` for a transient database)
        cache_path: Path to the DuckDB file holding the offline cache
            (defaults to the main database file)
    """

    db_type: str = Field(default="duckdb", description="Storage backend (memory, duckdb)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")
    cache_path: Optional[str] = Field(None, description="Path to the offline cache database file")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        supported_types = ["memory", "duckdb"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path", "cache_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the database directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")

        return str(db_path_obj)


class RedcapConfig(BaseModel):
    """REDCap endpoint configuration.

    Security Impact: The API token grants write access to the REDCap project
    and is stored as SecretStr.
    """

    api_url: Optional[str] = Field(None, description="REDCap API endpoint URL")
    api_token: Optional[SecretStr] = Field(None, description="REDCap API token (secret)")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-attempt sync timeout")

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("REDCap API URL must start with http:// or https://")
        return v

    @property
    def is_configured(self) -> bool:
        """True when both the endpoint and the token are set."""
        return bool(self.api_url and self.api_token and self.api_token.get_secret_value())


class SecurityConfig(BaseModel):
    """Authentication settings."""

    jwt_secret: SecretStr = Field(default=SecretStr(DEFAULT_JWT_SECRET), description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_expires_minutes: int = Field(default=24 * 60, gt=0, description="Token lifetime in minutes")
    reset_token_minutes: int = Field(default=60, gt=0, description="Password reset token lifetime")
    seed_default_users: bool = Field(default=True, description="Create default accounts on first start")

    @property
    def uses_default_secret(self) -> bool:
        return self.jwt_secret.get_secret_value() == DEFAULT_JWT_SECRET


class SyncConfig(BaseModel):
    """Sync engine and connectivity monitor settings."""

    max_concurrency: int = Field(default=5, ge=1, description="Concurrent submissions in a bulk sync")
    connectivity_interval_seconds: float = Field(
        default=30.0, gt=0, description="Seconds between connectivity probes"
    )


class ConfigManager:
    """Configuration manager for storage, REDCap and security settings.

    Security Impact:
        - Credentials are loaded from trusted sources only
        - No credential data is logged or exposed
        - Configuration is validated before use

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        redcap = config.get_redcap_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with ``database``, ``redcap``,
                ``security``, ``sync`` and ``logging`` sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._redcap_config: Optional[RedcapConfig] = None
        self._security_config: Optional[SecurityConfig] = None
        self._sync_config: Optional[SyncConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CS_DB_TYPE: Storage backend (memory, duckdb)
            - CS_DB_PATH: Path to the DuckDB file
            - CS_CACHE_PATH: Path to the offline cache file
            - CS_REDCAP_URL: REDCap API endpoint
            - CS_REDCAP_TOKEN: REDCap API token (secret)
            - CS_SYNC_TIMEOUT: Per-attempt sync timeout in seconds
            - CS_SYNC_MAX_CONCURRENCY: Concurrent submissions in a bulk sync
            - CS_JWT_SECRET: JWT signing secret (secret)
            - CS_JWT_EXPIRES_MINUTES: Token lifetime
            - CS_RESET_TOKEN_MINUTES: Password reset token lifetime
            - CS_CONNECTIVITY_INTERVAL: Seconds between connectivity probes
            - CS_SEED_DEFAULT_USERS: Create default accounts on first start
            - CS_LOG_LEVEL / CS_JSON_LOGS: Logging setup

        Parameters:
            env_file: Optional ``.env`` file (defaults to ``.env`` in the project root)

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        config_data = {
            "database": {
                "db_type": _env("DB_TYPE", "duckdb"),
                "db_path": _env("DB_PATH"),
                "cache_path": _env("CACHE_PATH"),
            },
            "redcap": {
                "api_url": _env("REDCAP_URL"),
                "api_token": _env("REDCAP_TOKEN"),
                "timeout_seconds": float(_env("SYNC_TIMEOUT", "30")),
            },
            "security": {
                "jwt_secret": _env("JWT_SECRET", DEFAULT_JWT_SECRET),
                "jwt_expires_minutes": int(_env("JWT_EXPIRES_MINUTES", str(24 * 60))),
                "reset_token_minutes": int(_env("RESET_TOKEN_MINUTES", "60")),
                "seed_default_users": _env_bool("SEED_DEFAULT_USERS", True),
            },
            "sync": {
                "max_concurrency": int(_env("SYNC_MAX_CONCURRENCY", "5")),
                "connectivity_interval_seconds": float(_env("CONNECTIVITY_INTERVAL", "30")),
            },
            "logging": {
                "level": _env("LOG_LEVEL", "INFO"),
                "json": _env_bool("JSON_LOGS", False),
            },
        }

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Security Impact:
            - File permissions should be restricted (600) since the file may
              hold the REDCap token and the JWT secret

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._section("database"))
        return self._database_config

    def get_redcap_config(self) -> RedcapConfig:
        """Get REDCap configuration.

        Security Impact:
            - The token is wrapped in SecretStr before validation
        """
        if self._redcap_config is None:
            data = self._section("redcap")
            if data.get("api_token"):
                data["api_token"] = SecretStr(data["api_token"])
            self._redcap_config = RedcapConfig(**data)
        return self._redcap_config

    def get_security_config(self) -> SecurityConfig:
        if self._security_config is None:
            data = self._section("security")
            if data.get("jwt_secret"):
                data["jwt_secret"] = SecretStr(data["jwt_secret"])
            self._security_config = SecurityConfig(**data)
            if self._security_config.uses_default_secret:
                logger.warning("Using the development JWT secret; set CS_JWT_SECRET in production")
        return self._security_config

    def get_sync_config(self) -> SyncConfig:
        if self._sync_config is None:
            self._sync_config = SyncConfig(**self._section("sync"))
        return self._sync_config

    def _section(self, name: str) -> Dict[str, Any]:
        return {k: v for k, v in (self._config_data.get(name) or {}).items() if v is not None}

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "redcap.api_url")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


# ============================================================================
# Convenience Functions
# ============================================================================

def get_database_config() -> DatabaseConfig:
    """Load database configuration from the environment.

    Returns:
        DatabaseConfig instance (DuckDB in-memory if nothing is configured)
    """
    return ConfigManager.from_environment().get_database_config()
