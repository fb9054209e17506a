"""Process-wide settings for the HTTP server and the CLI.

Storage, REDCap, security and sync settings belong to ConfigManager and
reach components through ``build_container``; this module only holds what
the server process itself needs before a container exists (bind address,
CORS, logging, rate limits).
"""

import os
from typing import List, Optional

from clinsync.infrastructure.config_manager import ConfigManager

APP_NAME = "Clinical-Sync"
APP_VERSION = "1.0.0"

DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 8000
DEFAULT_CORS_ORIGINS = "http://localhost:3000"


def _csv_env(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    """Server settings read from ``CS_*`` environment variables at import.

    Security Impact:
        - Holds no secrets; credentials stay in ConfigManager as SecretStr
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("CS_APP_NAME", APP_NAME)
        self.log_level = os.getenv("CS_LOG_LEVEL", "INFO")
        self.json_logs = os.getenv("CS_JSON_LOGS", "false").lower() == "true"

        self.api_host = os.getenv("CS_API_HOST", DEFAULT_API_HOST)
        self.api_port = int(os.getenv("CS_API_PORT", str(DEFAULT_API_PORT)))
        self.cors_origins = _csv_env("CS_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)

        # Requests per minute per client address, for paths without their own limit
        self.rate_limit_per_minute = int(os.getenv("CS_RATE_LIMIT_PER_MINUTE", "120"))

    @property
    def config_manager(self) -> ConfigManager:
        """Environment configuration, loaded on first access (used by ``clinsync info``)."""
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager


settings = Settings()
