# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for the codestyle template cache.

Loads configuration from config.json file with fallback to environment variables.
"""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


class Config:
    """Configuration manager for the template cache and search index."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, searches in:
                1. ./config.json (current directory)
                2. ~/.codestyle_mcp/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
                return
            logger.info(
                "Config path %s does not exist, using environment variables",
                config_path,
            )
            self._load_from_env()
            return

        local_config = Path("config.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = Path.home() / ".codestyle_mcp" / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config.json found, using environment variables")
        self._load_from_env()

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON value must be an object")
            self.config_data = data
            logger.info("Loaded configuration from %s", path)
        except Exception as e:
            logger.error("Error loading config from %s: %s", path, e)
            self._load_from_env()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        self.config_data = {
            "server": {
                "name": os.getenv("CODESTYLE_MCP_NAME", "codestyle_templates"),
                "log_level": os.getenv("CODESTYLE_MCP_LOG_LEVEL", "INFO"),
            },
            "repository": {
                "dir": os.getenv("CODESTYLE_REPOSITORY_DIR", "~/.codestyle/repository"),
                "remote_base_url": os.getenv("CODESTYLE_REMOTE_BASE_URL") or None,
                "remote_search_enabled": _env_flag("CODESTYLE_REMOTE_SEARCH_ENABLED", "false"),
            },
            "fetch": {
                "base_url": os.getenv("CODESTYLE_FETCH_BASE_URL") or None,
                "max_retries": os.getenv("CODESTYLE_FETCH_MAX_RETRIES", "2"),
                "timeout_seconds": os.getenv("CODESTYLE_FETCH_TIMEOUT", "10"),
            },
            "index": {
                "dir": os.getenv("CODESTYLE_INDEX_DIR") or None,
                "check_interval_seconds": os.getenv("CODESTYLE_INDEX_CHECK_INTERVAL", "5"),
                "rebuild_on_startup": _env_flag("CODESTYLE_INDEX_REBUILD_ON_STARTUP", "true"),
            },
            "admin": self._load_admin_from_env(),
        }

    def _load_admin_from_env(self) -> Dict[str, Any]:
        """Load admin config from environment variables."""
        allowed_ips_raw = os.getenv("CODESTYLE_MCP_ADMIN_ALLOWED_IPS", "127.0.0.1,::1")
        admin: Dict[str, Any] = {
            "enabled": _env_flag("CODESTYLE_MCP_ADMIN_ENABLED", "true"),
            "host": os.getenv("CODESTYLE_MCP_ADMIN_HOST", "127.0.0.1"),
            "port": os.getenv("CODESTYLE_MCP_ADMIN_PORT", "8766"),
            "api_key": os.getenv("CODESTYLE_MCP_ADMIN_API_KEY") or None,
            "allowed_ips": _parse_csv_list(allowed_ips_raw),
        }
        require_raw = os.getenv("CODESTYLE_MCP_ADMIN_REQUIRE_API_KEY")
        if require_raw is not None:
            admin["require_api_key"] = require_raw.strip().lower() in _TRUE_VALUES
        return admin

    # Getters for easy access
    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def _get_int(self, key: str, default: int, minimum: int = 0) -> int:
        value = self.get(key, default)
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            logger.warning("Invalid %s '%s', defaulting to %s", key, value, default)
            return default
        if parsed < minimum:
            logger.warning("%s=%s is below %s, defaulting to %s", key, parsed, minimum, default)
            return default
        return parsed

    def _get_float(self, key: str, default: float) -> float:
        value = self.get(key, default)
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            logger.warning("Invalid %s '%s', defaulting to %s", key, value, default)
            return default
        if parsed < 0:
            logger.warning("%s=%s is negative, defaulting to %s", key, parsed, default)
            return default
        return parsed

    def _get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        return bool(value)

    @property
    def mode(self) -> str:
        """Deployment mode: ``dev`` (default) or ``prod``."""
        raw = os.getenv("CODESTYLE_MCP_MODE") or self.get("mode", "dev")
        mode = str(raw).strip().lower()
        return mode if mode in ("dev", "prod") else "dev"

    @property
    def server_name(self) -> str:
        return self.get("server.name", "codestyle_templates")

    @property
    def log_level(self) -> str:
        return str(self.get("server.log_level", "INFO")).upper()

    @property
    def log_file(self) -> Optional[str]:
        """Get log file path from config or environment."""
        env_log_file = os.getenv("CODESTYLE_MCP_LOG_FILE")
        if env_log_file:
            return env_log_file
        return self.get("server.log_file") or None

    # --- Local repository / remote store ---

    @property
    def repository_dir(self) -> Path:
        path_str = self.get("repository.dir", "~/.codestyle/repository")
        return Path(path_str).expanduser().resolve()

    @property
    def remote_base_url(self) -> Optional[str]:
        value = self.get("repository.remote_base_url")
        return str(value).rstrip("/") if value else None

    @property
    def remote_search_enabled(self) -> bool:
        """Remote lookups only happen when a base URL is configured as well."""
        return self._get_bool("repository.remote_search_enabled", False) and bool(
            self.remote_base_url
        )

    # --- Content fetching ---

    @property
    def fetch_base_url(self) -> Optional[str]:
        """Base URI for content downloads, defaulting to ``<remote>/files``."""
        value = self.get("fetch.base_url")
        if value:
            return str(value).rstrip("/")
        if self.remote_base_url:
            return f"{self.remote_base_url}/files"
        return None

    @property
    def fetch_max_retries(self) -> int:
        return self._get_int("fetch.max_retries", 2)

    @property
    def fetch_timeout_seconds(self) -> float:
        return self._get_float("fetch.timeout_seconds", 10.0)

    @property
    def fetch_connect_timeout_seconds(self) -> float:
        return self._get_float("fetch.connect_timeout_seconds", 5.0)

    @property
    def fetch_retry_backoff_seconds(self) -> float:
        return self._get_float("fetch.retry_backoff_seconds", 0.5)

    # --- Search index ---

    @property
    def index_path(self) -> Path:
        path_str = self.get("index.dir")
        if path_str:
            return Path(path_str).expanduser().resolve()
        return self.repository_dir / ".search-index"

    @property
    def index_check_interval_seconds(self) -> float:
        return self._get_float("index.check_interval_seconds", 5.0)

    @property
    def index_rebuild_on_startup(self) -> bool:
        return self._get_bool("index.rebuild_on_startup", True)

    # --- Admin API configuration ---

    @property
    def admin_enabled(self) -> bool:
        return self._get_bool("admin.enabled", True)

    @property
    def admin_host(self) -> str:
        return self.get("admin.host", "127.0.0.1")

    @property
    def admin_port(self) -> int:
        return self._get_int("admin.port", 8766, minimum=1)

    @property
    def admin_api_key(self) -> Optional[str]:
        return self.get("admin.api_key")

    @property
    def admin_allowed_ips(self) -> list[str]:
        return self.get("admin.allowed_ips", ["127.0.0.1", "::1"])

    @property
    def admin_require_api_key(self) -> bool:
        return self._get_bool("admin.require_api_key", self.mode == "prod")


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None):
    """Load configuration from specified path."""
    global _config
    _config = Config(config_path)
    return _config
