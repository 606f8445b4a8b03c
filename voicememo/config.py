"""
Configuration management with three-tier precedence system:
1. Default values from codebase
2. Environment variables from .env
3. Explicit overrides passed by the caller (tests, service wiring)

Precedence: Overrides > Environment Variables > Defaults
"""

import os
from typing import Any, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class ConfigManager:
    """Manages configuration with three-tier precedence."""

    # Default values (Tier 1 - Codebase defaults)
    DEFAULTS = {
        "TASKS_DIR": "server_tasks",
        "MAX_WORKERS": "2",
        "AUTOSTART": "true",
        "LOG_LEVEL": "INFO",
        "SERVER_HOST": "0.0.0.0",
        "SERVER_PORT": "5001",
        # Object storage
        "STORAGE_BACKEND": "local",
        "LOCAL_STORAGE_DIR": "./storage",
        "S3_ENDPOINT": "",
        "S3_REGION": "",
        "S3_BUCKET": "",
        "S3_ACCESS_KEY": "",
        "S3_SECRET_KEY": "",
        "S3_PUBLIC_BASE_URL": "",
        "S3_URL_EXPIRES": "604800",
        "OBJECT_KEY_PREFIX": "",
        # Remote speech task API
        "SPEECH_API_BASE_URL": "https://tingwu.cn-beijing.aliyuncs.com",
        "SPEECH_API_KEY": "",
        "SPEECH_APP_KEY": "",
        "SPEECH_LANGUAGE": "cn",
        "SPEECH_API_TIMEOUT": "30",
        # Pipeline
        "POLL_MAX_ATTEMPTS": "60",
        "POLL_INTERVAL": "2.0",
        "TRANSCODE_BITRATE": "48k",
        "TRANSCODE_SAMPLE_RATE": "48000",
    }

    @staticmethod
    def get(key: str, override: Optional[Any] = None) -> Any:
        """
        Get configuration value with three-tier precedence.

        Args:
            key: Configuration key
            override: Explicit value (highest priority)

        Returns:
            Configuration value from highest priority source

        Priority:
            1. Override (if provided and not empty)
            2. Environment variable
            3. Default value
        """
        # Tier 3: explicit override (highest priority)
        if override is not None and override != "":
            return override

        # Tier 2: Environment variable
        env_value = os.getenv(key)
        if env_value is not None and env_value != "":
            return env_value

        # Tier 1: Default value
        return ConfigManager.DEFAULTS.get(key, "")

    @staticmethod
    def get_display_value(key: str, override: Optional[Any] = None) -> tuple[Any, str]:
        """
        Get configuration value and its source.

        Returns:
            Tuple of (value, source) where source is 'override', 'env', or 'default'
        """
        if override is not None and override != "":
            return override, "override"

        env_value = os.getenv(key)
        if env_value is not None and env_value != "":
            return env_value, "env"

        default_value = ConfigManager.DEFAULTS.get(key, "")
        return default_value, "default"

    @staticmethod
    def get_int(key: str, override: Optional[Any] = None) -> int:
        """Get a configuration value as an integer, falling back to the default on bad input."""
        value = ConfigManager.get(key, override)
        try:
            return int(value)
        except (TypeError, ValueError):
            return int(ConfigManager.DEFAULTS.get(key) or 0)

    @staticmethod
    def get_float(key: str, override: Optional[Any] = None) -> float:
        """Get a configuration value as a float, falling back to the default on bad input."""
        value = ConfigManager.get(key, override)
        try:
            return float(value)
        except (TypeError, ValueError):
            return float(ConfigManager.DEFAULTS.get(key) or 0.0)

    @staticmethod
    def get_bool(key: str, override: Optional[Any] = None) -> bool:
        value = ConfigManager.get(key, override)
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
