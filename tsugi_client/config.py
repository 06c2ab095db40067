"""Configuration management for the chat client."""

from __future__ import annotations

import os
from typing import Any, cast

import yaml
from dotenv import load_dotenv

CONFIG_ENV_VAR = "TSUGI_CONFIG"


class Configuration:
    """YAML defaults, an optional user override file, and environment variables."""

    def __init__(self, config_path: str | None = None) -> None:
        """
        Initialize configuration.

        Args:
            config_path: Optional override file; defaults to $TSUGI_CONFIG.
        """
        self.load_env()  # Load .env for API keys
        self._default_config = self._load_yaml_config(
            os.path.join(os.path.dirname(__file__), "config.yaml")
        )
        self._current_config = self._default_config

        override_path = config_path or os.getenv(CONFIG_ENV_VAR)
        if override_path:
            self._current_config = self._deep_merge(
                self._default_config, self._load_yaml_config(override_path)
            )

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(f"Configuration file must contain a dictionary: {config_path}")
            return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(cast(dict[str, Any], result[key]), cast(dict[str, Any], value))
            else:
                result[key] = value

        return result

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Get a configuration value by path, with fallback to defaults."""
        for source in (self._current_config, self._default_config):
            current: Any = source
            for key in path:
                if isinstance(current, dict) and key in current:
                    current = current[key]
                else:
                    break
            else:
                return current
        return default

    def get_agent_config(self) -> dict[str, Any]:
        """Get agent endpoint configuration.

        Returns:
            Dict with base_url, path and headers. TSUGI_AGENT_URL overrides
            base_url.
        """
        base_url = os.getenv("TSUGI_AGENT_URL") or self._get_config_value(["agent", "base_url"])
        if not base_url:
            raise ValueError("agent.base_url must be configured (or set TSUGI_AGENT_URL)")

        return {
            "base_url": base_url,
            "path": self._get_config_value(["agent", "path"], "/api/chat"),
            "headers": self._get_config_value(["agent", "headers"]) or {},
        }

    def get_stats_config(self) -> dict[str, Any]:
        """Get stats source configuration.

        Returns:
            Dict with source, base_url, path and timeout_seconds. TSUGI_STATS_URL
            overrides base_url.
        """
        source = self._get_config_value(["stats", "source"], "endpoint")
        if source not in ("endpoint", "braintrust"):
            raise ValueError(f"Unknown stats source '{source}' (expected 'endpoint' or 'braintrust')")

        timeout = self._get_config_value(["stats", "timeout_seconds"], 10.0)
        if timeout <= 0:
            raise ValueError("stats.timeout_seconds must be positive")

        return {
            "source": source,
            "base_url": os.getenv("TSUGI_STATS_URL") or self._get_config_value(["stats", "base_url"]),
            "path": self._get_config_value(["stats", "path"], "/api/stats"),
            "timeout_seconds": timeout,
        }

    def get_polling_config(self) -> dict[str, Any]:
        """Get stats polling configuration with validated values.

        Returns:
            Dict with max_attempts, base_interval and consecutive_matches_required.
        """
        polling = self._get_config_value(["stats", "polling"]) or {}

        max_attempts = polling.get("max_attempts", 8)
        base_interval = polling.get("base_interval", 2.0)
        consecutive_matches = polling.get("consecutive_matches_required", 3)

        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValueError("stats.polling.max_attempts must be a positive integer")
        if not isinstance(base_interval, int | float) or base_interval <= 0:
            raise ValueError("stats.polling.base_interval must be positive")
        if not isinstance(consecutive_matches, int) or consecutive_matches < 1:
            raise ValueError("stats.polling.consecutive_matches_required must be a positive integer")

        return {
            "max_attempts": max_attempts,
            "base_interval": float(base_interval),
            "consecutive_matches_required": consecutive_matches,
        }

    def get_connection_pool_config(self) -> dict[str, Any]:
        """Get HTTP connection pool configuration.

        Returns:
            Connection pool configuration dictionary.
        """
        pool = self._get_config_value(["connection_pool"]) or {}

        if pool.get("max_connections", 10) < 1:
            raise ValueError("connection_pool.max_connections must be at least 1")
        if pool.get("request_timeout_seconds", 300.0) <= 0:
            raise ValueError("connection_pool.request_timeout_seconds must be positive")

        return pool

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML.

        Returns:
            Logging configuration dictionary.
        """
        return self._get_config_value(["logging"]) or {}

    def get_braintrust_config(self) -> dict[str, Any]:
        """Get Braintrust configuration.

        Returns:
            Dict with api_key, project_name, api_url and timeout_seconds.

        Raises:
            ValueError: If the API key or project name is missing.
        """
        api_key = os.getenv("BRAINTRUST_API_KEY")
        if not api_key:
            raise ValueError("API key 'BRAINTRUST_API_KEY' not found in environment variables")

        project_name = os.getenv("PROJECT_NAME") or self._get_config_value(["braintrust", "project_name"])
        if not project_name:
            raise ValueError("Braintrust project name not configured (set PROJECT_NAME)")

        return {
            "api_key": api_key,
            "project_name": project_name,
            "api_url": self._get_config_value(["braintrust", "api_url"], "https://api.braintrust.dev"),
            "timeout_seconds": self._get_config_value(["braintrust", "timeout_seconds"], 10.0),
        }
