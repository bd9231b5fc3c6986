"""Configuration management for chatrelay."""

import os
from typing import Any

import yaml
from dotenv import load_dotenv

CONFIG_ENV_VAR = "CHATRELAY_CONFIG"


class Configuration:
    """Manages configuration and environment variables for chatrelay."""

    def __init__(
        self,
        config_path: str | None = None,
        config_data: dict[str, Any] | None = None,
    ) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: Explicit YAML file. Defaults to $CHATRELAY_CONFIG,
                then the packaged config.yaml.
            config_data: Pre-parsed configuration, used instead of any file.
        """
        self.load_env()  # Load .env for API keys
        if config_data is not None:
            self._config = self._validate_root(config_data)
        else:
            self._config = self._load_yaml_config(config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _validate_root(config: Any) -> dict[str, Any]:
        if not isinstance(config, dict):
            raise ValueError(
                f"Config file must be YAML dict, got {type(config)}"
            )
        return config

    def _load_yaml_config(self, config_path: str | None) -> dict[str, Any]:
        """Load configuration from YAML file."""
        path = (
            config_path
            or os.getenv(CONFIG_ENV_VAR)
            or os.path.join(os.path.dirname(__file__), "config.yaml")
        )
        with open(path) as file:
            return self._validate_root(yaml.safe_load(file))

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_streaming_config(self) -> dict[str, Any]:
        """Get client streaming configuration from YAML.

        Returns:
            Streaming configuration dictionary with validated values.

        Raises:
            ValueError: If required streaming parameters are missing or invalid.
        """
        streaming_config = self._config.get("streaming", {})

        required_keys = [
            "proxy_base_url", "idle_timeout", "connect_timeout",
            "default_temperature", "default_max_tokens",
        ]
        for key in required_keys:
            if key not in streaming_config:
                raise ValueError(
                    f"streaming.{key} must be explicitly configured "
                    "in config.yaml"
                )

        idle_timeout = streaming_config["idle_timeout"]
        if idle_timeout is not None and idle_timeout <= 0:
            raise ValueError("streaming.idle_timeout must be positive")
        if streaming_config["connect_timeout"] <= 0:
            raise ValueError("streaming.connect_timeout must be positive")
        if not 0 <= streaming_config["default_temperature"] <= 2:
            raise ValueError("streaming.default_temperature must be within [0, 2]")
        if streaming_config["default_max_tokens"] < 1:
            raise ValueError("streaming.default_max_tokens must be at least 1")

        return streaming_config

    def get_fallback_config(self) -> dict[str, Any]:
        """Get fallback selection configuration from YAML.

        Raises:
            ValueError: If the fallback section or its default models are missing.
        """
        fallback_config = self._config.get("fallback")
        if not isinstance(fallback_config, dict):
            raise ValueError(
                "fallback must be explicitly configured in config.yaml"
            )

        for key in ("default_model", "last_resort_model"):
            if key not in fallback_config:
                raise ValueError(
                    f"fallback.{key} must be explicitly configured in config.yaml"
                )

        for rule in fallback_config.get("rules", []):
            if "match" not in rule or "fallback" not in rule:
                raise ValueError(
                    "fallback.rules entries must define 'match' and 'fallback'"
                )

        return fallback_config

    def get_models_config(self) -> list[dict[str, Any]]:
        """Get extra model catalog entries from YAML."""
        return list(self._config.get("models") or [])

    def get_proxy_config(self) -> dict[str, Any]:
        """Get proxy server configuration from YAML.

        Raises:
            ValueError: If required proxy parameters are missing or invalid.
        """
        proxy_config = self._config.get("proxy", {})

        required_keys = ["host", "port", "cors_origins", "app_name", "app_url"]
        for key in required_keys:
            if key not in proxy_config:
                raise ValueError(
                    f"proxy.{key} must be explicitly configured in config.yaml"
                )

        port = proxy_config["port"]
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError("proxy.port must be a valid TCP port")

        return proxy_config

    def get_provider_config(self, name: str) -> dict[str, Any]:
        """Get upstream provider configuration from YAML.

        Args:
            name: Provider name (openai, anthropic, gemini, ...)

        Raises:
            ValueError: If the provider is unknown or incompletely configured.
        """
        providers = self._config.get("proxy", {}).get("providers", {})
        if name not in providers:
            raise ValueError(
                f"proxy.providers.{name} must be explicitly configured "
                "in config.yaml"
            )

        provider_config = providers[name]
        for key in ("base_url", "api_key_env"):
            if key not in provider_config:
                raise ValueError(
                    f"proxy.providers.{name}.{key} must be explicitly "
                    "configured in config.yaml"
                )

        return provider_config

    def provider_api_key(self, name: str) -> str | None:
        """Get the upstream API key for a provider, or None when unset."""
        provider_config = self.get_provider_config(name)
        env_keys = provider_config["api_key_env"]
        if isinstance(env_keys, str):
            env_keys = [env_keys]
        for env_key in env_keys:
            if api_key := os.getenv(env_key):
                return api_key
        return None

    @property
    def access_token(self) -> str | None:
        """Bearer token the client presents to the proxy."""
        token_env = self._config.get("streaming", {}).get(
            "access_token_env", "CHATRELAY_ACCESS_TOKEN"
        )
        return os.getenv(token_env)

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._config.get("logging", {})
