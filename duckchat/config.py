"""Configuration management for the chat client."""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")


class Configuration:
    """Manages configuration and environment variables for the chat client."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: YAML file to load. Falls back to ``DUCKCHAT_CONFIG_FILE``
                and then to the ``config.yaml`` shipped with the package.
        """
        self.load_env()  # Load .env before reading overrides
        path = config_path or os.getenv("DUCKCHAT_CONFIG_FILE") or DEFAULT_CONFIG_PATH
        self._config = self._load_yaml_config(Path(path))

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "Configuration":
        """Build a configuration from an in-memory mapping.

        Raises:
            ValueError: If ``config`` is not a dict.
        """
        if not isinstance(config, dict):
            raise ValueError(f"Config must be a dict, got {type(config)}")
        instance = cls.__new__(cls)
        instance._config = config
        return instance

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: Path) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_api_config(self) -> dict[str, Any]:
        """Get API endpoint configuration.

        Returns:
            Dictionary with endpoint URLs, user agent and header names.

        Raises:
            ValueError: If a required API parameter is missing.
        """
        api_config = self._config.get("api", {})

        required_keys = [
            "status_url", "chat_url", "user_agent",
            "token_request_header", "token_header",
        ]
        for key in required_keys:
            if key not in api_config:
                raise ValueError(
                    f"api.{key} must be explicitly configured in config.yaml"
                )

        result = {key: api_config[key] for key in required_keys}
        user_agent = os.getenv("DUCKCHAT_USER_AGENT")
        if user_agent:
            result["user_agent"] = user_agent
        return result

    @property
    def default_model(self) -> str:
        """Get the model new sessions start with.

        Raises:
            ValueError: If chat.default_model is not configured.
        """
        env_model = os.getenv("DUCKCHAT_MODEL")
        if env_model:
            return env_model

        chat_config = self._config.get("chat", {})
        if "default_model" not in chat_config:
            raise ValueError(
                "chat.default_model must be explicitly configured in config.yaml"
            )
        return chat_config["default_model"]

    def get_http_client_config(self) -> dict[str, float]:
        """Get HTTP client timeouts.

        Raises:
            ValueError: If a timeout is missing or not positive.
        """
        http_config = self._config.get("http_client", {})

        required_keys = [
            "connect_timeout", "read_timeout", "write_timeout", "pool_timeout",
        ]
        for key in required_keys:
            if key not in http_config:
                raise ValueError(
                    f"http_client.{key} must be explicitly configured "
                    "in config.yaml"
                )
            if http_config[key] <= 0:
                raise ValueError(f"http_client.{key} must be positive")

        return {key: float(http_config[key]) for key in required_keys}

    def get_streaming_config(self) -> dict[str, Any]:
        """Get streaming configuration.

        Returns:
            Streaming configuration dictionary (may be empty).
        """
        streaming_config = self._config.get("streaming", {})
        max_buffer_size = streaming_config.get("max_buffer_size")
        if max_buffer_size is not None and max_buffer_size < 1:
            raise ValueError("streaming.max_buffer_size must be at least 1")
        return streaming_config

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration.

        Returns:
            Logging configuration dictionary with a ``level`` entry.
        """
        logging_config = dict(self._config.get("logging", {}))
        logging_config.setdefault("level", "INFO")
        env_level = os.getenv("DUCKCHAT_LOG_LEVEL")
        if env_level:
            logging_config["level"] = env_level
        return logging_config
