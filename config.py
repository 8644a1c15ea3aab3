"""Configuration management for the Ollama gateway."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Set

from errors import AuthError

DEFAULT_REMOTE_MODELS = "gpt-oss:120b,gpt-oss:20b"
BACKEND_NAMES = ("local", "remote")


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_set(name: str, default: str = "") -> Set[str]:
    """Parse comma-separated environment variable into a set."""
    v = os.getenv(name)
    if v is None:
        v = default
    items = [x.strip() for x in v.split(",") if x.strip() and x.strip().lower() != "empty"]
    return set(items)


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Backends
    local_base_url: str
    remote_base_url: str
    remote_api_key: str

    # Routing
    remote_models: Set[str]
    default_backend: str
    remote_running_models: bool

    # Behaviour
    stream_enabled: bool
    request_timeout_s: float
    embeddings_keep_alive: str
    max_message_chars: int

    # Append-only chat debug log
    chat_log_enabled: bool
    chat_log_path: str

    # Server settings
    port: int
    log_level: str
    max_request_bytes: int
    log_path: str
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            local_base_url=_env_str("LOCAL_OLLAMA_HOST", "http://localhost:11434").rstrip("/"),
            remote_base_url=_env_str("OLLAMA_HOST", "https://ollama.com").rstrip("/"),
            remote_api_key=os.getenv("OLLAMA_API_KEY", "").strip(),
            remote_models=_csv_set("REMOTE_MODELS", DEFAULT_REMOTE_MODELS),
            default_backend=_env_str("DEFAULT_BACKEND", "local").strip().lower(),
            remote_running_models=_env_bool("REMOTE_RUNNING_MODELS", False),
            stream_enabled=_env_bool("OLLAMA_STREAM", True),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 30.0),
            embeddings_keep_alive=_env_str("EMBEDDINGS_KEEP_ALIVE", "5m"),
            max_message_chars=_env_int("MAX_MESSAGE_CHARS", 200_000),
            chat_log_enabled=_env_bool("CHAT_LOG", True),
            chat_log_path=_env_str("CHAT_LOG_PATH", "logs/chat-completions.log"),
            port=_env_int("PORT", 3304),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            log_path=_env_str("LOG_PATH", "logs/gateway.log"),
            user_agent=_env_str("USER_AGENT", "ollama-gateway/1.0.0"),
        )

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration.

        A missing remote credential raises AuthError: the remote half of the
        gateway cannot work without it, so it is treated as a startup failure.
        """
        if require_api_key and not self.remote_api_key:
            raise AuthError("OLLAMA_API_KEY environment variable is required")
        if not self.local_base_url:
            raise ValueError("LOCAL_OLLAMA_HOST must be non-empty")
        if not self.remote_base_url:
            raise ValueError("OLLAMA_HOST must be non-empty")
        if self.default_backend not in BACKEND_NAMES:
            raise ValueError("DEFAULT_BACKEND must be 'local' or 'remote'")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_message_chars <= 0:
            raise ValueError("MAX_MESSAGE_CHARS must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not (0 < self.port < 65536):
            raise ValueError("PORT must be between 1 and 65535")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if self.chat_log_enabled and not self.chat_log_path:
            raise ValueError("CHAT_LOG_PATH must be non-empty when CHAT_LOG is enabled")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
