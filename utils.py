"""Startup helpers: .env loading and config dump."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import mask_secret

log = logging.getLogger("ollama_gateway")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Ollama gateway startup config ===")
    log.info("LOCAL_OLLAMA_HOST=%s", config.local_base_url)
    log.info("OLLAMA_HOST=%s", config.remote_base_url)
    log.info(
        "OLLAMA_API_KEY_set=%s value=%s len=%s",
        bool(config.remote_api_key),
        mask_secret(config.remote_api_key),
        len(config.remote_api_key or ""),
    )
    log.info("REMOTE_MODELS=%s", sorted(config.remote_models))
    log.info("DEFAULT_BACKEND=%s", config.default_backend)
    log.info("REMOTE_RUNNING_MODELS=%s", config.remote_running_models)
    log.info("OLLAMA_STREAM=%s", config.stream_enabled)
    if not config.stream_enabled:
        log.info("OLLAMA_STREAM=false means stream=true requests are answered non-streaming.")
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("EMBEDDINGS_KEEP_ALIVE=%s", config.embeddings_keep_alive)
    log.info("MAX_MESSAGE_CHARS=%s", config.max_message_chars)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("CHAT_LOG=%s path=%s", config.chat_log_enabled, config.chat_log_path)
    log.info("PORT=%s", config.port)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("=====================================")
