"""Logging configuration for the Ollama gateway."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import colorlog

LOGGER_NAME = "ollama_gateway"
CHAT_LOGGER_NAME = "ollama_gateway.chat"

# Separator written after each chat-log entry, keyed by entry type.
_CHAT_SEPARATORS = {
    "STREAMING_START": "~" * 40,
    "STREAMING_CHUNK": "-" * 40,
    "ERROR": "!" * 80,
}

chat_log = logging.getLogger(CHAT_LOGGER_NAME)


def setup_logging(log_path: str | None = None) -> logging.Logger:
    """
    Configure logging with rotation.

    Logs are written to LOG_PATH (default logs/gateway.log) with:
      - maxBytes: 1 MB
      - backupCount: 3

    LOG_LEVEL=DISABLE disables logging entirely.
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplication
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    if not log_path:
        log_path = "logs/gateway.log"

    handler, fallback_err = _create_log_handler(log_path, max_bytes=1_048_576)
    handler.setFormatter(_create_log_formatter())

    logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stdout/stderr logging.",
            log_path,
            fallback_err,
        )
    logger.propagate = False
    return logger


def setup_chat_logging(log_path: str, enabled: bool = True) -> logging.Logger:
    """Attach the append-only chat debug log. Kept separate from the main log."""
    chat_log.handlers.clear()
    chat_log.propagate = False
    if not enabled:
        chat_log.addHandler(logging.NullHandler())
        chat_log.setLevel(logging.CRITICAL)
        return chat_log

    chat_log.setLevel(logging.DEBUG)
    handler, fallback_err = _create_log_handler(log_path, max_bytes=50_000_000)
    handler.setFormatter(logging.Formatter("%(message)s"))
    chat_log.addHandler(handler)
    if fallback_err is not None:
        logging.getLogger(LOGGER_NAME).warning(
            "Failed to open chat log %r (%s). Chat log goes to stderr.", log_path, fallback_err
        )
    return chat_log


def log_chat_event(entry_type: str, request_id: str, **fields: Any) -> None:
    """Append one JSON entry to the chat debug log."""
    if not chat_log.isEnabledFor(logging.DEBUG):
        return
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": entry_type,
        "requestId": request_id,
        **fields,
    }
    try:
        text = json.dumps(entry, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(entry)
    sep = _CHAT_SEPARATORS.get(entry_type, "=" * 80)
    chat_log.debug("%s\n%s", text, sep)


def _create_log_handler(log_path: str, max_bytes: int) -> tuple[logging.Handler, Exception | None]:
    """Create log handler with fallback to StreamHandler on error."""
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=3,
            encoding="utf-8",
        ), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter() -> logging.Formatter:
    """Create log formatter, colored unless LOG_COLOR is off."""
    if os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes"):
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            datefmt=None,
            reset=True,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
            secondary_log_colors={},
            style='%'
        )
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
