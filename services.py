"""Process-lifetime backend client / model directory pair."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from config import AppConfig, load_config
from models import ModelDirectory
from routing import Router
from upstream import BackendClient

log = logging.getLogger("ollama_gateway")

_config: Optional[AppConfig] = None
_transport: Optional[httpx.AsyncBaseTransport] = None
_client: Optional[BackendClient] = None
_directory: Optional[ModelDirectory] = None


def configure(config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """Set the configuration (and optionally a transport) used for the singletons."""
    global _config, _transport
    _config = config
    _transport = transport
    reset_services()


def get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_backend_client() -> BackendClient:
    global _client
    if _client is None:
        _client = BackendClient(get_config(), transport=_transport)
    return _client


def get_model_directory() -> ModelDirectory:
    global _directory
    if _directory is None:
        _directory = ModelDirectory(get_backend_client(), get_config())
    return _directory


def get_router() -> Router:
    return Router(get_config())


def reset_services() -> None:
    """Drop the singletons; the next getter call rebuilds them."""
    global _client, _directory
    _client = None
    _directory = None


async def shutdown_services() -> None:
    if _client is not None:
        await _client.aclose()
        log.info("Backend client closed")
    reset_services()
