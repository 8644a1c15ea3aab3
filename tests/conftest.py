"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("OLLAMA_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("LOG_PATH", "/tmp/ollama_gateway_test.log")
os.environ.setdefault("CHAT_LOG_PATH", "/tmp/ollama_gateway_chat_test.log")


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture(autouse=True)
def reset_services():
    """Drop the backend client singletons between tests to avoid order coupling."""
    import services

    saved_config, saved_transport = services._config, services._transport
    services.reset_services()
    yield
    services._config, services._transport = saved_config, saved_transport
    services.reset_services()


LOCAL_URL = "http://local-ollama.test:11434"
REMOTE_URL = "https://remote-ollama.test"


class _UnreadStream(httpx.AsyncByteStream):
    """Async body that is not pre-read, like a real network transport's."""

    def __init__(self, data):
        self._data = data

    async def __aiter__(self):
        yield self._data

    async def aclose(self):
        pass


class FakeOllama:
    """In-memory stand-in for both runtimes, served through httpx.MockTransport."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, backend, method, path, response=None, status=200, json=None, content=None):
        """Register a reply; `response` may be a callable taking the httpx.Request."""
        host = httpx.URL(LOCAL_URL if backend == "local" else REMOTE_URL).host
        if response is None:
            def response(request, _status=status, _json=json, _content=content):
                if _content is not None:
                    return httpx.Response(_status, content=_content)
                return httpx.Response(_status, json=_json)
        self.routes[(host, method, path)] = response

    def handler(self, request):
        self.requests.append(request)
        reply = self.routes.get((request.url.host, request.method, request.url.path))
        if reply is None:
            resp = httpx.Response(404, json={"error": "not found"})
        else:
            resp = reply(request)
        # Hand the body back unread so streamed consumers (aiter_raw) see it.
        return httpx.Response(resp.status_code, headers=resp.headers, stream=_UnreadStream(resp.content))

    def sent(self, backend, path):
        host = httpx.URL(LOCAL_URL if backend == "local" else REMOTE_URL).host
        return [r for r in self.requests if r.url.host == host and r.url.path == path]

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture
def test_config():
    """Create test configuration."""
    from config import AppConfig

    return AppConfig(
        local_base_url=LOCAL_URL,
        remote_base_url=REMOTE_URL,
        remote_api_key="test-key",
        remote_models={"gpt-oss:120b", "gpt-oss:20b"},
        default_backend="local",
        remote_running_models=False,
        stream_enabled=True,
        request_timeout_s=5.0,
        embeddings_keep_alive="5m",
        max_message_chars=200_000,
        chat_log_enabled=False,
        chat_log_path="/tmp/ollama_gateway_chat_test.log",
        port=3304,
        log_level="DEBUG",
        max_request_bytes=2_000_000,
        log_path="/tmp/ollama_gateway_test.log",
        user_agent="test-agent",
    )


@pytest.fixture
def fake_ollama():
    return FakeOllama()


@pytest.fixture
async def backend_client(test_config, fake_ollama):
    from upstream import BackendClient

    c = BackendClient(test_config, transport=fake_ollama.transport)
    yield c
    await c.aclose()
