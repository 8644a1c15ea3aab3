"""Communication with the local and remote Ollama runtimes."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import httpx

from config import AppConfig
from errors import (
    AuthError,
    GatewayError,
    UpstreamMalformed,
    UpstreamStatusError,
    UpstreamUnavailable,
)

log = logging.getLogger("ollama_gateway")

# Never copied between the client connection and a backend connection.
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "host",
}


class Backend(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def label(self) -> str:
        return "Local" if self is Backend.LOCAL else "Remote"


class BackendClient:
    """Handle communication with the local and the remote Ollama runtime.

    One instance (and one httpx.AsyncClient) is shared by the whole process.
    Streaming calls are sent without a read timeout; every other call uses
    REQUEST_TIMEOUT_S.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout_s),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def base_url(self, backend: Backend) -> str:
        if backend is Backend.REMOTE:
            return self._config.remote_base_url
        return self._config.local_base_url

    def stream_timeout(self) -> httpx.Timeout:
        t = float(self._config.request_timeout_s)
        return httpx.Timeout(connect=t, write=t, pool=t, read=None)

    def get_headers(self, backend: Backend) -> Dict[str, str]:
        """Default headers; remote calls also carry the bearer credential."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }
        if backend is Backend.REMOTE:
            if not self._config.remote_api_key:
                raise AuthError("OLLAMA_API_KEY required for remote requests")
            headers["Authorization"] = f"Bearer {self._config.remote_api_key}"
        return headers

    async def call(
        self,
        backend: Backend,
        path: str,
        *,
        method: str = "GET",
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Send one request to a backend.

        Network failures raise UpstreamUnavailable; there is no silent retry,
        since replaying a streaming call would corrupt the stream.
        For stream=True the caller owns the response and must aclose() it.
        """
        req_headers = httpx.Headers(self.get_headers(backend))
        if headers:
            # Case-insensitive merge; the remote credential always wins.
            req_headers.update(headers)
            if backend is Backend.REMOTE:
                req_headers["Authorization"] = f"Bearer {self._config.remote_api_key}"

        url = f"{self.base_url(backend)}{path}"
        timeout = self.stream_timeout() if stream else httpx.Timeout(self._config.request_timeout_s)

        t0 = time.time()
        try:
            req = self.client.build_request(
                method,
                url,
                headers=req_headers,
                json=json,
                content=content,
                timeout=timeout,
            )
            resp = await self.client.send(req, stream=stream)
        except httpx.RequestError as e:
            dt = (time.time() - t0) * 1000
            log.error(
                "%s runtime %s %s failed ms=%.1f err=%s: %s",
                backend.label,
                method,
                path,
                dt,
                type(e).__name__,
                e,
            )
            raise UpstreamUnavailable(
                f"{backend.label} Ollama connection failed: {type(e).__name__}: {e}"
            ) from e

        dt = (time.time() - t0) * 1000
        log.info(
            "%s runtime %s %s status=%s ms=%.1f stream=%s",
            backend.label,
            method,
            path,
            resp.status_code,
            dt,
            stream,
        )
        if resp.status_code >= 400 and resp.status_code != 404:
            log.warning(
                "%s runtime %s returned %s content-type=%s",
                backend.label,
                path,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp

    async def call_local(self, path: str, **kwargs: Any) -> httpx.Response:
        """Call the local runtime."""
        return await self.call(Backend.LOCAL, path, **kwargs)

    async def call_remote(self, path: str, **kwargs: Any) -> httpx.Response:
        """Call the remote runtime with the bearer credential."""
        return await self.call(Backend.REMOTE, path, **kwargs)

    async def chat(self, payload: Dict[str, Any], *, backend: Backend, stream: bool) -> httpx.Response:
        """POST /api/chat. Streaming responses are returned unread."""
        body = dict(payload)
        body["stream"] = stream
        return await self.call(backend, "/api/chat", method="POST", json=body, stream=stream)

    async def embeddings(self, model: str, prompt: str, *, backend: Backend) -> Dict[str, Any]:
        """POST /api/embeddings for a single prompt."""
        resp = await self.call(
            backend,
            "/api/embeddings",
            method="POST",
            json={
                "model": model,
                "prompt": prompt,
                "keep_alive": self._config.embeddings_keep_alive,
            },
        )
        if resp.status_code >= 400:
            raise UpstreamStatusError(
                f"Embeddings failed: {resp.status_code} {resp.reason_phrase}",
                upstream_status=resp.status_code,
                body=resp.text[:2000],
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamMalformed("Invalid embedding response from Ollama") from e
        if not isinstance(data, dict):
            raise UpstreamMalformed("Invalid embedding response from Ollama")
        return data

    async def forward(
        self,
        backend: Backend,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> httpx.Response:
        """Forward a native-API request unchanged; the response is streamed."""
        fwd_headers: Dict[str, str] = {}
        for k, v in (headers or {}).items():
            lk = k.lower()
            if lk in HOP_BY_HOP_HEADERS:
                continue
            if lk == "authorization" and backend is Backend.REMOTE:
                continue
            fwd_headers[k] = v
        target = f"{path}?{query}" if query else path
        send_body = body if method.upper() in {"POST", "PUT", "PATCH", "DELETE"} and body else None
        return await self.call(
            backend,
            target,
            method=method,
            content=send_body,
            headers=fwd_headers,
            stream=True,
        )

    async def _get_json_or_none(self, backend: Backend, path: str) -> Optional[Dict[str, Any]]:
        """
        Best-effort metadata call.

        Any failure (credential, network, status, body) means "this source is
        unavailable" and yields None, so aggregation can go on with the other
        backend.
        """
        try:
            resp = await self.call(backend, path)
        except GatewayError as e:
            log.warning("%s runtime %s unavailable: %s", backend.label, path, e)
            return None
        if resp.status_code != 200:
            log.warning("%s runtime %s returned %s", backend.label, path, resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            log.warning("%s runtime %s returned non-JSON body", backend.label, path)
            return None
        if not isinstance(data, dict):
            return None
        return data

    async def list_models(self, backend: Backend) -> List[Dict[str, Any]]:
        """GET /api/tags -> models[] (empty when the backend is down)."""
        data = await self._get_json_or_none(backend, "/api/tags")
        return _dict_items((data or {}).get("models"))

    async def running_models(self, backend: Backend) -> List[Dict[str, Any]]:
        """GET /api/ps -> models[] (empty when the backend is down)."""
        data = await self._get_json_or_none(backend, "/api/ps")
        return _dict_items((data or {}).get("models"))

    async def version(self, backend: Backend) -> Optional[str]:
        data = await self._get_json_or_none(backend, "/api/version")
        v = (data or {}).get("version")
        return v if isinstance(v, str) and v else None

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]


def _dict_items(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [x for x in value if isinstance(x, dict)]
