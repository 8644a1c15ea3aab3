"""
Ollama gateway: one listener, two API surfaces.

  /v1/*   OpenAI-compatible chat/completions, models and embeddings,
          translated to the native Ollama API.
  /api/*  Native Ollama API. Model-bearing calls go to the remote runtime
          when the model is on the REMOTE_MODELS allowlist, everything else
          to the local runtime; tags/ps/version are aggregated here.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import services
from config import load_config
from errors import (
    GatewayError,
    InternalError,
    InvalidRequest,
    ModelNotFound,
    UpstreamMalformed,
    UpstreamStatusError,
    error_body,
    generate_request_id,
)
from headers import CORS_HEADERS, api_headers, stream_headers
from logger import log_chat_event, setup_chat_logging, setup_logging
from routing import RouteKind
from sse_handler import ChatStreamPipeline
from translator import ChatRequest, build_chat_completion, to_backend_chat
from upstream import HOP_BY_HOP_HEADERS, Backend, BackendClient
from utils import dump_config, load_env_files
from validation import (
    validate_auth,
    validate_chat_request,
    validate_embeddings_request,
    validate_parameters,
)

GATEWAY_VERSION = "1.0.0"
PROXY_NAME = "ollama-gateway"

OPENAI_ENDPOINTS = [
    "POST /v1/chat/completions",
    "GET /v1/models",
    "POST /v1/completions",
    "POST /v1/embeddings",
]

OLLAMA_ENDPOINTS = [
    "POST /api/generate",
    "POST /api/chat",
    "POST /api/embed",
    "POST /api/embeddings",
    "GET /api/tags",
    "POST /api/show",
    "POST /api/create",
    "POST /api/copy",
    "DELETE /api/delete",
    "POST /api/pull",
    "POST /api/push",
    "GET /api/ps",
    "GET /api/version",
    "HEAD /api/blobs/:digest",
    "POST /api/blobs/:digest",
]

NOT_FOUND_MESSAGE = "Not found - try /v1/* for OpenAI API or /api/* for Ollama API"

load_env_files()

# Load configuration
config = load_config()
config.validate(require_api_key=False)

# Setup logging
log = setup_logging(config.log_path)
setup_chat_logging(config.chat_log_path, enabled=config.chat_log_enabled)
dump_config(config)

services.configure(config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Refuse to start without the remote credential; close the shared client on exit."""
    cfg = services.get_config()
    cfg.validate(require_api_key=True)
    log.info(
        "Ollama gateway listening on port %s (local=%s remote=%s remote_models=%s)",
        cfg.port,
        cfg.local_base_url,
        cfg.remote_base_url,
        ", ".join(sorted(cfg.remote_models)),
    )

    yield  # Application is running

    await services.shutdown_services()


app = FastAPI(
    title="ollama-gateway",
    version=GATEWAY_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _request_id(request: Request) -> str:
    """Reuse the caller's id when given, otherwise mint one."""
    rid = getattr(request.state, "request_id", None)
    if rid:
        return rid
    rid = (request.headers.get("x-request-id") or "").strip() or generate_request_id()
    request.state.request_id = rid
    return rid


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    rid = _request_id(request)
    if exc.status_code >= 500:
        log.error("req_id=%s %s %s -> %s: %s", rid, request.method, request.url.path, exc.status_code, exc.message)
    else:
        log.info("req_id=%s %s %s -> %s: %s", rid, request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=api_headers(rid))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    rid = _request_id(request)
    if exc.status_code in (404, 405):
        return JSONResponse(
            error_body(NOT_FOUND_MESSAGE, "invalid_request_error"),
            status_code=404,
            headers=api_headers(rid),
        )
    error_type = "invalid_request_error" if exc.status_code < 500 else "api_error"
    return JSONResponse(
        error_body(str(exc.detail), error_type),
        status_code=exc.status_code,
        headers=api_headers(rid),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    rid = _request_id(request)
    log.exception("Unhandled error req_id=%s %s %s", rid, request.method, request.url.path)
    log_chat_event("ERROR", rid, path=request.url.path, error=repr(exc))
    err = InternalError("Internal server error")
    return JSONResponse(err.to_dict(), status_code=err.status_code, headers=api_headers(rid))


async def _read_json_body(request: Request) -> Dict[str, Any]:
    """Parse a JSON object body behind a Content-Length guard."""
    max_bytes = services.get_config().max_request_bytes
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
        if n < 0:
            raise HTTPException(status_code=400, detail="Invalid Content-Length: must be non-negative")
        if n > max_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request too large: {n} bytes (max {max_bytes})",
            )

    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Invalid JSON body")
    if not isinstance(body, dict):
        raise InvalidRequest("Invalid JSON body: expected object")
    return body


# ---------------------------------------------------------------------------
# OpenAI-compatible surface
# ---------------------------------------------------------------------------


@app.post("/v1/chat/completions")
async def v1_chat_completions(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Response:
    """Handle chat completion requests."""
    rid = _request_id(request)
    validate_auth(authorization)
    body = await _read_json_body(request)

    cfg = services.get_config()
    validate_chat_request(body, cfg.max_message_chars)
    validate_parameters(body)
    chat_req = ChatRequest.from_dict(body)

    directory = services.get_model_directory()
    if not await directory.is_model_available(chat_req.model):
        raise ModelNotFound(f"The model '{chat_req.model}' does not exist", param="model")

    backend = services.get_router().route_for_model(chat_req.model)
    stream = chat_req.stream and cfg.stream_enabled
    payload = to_backend_chat(chat_req, stream=stream)
    client = services.get_backend_client()

    log.info(
        "Incoming chat req_id=%s model=%s backend=%s stream=%s messages=%d",
        rid,
        chat_req.model,
        backend.value,
        stream,
        len(chat_req.messages),
    )
    log_chat_event("REQUEST", rid, backend=backend.value, stream=stream, request=body)

    if stream:
        pipeline = ChatStreamPipeline(chat_req.model, rid)
        return StreamingResponse(
            pipeline.run(lambda: client.chat(payload, backend=backend, stream=True)),
            media_type="text/event-stream",
            headers=stream_headers(rid),
        )

    resp = await client.chat(payload, backend=backend, stream=False)
    if resp.status_code >= 400:
        err = UpstreamStatusError(
            f"Ollama request failed: {resp.status_code}",
            upstream_status=resp.status_code,
            body=resp.text[:2000],
        )
        log.warning("req_id=%s backend error status=%s body=%r", rid, resp.status_code, err.body[:200])
        if err.is_unknown_model:
            raise ModelNotFound(f"The model '{chat_req.model}' does not exist", param="model") from err
        raise err
    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamMalformed("Invalid response from Ollama") from e

    completion = build_chat_completion(data, chat_req)
    log_chat_event("RESPONSE", rid, response=completion)
    return JSONResponse(completion, headers=api_headers(rid))


@app.get("/v1/models")
async def v1_models(request: Request) -> JSONResponse:
    """List local and allowlisted remote models."""
    rid = _request_id(request)
    listing = await services.get_model_directory().to_public_listing()
    return JSONResponse(listing, headers=api_headers(rid))


@app.post("/v1/embeddings")
async def v1_embeddings(request: Request) -> JSONResponse:
    """One backend call per input item, sequentially; the first failure fails the request."""
    rid = _request_id(request)
    body = await _read_json_body(request)
    inputs = validate_embeddings_request(body)
    model = str(body["model"])
    backend = services.get_router().route_for_model(model)
    client = services.get_backend_client()

    data: List[Dict[str, Any]] = []
    total_tokens = 0
    for i, text in enumerate(inputs):
        try:
            result = await client.embeddings(model, text, backend=backend)
        except UpstreamStatusError as e:
            log.warning("Embedding error req_id=%s item=%d: %s body=%r", rid, i, e.message, e.body[:200])
            if e.is_unknown_model:
                raise ModelNotFound(
                    f"Model '{model}' not found. Make sure it's pulled in Ollama.", param="model"
                ) from e
            raise InternalError("Failed to generate embeddings") from e
        except GatewayError as e:
            log.warning("Embedding error req_id=%s item=%d: %s", rid, i, e.message)
            raise InternalError("Failed to generate embeddings") from e

        embedding = result.get("embedding")
        if not isinstance(embedding, list):
            raise InternalError("Invalid embedding response from Ollama")
        data.append({"object": "embedding", "embedding": embedding, "index": i})
        total_tokens += -(-len(text) // 4)

    return JSONResponse(
        {
            "object": "list",
            "data": data,
            "model": model,
            "usage": {"prompt_tokens": total_tokens, "total_tokens": total_tokens},
        },
        headers=api_headers(rid),
    )


@app.post("/v1/completions")
async def v1_completions() -> Response:
    raise InvalidRequest("The Completions API is deprecated. Please use /v1/chat/completions instead.")


@app.get("/v1")
@app.get("/v1/")
async def v1_root(request: Request) -> JSONResponse:
    return JSONResponse(
        {
            "message": "OpenAI-compatible API server",
            "version": GATEWAY_VERSION,
            "endpoints": OPENAI_ENDPOINTS,
        },
        headers=api_headers(_request_id(request)),
    )


@app.api_route("/v1/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"])
async def v1_not_found(request: Request, rest: str) -> JSONResponse:
    return JSONResponse(
        {**error_body("Not found", "invalid_request_error"), "endpoints": OPENAI_ENDPOINTS},
        status_code=404,
        headers=api_headers(_request_id(request)),
    )


# ---------------------------------------------------------------------------
# Native Ollama surface
# ---------------------------------------------------------------------------


async def _relay(resp: httpx.Response) -> AsyncGenerator[bytes, None]:
    """Stream the upstream body through unchanged."""
    try:
        async for chunk in resp.aiter_raw():
            yield chunk
    finally:
        await resp.aclose()


async def _forward(request: Request, backend: Backend, body: bytes) -> Response:
    client = services.get_backend_client()
    resp = await client.forward(
        backend,
        request.method,
        request.url.path,
        query=request.url.query,
        headers=request.headers,
        body=body,
    )

    if backend is Backend.REMOTE and resp.status_code >= 400:
        details = await BackendClient.read_error_snippet(resp)
        await resp.aclose()
        log.error("Remote Ollama error %s %s -> %s: %s", request.method, request.url.path, resp.status_code, details)
        message = f"Remote Ollama request failed: {resp.status_code} {resp.reason_phrase}"
        if details:
            message = f"{message}: {details}"
        return JSONResponse(
            error_body(message, "api_error"),
            status_code=resp.status_code,
            headers=CORS_HEADERS,
        )

    headers = {k: v for k, v in resp.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
    return StreamingResponse(_relay(resp), status_code=resp.status_code, headers=headers)


@app.api_route("/api/{path:path}", methods=["GET", "POST", "DELETE", "HEAD", "PUT", "PATCH"])
async def native_api(request: Request, path: str) -> Response:
    """Aggregate tags/ps/version; forward everything else to the chosen runtime."""
    body = await request.body()
    decision = services.get_router().decide(request.method, request.url.path, body)
    log.info("Ollama API: %s %s -> %s", request.method, request.url.path, decision.kind.value)

    directory = services.get_model_directory()
    if decision.kind is RouteKind.TAGS:
        models = await directory.list_unified()
        return JSONResponse({"models": [m.to_tag_dict() for m in models]}, headers=CORS_HEADERS)
    if decision.kind is RouteKind.PS:
        return JSONResponse({"models": await directory.running_models()}, headers=CORS_HEADERS)
    if decision.kind is RouteKind.VERSION:
        versions = await directory.versions()
        return JSONResponse(
            {
                "version": GATEWAY_VERSION,
                "proxy": PROXY_NAME,
                "local_ollama": versions["local"],
                "remote_ollama": versions["remote"],
                "supported_apis": ["OpenAI v1", "Ollama"],
                "supported_endpoints": OPENAI_ENDPOINTS + OLLAMA_ENDPOINTS,
            },
            headers=CORS_HEADERS,
        )

    return await _forward(request, decision.backend or Backend.LOCAL, body)


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


@app.options("/{path:path}")
async def preflight(path: str) -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@app.get("/")
async def root() -> Dict[str, Any]:
    cfg = services.get_config()
    return {
        "message": "Unified OpenAI + Ollama API Server",
        "version": GATEWAY_VERSION,
        "apis": {
            "openai": {
                "base_url": "/v1",
                "description": "OpenAI-compatible API",
                "endpoints": OPENAI_ENDPOINTS,
            },
            "ollama": {
                "base_url": "/api",
                "description": "Complete Ollama API",
                "models": {
                    "local": f"Available from {cfg.local_base_url}",
                    "remote": sorted(cfg.remote_models),
                },
            },
        },
    }


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    config.validate(require_api_key=True)
    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
