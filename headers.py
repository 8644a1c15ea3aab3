"""Response header sets shared by every route."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Organization",
}

# Informational only; nothing enforces these limits.
RATE_LIMIT_REQUESTS = 10_000

STREAM_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def rate_limit_headers() -> Dict[str, str]:
    reset = datetime.now(timezone.utc) + timedelta(seconds=60)
    return {
        "x-ratelimit-limit-requests": str(RATE_LIMIT_REQUESTS),
        "x-ratelimit-remaining-requests": str(RATE_LIMIT_REQUESTS - 1),
        "x-ratelimit-reset-requests": reset.isoformat().replace("+00:00", "Z"),
    }


def api_headers(request_id: str) -> Dict[str, str]:
    """Headers for public-surface JSON responses."""
    return {"x-request-id": request_id, **CORS_HEADERS, **rate_limit_headers()}


def stream_headers(request_id: str) -> Dict[str, str]:
    return {**api_headers(request_id), **STREAM_HEADERS, "Connection": "keep-alive"}
