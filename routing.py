"""Backend selection for native-API requests."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Optional, Pattern, Tuple

from config import AppConfig
from errors import InvalidRequest
from upstream import Backend

log = logging.getLogger("ollama_gateway")


class RouteKind(str, Enum):
    TAGS = "tags"
    PS = "ps"
    VERSION = "version"
    BLOB = "blob"
    LOCAL_ONLY = "local_only"
    MODEL_ROUTED = "model_routed"
    DEFAULT = "default"

    @property
    def is_aggregated(self) -> bool:
        """Answered by the model directory instead of being forwarded."""
        return self in (RouteKind.TAGS, RouteKind.PS, RouteKind.VERSION)


@dataclass(frozen=True)
class Route:
    methods: Tuple[str, ...]
    pattern: Pattern[str]
    kind: RouteKind

    def matches(self, method: str, path: str) -> bool:
        return method.upper() in self.methods and self.pattern.fullmatch(path) is not None


# First match wins; anything else under /api is RouteKind.DEFAULT.
ROUTES: Tuple[Route, ...] = (
    Route(("GET",), re.compile(r"/api/tags"), RouteKind.TAGS),
    Route(("GET",), re.compile(r"/api/ps"), RouteKind.PS),
    Route(("GET",), re.compile(r"/api/version"), RouteKind.VERSION),
    Route(("HEAD", "POST"), re.compile(r"/api/blobs(?:/.*)?"), RouteKind.BLOB),
    Route(("POST", "DELETE"), re.compile(r"/api/(?:pull|push|create|delete|copy)"), RouteKind.LOCAL_ONLY),
    Route(("POST",), re.compile(r"/api/(?:generate|chat|embed|embeddings|show)"), RouteKind.MODEL_ROUTED),
)

_DIGEST_RE = re.compile(r"^/api/blobs/(.+)$")


@dataclass(frozen=True)
class RoutingDecision:
    backend: Optional[Backend]
    kind: RouteKind
    model: Optional[str] = None


def is_remote_routed(model: Optional[str], remote_models: AbstractSet[str]) -> bool:
    """Allowlist test shared by both API surfaces."""
    return bool(model) and model in remote_models


def extract_model(body: Optional[bytes]) -> Optional[str]:
    """Best-effort `model` field of a JSON request body."""
    if not body:
        return None
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    model = data.get("model")
    return model if isinstance(model, str) and model else None


def extract_digest(path: str) -> str:
    m = _DIGEST_RE.match(path)
    if not m or not m.group(1).strip("/"):
        raise InvalidRequest("Invalid blob digest", param="digest")
    return m.group(1)


class Router:
    """Resolve (method, path) through the route table and pick a backend."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def default_backend(self) -> Backend:
        return Backend(self._config.default_backend)

    def resolve(self, method: str, path: str) -> RouteKind:
        for route in ROUTES:
            if route.matches(method, path):
                return route.kind
        return RouteKind.DEFAULT

    def route_for_model(self, model: Optional[str]) -> Backend:
        if not model:
            return self.default_backend
        return Backend.REMOTE if is_remote_routed(model, self._config.remote_models) else Backend.LOCAL

    def decide(self, method: str, path: str, body: Optional[bytes] = None) -> RoutingDecision:
        kind = self.resolve(method, path)
        if kind.is_aggregated:
            return RoutingDecision(backend=None, kind=kind)
        if kind is RouteKind.BLOB:
            extract_digest(path)
            return RoutingDecision(backend=Backend.LOCAL, kind=kind)
        if kind is RouteKind.LOCAL_ONLY:
            return RoutingDecision(backend=Backend.LOCAL, kind=kind)
        if kind is RouteKind.MODEL_ROUTED:
            model = extract_model(body)
            backend = self.route_for_model(model)
            log.info("Routing %s %s model=%s -> %s", method, path, model, backend.value)
            return RoutingDecision(backend=backend, kind=kind, model=model)
        return RoutingDecision(backend=self.default_backend, kind=kind)
