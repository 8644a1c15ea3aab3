"""Unified model directory across the local and remote runtimes."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from config import AppConfig
from routing import is_remote_routed
from upstream import Backend, BackendClient

log = logging.getLogger("ollama_gateway")

OWNER_LOCAL = "local"
OWNER_REMOTE = "remote-turbo"

# Ollama timestamps carry nanoseconds; datetime accepts at most microseconds.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse an RFC3339 timestamp into epoch seconds, or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    s = _FRACTION_RE.sub(r"\1", value.strip())
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s).timestamp()
    except ValueError:
        return None


@dataclass
class BackendModel:
    """A model as reported by one backend's /api/tags."""

    name: str
    source: Backend
    modified_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def last_modified(self) -> Optional[float]:
        return parse_timestamp(self.modified_at)

    @classmethod
    def from_tag(cls, data: Dict[str, Any], source: Backend) -> Optional[BackendModel]:
        name = data.get("name") or data.get("model") or ""
        if not isinstance(name, str) or not name:
            return None
        modified = data.get("modified_at")
        return cls(
            name=name,
            source=source,
            modified_at=modified if isinstance(modified, str) else None,
            raw=dict(data),
        )

    def to_tag_dict(self) -> Dict[str, Any]:
        """Native /api/tags record (what the backend sent)."""
        out = dict(self.raw)
        out.setdefault("name", self.name)
        return out

    def to_public_dict(self) -> Dict[str, Any]:
        """OpenAI-style model record."""
        created = self.last_modified
        return {
            "id": self.name,
            "object": "model",
            "created": int(created if created is not None else time.time()),
            "owned_by": OWNER_REMOTE if self.source is Backend.REMOTE else OWNER_LOCAL,
            "permission": [],
            "root": self.name,
            "parent": None,
        }


def deduplicate(models: Iterable[BackendModel]) -> List[BackendModel]:
    """Keep the first occurrence of every name."""
    seen: Set[str] = set()
    out: List[BackendModel] = []
    for m in models:
        if m.name in seen:
            continue
        seen.add(m.name)
        out.append(m)
    return out


class ModelDirectory:
    """Aggregate models from both runtimes and classify model names.

    Each source is fetched independently; a failing source contributes
    nothing instead of failing the whole listing.
    """

    def __init__(self, client: BackendClient, config: AppConfig) -> None:
        self._client = client
        self._config = config

    def is_remote_routed(self, name: Optional[str]) -> bool:
        """Membership test against the remote allowlist."""
        return is_remote_routed(name, self._config.remote_models)

    async def local_models(self) -> List[BackendModel]:
        items = await self._client.list_models(Backend.LOCAL)
        out = [m for m in (BackendModel.from_tag(x, Backend.LOCAL) for x in items) if m]
        log.info("Found %d local models", len(out))
        return out

    async def remote_models_available(self) -> List[BackendModel]:
        """Remote models, restricted to the allowlist."""
        if not self._config.remote_api_key:
            log.warning("No OLLAMA_API_KEY configured, skipping remote models")
            return []
        items = await self._client.list_models(Backend.REMOTE)
        out = []
        for x in items:
            m = BackendModel.from_tag(x, Backend.REMOTE)
            if m is not None and self.is_remote_routed(m.name):
                out.append(m)
        log.info("Found %d remote models (of %d advertised)", len(out), len(items))
        return out

    async def list_unified(self) -> List[BackendModel]:
        """
        Local models first, then allowlisted remote models; a name present in
        both resolves to the local entry.
        """
        local, remote = await asyncio.gather(self.local_models(), self.remote_models_available())
        unified = deduplicate([*local, *remote])
        log.info("Returning %d unified models", len(unified))
        return unified

    async def to_public_listing(self) -> Dict[str, Any]:
        models = await self.list_unified()
        return {"object": "list", "data": [m.to_public_dict() for m in models]}

    async def is_model_available(self, name: str) -> bool:
        return any(m.name == name for m in await self.list_unified())

    async def running_models(self) -> List[Dict[str, Any]]:
        """
        Currently loaded models, each tagged with `_source`.

        Only the local runtime is asked unless REMOTE_RUNNING_MODELS is set.
        """
        out: List[Dict[str, Any]] = [
            {**m, "_source": Backend.LOCAL.value}
            for m in await self._client.running_models(Backend.LOCAL)
        ]
        if self._config.remote_running_models and self._config.remote_api_key:
            for m in await self._client.running_models(Backend.REMOTE):
                name = m.get("name") or m.get("model")
                if self.is_remote_routed(name):
                    out.append({**m, "_source": Backend.REMOTE.value})
        log.info("Returning %d running models", len(out))
        return out

    async def versions(self) -> Dict[str, str]:
        """Versions reported by both runtimes ("unknown" when unavailable)."""
        local = await self._client.version(Backend.LOCAL)
        remote = None
        if self._config.remote_api_key:
            remote = await self._client.version(Backend.REMOTE)
        return {"local": local or "unknown", "remote": remote or "unknown"}
