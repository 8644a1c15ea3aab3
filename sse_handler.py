"""Server-Sent Events (SSE) re-framing of streaming chat responses."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx

from errors import GatewayError, UpstreamMalformed, UpstreamStatusError, generate_completion_id
from logger import log_chat_event
from translator import (
    FALLBACK_CONTENT,
    create_chunk_dict,
    frame_content,
    frame_error,
    frame_is_done,
    parse_stream_frame,
    tool_calls_from_backend,
)
from upstream import BackendClient

log = logging.getLogger("ollama_gateway")

SSE_DONE = b"data: [DONE]\n\n"

OpenUpstream = Callable[[], Awaitable[httpx.Response]]


def sse_data(obj: Dict[str, Any]) -> bytes:
    """Serialize one `data:` event."""
    return ("data: " + json.dumps(obj, ensure_ascii=False) + "\n\n").encode("utf-8")


def sse_done() -> bytes:
    return SSE_DONE


class StreamState(str, Enum):
    OPEN = "open"
    STREAMING = "streaming"
    FINISHING = "finishing"
    ERRORED = "errored"
    CLOSED = "closed"


class NDJSONLineBuffer:
    """
    Split a byte stream into complete NDJSON lines.

    Bytes are decoded incrementally, so a multi-byte character cut across two
    reads survives; the trailing partial line is carried to the next feed().
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> List[str]:
        text = self._pending + self._decoder.decode(data)
        parts = text.split("\n")
        self._pending = parts.pop()
        return [p.strip() for p in parts if p.strip()]

    def flush(self) -> List[str]:
        """Return the final unterminated line, if any."""
        tail = (self._pending + self._decoder.decode(b"", final=True)).strip()
        self._pending = ""
        return [tail] if tail else []


@dataclass
class StreamSummary:
    request_id: str
    model: str
    chunk_count: int = 0
    tool_call_count: int = 0
    parts: List[str] = field(default_factory=list)
    skipped_frames: int = 0
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    started: float = field(default_factory=time.monotonic)

    @property
    def content(self) -> str:
        return "".join(self.parts)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "totalChunks": self.chunk_count,
            "toolCalls": self.tool_call_count,
            "contentLength": len(self.content),
            "content": self.content,
            "skippedFrames": self.skipped_frames,
            "finishReason": self.finish_reason,
            "error": self.error,
            "durationMs": round(self.elapsed_ms, 1),
        }


class ChatStreamPipeline:
    """Translate one streaming /api/chat reply into chat.completion.chunk events.

    Emission order is fixed: one role chunk, content/tool-call deltas in
    arrival order, exactly one terminal chunk with a finish_reason, then the
    [DONE] sentinel. Upstream failures become an in-band error chunk so the
    stream still terminates cleanly. Client disconnects stop upstream reads.
    """

    def __init__(
        self,
        model: str,
        request_id: str,
        completion_id: Optional[str] = None,
    ) -> None:
        self.model = model
        self.request_id = request_id
        self.completion_id = completion_id or generate_completion_id()
        self.created = int(time.time())
        self.state = StreamState.OPEN
        self.summary = StreamSummary(request_id=request_id, model=model)
        self._content_sent = False

    def _chunk(self, delta: Optional[Dict[str, Any]] = None, finish_reason: Optional[str] = None) -> bytes:
        self.summary.chunk_count += 1
        return sse_data(create_chunk_dict(self.completion_id, self.model, self.created, delta, finish_reason))

    def _content_chunk(self, text: str) -> bytes:
        self._content_sent = True
        self.summary.parts.append(text)
        return self._chunk({"content": text})

    def _fail(self, reason: str) -> bytes:
        self.state = StreamState.ERRORED
        self.summary.error = reason
        log.warning("Stream error req_id=%s model=%s: %s", self.request_id, self.model, reason)
        log_chat_event("ERROR", self.request_id, model=self.model, error=reason, streaming=True)
        return self._content_chunk(f"Error: {reason}")

    def _translate_frame(self, frame: Dict[str, Any]) -> List[bytes]:
        out: List[bytes] = []
        content = frame_content(frame)
        if content:
            out.append(self._content_chunk(content))
            log_chat_event("STREAMING_CHUNK", self.request_id, chunk=self.summary.chunk_count, content=content)
        for tc in tool_calls_from_backend(frame.get("message")):
            out.append(self._chunk({"tool_calls": [tc.to_public(index=self.summary.tool_call_count)]}))
            self.summary.tool_call_count += 1
            self._content_sent = True
        return out

    async def _read_upstream(self, resp: httpx.Response) -> AsyncGenerator[bytes, None]:
        buf = NDJSONLineBuffer()
        async for data in resp.aiter_bytes():
            for line in buf.feed(data):
                for piece in self._handle_line(line):
                    yield piece
                if self.state is not StreamState.STREAMING:
                    return
        for line in buf.flush():
            for piece in self._handle_line(line):
                yield piece
            if self.state is not StreamState.STREAMING:
                return
        log.warning(
            "Upstream closed without completion flag req_id=%s model=%s",
            self.request_id,
            self.model,
        )

    def _handle_line(self, line: str) -> List[bytes]:
        try:
            frame = parse_stream_frame(line)
        except UpstreamMalformed as e:
            self.summary.skipped_frames += 1
            log.warning("Skipping malformed frame req_id=%s: %s line=%r", self.request_id, e.message, line[:200])
            return []
        err = frame_error(frame)
        if err is not None:
            return [self._fail(err)]
        out = self._translate_frame(frame)
        if frame_is_done(frame):
            self.state = StreamState.FINISHING
        return out

    async def run(self, open_upstream: OpenUpstream) -> AsyncGenerator[bytes, None]:
        """Yield SSE bytes for the whole exchange, opening the upstream lazily."""
        resp: Optional[httpx.Response] = None
        log_chat_event("STREAMING_START", self.request_id, model=self.model, completionId=self.completion_id)
        try:
            yield self._chunk({"role": "assistant"})
            try:
                resp = await open_upstream()
                if resp.status_code >= 400:
                    snippet = await BackendClient.read_error_snippet(resp)
                    raise UpstreamStatusError(
                        f"Ollama request failed: {resp.status_code}",
                        upstream_status=resp.status_code,
                        body=snippet,
                    )
                self.state = StreamState.STREAMING
                async for piece in self._read_upstream(resp):
                    yield piece
            except GatewayError as e:
                yield self._fail(e.message)
            except httpx.HTTPError as e:
                yield self._fail(f"{type(e).__name__}: {e}")

            if not self._content_sent:
                yield self._content_chunk(FALLBACK_CONTENT)
            if self.state is not StreamState.ERRORED:
                self.state = StreamState.FINISHING
            self.summary.finish_reason = "tool_calls" if self.summary.tool_call_count else "stop"
            yield self._chunk({}, self.summary.finish_reason)
            yield sse_done()
        except (asyncio.CancelledError, GeneratorExit):
            log.info("Client disconnected req_id=%s model=%s", self.request_id, self.model)
            raise
        finally:
            self.state = StreamState.CLOSED
            if resp is not None:
                await resp.aclose()
            log.info(
                "Stream closed req_id=%s model=%s chunks=%d content_len=%d ms=%.1f",
                self.request_id,
                self.model,
                self.summary.chunk_count,
                len(self.summary.content),
                self.summary.elapsed_ms,
            )
            log_chat_event("STREAMING_COMPLETE", self.request_id, **self.summary.to_dict())
