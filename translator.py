"""
Translation between the OpenAI chat format and the Ollama native chat format.

Request direction:  ChatRequest  -> POST /api/chat payload
Response direction: /api/chat reply -> chat.completion
Streaming frames:   /api/chat NDJSON frame -> chat.completion.chunk pieces
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import UpstreamMalformed, generate_completion_id

log = logging.getLogger("ollama_gateway")

ROLES = ("system", "user", "assistant", "tool")
RESPONSE_FORMAT_MODES = ("text", "json_object", "json_schema")

# Sent whenever a plain chat turn would otherwise produce no assistant text.
FALLBACK_CONTENT = "Response received from model."
SYSTEM_FINGERPRINT = "fp_ollama_gateway"


def content_to_text(content: Any) -> str:
    """
    Flatten message content to a plain string.

    A list of typed parts becomes the text parts joined by single spaces;
    image and other non-text parts are dropped.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            p["text"]
            for p in content
            if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str) and p["text"]
        ]
        return " ".join(texts)
    return ""


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _arguments_to_text(arguments: Any) -> str:
    """Tool-call arguments are always carried as JSON text on the public side."""
    if isinstance(arguments, str):
        return arguments
    if arguments is None:
        return "{}"
    return json.dumps(arguments, ensure_ascii=False)


def _arguments_to_object(arguments: str) -> Any:
    if not arguments or not arguments.strip():
        return {}
    try:
        return json.loads(arguments)
    except ValueError:
        log.warning("Tool call arguments are not valid JSON; forwarding as text")
        return arguments


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str
    kind: str = "function"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional[ToolCall]:
        """Accepts both the OpenAI and the Ollama shape; a missing id gets a fresh one."""
        fn = data.get("function")
        if not isinstance(fn, dict) or not isinstance(fn.get("name"), str):
            return None
        tc_id = data.get("id")
        return cls(
            id=tc_id if isinstance(tc_id, str) and tc_id else new_tool_call_id(),
            name=fn["name"],
            arguments=_arguments_to_text(fn.get("arguments")),
        )

    def to_public(self, index: Optional[int] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "type": self.kind,
            "function": {"name": self.name, "arguments": self.arguments},
        }
        if index is not None:
            out = {"index": index, **out}
        return out

    def to_backend(self) -> Dict[str, Any]:
        return {"function": {"name": self.name, "arguments": _arguments_to_object(self.arguments)}}


@dataclass
class ChatMessage:
    role: str
    content: Optional[str]
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ChatMessage:
        raw = data.get("content")
        tool_calls = []
        for t in data.get("tool_calls") or []:
            if isinstance(t, dict):
                tc = ToolCall.from_dict(t)
                if tc is not None:
                    tool_calls.append(tc)
        name = data.get("name")
        tool_call_id = data.get("tool_call_id")
        return cls(
            role=str(data.get("role")),
            content=None if raw is None else content_to_text(raw),
            name=name if isinstance(name, str) else None,
            tool_call_id=tool_call_id if isinstance(tool_call_id, str) else None,
            tool_calls=tool_calls,
        )

    def to_backend(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content or ""}
        if self.tool_calls:
            out["tool_calls"] = [tc.to_backend() for tc in self.tool_calls]
        if self.role == "tool":
            if self.name:
                out["tool_name"] = self.name
            if self.tool_call_id:
                out["tool_call_id"] = self.tool_call_id
        return out


@dataclass
class SamplingParams:
    """Optional sampling fields; None means "not sent, backend default applies"."""

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[List[str]] = None
    seed: Optional[int] = None

    @classmethod
    def from_request(cls, body: Dict[str, Any]) -> SamplingParams:
        stop = body.get("stop")
        if isinstance(stop, str):
            stop = [stop]
        elif isinstance(stop, list):
            stop = [s for s in stop if isinstance(s, str)]
        else:
            stop = None
        return cls(
            temperature=body.get("temperature"),
            top_p=body.get("top_p"),
            max_tokens=body.get("max_tokens"),
            frequency_penalty=body.get("frequency_penalty"),
            presence_penalty=body.get("presence_penalty"),
            stop=stop,
            seed=body.get("seed"),
        )

    def to_backend_options(self) -> Dict[str, Any]:
        """Ollama `options`, containing only explicitly set fields."""
        mapping = (
            ("temperature", self.temperature),
            ("num_predict", self.max_tokens),
            ("top_p", self.top_p),
            ("frequency_penalty", self.frequency_penalty),
            ("presence_penalty", self.presence_penalty),
            ("stop", self.stop),
            ("seed", self.seed),
        )
        return {k: v for k, v in mapping if v is not None}


@dataclass
class ResponseFormat:
    mode: str = "text"
    schema: Optional[Any] = None

    @classmethod
    def from_request(cls, value: Any) -> Optional[ResponseFormat]:
        if not isinstance(value, dict):
            return None
        mode = value.get("type")
        if mode not in RESPONSE_FORMAT_MODES:
            return None
        schema = None
        js = value.get("json_schema")
        if isinstance(js, dict):
            schema = js.get("schema")
        return cls(mode=mode, schema=schema)


@dataclass
class ChatRequest:
    model: str
    messages: List[ChatMessage]
    stream: bool = False
    sampling: SamplingParams = field(default_factory=SamplingParams)
    response_format: Optional[ResponseFormat] = None
    tools: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> ChatRequest:
        """Build from an already validated request body."""
        tools = body.get("tools")
        return cls(
            model=str(body.get("model") or ""),
            messages=[ChatMessage.from_dict(m) for m in body.get("messages") or [] if isinstance(m, dict)],
            stream=bool(body.get("stream", False)),
            sampling=SamplingParams.from_request(body),
            response_format=ResponseFormat.from_request(body.get("response_format")),
            tools=tools if isinstance(tools, list) and tools else None,
        )

    @property
    def wants_json_object(self) -> bool:
        return self.response_format is not None and self.response_format.mode == "json_object"


def to_backend_chat(req: ChatRequest, *, stream: bool) -> Dict[str, Any]:
    """Build the Ollama /api/chat payload."""
    payload: Dict[str, Any] = {
        "model": req.model,
        "messages": [m.to_backend() for m in req.messages],
        "stream": stream,
    }
    options = req.sampling.to_backend_options()
    if options:
        payload["options"] = options
    if req.wants_json_object:
        payload["format"] = "json"
    elif req.response_format is not None and req.response_format.mode == "json_schema" and req.response_format.schema:
        payload["format"] = req.response_format.schema
    if req.tools:
        payload["tools"] = req.tools
    return payload


def _count(value: Any) -> int:
    return value if isinstance(value, int) and value > 0 else 0


def tool_calls_from_backend(message: Any) -> List[ToolCall]:
    if not isinstance(message, dict):
        return []
    out = []
    for t in message.get("tool_calls") or []:
        if isinstance(t, dict):
            tc = ToolCall.from_dict(t)
            if tc is not None:
                out.append(tc)
    return out


def _reject_constant(name: str) -> Any:
    # NaN/Infinity are not JSON; strict client parsers reject them.
    raise ValueError(f"non-standard JSON constant: {name}")


def build_chat_completion(data: Any, req: ChatRequest) -> Dict[str, Any]:
    """Wrap one non-streaming /api/chat reply into a chat.completion."""
    if not isinstance(data, dict):
        data = {}
    message = data.get("message") if isinstance(data.get("message"), dict) else {}
    content = message.get("content") if isinstance(message.get("content"), str) else ""
    tool_calls = tool_calls_from_backend(message)

    if req.wants_json_object:
        try:
            json.loads(content, parse_constant=_reject_constant)
        except ValueError:
            content = json.dumps({"response": content}, ensure_ascii=False)

    if not content.strip() and not req.tools:
        content = FALLBACK_CONTENT

    out_message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        out_message["tool_calls"] = [tc.to_public() for tc in tool_calls]
        if not content:
            out_message["content"] = None

    prompt_tokens = _count(data.get("prompt_eval_count"))
    completion_tokens = _count(data.get("eval_count"))
    return {
        "id": generate_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": req.model,
        "system_fingerprint": SYSTEM_FINGERPRINT,
        "choices": [
            {
                "index": 0,
                "message": out_message,
                "finish_reason": "tool_calls" if tool_calls else "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def create_chunk_dict(
    completion_id: str,
    model: str,
    created: int,
    delta: Optional[Dict[str, Any]] = None,
    finish_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a standard OpenAI chat completion chunk dictionary."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "system_fingerprint": SYSTEM_FINGERPRINT,
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
    }


def parse_stream_frame(line: str) -> Dict[str, Any]:
    """Decode one NDJSON frame of a streaming /api/chat reply."""
    try:
        obj = json.loads(line)
    except ValueError as e:
        raise UpstreamMalformed(f"bad-json frame: {e}") from e
    if not isinstance(obj, dict):
        raise UpstreamMalformed("frame is not a JSON object")
    return obj


def frame_content(frame: Dict[str, Any]) -> str:
    message = frame.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


def frame_error(frame: Dict[str, Any]) -> Optional[str]:
    err = frame.get("error")
    if isinstance(err, str) and err:
        return err
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    return None


def frame_is_done(frame: Dict[str, Any]) -> bool:
    return frame.get("done") is True
