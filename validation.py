"""Request validators for the OpenAI-style surface."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from errors import AuthError, InvalidRequest
from translator import ROLES, content_to_text

INVALID_API_KEY = (
    "Incorrect API key provided. You can find your API key at "
    "https://platform.openai.com/account/api-keys."
)


def validate_auth(authorization: Optional[str]) -> None:
    """No header is fine; a present header must be `Bearer <token>`."""
    if authorization is None:
        return
    if not authorization.startswith("Bearer ") or not authorization[len("Bearer "):].strip():
        raise AuthError(INVALID_API_KEY)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def validate_chat_request(body: Dict[str, Any], max_message_chars: int = 200_000) -> None:
    if not body.get("model"):
        raise InvalidRequest("Missing required parameter: model", param="model")

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequest("Missing required parameter: messages", param="messages")

    for i, m in enumerate(messages):
        if not isinstance(m, dict) or not m.get("role"):
            raise InvalidRequest(
                f"Missing required parameter: messages[{i}].role", param=f"messages[{i}].role"
            )
        role = m["role"]
        if role not in ROLES:
            raise InvalidRequest(
                f"Invalid value for messages[{i}].role: {role}", param=f"messages[{i}].role"
            )
        if role == "tool" and not m.get("tool_call_id"):
            raise InvalidRequest(
                f"Missing required parameter: messages[{i}].tool_call_id",
                param=f"messages[{i}].tool_call_id",
            )
        content = m.get("content")
        if content and len(content_to_text(content)) > max_message_chars:
            raise InvalidRequest(
                f"Message content too large (max {max_message_chars} characters)",
                param=f"messages[{i}].content",
            )


def validate_parameters(body: Dict[str, Any]) -> None:
    """Range checks on sampling parameters."""
    checks = (
        ("temperature", 0, 2, "Temperature must be between 0 and 2"),
        ("top_p", 0, 1, "Top_p must be between 0 and 1"),
    )
    for name, lo, hi, message in checks:
        v = body.get(name)
        if v is None:
            continue
        if not _is_number(v) or not (lo <= v <= hi):
            raise InvalidRequest(message, param=name)

    max_tokens = body.get("max_tokens")
    if max_tokens is not None and (not _is_number(max_tokens) or max_tokens < 1):
        raise InvalidRequest("Max_tokens must be greater than 0", param="max_tokens")

    n = body.get("n")
    if n is not None and n != 1:
        raise InvalidRequest("Only n=1 is supported", param="n")


def validate_embeddings_request(body: Dict[str, Any]) -> List[str]:
    """Return the inputs as a list of strings."""
    if not body.get("model") or not body.get("input"):
        raise InvalidRequest("Missing required fields: model and input")
    raw = body["input"]
    inputs = raw if isinstance(raw, list) else [raw]
    if not inputs:
        raise InvalidRequest("Input cannot be empty", param="input")
    if not all(isinstance(x, str) for x in inputs):
        raise InvalidRequest("All input items must be strings", param="input")
    return inputs
