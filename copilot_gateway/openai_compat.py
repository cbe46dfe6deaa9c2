from __future__ import annotations

import json
import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Mode = Literal["auto", "fast", "deep"]

ADVERTISED_MODELS = ("auto", "fast", "deep", "gpt-5.2-fast", "gpt-5.2-deep")

_MODE_HINTS: dict[str, str] = {
    "auto": "You are an enterprise office assistant. Match the depth of the answer to the complexity of the question.",
    "fast": "Answer quickly and concisely. Lead with the conclusion and key points; skip long preambles.",
    "deep": (
        "Analyse in depth. Lay out the reasoning step by step with actionable recommendations, "
        "and list risks and caveats where relevant."
    ),
}


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool", "developer"]
    content: Any


class ChatCompletionRequest(BaseModel):
    model: str = "auto"
    messages: list[ChatMessage] = Field(default_factory=list)
    stream: bool = False

    # Accept extra fields from clients (temperature, max_tokens, etc.).
    model_config = ConfigDict(extra="allow")


class ErrorResponse(BaseModel):
    error: dict[str, Any] = Field(default_factory=dict)


def normalize_message_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    if isinstance(content, dict):
        if content.get("type") == "text" and isinstance(content.get("text"), str):
            return content["text"]
    return json.dumps(content, ensure_ascii=False)


def normalize_mode(model: str | None) -> Mode:
    m = (model or "auto").strip().lower()
    if m == "gpt-5.2-fast":
        return "fast"
    if m == "gpt-5.2-deep":
        return "deep"
    if m in {"auto", "fast", "deep"}:
        return m  # type: ignore[return-value]
    return "auto"


def build_prompt(messages: list[ChatMessage], mode: Mode) -> str:
    """Flatten a chat history into the single text message Copilot accepts."""
    lines = [f"SYSTEM: {_MODE_HINTS.get(mode, _MODE_HINTS['auto'])}"]
    for message in messages:
        lines.append(f"{message.role.upper()}: {normalize_message_content(message.content)}")
    lines.append("ASSISTANT:")
    return "\n".join(lines)


def model_list() -> dict[str, Any]:
    return {
        "object": "list",
        "data": [{"id": m, "object": "model", "created": 0, "owned_by": "gateway"} for m in ADVERTISED_MODELS],
    }


def completion_response(*, resp_id: str, model: str, text: str, created: int | None = None) -> dict[str, Any]:
    return {
        "id": resp_id,
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
    }


def completion_chunk(
    *,
    resp_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    return {
        "id": resp_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def sse_frame(obj: dict[str, Any] | str) -> str:
    data = obj if isinstance(obj, str) else json.dumps(obj, ensure_ascii=False)
    return f"data: {data}\n\n"
