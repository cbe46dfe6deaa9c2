from __future__ import annotations

import codecs
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .diagnostics import SampleRing
from .openai_compat import completion_chunk, sse_frame

logger = logging.getLogger("uvicorn.error")

ADVISORY_TEXT = (
    "\n(Notice: the upstream returned no parseable text. Check the account's Copilot license and "
    "permissions, or inspect /debug/last-events for raw event samples.)\n"
)

_SAMPLE_MAX_CHARS = 400
_LOG_MAX_CHARS = 600


@dataclass
class StreamStats:
    blocks: int = 0
    json_failures: int = 0
    parsed: int = 0
    deltas: int = 0
    upstream_errors: int = 0
    chars: int = 0


class SseBlockReader:
    """
    Incrementally turns raw event-stream bytes into complete event blocks.

    Bytes are decoded with an incremental UTF-8 decoder (multi-byte characters may be
    split across reads; invalid bytes become U+FFFD), CRLF is folded to LF, and a
    block ends at the first blank line. Anything after the last blank line stays
    buffered for the next read.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""

    def feed(self, data: bytes) -> list[str]:
        self._carry += self._decoder.decode(data)
        if "\r" in self._carry:
            self._carry = self._carry.replace("\r\n", "\n")
        blocks: list[str] = []
        while True:
            idx = self._carry.find("\n\n")
            if idx == -1:
                break
            blocks.append(self._carry[:idx])
            self._carry = self._carry[idx + 2 :]
        return blocks

    @property
    def pending(self) -> str:
        return self._carry


def extract_data_payload(block: str) -> str | None:
    data_lines: list[str] = []
    for line in block.split("\n"):
        line = line.rstrip()
        if line.startswith("data:"):
            data_lines.append(line[len("data:") :].lstrip())
    if not data_lines:
        return None
    payload = "\n".join(data_lines).strip()
    return payload or None


def extract_message_text(msg: Any) -> str | None:
    if not isinstance(msg, dict):
        return None
    if isinstance(msg.get("text"), str):
        return msg["text"]
    if isinstance(msg.get("content"), str):
        return msg["content"]
    inner = msg.get("message")
    if isinstance(inner, dict) and isinstance(inner.get("text"), str):
        return inner["text"]
    return None


def extract_best_text(obj: Any, prompt_echo: str | None, *, echo_fallback: bool = True) -> str | None:
    """
    Best-effort assistant text from one Copilot event payload.

    Copilot echoes the user prompt back as a message, so the newest non-empty
    message that differs from the prompt wins. If every message is the echo, the
    newest non-empty one is used anyway (when `echo_fallback` is on). Payloads
    without a top-level `messages` list fall back to `value.messages`.
    """
    if not isinstance(obj, dict):
        return None

    messages = obj.get("messages")
    if isinstance(messages, list) and messages:
        echo = prompt_echo.strip() if prompt_echo else None
        for msg in reversed(messages):
            text = extract_message_text(msg)
            if not text:
                continue
            if echo and text.strip() == echo:
                continue
            return text
        if echo_fallback:
            for msg in reversed(messages):
                text = extract_message_text(msg)
                if text:
                    return text

    value = obj.get("value")
    wrapped = value.get("messages") if isinstance(value, dict) else None
    if isinstance(wrapped, list) and wrapped:
        for msg in reversed(wrapped):
            text = extract_message_text(msg)
            if text:
                return text
    return None


class Watermark:
    """Longest cumulative text seen so far; only ever moves forward."""

    def __init__(self) -> None:
        self.text = ""

    def advance(self, candidate: str | None) -> str:
        if not isinstance(candidate, str) or len(candidate) <= len(self.text):
            return ""
        delta = candidate[len(self.text) :]
        self.text = candidate
        return delta


def _truncate_for_log(obj: Any) -> str:
    try:
        text = json.dumps(obj, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(obj)
    if len(text) > _LOG_MAX_CHARS:
        return f"{text[:_LOG_MAX_CHARS]}... (len={len(text)})"
    return text


async def translate_stream(
    chunks: AsyncIterator[bytes],
    *,
    prompt: str,
    resp_id: str,
    model: str,
    created: int | None = None,
    request_id: str | None = None,
    conversation_id: str | None = None,
    correlation_id: str | None = None,
    ring: SampleRing | None = None,
    advisory: bool = True,
    echo_fallback: bool = True,
    stats: StreamStats | None = None,
) -> AsyncIterator[str]:
    """
    Re-frame a Copilot event stream as OpenAI `chat.completion.chunk` SSE frames.

    Copilot reports the cumulative answer in every event; only the part beyond the
    watermark is emitted. The output always ends with one `finish_reason: "stop"`
    chunk and `data: [DONE]`, even when reading the upstream fails midway.
    """
    stats = stats if stats is not None else StreamStats()
    created = created if created is not None else int(time.time())
    reader = SseBlockReader()
    mark = Watermark()

    def _delta_frame(text: str) -> str:
        return sse_frame(
            completion_chunk(resp_id=resp_id, model=model, created=created, delta={"content": text})
        )

    logger.info(
        "[%s] stream.start conversation_id=%s graph_request_id=%s",
        request_id,
        conversation_id,
        correlation_id,
    )
    try:
        async for data in chunks:
            for block in reader.feed(data):
                stats.blocks += 1
                payload = extract_data_payload(block)
                if payload is None:
                    continue
                try:
                    obj = json.loads(payload)
                except ValueError:
                    stats.json_failures += 1
                    continue
                stats.parsed += 1

                if ring is not None:
                    await ring.append(
                        {
                            "ts": int(time.time() * 1000),
                            "requestId": request_id,
                            "conversationId": conversation_id,
                            "sample": payload[:_SAMPLE_MAX_CHARS],
                        }
                    )

                if isinstance(obj, dict) and obj.get("error"):
                    stats.upstream_errors += 1
                    logger.error(
                        "[%s] stream.upstream_error conversation_id=%s error=%s",
                        request_id,
                        conversation_id,
                        _truncate_for_log(obj["error"]),
                    )

                delta = mark.advance(extract_best_text(obj, prompt, echo_fallback=echo_fallback))
                if delta:
                    stats.deltas += 1
                    yield _delta_frame(delta)
    except Exception as e:
        logger.error("[%s] stream.exception conversation_id=%s err=%s", request_id, conversation_id, e)

    if not mark.text and advisory:
        yield _delta_frame(ADVISORY_TEXT)

    stats.chars = len(mark.text)
    logger.info(
        "[%s] stream.end conversation_id=%s graph_request_id=%s blocks=%d json_failures=%d chars=%d",
        request_id,
        conversation_id,
        correlation_id,
        stats.blocks,
        stats.json_failures,
        stats.chars,
    )
    yield sse_frame(
        completion_chunk(resp_id=resp_id, model=model, created=created, delta={}, finish_reason="stop")
    )
    yield sse_frame("[DONE]")
