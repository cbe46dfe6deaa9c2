from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import UpstreamError
from .http_client import get_async_client

logger = logging.getLogger("uvicorn.error")

_LOG_BODY_MAX_CHARS = 1800


def _pick_header(headers: httpx.Headers, *names: str) -> str | None:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


def correlation_id_from(headers: httpx.Headers) -> str | None:
    return _pick_header(headers, "request-id", "client-request-id")


def _truncate_log_text(text: str, *, max_len: int = _LOG_BODY_MAX_CHARS) -> str:
    cleaned = text.replace("\r", "").replace("\n", "\\n")
    if len(cleaned) > max_len:
        return f"{cleaned[:max_len]}... (len={len(cleaned)})"
    return cleaned


@dataclass(frozen=True)
class ChatResult:
    conversation_id: str
    payload: dict[str, Any]
    correlation_id: str | None


class UpstreamStream:
    """An open `chatOverStream` response; the caller must `aclose()` it."""

    def __init__(self, *, conversation_id: str, response: httpx.Response) -> None:
        self.conversation_id = conversation_id
        self._response = response

    @property
    def correlation_id(self) -> str | None:
        return correlation_id_from(self._response.headers)

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        await self._response.aclose()


class CopilotBridge:
    """
    Thin client for the Graph Copilot conversation API.

    Every exchange opens a fresh conversation. Response bodies are not interpreted
    here; non-2xx responses become `UpstreamError` carrying Graph's request id.
    """

    def __init__(
        self,
        *,
        base_url: str,
        time_zone: str,
        country_or_region: str,
        timeout_seconds: int = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._time_zone = time_zone
        self._country_or_region = country_or_region
        self._timeout_seconds = timeout_seconds
        self._http = client

    def _chat_body(self, prompt: str) -> dict[str, Any]:
        return {
            "message": {"text": prompt},
            "locationHint": {"timeZone": self._time_zone, "countryOrRegion": self._country_or_region},
        }

    async def _send(
        self,
        operation: str,
        url: str,
        *,
        token: str,
        request_id: str | None,
        body: dict[str, Any],
        stream: bool = False,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        client = self._http or await get_async_client("graph")
        request = client.build_request("POST", url, headers=headers, json=body, timeout=self._timeout_seconds)

        t0 = time.time()
        logger.debug("[%s] graph.request op=%s url=%s", request_id, operation, url)
        resp = await client.send(request, stream=stream)
        graph_request_id = correlation_id_from(resp.headers)
        logger.info(
            "[%s] graph.response op=%s status=%d ms=%d graph_request_id=%s",
            request_id,
            operation,
            resp.status_code,
            int((time.time() - t0) * 1000),
            graph_request_id,
        )
        if not resp.is_success:
            if stream:
                try:
                    raw = await resp.aread()
                finally:
                    await resp.aclose()
                text = raw.decode("utf-8", errors="replace")
            else:
                text = resp.text
            logger.error(
                "[%s] graph.%s.failed status=%d graph_request_id=%s body=%s",
                request_id,
                operation,
                resp.status_code,
                graph_request_id,
                _truncate_log_text(text),
            )
            raise UpstreamError(
                operation=operation,
                status=resp.status_code,
                body=text,
                correlation_id=graph_request_id,
            )
        return resp

    async def create_conversation(self, token: str, *, request_id: str | None = None) -> str:
        resp = await self._send(
            "createConversation",
            f"{self._base_url}/copilot/conversations",
            token=token,
            request_id=request_id,
            body={},
        )
        try:
            data = resp.json()
        except ValueError:
            data = None
        conversation_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(conversation_id, str) or not conversation_id:
            raise UpstreamError(
                operation="createConversation",
                status=resp.status_code,
                body=resp.text,
                correlation_id=correlation_id_from(resp.headers),
            )
        return conversation_id

    async def chat(self, token: str, prompt: str, *, request_id: str | None = None) -> ChatResult:
        conversation_id = await self.create_conversation(token, request_id=request_id)
        resp = await self._send(
            "chat",
            f"{self._base_url}/copilot/conversations/{conversation_id}/chat",
            token=token,
            request_id=request_id,
            body=self._chat_body(prompt),
        )
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        return ChatResult(
            conversation_id=conversation_id,
            payload=payload if isinstance(payload, dict) else {},
            correlation_id=correlation_id_from(resp.headers),
        )

    async def chat_stream(self, token: str, prompt: str, *, request_id: str | None = None) -> UpstreamStream:
        conversation_id = await self.create_conversation(token, request_id=request_id)
        resp = await self._send(
            "chatOverStream",
            f"{self._base_url}/copilot/conversations/{conversation_id}/chatOverStream",
            token=token,
            request_id=request_id,
            body=self._chat_body(prompt),
            stream=True,
        )
        return UpstreamStream(conversation_id=conversation_id, response=resp)
