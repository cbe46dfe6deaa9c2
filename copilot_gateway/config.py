from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

KeyPrecedence = Literal["key", "session"]

_DEFAULT_GRAPH_SCOPES = (
    "openid",
    "profile",
    "offline_access",
    "Sites.Read.All",
    "Mail.Read",
    "People.Read.All",
    "OnlineMeetingTranscript.Read.All",
    "Chat.Read",
    "ChannelMessage.Read.All",
    "ExternalItem.Read.All",
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw


def _env_csv(name: str) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return []
    items: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            items.append(part)
    return items


def _env_precedence(name: str, default: KeyPrecedence) -> KeyPrecedence:
    raw = (os.environ.get(name) or "").strip().lower()
    if raw in {"key", "session"}:
        return raw  # type: ignore[return-value]
    return default


@dataclass(frozen=True)
class Settings:
    host: str = os.environ.get("COPILOT_GATEWAY_HOST", "127.0.0.1")
    port: int = _env_int("COPILOT_GATEWAY_PORT", 8080)

    # If set, API requests must include `Authorization: Bearer <token>`.
    bearer_token: str | None = os.environ.get("COPILOT_GATEWAY_TOKEN") or None

    # Confidential client registration in Microsoft Entra ID.
    tenant_id: str | None = os.environ.get("AZURE_TENANT_ID") or None
    client_id: str | None = os.environ.get("AZURE_CLIENT_ID") or None
    client_secret: str | None = os.environ.get("AZURE_CLIENT_SECRET") or None
    authority_host: str = _env_str("AZURE_AUTHORITY_HOST", "https://login.microsoftonline.com")
    scopes: list[str] = field(default_factory=lambda: _env_csv("GRAPH_SCOPES") or list(_DEFAULT_GRAPH_SCOPES))

    # Graph Copilot conversation API.
    graph_base_url: str = _env_str("GRAPH_BASE_URL", "https://graph.microsoft.com/beta")
    time_zone: str = _env_str("COPILOT_TIME_ZONE", "Asia/Shanghai")
    country_or_region: str = _env_str("COPILOT_COUNTRY_OR_REGION", "US")
    timeout_seconds: int = _env_int("COPILOT_TIMEOUT_SECONDS", 120)

    redis_url: str = _env_str("REDIS_URL", "redis://localhost:6379/0")

    # Cookie sessions are only enabled when a secret is configured.
    session_secret: str | None = os.environ.get("SESSION_SECRET") or None
    session_ttl: int = _env_int("SESSION_TTL", 86400)
    public_base_url: str = _env_str("PUBLIC_BASE_URL", "http://localhost:8080").rstrip("/")

    # Caller keys and cached token material.
    user_key_ttl: int = _env_int("USER_KEY_TTL", 60 * 60 * 24 * 30)
    token_cache_ttl: int = _env_int("TOKEN_CACHE_TTL", 60 * 60 * 24 * 7)
    user_key_min_length: int = _env_int("USER_KEY_MIN_LENGTH", 11)
    user_key_precedence: KeyPrecedence = _env_precedence("USER_KEY_PRECEDENCE", "key")

    # Stream translation.
    echo_fallback: bool = _env_bool("ECHO_FALLBACK", True)
    empty_response_hint: bool = _env_bool("EMPTY_RESPONSE_HINT", True)
    debug_event_limit: int = _env_int("DEBUG_EVENT_LIMIT", 50)
    debug_event_ttl: int = _env_int("DEBUG_EVENT_TTL", 3600)

    # Logging.
    log_requests: bool = _env_bool("COPILOT_LOG_REQUESTS", True)
    log_body: bool = _env_bool("COPILOT_LOG_BODY", False)
    log_max_chars: int = _env_int("COPILOT_LOG_MAX_CHARS", 800)

    # CORS (comma-separated origins). Empty disables CORS.
    cors_origins: str = os.environ.get("COPILOT_CORS_ORIGINS", "")

    def missing_required(self) -> list[str]:
        missing: list[str] = []
        if not self.tenant_id:
            missing.append("AZURE_TENANT_ID")
        if not self.client_id:
            missing.append("AZURE_CLIENT_ID")
        if not self.client_secret:
            missing.append("AZURE_CLIENT_SECRET")
        return missing


settings = Settings()
