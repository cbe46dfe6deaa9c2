from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import HTTPException, Request

from .config import KeyPrecedence
from .credentials import CredentialStore

logger = logging.getLogger("uvicorn.error")

USER_KEY_HEADER = "x-user-key"
SESSION_ACCOUNT_FIELD = "account_id"


@dataclass(frozen=True)
class UserContext:
    kind: Literal["userkey", "session"]
    value: str


@dataclass(frozen=True)
class ResolvedAccount:
    account_id: str
    via: Literal["userkey", "session"]
    user_key: str | None = None


def extract_user_context(
    headers: Mapping[str, str],
    session: Mapping[str, Any] | None,
    *,
    min_key_length: int,
    precedence: KeyPrecedence = "key",
) -> UserContext | None:
    """
    Pick the credential an inbound request authenticates with.

    A key shorter than `min_key_length` is not considered a key at all. When both a
    key and a session are present, `precedence` decides; the default lets the
    explicit key win.
    """
    raw_key = headers.get(USER_KEY_HEADER)
    key = raw_key.strip() if isinstance(raw_key, str) else ""
    key_ctx = UserContext("userkey", key) if len(key) >= min_key_length else None

    account_id = (session or {}).get(SESSION_ACCOUNT_FIELD)
    session_ctx = UserContext("session", account_id) if isinstance(account_id, str) and account_id else None

    if precedence == "session":
        return session_ctx or key_ctx
    return key_ctx or session_ctx


def request_session(request: Request) -> dict[str, Any]:
    # SessionMiddleware is optional; without it the scope has no session.
    session = request.scope.get("session")
    return session if isinstance(session, dict) else {}


async def resolve_account(
    request: Request,
    store: CredentialStore,
    *,
    min_key_length: int,
    precedence: KeyPrecedence = "key",
) -> ResolvedAccount:
    request_id = getattr(request.state, "request_id", None)
    ctx = extract_user_context(
        request.headers,
        request_session(request),
        min_key_length=min_key_length,
        precedence=precedence,
    )
    if ctx is None:
        logger.warning("[%s] auth.no_user_context", request_id)
        raise HTTPException(status_code=401, detail="No user context. Use X-User-Key.")

    if ctx.kind == "userkey":
        record = await store.get(ctx.value)
        if record is None:
            logger.warning("[%s] auth.invalid_user_key", request_id)
            raise HTTPException(status_code=401, detail="Invalid X-User-Key or expired.")
        return ResolvedAccount(account_id=record.account_id, via="userkey", user_key=ctx.value)

    return ResolvedAccount(account_id=ctx.value, via="session")
