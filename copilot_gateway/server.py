from __future__ import annotations

import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from . import __version__
from .config import Settings, settings
from .credentials import CredentialStore, mask_key
from .diagnostics import SampleRing
from .errors import GatewayError, KeyNotFound, UpstreamDenied, UpstreamError
from .graph_copilot import CopilotBridge
from .http_client import aclose_all as _aclose_http_clients
from .identity import MicrosoftIdentityClient
from .kv import create_redis
from .onboarding import DeviceFlowOrchestrator, DeviceFlowProvider
from .openai_compat import (
    ChatCompletionRequest,
    ErrorResponse,
    build_prompt,
    completion_response,
    model_list,
    normalize_mode,
)
from .resolution import SESSION_ACCOUNT_FIELD, request_session, resolve_account
from .sse_translate import StreamStats, extract_best_text, translate_stream
from .tokens import TokenManager

app = FastAPI(title="copilot-gateway", version=__version__)
logger = logging.getLogger("uvicorn.error")

if settings.cors_origins.strip():
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

if settings.session_secret:
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        max_age=settings.session_ttl,
        same_site="lax",
        https_only=settings.public_base_url.startswith("https://"),
    )


@dataclass
class GatewayServices:
    settings: Settings
    redis: Redis
    store: CredentialStore
    tokens: TokenManager
    onboarding: DeviceFlowOrchestrator
    bridge: CopilotBridge
    ring: SampleRing


def build_services(
    cfg: Settings,
    *,
    redis: Redis | None = None,
    identity: MicrosoftIdentityClient | DeviceFlowProvider | None = None,
    bridge: CopilotBridge | None = None,
) -> GatewayServices:
    redis = redis if redis is not None else create_redis(cfg.redis_url)
    if identity is None:
        identity = MicrosoftIdentityClient(
            tenant_id=cfg.tenant_id or "",
            client_id=cfg.client_id or "",
            client_secret=cfg.client_secret or "",
            authority_host=cfg.authority_host,
            timeout_seconds=min(cfg.timeout_seconds, 60),
        )
    if bridge is None:
        bridge = CopilotBridge(
            base_url=cfg.graph_base_url,
            time_zone=cfg.time_zone,
            country_or_region=cfg.country_or_region,
            timeout_seconds=cfg.timeout_seconds,
        )
    store = CredentialStore(redis, key_ttl=cfg.user_key_ttl, cache_ttl=cfg.token_cache_ttl)
    return GatewayServices(
        settings=cfg,
        redis=redis,
        store=store,
        tokens=TokenManager(store, identity, scopes=cfg.scopes),  # type: ignore[arg-type]
        onboarding=DeviceFlowOrchestrator(redis, identity, store, scopes=cfg.scopes),  # type: ignore[arg-type]
        bridge=bridge,
        ring=SampleRing(redis, capacity=cfg.debug_event_limit, ttl_seconds=cfg.debug_event_ttl),
    )


_SERVICES: GatewayServices | None = None


def _get_services() -> GatewayServices:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services(settings)
    return _SERVICES


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _truncate_for_log(text: str | None, limit: int | None = None) -> str:
    if not text:
        return ""
    limit = settings.log_max_chars if limit is None else limit
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... (truncated, {len(text)} chars total)"


def _check_auth(authorization: str | None, token: str | None) -> None:
    if not token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization: Bearer <token>")
    if authorization.removeprefix("Bearer ").strip() != token:
        raise HTTPException(status_code=401, detail="Invalid gateway token")


def _openai_error(
    message: str,
    *,
    status_code: int = 500,
    error_type: str = "gateway_error",
    request_id: str | None = None,
    extra: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "message": message,
        "type": error_type,
        "param": None,
        "code": None,
        "request_id": request_id,
    }
    if extra:
        error.update(extra)
    payload = ErrorResponse(error=error).model_dump()
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


def _error_type_for_status(status: int) -> str:
    if status == 401:
        return "authentication_error"
    if status == 403:
        return "permission_error"
    if status == 404:
        return "not_found_error"
    if 400 <= status < 500:
        return "invalid_request_error"
    return "gateway_error"


@app.middleware("http")
async def _request_context(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    request_id = incoming if incoming and len(incoming) <= 200 else str(uuid.uuid4())
    request.state.request_id = request_id
    t0 = time.time()
    if settings.log_requests:
        logger.info(
            "[%s] http.request method=%s path=%s ip=%s ua=%s",
            request_id,
            request.method,
            request.url.path,
            request.client.host if request.client else None,
            _truncate_for_log(request.headers.get("user-agent"), 200),
        )
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    if settings.log_requests:
        logger.info(
            "[%s] http.response method=%s path=%s status=%d ms=%d",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            int((time.time() - t0) * 1000),
        )
    return response


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    request_id = _request_id(request)
    extra: dict[str, Any] = {}
    if isinstance(exc, UpstreamError):
        extra = {"upstream_status": exc.status, "upstream_request_id": exc.correlation_id}
    elif isinstance(exc, UpstreamDenied) and exc.detail:
        extra = {"code": exc.detail}
    logger.warning(
        "[%s] http.error status=%d type=%s %s",
        request_id,
        exc.status_code,
        exc.error_type,
        _truncate_for_log(exc.message),
    )
    return _openai_error(
        exc.message,
        status_code=exc.status_code,
        error_type=exc.error_type,
        request_id=request_id,
        extra=extra,
    )


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _openai_error(
        str(exc.detail),
        status_code=exc.status_code,
        error_type=_error_type_for_status(exc.status_code),
        request_id=_request_id(request),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.exception("[%s] http.error status=500 %s", request_id, exc)
    return _openai_error(str(exc) or "Internal error", status_code=500, request_id=request_id)


@app.on_event("startup")
async def _log_startup_config() -> None:
    # Intentionally omit secrets (tokens, client secret, session secret).
    cfg = _get_services().settings
    items: list[tuple[str, object]] = [
        ("version", __version__),
        ("graph_base_url", cfg.graph_base_url),
        ("authority", f"{cfg.authority_host}/{cfg.tenant_id or '<unset>'}"),
        ("scopes", " ".join(cfg.scopes)),
        ("redis_url", cfg.redis_url.split("@")[-1]),
        ("location_hint", f"{cfg.time_zone} / {cfg.country_or_region}"),
        ("has_gateway_token", bool(cfg.bearer_token)),
        ("sessions", bool(cfg.session_secret)),
        ("user_key_precedence", cfg.user_key_precedence),
        ("echo_fallback", cfg.echo_fallback),
        ("empty_response_hint", cfg.empty_response_hint),
        ("debug_event_limit", cfg.debug_event_limit),
    ]
    width = max(len(k) for k, _ in items)
    rendered = "Gateway config:\n" + "\n".join(f"  {k:<{width}} = {v}" for k, v in items)
    logger.info(rendered)
    missing = cfg.missing_required()
    if missing:
        logger.error("Missing required configuration: %s", ", ".join(missing))
    if not cfg.bearer_token:
        logger.warning("COPILOT_GATEWAY_TOKEN is not set; /v1, /admin and /debug endpoints are open")


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _SERVICES is not None:
        await _SERVICES.onboarding.aclose()
        await _SERVICES.redis.aclose()
    await _aclose_http_clients()


@app.get("/healthz")
async def healthz(request: Request):
    services = _get_services()
    cfg = services.settings
    redis_ok = False
    try:
        redis_ok = bool(await services.redis.ping())
    except (RedisError, OSError) as e:
        logger.warning("[%s] health.redis.ping.failed err=%s", _request_id(request), e)
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "redis": redis_ok,
        "config": {
            "has_tenant_id": bool(cfg.tenant_id),
            "has_client_id": bool(cfg.client_id),
            "has_client_secret": bool(cfg.client_secret),
            "has_session_secret": bool(cfg.session_secret),
            "has_gateway_token": bool(cfg.bearer_token),
            "missing": cfg.missing_required(),
        },
    }


@app.get("/v1/models")
async def list_models(authorization: str | None = Header(default=None)):
    _check_auth(authorization, _get_services().settings.bearer_token)
    return model_list()


@app.get("/debug/last-events")
async def debug_last_events(
    limit: int | None = None,
    authorization: str | None = Header(default=None),
):
    services = _get_services()
    _check_auth(authorization, services.settings.bearer_token)
    events = await services.ring.recent(limit)
    return {"count": len(events), "events": events}


# ── device-code onboarding ────────────────────────────────────────────────


class DeviceStartBody(BaseModel):
    label: str | None = None


@app.post("/auth/device/start")
async def device_start(request: Request, body: DeviceStartBody | None = None):
    services = _get_services()
    missing = services.settings.missing_required()
    if missing:
        return _openai_error(
            f"Gateway is missing configuration: {', '.join(missing)}",
            status_code=503,
            request_id=_request_id(request),
        )
    return await services.onboarding.start(
        request_id=_request_id(request),
        label=body.label if body else None,
    )


@app.get("/auth/device/status/{tx_id}")
async def device_status(tx_id: str, request: Request):
    info = await _get_services().onboarding.status(tx_id)
    if info is None:
        raise HTTPException(status_code=404, detail="txId not found")
    session = request.scope.get("session")
    account_id = info.get("account_id")
    if info.get("status") == "complete" and isinstance(session, dict) and isinstance(account_id, str):
        session[SESSION_ACCOUNT_FIELD] = account_id
    return info


@app.post("/auth/logout")
async def logout(request: Request):
    request_session(request).clear()
    return {"ok": True}


# ── caller key administration ─────────────────────────────────────────────


class KeyLabelBody(BaseModel):
    label: str | None = None


def _caller_key(x_user_key: str | None, cfg: Settings) -> str:
    key = (x_user_key or "").strip()
    if len(key) < cfg.user_key_min_length:
        raise HTTPException(status_code=401, detail="Missing or malformed X-User-Key.")
    return key


@app.get("/admin/keys")
async def admin_list_keys(authorization: str | None = Header(default=None)):
    services = _get_services()
    _check_auth(authorization, services.settings.bearer_token)
    keys = await services.store.list_all()
    return {"count": len(keys), "keys": keys}


@app.get("/keys/me")
async def inspect_key(x_user_key: str | None = Header(default=None)):
    services = _get_services()
    key = _caller_key(x_user_key, services.settings)
    record = await services.store.get(key)
    if record is None:
        raise KeyNotFound("Caller key not found, revoked or expired")
    account = await services.store.load_account(record.account_id) or {}
    return {
        **record.public(),
        "username": account.get("username"),
        "name": account.get("name"),
    }


@app.patch("/keys/me")
async def label_key(body: KeyLabelBody, x_user_key: str | None = Header(default=None)):
    services = _get_services()
    key = _caller_key(x_user_key, services.settings)
    record = await services.store.label(key, body.label)
    if record is None:
        raise KeyNotFound("Caller key not found, revoked or expired")
    return record.public()


@app.delete("/keys/me")
async def revoke_key(request: Request, x_user_key: str | None = Header(default=None)):
    services = _get_services()
    key = _caller_key(x_user_key, services.settings)
    if not await services.store.revoke(key):
        raise KeyNotFound("Caller key not found, revoked or expired")
    logger.info("[%s] keys.revoked key=%s", _request_id(request), mask_key(key))
    return {"revoked": True, "key": mask_key(key)}


@app.post("/keys/me/rotate")
async def rotate_key(request: Request, x_user_key: str | None = Header(default=None)):
    services = _get_services()
    key = _caller_key(x_user_key, services.settings)
    new_key = await services.store.rotate(key)
    if new_key is None:
        raise KeyNotFound("Caller key not found, revoked or expired")
    logger.info("[%s] keys.rotated key=%s new=%s", _request_id(request), mask_key(key), mask_key(new_key))
    return {"user_key": new_key, "previous": mask_key(key)}


# ── chat completions ──────────────────────────────────────────────────────


@app.post("/v1/chat/completions")
async def chat_completions(
    req: ChatCompletionRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    services = _get_services()
    cfg = services.settings
    _check_auth(authorization, cfg.bearer_token)
    request_id = _request_id(request)

    model = req.model or "auto"
    mode = normalize_mode(model)
    if cfg.log_body:
        logger.info("[%s] http.body %s", request_id, _truncate_for_log(req.model_dump_json()))

    account = await resolve_account(
        request,
        services.store,
        min_key_length=cfg.user_key_min_length,
        precedence=cfg.user_key_precedence,
    )
    token = await services.tokens.acquire(account.account_id, request_id=request_id)
    prompt = build_prompt(req.messages, mode)
    resp_id = f"chatcmpl-{uuid.uuid4().hex}"
    logger.info(
        "[%s] ▶ model=%s mode=%s stream=%s via=%s",
        request_id,
        model,
        mode,
        req.stream,
        account.via,
    )

    if not req.stream:
        result = await services.bridge.chat(token, prompt, request_id=request_id)
        text = extract_best_text(result.payload, prompt, echo_fallback=cfg.echo_fallback) or ""
        logger.info(
            "[%s] response status=200 conversation_id=%s graph_request_id=%s chars=%d",
            request_id,
            result.conversation_id,
            result.correlation_id,
            len(text),
        )
        return completion_response(resp_id=resp_id, model=model, text=text)

    upstream = await services.bridge.chat_stream(token, prompt, request_id=request_id)
    stats = StreamStats()

    async def sse_gen():
        # Runs until the upstream closes; a client disconnect cancels it, and the
        # upstream connection is released either way.
        try:
            frames = translate_stream(
                upstream.aiter_bytes(),
                prompt=prompt,
                resp_id=resp_id,
                model=model,
                request_id=request_id,
                conversation_id=upstream.conversation_id,
                correlation_id=upstream.correlation_id,
                ring=services.ring,
                advisory=cfg.empty_response_hint,
                echo_fallback=cfg.echo_fallback,
                stats=stats,
            )
            async with aclosing(frames):
                async for frame in frames:
                    yield frame
        finally:
            await upstream.aclose()

    return StreamingResponse(
        sse_gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
