from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import AccountUnauthorized, GatewayError, IdentityProviderError, UpstreamDenied
from .http_client import get_async_client

logger = logging.getLogger("uvicorn.error")

_DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
_RESERVED_SCOPES = {"openid", "profile", "offline_access", "email"}
_GRAPH_RESOURCE_PREFIX = "https://graph.microsoft.com/"
_UNAUTHORIZED_ERRORS = {"invalid_grant", "interaction_required", "login_required"}
_DENIED_MARKERS = ("aadsts65001", "consent", "license")


@dataclass(frozen=True)
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    message: str
    expires_in: int
    interval: int


@dataclass(frozen=True)
class DeviceGrant:
    account: dict[str, Any]
    material: dict[str, Any]


@dataclass(frozen=True)
class SilentResult:
    access_token: str
    material: dict[str, Any]
    refreshed: bool


def _b64url_json(segment: str | None) -> dict[str, Any]:
    if not isinstance(segment, str) or not segment:
        return {}
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        obj = json.loads(raw.decode("utf-8"))
    except ValueError:
        return {}
    return obj if isinstance(obj, dict) else {}


def _id_token_claims(id_token: str | None) -> dict[str, Any]:
    # Claims are read for display only; the token came straight from the token endpoint over TLS.
    if not isinstance(id_token, str) or id_token.count(".") != 2:
        return {}
    return _b64url_json(id_token.split(".")[1])


def account_from_token_response(data: dict[str, Any]) -> dict[str, Any]:
    claims = _id_token_claims(data.get("id_token"))
    info = _b64url_json(data.get("client_info"))
    uid, utid = info.get("uid"), info.get("utid")
    oid, tid = claims.get("oid"), claims.get("tid")
    if uid and utid:
        home_account_id = f"{uid}.{utid}"
    elif oid and tid:
        home_account_id = f"{oid}.{tid}"
    else:
        raise IdentityProviderError("No account in device code result")
    return {
        "home_account_id": home_account_id,
        "local_account_id": oid or uid,
        "tenant_id": tid or utid,
        "username": claims.get("preferred_username"),
        "name": claims.get("name"),
    }


def material_from_token_response(
    data: dict[str, Any],
    *,
    previous: dict[str, Any] | None = None,
) -> dict[str, Any]:
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise IdentityProviderError("Token response is missing access_token")
    # The identity platform rotates refresh tokens; keep the old one only if none came back.
    refresh_token = data.get("refresh_token") or (previous or {}).get("refresh_token")
    expires_at = None
    try:
        expires_at = int(time.time()) + int(data.get("expires_in"))
    except (TypeError, ValueError):
        pass
    return {
        "access_token": access_token,
        "refresh_token": refresh_token if isinstance(refresh_token, str) else None,
        "expires_at": expires_at,
        "scope": data.get("scope") if isinstance(data.get("scope"), str) else None,
        "token_type": data.get("token_type") or "Bearer",
        "updated_at": int(time.time()),
    }


def _is_expired(expires_at: Any, *, skew_s: int = 90) -> bool:
    if not isinstance(expires_at, (int, float)) or not expires_at:
        return True
    return expires_at <= int(time.time()) + skew_s


def _normalize_scope(scope: str) -> str:
    s = scope.strip()
    if s.lower().startswith(_GRAPH_RESOURCE_PREFIX):
        s = s[len(_GRAPH_RESOURCE_PREFIX) :]
    return s.lower()


def _covers_scopes(granted: Any, requested: list[str]) -> bool:
    if not isinstance(granted, str):
        return False
    have = {_normalize_scope(s) for s in granted.split() if s.strip()}
    for scope in requested:
        wanted = _normalize_scope(scope)
        if wanted in _RESERVED_SCOPES:
            continue
        if wanted not in have:
            return False
    return True


def classify_token_error(data: dict[str, Any], status: int) -> GatewayError:
    error = str(data.get("error") or "")
    description = str(data.get("error_description") or error or f"token endpoint returned {status}")
    suberror = str(data.get("suberror") or "")
    lowered = description.lower()
    if error == "consent_required" or suberror == "consent_required" or any(m in lowered for m in _DENIED_MARKERS):
        return UpstreamDenied(description, detail=error or None)
    if error in _UNAUTHORIZED_ERRORS:
        return AccountUnauthorized(
            f"Delegated grant is no longer valid ({error}); onboard again via /auth/device/start"
        )
    return IdentityProviderError(f"Identity provider error: {description}", error=error or None)


class MicrosoftIdentityClient:
    """
    Device-code onboarding and silent token refresh against the Microsoft identity
    platform (v2 endpoints) for one confidential client registration.
    """

    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority_host: str = "https://login.microsoftonline.com",
        timeout_seconds: int = 30,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.authority = f"{authority_host.rstrip('/')}/{tenant_id}"
        self._timeout_seconds = timeout_seconds
        self._http = client
        self._sleep = sleep

    @property
    def device_code_url(self) -> str:
        return f"{self.authority}/oauth2/v2.0/devicecode"

    @property
    def token_url(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    async def _post_form(self, url: str, data: dict[str, str]) -> tuple[int, dict[str, Any]]:
        client = self._http or await get_async_client("identity")
        resp = await client.post(
            url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self._timeout_seconds,
        )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp.status_code, body if isinstance(body, dict) else {}

    async def start_device_flow(self, scopes: list[str]) -> DeviceCode:
        status, data = await self._post_form(
            self.device_code_url,
            {"client_id": self.client_id, "scope": " ".join(scopes)},
        )
        if status >= 400 or not isinstance(data.get("device_code"), str):
            raise classify_token_error(data, status)
        verification_uri = data.get("verification_uri") or data.get("verification_url") or ""
        return DeviceCode(
            device_code=data["device_code"],
            user_code=str(data.get("user_code") or ""),
            verification_uri=str(verification_uri),
            message=str(data.get("message") or f"Visit {verification_uri} and enter code {data.get('user_code')}"),
            expires_in=int(data.get("expires_in") or 900),
            interval=int(data.get("interval") or 5),
        )

    async def poll_device_flow(self, device: DeviceCode) -> DeviceGrant:
        form = {
            "grant_type": _DEVICE_CODE_GRANT,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "device_code": device.device_code,
            "client_info": "1",
        }
        interval = max(1, device.interval)
        deadline = time.monotonic() + device.expires_in
        while True:
            await self._sleep(interval)
            status, data = await self._post_form(self.token_url, form)
            if status < 400 and data.get("access_token"):
                return DeviceGrant(
                    account=account_from_token_response(data),
                    material=material_from_token_response(data),
                )
            error = data.get("error")
            if error == "authorization_pending":
                pass
            elif error == "slow_down":
                interval += 5
            elif error == "expired_token":
                raise IdentityProviderError("Device code expired before sign-in completed", error=error)
            elif error in {"authorization_declined", "access_denied"}:
                raise IdentityProviderError("The user declined the sign-in request", error=error)
            else:
                raise classify_token_error(data, status)
            if time.monotonic() >= deadline:
                raise IdentityProviderError("Device code expired before sign-in completed", error="expired_token")

    async def silent_refresh(
        self,
        account_id: str,
        material: dict[str, Any],
        scopes: list[str],
    ) -> SilentResult:
        access_token = material.get("access_token")
        if (
            isinstance(access_token, str)
            and access_token
            and not _is_expired(material.get("expires_at"))
            and _covers_scopes(material.get("scope"), scopes)
        ):
            return SilentResult(access_token=access_token, material=material, refreshed=False)

        refresh_token = material.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise AccountUnauthorized("No refresh token cached for this account; onboard again via /auth/device/start")

        status, data = await self._post_form(
            self.token_url,
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "scope": " ".join(scopes),
                "client_info": "1",
            },
        )
        if status >= 400 or not data.get("access_token"):
            logger.warning(
                "identity.refresh_failed account=%s status=%d error=%s",
                account_id,
                status,
                data.get("error"),
            )
            raise classify_token_error(data, status)
        updated = material_from_token_response(data, previous=material)
        return SilentResult(access_token=updated["access_token"], material=updated, refreshed=True)
