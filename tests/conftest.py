from __future__ import annotations

import asyncio
from typing import Any

import fakeredis
import fakeredis.aioredis
import pytest

from copilot_gateway.credentials import CredentialStore
from copilot_gateway.errors import AccountUnauthorized
from copilot_gateway.identity import DeviceCode, DeviceGrant, SilentResult


def make_redis():
    # A private FakeServer per test keeps state from leaking between tests.
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis():
    return make_redis()


@pytest.fixture
def store(redis):
    return CredentialStore(redis, key_ttl=3600, cache_ttl=600)


class FakeIdentity:
    """In-memory identity provider: device flow and silent refresh without HTTP."""

    def __init__(
        self,
        *,
        account_id: str = "uid-1.tenant-1",
        username: str = "alice@contoso.com",
        poll_error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.account_id = account_id
        self.username = username
        self.poll_error = poll_error
        self.gate = gate
        self.started: list[list[str]] = []
        self.refreshed: list[str] = []

    async def start_device_flow(self, scopes: list[str]) -> DeviceCode:
        self.started.append(list(scopes))
        return DeviceCode(
            device_code="device-code-1",
            user_code="ABCD-EFGH",
            verification_uri="https://microsoft.com/devicelogin",
            message="To sign in, visit https://microsoft.com/devicelogin and enter ABCD-EFGH.",
            expires_in=900,
            interval=5,
        )

    async def poll_device_flow(self, device: DeviceCode) -> DeviceGrant:
        if self.gate is not None:
            await self.gate.wait()
        if self.poll_error is not None:
            raise self.poll_error
        return DeviceGrant(
            account={
                "home_account_id": self.account_id,
                "local_account_id": "uid-1",
                "tenant_id": "tenant-1",
                "username": self.username,
                "name": "Alice",
            },
            material={
                "access_token": "graph-access-1",
                "refresh_token": "refresh-1",
                "expires_at": 4102444800,
                "scope": "Sites.Read.All Mail.Read",
                "token_type": "Bearer",
            },
        )

    async def silent_refresh(self, account_id: str, material: dict[str, Any], scopes: list[str]) -> SilentResult:
        self.refreshed.append(account_id)
        token = material.get("access_token")
        if not token:
            raise AccountUnauthorized("no token")
        return SilentResult(access_token=token, material=material, refreshed=False)
