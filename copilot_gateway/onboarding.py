from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import suppress
from typing import Any, Protocol

from redis.asyncio import Redis

from .credentials import CredentialStore
from .identity import DeviceCode, DeviceGrant
from .kv import get_json, set_json

logger = logging.getLogger("uvicorn.error")

_TX_PREFIX = "devtx:"


class DeviceFlowProvider(Protocol):
    async def start_device_flow(self, scopes: list[str]) -> DeviceCode: ...

    async def poll_device_flow(self, device: DeviceCode) -> DeviceGrant: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class DeviceFlowOrchestrator:
    """
    Drives device-code onboarding as two steps.

    `start()` asks the identity provider for a user code, records the transaction as
    pending and returns right away. A detached task then waits for the user to sign
    in and rewrites the transaction as `complete` (with a freshly minted caller key)
    or `error`. `status()` only reads the stored transaction.
    """

    def __init__(
        self,
        redis: Redis,
        identity: DeviceFlowProvider,
        store: CredentialStore,
        *,
        scopes: list[str],
        complete_ttl: int = 60 * 60 * 24,
        error_ttl: int = 60 * 60,
    ) -> None:
        self._redis = redis
        self._identity = identity
        self._store = store
        self._scopes = list(scopes)
        self._complete_ttl = complete_ttl
        self._error_ttl = error_ttl
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def background_tasks(self) -> frozenset[asyncio.Task[None]]:
        return frozenset(self._tasks)

    async def start(self, *, request_id: str | None = None, label: str | None = None) -> dict[str, Any]:
        tx_id = str(uuid.uuid4())
        created_at = _now_ms()
        device = await self._identity.start_device_flow(self._scopes)
        info: dict[str, Any] = {
            "txId": tx_id,
            "status": "pending",
            "createdAt": created_at,
            "user_code": device.user_code,
            "verification_uri": device.verification_uri,
            "message": device.message,
            "expires_in": device.expires_in,
            "interval": device.interval,
        }
        await set_json(self._redis, f"{_TX_PREFIX}{tx_id}", info, ttl=max(1, device.expires_in))
        logger.info("[%s] device.pending tx_id=%s expires_in=%d", request_id, tx_id, device.expires_in)

        task = asyncio.create_task(self._complete(tx_id, device, request_id=request_id, label=label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return info

    async def status(self, tx_id: str) -> dict[str, Any] | None:
        info = await get_json(self._redis, f"{_TX_PREFIX}{tx_id}")
        return info if isinstance(info, dict) else None

    async def _complete(
        self,
        tx_id: str,
        device: DeviceCode,
        *,
        request_id: str | None,
        label: str | None,
    ) -> None:
        key = f"{_TX_PREFIX}{tx_id}"
        try:
            grant = await self._identity.poll_device_flow(device)
            account = grant.account
            account_id = account["home_account_id"]
            await self._store.save_token_cache(account_id, grant.material)
            await self._store.save_account(account)
            user_key = await self._store.mint(account_id, label=label)

            done = await self.status(tx_id) or {"txId": tx_id}
            done.update(
                status="complete",
                user_key=user_key,
                account_id=account_id,
                username=account.get("username"),
                completedAt=_now_ms(),
            )
            await set_json(self._redis, key, done, ttl=self._complete_ttl)
            logger.info("[%s] device.complete tx_id=%s account=%s", request_id, tx_id, account_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[%s] device.error tx_id=%s err=%s", request_id, tx_id, e)
            try:
                cur = await self.status(tx_id) or {"txId": tx_id}
                cur["status"] = "error"
                cur["error"] = str(e) or e.__class__.__name__
                await set_json(self._redis, key, cur, ttl=self._error_ttl)
            except Exception:
                logger.exception("[%s] device.error_not_recorded tx_id=%s", request_id, tx_id)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
