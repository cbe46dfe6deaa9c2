from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from .credentials import CredentialStore
from .errors import AccountUnauthorized
from .identity import SilentResult
from .locking import KeyedLock

logger = logging.getLogger("uvicorn.error")


class SilentRefresher(Protocol):
    async def silent_refresh(
        self,
        account_id: str,
        material: dict[str, Any],
        scopes: list[str],
    ) -> SilentResult: ...


class TokenManager:
    """
    Hands out a valid Graph access token for an onboarded account.

    The load -> silent refresh -> persist cycle for one account is serialized, since
    the identity platform may rotate the refresh token even on the silent path and
    two interleaved cycles would persist a stale one.
    """

    def __init__(self, store: CredentialStore, identity: SilentRefresher, *, scopes: list[str]) -> None:
        self._store = store
        self._identity = identity
        self._scopes = list(scopes)
        self._locks = KeyedLock()

    async def acquire(self, account_id: str, *, request_id: str | None = None) -> str:
        async with self._locks.hold(account_id):
            material = await self._store.load_token_cache(account_id)
            if not material:
                raise AccountUnauthorized(
                    "No cached credentials for this account; onboard again via /auth/device/start"
                )
            t0 = time.time()
            result = await self._identity.silent_refresh(account_id, material, self._scopes)
            await self._store.save_token_cache(account_id, result.material)
            logger.debug(
                "[%s] identity.silent ms=%d refreshed=%s",
                request_id,
                int((time.time() - t0) * 1000),
                result.refreshed,
            )
            return result.access_token
