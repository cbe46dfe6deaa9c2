from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from .errors import GatewayError
from .kv import get_json, set_json
from .locking import KeyedLock

logger = logging.getLogger("uvicorn.error")

_KEY_PREFIX = "userkey:"
_ACCOUNT_PREFIX = "account:"
_CACHE_PREFIX = "tokencache:"
_WATCH_RETRIES = 8


def generate_key() -> str:
    # 24 random bytes, base64url without padding (32 chars).
    return secrets.token_urlsafe(24)


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


@dataclass(frozen=True)
class KeyRecord:
    key: str
    account_id: str
    label: str | None
    created_at: int
    rotated_at: int | None = None

    def to_doc(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "label": self.label,
            "created_at": self.created_at,
            "rotated_at": self.rotated_at,
        }

    def public(self) -> dict[str, Any]:
        return {"key": mask_key(self.key), **self.to_doc()}


def _key_name(key: str) -> str:
    return f"{_KEY_PREFIX}{key}"


def _parse_record(key: str, raw: str | None) -> KeyRecord | None:
    if raw is None:
        return None
    try:
        doc = json.loads(raw)
    except ValueError:
        logger.warning("credentials.corrupt key=%s", mask_key(key))
        return None
    if not isinstance(doc, dict) or not isinstance(doc.get("account_id"), str):
        return None
    label = doc.get("label")
    created_at = doc.get("created_at")
    rotated_at = doc.get("rotated_at")
    return KeyRecord(
        key=key,
        account_id=doc["account_id"],
        label=label if isinstance(label, str) else None,
        created_at=int(created_at) if isinstance(created_at, (int, float)) else 0,
        rotated_at=int(rotated_at) if isinstance(rotated_at, (int, float)) else None,
    )


class CredentialStore:
    """
    Caller keys, onboarded accounts and their token-cache material, kept in Redis.

    Every mutation of one caller key runs under an in-process lock for that key and
    inside a WATCH/MULTI transaction, so concurrent rotate/revoke/label calls (from
    this or another worker) apply one at a time and a reader sees either the old
    mapping or the new one.
    """

    def __init__(self, redis: Redis, *, key_ttl: int, cache_ttl: int) -> None:
        self._redis = redis
        self._key_ttl = key_ttl
        self._cache_ttl = cache_ttl
        self._locks = KeyedLock()

    # ── caller keys ─────────────────────────────────────────────────────────

    async def put(self, key: str, account_id: str, *, label: str | None = None) -> KeyRecord:
        record = KeyRecord(key=key, account_id=account_id, label=label, created_at=int(time.time()))
        async with self._locks.hold(key):
            await self._redis.set(_key_name(key), json.dumps(record.to_doc()), ex=self._key_ttl)
        return record

    async def mint(self, account_id: str, *, label: str | None = None) -> str:
        key = generate_key()
        await self.put(key, account_id, label=label)
        return key

    async def get(self, key: str) -> KeyRecord | None:
        return _parse_record(key, await self._redis.get(_key_name(key)))

    async def label(self, key: str, text: str | None) -> KeyRecord | None:
        def _apply(pipe: Pipeline, record: KeyRecord) -> KeyRecord:
            updated = replace(record, label=text)
            # XX: never resurrect a key that vanished; KEEPTTL: labelling does not extend it.
            pipe.set(_key_name(key), json.dumps(updated.to_doc()), xx=True, keepttl=True)
            return updated

        return await self._mutate(key, _apply)

    async def revoke(self, key: str) -> bool:
        def _apply(pipe: Pipeline, record: KeyRecord) -> KeyRecord:
            pipe.delete(_key_name(key))
            return record

        return await self._mutate(key, _apply) is not None

    async def rotate(self, key: str) -> str | None:
        new_key = generate_key()

        def _apply(pipe: Pipeline, record: KeyRecord) -> KeyRecord:
            rotated = replace(record, key=new_key, rotated_at=int(time.time()))
            pipe.delete(_key_name(key))
            pipe.set(_key_name(new_key), json.dumps(rotated.to_doc()), ex=self._key_ttl)
            return rotated

        record = await self._mutate(key, _apply)
        return record.key if record else None

    async def list_all(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        async for name in self._redis.scan_iter(match=f"{_KEY_PREFIX}*", count=200):
            key = name[len(_KEY_PREFIX) :]
            record = _parse_record(key, await self._redis.get(name))
            if record is not None:
                out.append(record.public())
        out.sort(key=lambda item: item["created_at"])
        return out

    async def _mutate(
        self,
        key: str,
        apply: Callable[[Pipeline, KeyRecord], KeyRecord],
    ) -> KeyRecord | None:
        name = _key_name(key)
        async with self._locks.hold(key):
            for _ in range(_WATCH_RETRIES):
                async with self._redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(name)
                        record = _parse_record(key, await pipe.get(name))
                        if record is None:
                            return None
                        pipe.multi()
                        result = apply(pipe, record)
                        await pipe.execute()
                        return result
                    except WatchError:
                        logger.debug("credentials.watch_conflict key=%s", mask_key(key))
                        continue
        raise GatewayError(f"Caller key {mask_key(key)} is under heavy concurrent modification; try again")

    # ── accounts and token cache ────────────────────────────────────────────

    async def save_account(self, account: dict[str, Any]) -> None:
        await set_json(self._redis, f"{_ACCOUNT_PREFIX}{account['home_account_id']}", account)

    async def load_account(self, account_id: str) -> dict[str, Any] | None:
        account = await get_json(self._redis, f"{_ACCOUNT_PREFIX}{account_id}")
        return account if isinstance(account, dict) else None

    async def load_token_cache(self, account_id: str) -> dict[str, Any] | None:
        material = await get_json(self._redis, f"{_CACHE_PREFIX}{account_id}")
        return material if isinstance(material, dict) else None

    async def save_token_cache(self, account_id: str, material: dict[str, Any]) -> None:
        await set_json(self._redis, f"{_CACHE_PREFIX}{account_id}", material, ttl=self._cache_ttl)
