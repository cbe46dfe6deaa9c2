from __future__ import annotations

import httpx

_CLIENTS: dict[str, httpx.AsyncClient] = {}


async def get_async_client(name: str) -> httpx.AsyncClient:
    """Shared pooled client per upstream, created on first use."""
    client = _CLIENTS.get(name)
    if client is None or client.is_closed:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        client = httpx.AsyncClient(limits=limits, timeout=httpx.Timeout(60.0))
        _CLIENTS[name] = client
    return client


async def aclose_all() -> None:
    clients = list(_CLIENTS.values())
    _CLIENTS.clear()
    for client in clients:
        await client.aclose()
