from __future__ import annotations

import hashlib
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
import structlog


logger = structlog.get_logger(__name__)


def _cache_key(base_url: str, api_key: str) -> tuple[str, str]:
    # Keyed on a digest so credentials are not held as dict keys in plain text.
    digest = hashlib.sha256((api_key or "").encode("utf-8")).hexdigest()
    return (base_url.rstrip("/"), digest)


class ClientCache:
    """Reuses one ``httpx.AsyncClient`` per (base URL, credential) pair.

    Purely an optimization: with ``enabled=False`` every lease gets a fresh
    client that is closed when the lease ends.
    """

    def __init__(self, *, enabled: bool = True, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.enabled = enabled
        self._transport = transport
        self._clients: dict[tuple[str, str], httpx.AsyncClient] = {}
        self._closed = False

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, follow_redirects=True)

    @asynccontextmanager
    async def lease(self, base_url: str, api_key: str) -> AsyncIterator[httpx.AsyncClient]:
        if not self.enabled or self._closed:
            async with self._new_client() as client:
                yield client
            return

        key = _cache_key(base_url, api_key)
        client = self._clients.get(key)
        if client is None or client.is_closed:
            client = self._new_client()
            self._clients[key] = client
            logger.debug("http_client_created", base_url=key[0], cached_clients=len(self._clients))
        yield client

    def __len__(self) -> int:
        return len(self._clients)

    async def aclose(self) -> None:
        self._closed = True
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.aclose()
