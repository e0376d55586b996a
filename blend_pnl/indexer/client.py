"""Indexer JSON-RPC client with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import IndexerConfig
from ..errors import RepositoryUnavailableError

logger = logging.getLogger(__name__)


class IndexerClient:
    """JSON-RPC client for the Blend event indexer with automatic endpoint fallback.

    One HTTP session is opened on first use and shared by every call until
    ``close()``; use the client as an async context manager to scope it.
    """

    def __init__(self, config: IndexerConfig) -> None:
        self.endpoints = list(config.endpoints)
        self.timeout = config.timeout
        self.current_rpc_index = 0
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> IndexerClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=ssl_context),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        session = self._get_session()

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                async with session.post(rpc_url, json=payload) as response:
                    result = await response.json()
                    if "error" in result:
                        raise RuntimeError(f"RPC Error: {result['error']}")

                    if rpc_index != self.current_rpc_index:
                        logger.info("Switched to indexer endpoint: %s", rpc_url)
                        self.current_rpc_index = rpc_index

                    return result.get("result")
            except Exception as e:
                last_error = e
                logger.warning("Indexer endpoint %s failed on %s: %s", rpc_url, method, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

        raise RepositoryUnavailableError(
            f"All indexer endpoints failed. Last error: {last_error}"
        )
