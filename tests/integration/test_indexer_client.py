"""Integration tests for the indexer client — endpoint fallback and error handling."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from blend_pnl.config import IndexerConfig
from blend_pnl.errors import RepositoryUnavailableError
from blend_pnl.indexer import IndexerClient


@pytest.fixture()
def client() -> IndexerClient:
    return IndexerClient(
        IndexerConfig(
            endpoints=(
                "https://indexer1.example.com",
                "https://indexer2.example.com",
                "https://indexer3.example.com",
            ),
            timeout=5,
        )
    )


def _mock_session(response_data: dict | None = None, error: Exception | None = None):
    """Create a mock aiohttp session that returns given data or raises error."""
    mock_response = AsyncMock()
    if error:
        mock_response.json = AsyncMock(side_effect=error)
    else:
        mock_response.json = AsyncMock(return_value=response_data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    if error:
        mock_session.post = MagicMock(side_effect=error)
    else:
        mock_session.post = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)

    return mock_session


class TestRpcCall:
    @pytest.mark.asyncio
    async def test_successful_call(self, client: IndexerClient) -> None:
        mock_session = _mock_session({"jsonrpc": "2.0", "result": [{"pool_id": "CPOOL"}]})

        with patch("blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                result = await client.rpc_call("blend_getUserActions", ["GA", {}])

        assert result == [{"pool_id": "CPOOL"}]
        payload = mock_session.post.call_args.kwargs["json"]
        assert payload["method"] == "blend_getUserActions"
        assert payload["params"] == ["GA", {}]

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self, client: IndexerClient) -> None:
        mock_session = _mock_session(
            {"jsonrpc": "2.0", "error": {"code": -32000, "message": "bad"}}
        )

        with patch("blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                with pytest.raises(RepositoryUnavailableError, match="All indexer endpoints failed"):
                    await client.rpc_call("blend_getClaims", [])

    @pytest.mark.asyncio
    async def test_fallback_on_connection_error(self, client: IndexerClient) -> None:
        """When first endpoint fails, should try the next one."""
        call_count = 0

        success_response = AsyncMock()
        success_response.json = AsyncMock(return_value={"jsonrpc": "2.0", "result": {"ok": True}})
        success_response.__aenter__ = AsyncMock(return_value=success_response)
        success_response.__aexit__ = AsyncMock(return_value=None)

        def side_effect(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise ConnectionError("first endpoint down")
            return success_response

        mock_session = AsyncMock()
        mock_session.post = MagicMock(side_effect=side_effect)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                result = await client.rpc_call("blend_getClaims", [])

        assert result == {"ok": True}
        assert client.current_rpc_index == 1

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self, client: IndexerClient) -> None:
        mock_session = _mock_session(error=ConnectionError("down"))

        with patch("blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                with pytest.raises(RepositoryUnavailableError, match="down"):
                    await client.rpc_call("blend_getClaims", [])

        assert mock_session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_missing_result_is_none(self, client: IndexerClient) -> None:
        mock_session = _mock_session({"jsonrpc": "2.0"})

        with patch("blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                result = await client.rpc_call("blend_refreshDailyRates", [])

        assert result is None


class TestSessionLifetime:
    @pytest.mark.asyncio
    async def test_calls_share_one_session(self, client: IndexerClient) -> None:
        mock_session = _mock_session({"jsonrpc": "2.0", "result": []})

        with patch(
            "blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session
        ) as session_cls:
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                await client.rpc_call("blend_getClaims", ["GA"])
                await client.rpc_call("blend_getClaims", ["GB"])

        assert session_cls.call_count == 1
        assert mock_session.post.call_count == 2

    @pytest.mark.asyncio
    async def test_context_manager_closes_session(self, client: IndexerClient) -> None:
        mock_session = _mock_session({"jsonrpc": "2.0", "result": []})

        with patch("blend_pnl.indexer.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("blend_pnl.indexer.client.aiohttp.TCPConnector"):
                async with client:
                    await client.rpc_call("blend_getClaims", ["GA"])

        mock_session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_without_calls(self, client: IndexerClient) -> None:
        await client.close()
