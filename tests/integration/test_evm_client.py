"""Integration tests for the EVM client: RPC fallback, reverts, and decoding."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from eth_abi import encode

from lending_hub.chains.evm.client import EvmClient
from lending_hub.config import ChainConfig
from lending_hub.errors import ContractRevertError, DataSourceError, RpcConnectionError

WALLET = "0x1111111111111111111111111111111111111111"


@pytest.fixture()
def client() -> EvmClient:
    return EvmClient(
        ChainConfig(
            chain_id=8453,
            rpc_endpoints=(
                "https://rpc1.example.com",
                "https://rpc2.example.com",
                "https://rpc3.example.com",
            ),
            rpc_timeout=5,
        )
    )


def _mock_session(response_data: dict | None = None, error: Exception | None = None):
    """Create a mock aiohttp session that returns given data or raises error."""
    mock_response = AsyncMock()
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
    async def test_successful_call(self, client: EvmClient) -> None:
        mock_session = _mock_session({"jsonrpc": "2.0", "result": "0x2105"})

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                result = await client.rpc_call("eth_chainId", [])

        assert result == "0x2105"
        payload = mock_session.post.call_args.kwargs["json"]
        assert payload["method"] == "eth_chainId"

    @pytest.mark.asyncio
    async def test_node_error_exhausts_endpoints(self, client: EvmClient) -> None:
        mock_session = _mock_session(
            {"jsonrpc": "2.0", "error": {"code": -32000, "message": "header not found"}}
        )

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                with pytest.raises(RpcConnectionError, match="All RPC endpoints failed"):
                    await client.rpc_call("eth_call", [])

        assert mock_session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_fallback_on_connection_error(self, client: EvmClient) -> None:
        """When first endpoint fails, should try the next one."""
        call_count = 0

        success_response = AsyncMock()
        success_response.json = AsyncMock(return_value={"jsonrpc": "2.0", "result": "0x1"})
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

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                result = await client.rpc_call("eth_blockNumber", [])

        assert result == "0x1"
        assert client.current_rpc_index == 1
        assert mock_session.post.call_args.args[0] == "https://rpc2.example.com"

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self, client: EvmClient) -> None:
        mock_session = _mock_session(error=ConnectionError("down"))

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                with pytest.raises(DataSourceError, match="All RPC endpoints failed"):
                    await client.rpc_call("eth_call", [])

    @pytest.mark.asyncio
    async def test_revert_is_not_retried(self, client: EvmClient) -> None:
        revert_data = "0x08c379a0" + encode(["string"], ["ERC20: transfer amount exceeds balance"]).hex()
        mock_session = _mock_session(
            {
                "jsonrpc": "2.0",
                "error": {"code": 3, "message": "execution reverted", "data": revert_data},
            }
        )

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                with pytest.raises(ContractRevertError) as exc_info:
                    await client.rpc_call("eth_call", [])

        assert exc_info.value.reason == "ERC20: transfer amount exceeds balance"
        assert exc_info.value.data == revert_data
        assert mock_session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_revert_message_without_data(self, client: EvmClient) -> None:
        mock_session = _mock_session(
            {"jsonrpc": "2.0", "error": {"code": -32000, "message": "execution reverted: Pausable: paused"}}
        )

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                with pytest.raises(ContractRevertError, match="Pausable: paused"):
                    await client.rpc_call("eth_call", [])


class TestContractHelpers:
    @pytest.mark.asyncio
    async def test_call_function_encodes_and_decodes(self, client: EvmClient) -> None:
        result_hex = "0x" + encode(["uint256"], [1_500_000]).hex()
        mock_session = _mock_session({"jsonrpc": "2.0", "result": result_hex})

        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=mock_session):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                (balance,) = await client.call_function(
                    "0xtoken", "balanceOf(address)", (WALLET,), ("uint256",), sender=WALLET
                )

        assert balance == 1_500_000
        tx, block = mock_session.post.call_args.kwargs["json"]["params"]
        assert tx["data"].startswith("0x70a08231")
        assert tx["from"] == WALLET
        assert block == "latest"

    @pytest.mark.asyncio
    async def test_gas_helpers_parse_hex(self, client: EvmClient) -> None:
        with patch("lending_hub.chains.evm.client.aiohttp.ClientSession", return_value=_mock_session({"result": "0x249f0"})):
            with patch("lending_hub.chains.evm.client.aiohttp.TCPConnector"):
                assert await client.estimate_gas({"to": "0xpool", "data": "0x"}) == 150_000
                assert await client.gas_price() == 150_000

    def test_chain_id(self, client: EvmClient) -> None:
        assert client.chain_id == 8453
