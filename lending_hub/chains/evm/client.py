"""EVM JSON-RPC client with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from typing import Any, Sequence

import aiohttp
import certifi

from ...config import ChainConfig
from ...errors import ContractRevertError, RpcConnectionError
from . import abi

logger = logging.getLogger(__name__)

# JSON-RPC error code geth and most providers use for execution reverts.
_REVERT_ERROR_CODE = 3


def _revert_from_error(error: Any) -> ContractRevertError | None:
    """Map a JSON-RPC error object to a revert, or None if it is not one."""
    if not isinstance(error, dict):
        return None
    message = str(error.get("message", ""))
    if error.get("code") != _REVERT_ERROR_CODE and "revert" not in message.lower():
        return None

    data = error.get("data")
    if isinstance(data, dict):
        data = data.get("data") or data.get("result")
    reason = abi.decode_revert_reason(data if isinstance(data, str) else None)
    if reason is None:
        reason = message.replace("execution reverted:", "").strip() or message
    return ContractRevertError(reason, data if isinstance(data, str) else None)


class EvmClient:
    """EVM chain RPC client with automatic endpoint fallback."""

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0
        self._chain_id = config.chain_id

    @property
    def chain_id(self) -> int:
        return self._chain_id

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints.

        Reverts are raised immediately; only transport and node errors move on
        to the next endpoint.
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json(content_type=None)
                        if "error" in result:
                            revert = _revert_from_error(result["error"])
                            if revert is not None:
                                raise revert
                            raise RuntimeError(f"RPC Error: {result['error']}")

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to RPC endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result")
            except ContractRevertError:
                raise
            except Exception as e:
                last_error = e
                logger.warning("RPC endpoint %s failed: %s", rpc_url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

        raise RpcConnectionError(f"All RPC endpoints failed. Last error: {last_error}")

    async def eth_call(self, tx: dict[str, Any], block: str = "latest") -> str:
        return await self.rpc_call("eth_call", [tx, block])

    async def call_function(
        self,
        to: str,
        signature: str,
        args: Sequence[Any] = (),
        output_types: Sequence[str] = (),
        sender: str | None = None,
    ) -> tuple[Any, ...]:
        """Encode, eth_call and decode a single contract read."""
        tx: dict[str, Any] = {"to": to, "data": abi.encode_call(signature, args)}
        if sender:
            tx["from"] = sender
        raw = await self.eth_call(tx)
        return abi.decode_result(output_types, raw)

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return int(await self.rpc_call("eth_estimateGas", [tx]), 16)

    async def gas_price(self) -> int:
        return int(await self.rpc_call("eth_gasPrice", []), 16)
