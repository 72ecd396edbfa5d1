"""Read-only JSON-RPC client for ledger state queries.

Only reads are exposed: chain id, contract code, EntryPoint nonces and fee
data. Writes to a chain happen exclusively through the bundler.
"""
from __future__ import annotations

import logging
import time
from typing import Any, List, Optional, Tuple

import httpx
from eth_abi import encode
from web3 import Web3

from .logging_utils import get_operation_logger

logger = logging.getLogger(__name__)

_GET_NONCE_SELECTOR = bytes(Web3.keccak(text="getNonce(address,uint192)"))[:4]
_CURRENT_NONCE_SELECTOR = bytes(Web3.keccak(text="currentNonce()"))[:4]
_DEFAULT_PRIORITY_FEE = 1_000_000_000  # 1 gwei


class RPCError(Exception):
    """JSON-RPC error returned by a node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class LedgerClient:
    """JSON-RPC client for blockchain reads."""

    def __init__(
        self,
        rpc_url: str,
        chain: str = "",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._rpc_url = rpc_url
        self._chain = chain
        self._http_client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        started = time.monotonic()
        success = False
        error_message = None
        try:
            response = await self._http_client.post(
                self._rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            result = response.json()

            if result.get("error"):
                error = result["error"]
                error_message = str(error)
                if isinstance(error, dict):
                    raise RPCError(str(error.get("message", error)), code=error.get("code"), data=error.get("data"))
                raise RPCError(str(error))

            success = True
            return result.get("result")
        finally:
            get_operation_logger().log_rpc_call(
                method=method,
                endpoint_url=self._rpc_url,
                chain=self._chain,
                duration_ms=(time.monotonic() - started) * 1000,
                success=success,
                error_message=error_message,
            )

    async def chain_id(self) -> int:
        result = await self._call("eth_chainId")
        return int(result, 16)

    async def get_code(self, address: str) -> str:
        result = await self._call("eth_getCode", [address, "latest"])
        return result or "0x"

    async def is_deployed(self, address: str) -> bool:
        code = await self.get_code(address)
        return code not in ("0x", "0x0", "")

    async def eth_call(self, to: str, data: str) -> str:
        result = await self._call("eth_call", [{"to": to, "data": data}, "latest"])
        return result or "0x"

    async def get_nonce(self, sender: str, key: int, entry_point: str) -> int:
        """Read EntryPoint.getNonce(sender, key): key in the high 192 bits, sequence in the low 64."""
        data = _GET_NONCE_SELECTOR + encode(["address", "uint192"], [Web3.to_checksum_address(sender), key])
        result = await self.eth_call(entry_point, "0x" + data.hex())
        if result in ("0x", ""):
            return key << 64
        return int(result, 16)

    async def kernel_current_nonce(self, account: str) -> int:
        """Kernel v3 enable-approval nonce; accounts start at 1 when initialized."""
        result = await self.eth_call(account, "0x" + _CURRENT_NONCE_SELECTOR.hex())
        if result in ("0x", ""):
            return 1
        return int(result, 16)

    async def get_fee_data(self) -> Tuple[int, int]:
        """Return (max_fee_per_gas, max_priority_fee_per_gas) in wei."""
        gas_price = int(await self._call("eth_gasPrice"), 16)
        try:
            priority_fee = int(await self._call("eth_maxPriorityFeePerGas"), 16)
        except RPCError:
            # Fallback for chains that don't support this
            priority_fee = _DEFAULT_PRIORITY_FEE
        return gas_price + priority_fee, priority_fee

    async def close(self) -> None:
        await self._http_client.aclose()
