"""ERC-4337 bundler client."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..exceptions import ReceiptTimeoutError, SubmissionRejectedError, exception_from_rpc_error
from ..logging_utils import get_operation_logger
from .entrypoint import EntryPointVersion
from .user_operation import UserOperation

logger = logging.getLogger(__name__)


@dataclass
class BundlerConfig:
    url: str
    chain_id: int
    chain: str = ""
    entry_point_version: EntryPointVersion = EntryPointVersion.V07
    timeout_seconds: float = 30.0
    poll_seconds: float = 2.0


class BundlerClient:
    """JSON-RPC client for one chain's bundler."""

    def __init__(self, config: BundlerConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._request_id = 0

    @property
    def chain_id(self) -> int:
        return self._config.chain_id

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        started = time.monotonic()
        success = False
        error_message = None
        try:
            response = await self._client.post(self._config.url, json=payload)
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as e:
                error_message = f"non-JSON response: {e}"
                raise SubmissionRejectedError(
                    f"Bundler returned a non-JSON response ({method})", chain_id=self._config.chain_id,
                ) from e
            if not isinstance(data, dict):
                error_message = "response is not a JSON-RPC object"
                raise SubmissionRejectedError(
                    f"Bundler returned an invalid JSON-RPC payload ({method})", chain_id=self._config.chain_id,
                )
            if data.get("error"):
                error_message = str(data["error"])
                raise exception_from_rpc_error(data["error"], chain_id=self._config.chain_id, method=method)
            success = True
            return data.get("result")
        finally:
            get_operation_logger().log_rpc_call(
                method=method,
                endpoint_url=self._config.url,
                chain=self._config.chain or str(self._config.chain_id),
                duration_ms=(time.monotonic() - started) * 1000,
                success=success,
                error_message=error_message,
            )

    async def estimate_user_operation_gas(self, user_op: UserOperation, entrypoint: str) -> dict[str, int]:
        result = await self._rpc(
            "eth_estimateUserOperationGas",
            [user_op.to_rpc(self._config.entry_point_version), entrypoint],
        )
        if not isinstance(result, dict):
            raise SubmissionRejectedError(
                "Bundler returned invalid gas estimate payload", chain_id=self._config.chain_id,
            )
        return {
            key: int(value, 16) if isinstance(value, str) else int(value)
            for key, value in result.items()
            if isinstance(value, (str, int))
        }

    async def send_user_operation(self, user_op: UserOperation, entrypoint: str) -> str:
        result = await self._rpc(
            "eth_sendUserOperation",
            [user_op.to_rpc(self._config.entry_point_version), entrypoint],
        )
        if not isinstance(result, str):
            raise SubmissionRejectedError(
                "Bundler returned invalid user op hash", chain_id=self._config.chain_id,
            )
        return result

    async def get_user_operation_receipt(self, user_op_hash: str) -> dict[str, Any] | None:
        result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise SubmissionRejectedError(
                "Bundler returned invalid receipt payload", chain_id=self._config.chain_id,
            )
        return result

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: float = 180,
        poll_seconds: Optional[float] = None,
    ) -> dict[str, Any]:
        poll = poll_seconds if poll_seconds is not None else self._config.poll_seconds
        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline:
            try:
                receipt = await self.get_user_operation_receipt(user_op_hash)
            except (httpx.HTTPError, SubmissionRejectedError) as e:
                # Already accepted: a failed poll is not a verdict.
                logger.warning(
                    "Receipt poll failed, retrying: chain_id=%s, user_op_hash=%s, error=%s",
                    self._config.chain_id, user_op_hash, e,
                )
                receipt = None
            if receipt:
                return receipt
            await asyncio.sleep(max(0.0, min(poll, deadline - time.monotonic())))
        raise ReceiptTimeoutError(
            f"UserOperation not included within {timeout_seconds}s: {user_op_hash}",
            chain_id=self._config.chain_id,
            user_op_hash=user_op_hash,
            timeout_seconds=timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()
