"""ERC-4337 paymaster clients (ZeroDev + Pimlico dialects)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from ..exceptions import SponsorshipDeniedError
from .entrypoint import EntryPointVersion
from .user_operation import UserOperation

logger = logging.getLogger(__name__)


class PaymasterProvider(str, Enum):
    """Supported paymaster RPC dialects."""
    ZERODEV = "zerodev"
    PIMLICO = "pimlico"


@dataclass
class PaymasterConfig:
    url: str
    chain_id: int
    timeout_seconds: float = 30.0
    provider: PaymasterProvider = PaymasterProvider.ZERODEV
    entry_point_version: EntryPointVersion = EntryPointVersion.V07
    sponsorship_policy_id: str = ""


@dataclass
class SponsorshipData:
    """Paymaster fields (and any gas limits the paymaster overrides)."""
    paymaster: str = ""
    paymaster_data: str = "0x"
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0
    call_gas_limit: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    pre_verification_gas: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    def apply(self, user_op: UserOperation) -> UserOperation:
        """Return a copy of user_op carrying the sponsorship fields."""
        changes: dict[str, Any] = {
            "paymaster": self.paymaster,
            "paymaster_data": self.paymaster_data,
            "paymaster_verification_gas_limit": self.paymaster_verification_gas_limit,
            "paymaster_post_op_gas_limit": self.paymaster_post_op_gas_limit,
        }
        for field_name in (
            "call_gas_limit",
            "verification_gas_limit",
            "pre_verification_gas",
            "max_fee_per_gas",
            "max_priority_fee_per_gas",
        ):
            value = getattr(self, field_name)
            if value is not None:
                changes[field_name] = value
        return user_op.copy(**changes)


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def parse_sponsorship(result: Any, version: EntryPointVersion) -> SponsorshipData:
    """Normalize a sponsorship payload from either dialect."""
    if not isinstance(result, dict):
        raise ValueError("sponsorship payload is not an object")

    if version == EntryPointVersion.V06 or "paymasterAndData" in result:
        packed = result.get("paymasterAndData")
        if not isinstance(packed, str) or len(packed) < 42:
            raise ValueError("paymasterAndData missing or too short")
        paymaster = "0x" + packed[2:42]
        paymaster_data = "0x" + packed[42:]
    else:
        paymaster = result.get("paymaster")
        paymaster_data = result.get("paymasterData", "0x")
        if not isinstance(paymaster, str) or not isinstance(paymaster_data, str):
            raise ValueError("paymaster fields missing")

    return SponsorshipData(
        paymaster=paymaster,
        paymaster_data=paymaster_data,
        paymaster_verification_gas_limit=_int_or_none(result.get("paymasterVerificationGasLimit")) or 0,
        paymaster_post_op_gas_limit=_int_or_none(result.get("paymasterPostOpGasLimit")) or 0,
        call_gas_limit=_int_or_none(result.get("callGasLimit")),
        verification_gas_limit=_int_or_none(result.get("verificationGasLimit")),
        pre_verification_gas=_int_or_none(result.get("preVerificationGas")),
        max_fee_per_gas=_int_or_none(result.get("maxFeePerGas")),
        max_priority_fee_per_gas=_int_or_none(result.get("maxPriorityFeePerGas")),
    )


class PaymasterClient:
    """Sponsor-model paymaster client for one chain."""

    def __init__(self, config: PaymasterConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def chain_id(self) -> int:
        return self._config.chain_id

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self._client.post(self._config.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SponsorshipDeniedError(
                f"Paymaster unreachable ({method}): {e}", chain_id=self._config.chain_id,
            ) from e
        if data.get("error"):
            raise SponsorshipDeniedError(
                f"Paymaster RPC error ({method}): {data['error']}",
                chain_id=self._config.chain_id,
                details={"rpc_error": data["error"]},
            )
        return data.get("result")

    async def sponsor_user_operation(
        self,
        user_op: UserOperation,
        entrypoint: str,
    ) -> SponsorshipData:
        version = self._config.entry_point_version
        if self._config.provider == PaymasterProvider.ZERODEV:
            method = "zd_sponsorUserOperation"
            params: list[Any] = [{
                "chainId": self._config.chain_id,
                "userOp": user_op.to_rpc(version),
                "entryPointAddress": entrypoint,
                "shouldOverrideFee": False,
                "shouldConsume": True,
            }]
        else:
            method = "pm_sponsorUserOperation"
            params = [user_op.to_rpc(version), entrypoint]
            if self._config.sponsorship_policy_id:
                params.append({"sponsorshipPolicyId": self._config.sponsorship_policy_id})

        result = await self._rpc(method, params)
        try:
            sponsorship = parse_sponsorship(result, version)
        except ValueError as e:
            raise SponsorshipDeniedError(
                f"Paymaster returned invalid sponsorship payload: {e}", chain_id=self._config.chain_id,
            ) from e

        logger.info(
            "Sponsorship granted: chain_id=%s, paymaster=%s",
            self._config.chain_id, sponsorship.paymaster,
        )
        return sponsorship

    async def close(self) -> None:
        await self._client.aclose()
