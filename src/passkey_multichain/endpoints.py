"""Per-chain collaborator bundle: ledger reads, bundler, paymaster."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

import httpx

from .config import ChainSettings, ChainSpec, MultiChainSettings
from .erc4337.bundler_client import BundlerClient, BundlerConfig
from .erc4337.paymaster_client import PaymasterClient, PaymasterConfig, SponsorshipData
from .erc4337.user_operation import UserOperation
from .ledger_client import LedgerClient

logger = logging.getLogger(__name__)


class LedgerReader(Protocol):
    """Read-only ledger queries."""

    async def chain_id(self) -> int: ...

    async def is_deployed(self, address: str) -> bool: ...

    async def get_nonce(self, sender: str, key: int, entry_point: str) -> int: ...

    async def kernel_current_nonce(self, account: str) -> int: ...

    async def get_fee_data(self) -> Tuple[int, int]: ...

    async def close(self) -> None: ...


class Bundler(Protocol):
    """Relays signed user operations and reports their receipts."""

    async def estimate_user_operation_gas(self, user_op: UserOperation, entrypoint: str) -> dict[str, int]: ...

    async def send_user_operation(self, user_op: UserOperation, entrypoint: str) -> str: ...

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: float = 180,
        poll_seconds: Optional[float] = None,
    ) -> dict[str, Any]: ...

    async def close(self) -> None: ...


class Sponsor(Protocol):
    """Underwrites gas for a user operation."""

    async def sponsor_user_operation(self, user_op: UserOperation, entrypoint: str) -> SponsorshipData: ...

    async def close(self) -> None: ...


@dataclass
class ChainEndpoints:
    """Collaborators for one participating chain.

    Instances are passed explicitly through the resolver, delegation and
    coordinator layers; nothing holds them at module level.
    """
    chain: ChainSpec
    ledger: LedgerReader
    bundler: Bundler
    paymaster: Optional[Sponsor] = None
    passkey_server_url: str = ""
    receipt_timeout_seconds: float = 180.0
    webauthn_validator_address: str = ""

    @property
    def chain_id(self) -> int:
        return self.chain.chain_id

    @property
    def name(self) -> str:
        return self.chain.name

    @classmethod
    def from_settings(
        cls,
        chain_settings: ChainSettings,
        settings: MultiChainSettings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ChainEndpoints":
        """Build HTTP-backed collaborators for one configured chain."""
        spec = chain_settings.spec
        timeout = settings.http_timeout_seconds
        bundler_url = chain_settings.resolved_bundler_url()

        ledger = LedgerClient(
            chain_settings.resolved_rpc_url(),
            chain=spec.name,
            timeout_seconds=timeout,
            client=client,
        )
        bundler = BundlerClient(
            BundlerConfig(
                url=bundler_url,
                chain_id=spec.chain_id,
                chain=spec.name,
                entry_point_version=settings.entry_point_version,
                timeout_seconds=timeout,
                poll_seconds=settings.receipt_poll_seconds,
            ),
            client=client,
        )

        paymaster: Optional[PaymasterClient] = None
        paymaster_url = chain_settings.resolved_paymaster_url()
        if settings.use_paymaster and paymaster_url:
            paymaster = PaymasterClient(
                PaymasterConfig(
                    url=paymaster_url,
                    chain_id=spec.chain_id,
                    timeout_seconds=timeout,
                    provider=settings.paymaster_provider,
                    entry_point_version=settings.entry_point_version,
                    sponsorship_policy_id=settings.sponsorship_policy_id,
                ),
                client=client,
            )
        elif settings.use_paymaster:
            logger.warning("No paymaster configured for %s; operations will be self-funded", spec.name)

        return cls(
            chain=spec,
            ledger=ledger,
            bundler=bundler,
            paymaster=paymaster,
            passkey_server_url=chain_settings.resolved_passkey_server_url(),
            receipt_timeout_seconds=settings.receipt_timeout_for(spec.name),
            webauthn_validator_address=settings.webauthn_validator_address,
        )

    async def close(self) -> None:
        await self.ledger.close()
        await self.bundler.close()
        if self.paymaster is not None:
            await self.paymaster.close()


def build_endpoint_sets(
    settings: MultiChainSettings,
    client: Optional[httpx.AsyncClient] = None,
) -> list[ChainEndpoints]:
    """Endpoint sets for every configured chain, in configured order."""
    return [ChainEndpoints.from_settings(chain, settings, client=client) for chain in settings.chains]
