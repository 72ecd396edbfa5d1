"""
Pytest configuration and fixtures for passkey multi-chain tests.

Chain collaborators are in-memory fakes implementing the ledger, bundler
and paymaster protocols; the passkey is a SoftwareAuthenticator.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from passkey_multichain.accounts import AuthorityRecord, Call, KernelAccountResolver
from passkey_multichain.config import ChainSettings, MultiChainSettings, get_chain_spec
from passkey_multichain.delegation import DelegationManager
from passkey_multichain.endpoints import ChainEndpoints
from passkey_multichain.erc4337.paymaster_client import SponsorshipData
from passkey_multichain.erc4337.user_operation import UserOperation
from passkey_multichain.exceptions import SponsorshipDeniedError
from passkey_multichain.identity import IdentityProvider, SessionKey
from passkey_multichain.kernel_constants import ZERO_ADDRESS
from passkey_multichain.validators import to_multi_chain_webauthn_validator
from passkey_multichain.webauthn import SoftwareAuthenticator

CHAIN_A = "sepolia"
CHAIN_B = "optimism_sepolia"
CHAIN_A_ID = 11155111
CHAIN_B_ID = 11155420
WEBAUTHN_VALIDATOR = "0x" + "a1" * 20
TX_HASH = "0x" + "ab" * 32
PAYMASTER = "0x7777777777777777777777777777777777777777"
NOOP_CALL = Call(to=ZERO_ADDRESS, value=0, data="0x")


class FakeLedger:
    """Ledger reads for one chain, held in memory."""

    def __init__(self, chain_id: int, deployed: bool = False, reported_chain_id: Optional[int] = None):
        self._chain_id = chain_id
        self.reported_chain_id = chain_id if reported_chain_id is None else reported_chain_id
        self.deployed = deployed
        self.sequences: dict[int, int] = {}
        self.fee_data = (3_000_000_000, 1_000_000_000)
        self.error: Optional[Exception] = None
        self.deployed_error: Optional[Exception] = None  # raised once by is_deployed
        self.closed = False

    async def chain_id(self) -> int:
        if self.error is not None:
            raise self.error
        return self.reported_chain_id

    async def is_deployed(self, address: str) -> bool:
        if self.deployed_error is not None:
            error, self.deployed_error = self.deployed_error, None
            raise error
        return self.deployed

    async def get_nonce(self, sender: str, key: int, entry_point: str) -> int:
        if self.error is not None:
            raise self.error
        return (key << 64) | self.sequences.get(key, 0)

    async def kernel_current_nonce(self, account: str) -> int:
        return 1

    async def get_fee_data(self) -> tuple[int, int]:
        return self.fee_data

    async def close(self) -> None:
        self.closed = True


class FakeBundler:
    """Accepts operations and reports receipts; each behaviour is switchable."""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id
        self.sent: list[UserOperation] = []
        self.estimates = 0
        self.reject: Optional[Exception] = None
        self.receipt_error: Optional[Exception] = None
        self.success = True
        self.hold_receipt = False
        self.receipt_requested = asyncio.Event()
        self.receipt_timeouts: list[float] = []
        self.closed = False

    async def estimate_user_operation_gas(self, user_op: UserOperation, entrypoint: str) -> dict[str, int]:
        self.estimates += 1
        return {"callGasLimit": 120_000, "verificationGasLimit": 600_000, "preVerificationGas": 70_000}

    async def send_user_operation(self, user_op: UserOperation, entrypoint: str) -> str:
        if self.reject is not None:
            raise self.reject
        self.sent.append(user_op)
        return f"0x{self.chain_id:032x}{len(self.sent):032x}"

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: float = 180,
        poll_seconds: Optional[float] = None,
    ) -> dict[str, Any]:
        self.receipt_timeouts.append(timeout_seconds)
        self.receipt_requested.set()
        if self.hold_receipt:
            await asyncio.Event().wait()
        if self.receipt_error is not None:
            raise self.receipt_error
        return {
            "userOpHash": user_op_hash,
            "success": self.success,
            "reason": None if self.success else "0x08c379a0",
            "receipt": {"transactionHash": TX_HASH},
        }

    async def close(self) -> None:
        self.closed = True


class FakePaymaster:
    """Sponsors every operation unless told to deny."""

    def __init__(self, chain_id: int, deny: bool = False, with_gas: bool = True):
        self.chain_id = chain_id
        self.deny = deny
        self.with_gas = with_gas
        self.requests: list[UserOperation] = []
        self.closed = False

    async def sponsor_user_operation(self, user_op: UserOperation, entrypoint: str) -> SponsorshipData:
        self.requests.append(user_op)
        if self.deny:
            raise SponsorshipDeniedError("Sponsorship policy exhausted", chain_id=self.chain_id)
        return SponsorshipData(
            paymaster=PAYMASTER,
            paymaster_data="0xbeef",
            paymaster_verification_gas_limit=50_000,
            paymaster_post_op_gas_limit=10_000,
            call_gas_limit=200_000 if self.with_gas else None,
            verification_gas_limit=700_000 if self.with_gas else None,
            pre_verification_gas=80_000 if self.with_gas else None,
        )

    async def close(self) -> None:
        self.closed = True


def make_endpoints(name: str, **ledger_kwargs: Any) -> ChainEndpoints:
    spec = get_chain_spec(name)
    return ChainEndpoints(
        chain=spec,
        ledger=FakeLedger(spec.chain_id, **ledger_kwargs),
        bundler=FakeBundler(spec.chain_id),
        receipt_timeout_seconds=5.0,
        webauthn_validator_address=WEBAUTHN_VALIDATOR,
    )


@pytest.fixture
def endpoint_sets() -> list[ChainEndpoints]:
    """Two chains with fake collaborators."""
    return [make_endpoints(CHAIN_A), make_endpoints(CHAIN_B)]


@pytest.fixture
def settings() -> MultiChainSettings:
    """Settings independent of the environment."""
    return MultiChainSettings(
        chains=[
            ChainSettings(name=CHAIN_A, bundler_url="https://bundler.test/sepolia"),
            ChainSettings(name=CHAIN_B, bundler_url="https://bundler.test/optimism-sepolia"),
        ],
        webauthn_validator_address=WEBAUTHN_VALIDATOR,
        _env_file=None,
    )


@pytest.fixture
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator()


@pytest.fixture
def identity_provider(authenticator):
    return IdentityProvider(authenticator)


@pytest.fixture
async def identity(identity_provider):
    """A passkey registered as alice."""
    return await identity_provider.register("alice")


@pytest.fixture
def passkey_signer(identity_provider, identity):
    return identity_provider.signer_for(identity)


@pytest.fixture
def session_key() -> SessionKey:
    return SessionKey.generate()


@pytest.fixture
async def webauthn_validators(endpoint_sets, identity, passkey_signer):
    return [
        await to_multi_chain_webauthn_validator(endpoints, identity, passkey_signer)
        for endpoints in endpoint_sets
    ]


@pytest.fixture
async def passkey_accounts(endpoint_sets, webauthn_validators):
    """Accounts acting through the passkey sudo validator."""
    return await KernelAccountResolver().resolve_all(
        endpoint_sets, [AuthorityRecord(sudo=v) for v in webauthn_validators],
    )


@pytest.fixture
async def delegated_accounts(endpoint_sets, webauthn_validators, session_key):
    """Accounts acting through an approved session key."""
    manager = DelegationManager()
    ephemeral = await manager.bind_ephemeral(endpoint_sets, webauthn_validators, session_key)
    approvals = await manager.issue_approvals(ephemeral)
    return await manager.bind_real_signers(endpoint_sets, approvals, session_key.signer())
