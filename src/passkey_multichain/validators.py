"""Validator factory.

Binds an identity or signer to one chain, producing the chain-scoped sudo
validator a Kernel account is initialized with, and builds delegated
permission validators carrying policies.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

import httpx
from eth_abi import encode
from web3 import Web3

from .config import validate_chain_id
from .endpoints import ChainEndpoints
from .erc4337.entrypoint import EntryPointVersion
from .erc4337.user_operation import UserOperation
from .exceptions import ValidatorBindingError
from .identity import Identity
from .kernel_constants import (
    ACCOUNT_ENTRYPOINT_COMPATIBILITY,
    DEFAULT_ACCOUNT_VERSION,
    ECDSA_SIGNER_ADDRESS,
    ECDSA_VALIDATOR_ADDRESSES,
    POLICY_ADDRESSES,
    AccountVersion,
    PolicyKind,
    ValidatorKind,
)
from .ledger_client import RPCError
from .logging_utils import OperationType, get_operation_logger
from .retry import RPC_RETRY_CONFIG, RetryConfig, RetryExhausted, retry_async
from .signers import ECDSASigner, EmptySigner, Signer, WebAuthnSigner

logger = logging.getLogger(__name__)


def _address_bytes(address: str) -> bytes:
    return bytes.fromhex(Web3.to_checksum_address(address)[2:])


@dataclass(frozen=True)
class ChainValidator:
    """Sudo validator bound to one chain.

    address_material() covers every field the account address is derived
    from and leaves out chain_id, so the same identity bound on two chains
    with the same versions yields identical material and the same address.
    """
    chain_id: int
    entry_point_version: EntryPointVersion
    account_version: AccountVersion
    kind: ValidatorKind
    validator_address: str
    enable_data: bytes
    signer: Optional[Signer] = field(default=None, compare=False, repr=False)

    @property
    def is_joint(self) -> bool:
        """True when one signature must cover every chain's operation."""
        return self.kind == ValidatorKind.MULTI_CHAIN_WEBAUTHN

    def address_material(self) -> bytes:
        return encode(
            ["string", "string", "string", "address", "bytes"],
            [
                self.account_version.value,
                self.entry_point_version.value,
                self.kind.value,
                Web3.to_checksum_address(self.validator_address),
                self.enable_data,
            ],
        )

    def canonical_encoding(self) -> bytes:
        return encode(["uint256", "bytes"], [self.chain_id, self.address_material()])

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "entry_point_version": self.entry_point_version.value,
            "account_version": self.account_version.value,
            "kind": self.kind.value,
            "validator_address": Web3.to_checksum_address(self.validator_address),
            "enable_data": "0x" + self.enable_data.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], signer: Optional[Signer] = None) -> "ChainValidator":
        return cls(
            chain_id=int(data["chain_id"]),
            entry_point_version=EntryPointVersion(data["entry_point_version"]),
            account_version=AccountVersion(data["account_version"]),
            kind=ValidatorKind(data["kind"]),
            validator_address=Web3.to_checksum_address(data["validator_address"]),
            enable_data=bytes.fromhex(data["enable_data"].removeprefix("0x")),
            signer=signer,
        )


def resolve_versions(
    chain_id: int,
    entry_point_version: EntryPointVersion,
    account_version: Optional[AccountVersion] = None,
) -> AccountVersion:
    """Pick the account version for an EntryPoint, rejecting incompatible pairs."""
    if account_version is None:
        return DEFAULT_ACCOUNT_VERSION[entry_point_version]
    expected = ACCOUNT_ENTRYPOINT_COMPATIBILITY[account_version]
    if expected != entry_point_version:
        raise ValidatorBindingError(
            f"Kernel {account_version.value} requires EntryPoint {expected.value}, "
            f"got {entry_point_version.value}",
            chain_id=chain_id,
        )
    return account_version


async def verify_endpoint(endpoints: ChainEndpoints, retry_config: RetryConfig = RPC_RETRY_CONFIG) -> None:
    """One eth_chainId round trip confirming the endpoint serves the expected chain."""
    try:
        received = await retry_async(endpoints.ledger.chain_id, config=retry_config)
    except RetryExhausted as e:
        raise ValidatorBindingError(
            f"Endpoint for {endpoints.name} unreachable: {e.original_exception}",
            chain_id=endpoints.chain_id,
        ) from e
    except (httpx.HTTPError, RPCError) as e:
        raise ValidatorBindingError(
            f"Endpoint for {endpoints.name} failed chain id check: {e}",
            chain_id=endpoints.chain_id,
        ) from e

    if not validate_chain_id(endpoints.name, received):
        raise ValidatorBindingError(
            f"Endpoint for {endpoints.name} serves chain {received}, expected {endpoints.chain_id}",
            chain_id=endpoints.chain_id,
            details={"received_chain_id": received},
        )


def webauthn_enable_data(identity: Identity) -> bytes:
    key = identity.credential
    return encode(
        ["(uint256,uint256)", "bytes32"],
        [(key.pub_x, key.pub_y), bytes.fromhex(key.authenticator_id_hash.removeprefix("0x"))],
    )


async def to_multi_chain_webauthn_validator(
    endpoints: ChainEndpoints,
    identity: Identity,
    signer: Optional[WebAuthnSigner] = None,
    entry_point_version: EntryPointVersion = EntryPointVersion.V07,
    account_version: Optional[AccountVersion] = None,
    retry_config: RetryConfig = RPC_RETRY_CONFIG,
    validator_address: Optional[str] = None,
) -> ChainValidator:
    """Bind a passkey identity as the multi-chain WebAuthn sudo validator.

    signer may be omitted when the validator is only used to derive addresses.
    validator_address defaults to the one configured on the endpoints.
    """
    chain_id = endpoints.chain_id
    plugin = validator_address or endpoints.webauthn_validator_address
    if not plugin:
        raise ValidatorBindingError(
            f"No multi-chain WebAuthn validator address configured for {endpoints.name}", chain_id=chain_id,
        )
    async with get_operation_logger().operation_context(
        OperationType.VALIDATOR_BINDING, endpoints.name, kind=ValidatorKind.MULTI_CHAIN_WEBAUTHN.value,
    ):
        version = resolve_versions(chain_id, entry_point_version, account_version)

        key = identity.credential
        try:
            key.public_key()
        except ValueError as e:
            raise ValidatorBindingError(
                f"Passkey for {identity.credential_name} is not a valid P-256 point", chain_id=chain_id,
            ) from e
        if signer is not None and signer.key != key:
            raise ValidatorBindingError(
                "Signer passkey does not match the identity being bound", chain_id=chain_id,
            )

        await verify_endpoint(endpoints, retry_config)

        return ChainValidator(
            chain_id=chain_id,
            entry_point_version=entry_point_version,
            account_version=version,
            kind=ValidatorKind.MULTI_CHAIN_WEBAUTHN,
            validator_address=Web3.to_checksum_address(plugin),
            enable_data=webauthn_enable_data(identity),
            signer=signer,
        )


async def to_ecdsa_validator(
    endpoints: ChainEndpoints,
    signer: Union[ECDSASigner, EmptySigner],
    entry_point_version: EntryPointVersion = EntryPointVersion.V07,
    account_version: Optional[AccountVersion] = None,
    retry_config: RetryConfig = RPC_RETRY_CONFIG,
) -> ChainValidator:
    """Bind a secp256k1 key as the ECDSA sudo validator."""
    chain_id = endpoints.chain_id
    async with get_operation_logger().operation_context(
        OperationType.VALIDATOR_BINDING, endpoints.name, kind=ValidatorKind.ECDSA.value,
    ):
        version = resolve_versions(chain_id, entry_point_version, account_version)
        await verify_endpoint(endpoints, retry_config)
        return ChainValidator(
            chain_id=chain_id,
            entry_point_version=entry_point_version,
            account_version=version,
            kind=ValidatorKind.ECDSA,
            validator_address=Web3.to_checksum_address(ECDSA_VALIDATOR_ADDRESSES[entry_point_version]),
            enable_data=_address_bytes(signer.address),
            signer=signer,
        )


# =============================================================================
# Policies
# =============================================================================

@dataclass(frozen=True)
class SudoPolicy:
    """Allows any action."""
    kind = PolicyKind.SUDO

    def encode(self) -> bytes:
        return b""

    def allows(self, user_op: UserOperation, now: int) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value}


@dataclass(frozen=True)
class TimestampPolicy:
    """Allows actions inside [valid_after, valid_until] (unix seconds; 0 means open)."""
    valid_after: int = 0
    valid_until: int = 0
    kind = PolicyKind.TIMESTAMP

    def encode(self) -> bytes:
        return self.valid_after.to_bytes(6, "big") + self.valid_until.to_bytes(6, "big")

    def allows(self, user_op: UserOperation, now: int) -> bool:
        if self.valid_after and now < self.valid_after:
            return False
        if self.valid_until and now > self.valid_until:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "valid_after": self.valid_after, "valid_until": self.valid_until}


@dataclass(frozen=True)
class GasPolicy:
    """Caps the gas cost (in wei) a single operation may reach."""
    allowed_wei: int
    kind = PolicyKind.GAS

    def encode(self) -> bytes:
        return encode(["uint128", "bool", "address"], [self.allowed_wei, False, "0x" + "00" * 20])

    def allows(self, user_op: UserOperation, now: int) -> bool:
        gas = (
            user_op.call_gas_limit
            + user_op.verification_gas_limit
            + user_op.pre_verification_gas
            + user_op.paymaster_verification_gas_limit
            + user_op.paymaster_post_op_gas_limit
        )
        return gas * user_op.max_fee_per_gas <= self.allowed_wei

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "allowed_wei": str(self.allowed_wei)}


Policy = Union[SudoPolicy, TimestampPolicy, GasPolicy]


def policy_from_dict(data: dict[str, Any]) -> Policy:
    kind = PolicyKind(data["kind"])
    if kind == PolicyKind.SUDO:
        return SudoPolicy()
    if kind == PolicyKind.TIMESTAMP:
        return TimestampPolicy(valid_after=int(data.get("valid_after", 0)), valid_until=int(data.get("valid_until", 0)))
    return GasPolicy(allowed_wei=int(data["allowed_wei"]))


@dataclass(frozen=True)
class PermissionValidator:
    """Delegated authority: a signer plus the policies constraining it."""
    signer_address: str
    policies: tuple[Policy, ...]
    signer: Optional[Signer] = field(default=None, compare=False, repr=False)

    def validator_data(self) -> bytes:
        """bytes[] of policy entries followed by the signer entry."""
        entries = [
            b"\x00\x00" + _address_bytes(POLICY_ADDRESSES[policy.kind]) + policy.encode()
            for policy in self.policies
        ]
        entries.append(b"\x00\x00" + _address_bytes(ECDSA_SIGNER_ADDRESS) + _address_bytes(self.signer_address))
        return encode(["bytes[]"], [entries])

    @property
    def permission_id(self) -> bytes:
        return bytes(Web3.keccak(self.validator_data()))[:4]

    def allows(self, user_op: UserOperation, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return all(policy.allows(user_op, now) for policy in self.policies)

    def with_signer(self, signer: Signer) -> "PermissionValidator":
        return PermissionValidator(signer_address=self.signer_address, policies=self.policies, signer=signer)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signer_address": Web3.to_checksum_address(self.signer_address),
            "policies": [policy.to_dict() for policy in self.policies],
            "permission_id": "0x" + self.permission_id.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], signer: Optional[Signer] = None) -> "PermissionValidator":
        return cls(
            signer_address=Web3.to_checksum_address(data["signer_address"]),
            policies=tuple(policy_from_dict(p) for p in data["policies"]),
            signer=signer,
        )


def to_permission_validator(
    signer: Union[ECDSASigner, EmptySigner],
    policies: Optional[Sequence[Policy]] = None,
) -> PermissionValidator:
    """Permission for signer; defaults to a single always-allow policy."""
    return PermissionValidator(
        signer_address=Web3.to_checksum_address(signer.address),
        policies=tuple(policies) if policies else (SudoPolicy(),),
        signer=signer,
    )
