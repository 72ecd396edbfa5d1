"""Kernel account resolution.

Counterfactual addresses are computed locally with CREATE2, so the same
sudo validator material yields the same address on every chain. Deployment
is never performed here; init code rides along with the first operation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from eth_abi import encode
from web3 import Web3

from .endpoints import ChainEndpoints
from .erc4337.entrypoint import EntryPointVersion, get_entrypoint
from .exceptions import AddressDivergenceError, ValidatorBindingError
from .kernel_constants import (
    ERC1967_PROXY_PREFIX,
    ERC1967_PROXY_SUFFIX,
    EXEC_MODE_BATCH,
    EXEC_MODE_SINGLE,
    KERNEL_ADDRESSES,
    VALIDATION_MODE_DEFAULT,
    VALIDATION_MODE_ENABLE,
    VALIDATION_TYPE_PERMISSION,
    VALIDATION_TYPE_ROOT,
    VALIDATION_TYPE_VALIDATOR,
    ZERO_ADDRESS,
    AccountVersion,
)
from .logging_utils import OperationType, get_operation_logger
from .signers import Signer
from .validators import ChainValidator, PermissionValidator

logger = logging.getLogger(__name__)


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))[:4]


def _hex_to_bytes(value: str) -> bytes:
    value = value or "0x"
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


KERNEL_V3_INITIALIZE = _selector("initialize(bytes21,address,bytes,bytes,bytes[])")
KERNEL_V3_0_INITIALIZE = _selector("initialize(bytes21,address,bytes,bytes)")
KERNEL_V3_CREATE_ACCOUNT = _selector("createAccount(bytes,bytes32)")
KERNEL_V3_EXECUTE = _selector("execute(bytes32,bytes)")
KERNEL_V2_INITIALIZE = _selector("initialize(address,bytes)")
KERNEL_V2_CREATE_ACCOUNT = _selector("createAccount(address,bytes,uint256)")
KERNEL_V2_EXECUTE = _selector("execute(address,uint256,bytes,uint8)")
KERNEL_V2_EXECUTE_BATCH = _selector("executeBatch((address,uint256,bytes)[])")


@dataclass(frozen=True)
class Call:
    """One call the account executes."""
    to: str
    value: int = 0
    data: str = "0x"

    def to_dict(self) -> dict[str, Any]:
        return {"to": self.to, "value": str(self.value), "data": self.data}


@dataclass(frozen=True)
class DelegatedAuthority:
    """Regular (policy-scoped) slot. enable_signature is the sudo approval that installs it."""
    permission: PermissionValidator
    enable_signature: Optional[str] = None
    enable_nonce: int = 1


@dataclass(frozen=True)
class AuthorityRecord:
    """Two-slot authority: the sudo validator and an optional delegated permission."""
    sudo: ChainValidator
    delegated: Optional[DelegatedAuthority] = None

    @property
    def acting_signer(self) -> Optional[Signer]:
        if self.delegated is not None:
            return self.delegated.permission.signer
        return self.sudo.signer


def is_kernel_v3(account_version: AccountVersion) -> bool:
    return account_version != AccountVersion.V0_2_4


def encode_nonce_key(mode: int, validation_type: int, identifier: bytes = b"", key: int = 0) -> int:
    """Kernel v3 nonce key: mode(1) | type(1) | identifier(20) | key(2)."""
    if len(identifier) > 20:
        raise ValueError("nonce key identifier exceeds 20 bytes")
    packed = bytes([mode, validation_type]) + identifier.ljust(20, b"\x00") + key.to_bytes(2, "big")
    return int.from_bytes(packed, "big")


def encode_calls(account_version: AccountVersion, calls: Sequence[Call]) -> str:
    """Encode calls as the account's execute calldata."""
    if not calls:
        raise ValueError("At least one call is required")

    if is_kernel_v3(account_version):
        if len(calls) == 1:
            call = calls[0]
            execution = (
                bytes.fromhex(Web3.to_checksum_address(call.to)[2:])
                + int(call.value).to_bytes(32, "big")
                + _hex_to_bytes(call.data)
            )
            mode = EXEC_MODE_SINGLE
        else:
            execution = encode(
                ["(address,uint256,bytes)[]"],
                [[(Web3.to_checksum_address(c.to), int(c.value), _hex_to_bytes(c.data)) for c in calls]],
            )
            mode = EXEC_MODE_BATCH
        return "0x" + (KERNEL_V3_EXECUTE + encode(["bytes32", "bytes"], [mode, execution])).hex()

    if len(calls) == 1:
        call = calls[0]
        body = encode(
            ["address", "uint256", "bytes", "uint8"],
            [Web3.to_checksum_address(call.to), int(call.value), _hex_to_bytes(call.data), 0],
        )
        return "0x" + (KERNEL_V2_EXECUTE + body).hex()

    body = encode(
        ["(address,uint256,bytes)[]"],
        [[(Web3.to_checksum_address(c.to), int(c.value), _hex_to_bytes(c.data)) for c in calls]],
    )
    return "0x" + (KERNEL_V2_EXECUTE_BATCH + body).hex()


def build_initializer(validator: ChainValidator) -> bytes:
    """Kernel initialize() calldata installing validator as root."""
    validator_address = Web3.to_checksum_address(validator.validator_address)
    if not is_kernel_v3(validator.account_version):
        return KERNEL_V2_INITIALIZE + encode(["address", "bytes"], [validator_address, validator.enable_data])

    root_validation_id = bytes([VALIDATION_TYPE_VALIDATOR]) + bytes.fromhex(validator_address[2:])
    if validator.account_version == AccountVersion.V0_3_0:
        return KERNEL_V3_0_INITIALIZE + encode(
            ["bytes21", "address", "bytes", "bytes"],
            [root_validation_id, ZERO_ADDRESS, validator.enable_data, b""],
        )
    return KERNEL_V3_INITIALIZE + encode(
        ["bytes21", "address", "bytes", "bytes", "bytes[]"],
        [root_validation_id, ZERO_ADDRESS, validator.enable_data, b"", []],
    )


def _init_code_hash(implementation: str) -> bytes:
    return bytes(Web3.keccak(ERC1967_PROXY_PREFIX + bytes.fromhex(implementation[2:]) + ERC1967_PROXY_SUFFIX))


def _create2_address(deployer: str, salt: bytes, init_code_hash: bytes) -> str:
    digest = Web3.keccak(b"\xff" + bytes.fromhex(deployer[2:]) + salt + init_code_hash)
    return Web3.to_checksum_address("0x" + bytes(digest)[12:].hex())


def compute_account_address(validator: ChainValidator, index: int = 0) -> tuple[str, str, str]:
    """Return (address, factory, factory_data) for a validator's account.

    chain_id takes no part: the result depends only on the account version
    and the validator's address material.
    """
    kernel = KERNEL_ADDRESSES[validator.account_version]
    factory = Web3.to_checksum_address(kernel["factory"])
    implementation = Web3.to_checksum_address(kernel["implementation"])
    initializer = build_initializer(validator)

    if is_kernel_v3(validator.account_version):
        index_salt = index.to_bytes(32, "big")
        salt = bytes(Web3.keccak(initializer + index_salt))
        factory_data = KERNEL_V3_CREATE_ACCOUNT + encode(["bytes", "bytes32"], [initializer, index_salt])
    else:
        salt = bytes(Web3.keccak(initializer + index.to_bytes(32, "big")))
        factory_data = KERNEL_V2_CREATE_ACCOUNT + encode(
            ["address", "bytes", "uint256"], [implementation, initializer, index],
        )

    address = _create2_address(factory, salt, _init_code_hash(implementation))
    return address, factory, "0x" + factory_data.hex()


@dataclass
class SmartAccount:
    """A Kernel account as seen from one chain."""
    address: str
    chain_id: int
    authority: AuthorityRecord
    entry_point: str
    index: int = 0
    factory: str = ""
    factory_data: str = "0x"
    deployed: bool = False
    endpoints: Optional[ChainEndpoints] = field(default=None, compare=False, repr=False)

    @property
    def validator_set(self) -> AuthorityRecord:
        return self.authority

    @property
    def entry_point_version(self) -> EntryPointVersion:
        return self.authority.sudo.entry_point_version

    @property
    def account_version(self) -> AccountVersion:
        return self.authority.sudo.account_version

    @property
    def uses_delegated_authority(self) -> bool:
        return self.authority.delegated is not None

    def with_authority(self, authority: AuthorityRecord) -> "SmartAccount":
        return SmartAccount(
            address=self.address,
            chain_id=self.chain_id,
            authority=authority,
            entry_point=self.entry_point,
            index=self.index,
            factory=self.factory,
            factory_data=self.factory_data,
            deployed=self.deployed,
            endpoints=self.endpoints,
        )

    def encode_calls(self, calls: Sequence[Call]) -> str:
        return encode_calls(self.account_version, calls)

    async def nonce_plan(self) -> tuple[int, bool]:
        """Return (nonce, enable_mode) for the acting authority.

        A delegated permission whose enable-mode nonce sequence is still zero
        has never been installed, so its first operation carries the sudo
        approval (enable mode).
        """
        if self.endpoints is None:
            raise ValidatorBindingError("Account has no endpoints bound", chain_id=self.chain_id)
        ledger = self.endpoints.ledger

        delegated = self.authority.delegated
        if delegated is None or not is_kernel_v3(self.account_version):
            key = 0 if not is_kernel_v3(self.account_version) else encode_nonce_key(
                VALIDATION_MODE_DEFAULT, VALIDATION_TYPE_ROOT,
            )
            return await ledger.get_nonce(self.address, key, self.entry_point), False

        identifier = delegated.permission.permission_id
        enable_key = encode_nonce_key(VALIDATION_MODE_ENABLE, VALIDATION_TYPE_PERMISSION, identifier)
        enable_nonce = await ledger.get_nonce(self.address, enable_key, self.entry_point)
        if enable_nonce & ((1 << 64) - 1) == 0:
            return enable_nonce, True

        default_key = encode_nonce_key(VALIDATION_MODE_DEFAULT, VALIDATION_TYPE_PERMISSION, identifier)
        return await ledger.get_nonce(self.address, default_key, self.entry_point), False

    def to_dict(self) -> dict[str, Any]:
        result = {
            "address": self.address,
            "chain_id": self.chain_id,
            "entry_point": self.entry_point,
            "entry_point_version": self.entry_point_version.value,
            "account_version": self.account_version.value,
            "sudo_validator": self.authority.sudo.to_dict(),
            "deployed": self.deployed,
        }
        if self.authority.delegated is not None:
            result["delegated"] = self.authority.delegated.permission.to_dict()
        return result


def assert_same_address(accounts: Sequence[SmartAccount]) -> str:
    """Return the shared address or raise AddressDivergenceError."""
    if not accounts:
        raise ValueError("No accounts to compare")
    addresses = {account.chain_id: account.address for account in accounts}
    if len({a.lower() for a in addresses.values()}) != 1:
        logger.error("Smart account address divergence: %s", addresses)
        raise AddressDivergenceError(addresses)
    return accounts[0].address


class KernelAccountResolver:
    """Derives Kernel accounts for an authority record on a chain."""

    def __init__(self, index: int = 0):
        self._index = index

    async def resolve(
        self,
        endpoints: ChainEndpoints,
        authority: AuthorityRecord,
        index: Optional[int] = None,
    ) -> SmartAccount:
        sudo = authority.sudo
        if sudo.chain_id != endpoints.chain_id:
            raise ValidatorBindingError(
                f"Validator bound to chain {sudo.chain_id} used with {endpoints.name}",
                chain_id=endpoints.chain_id,
            )
        index = self._index if index is None else index

        async with get_operation_logger().operation_context(
            OperationType.ACCOUNT_RESOLUTION, endpoints.name, index=index,
        ) as ctx:
            address, factory, factory_data = compute_account_address(sudo, index)
            deployed = await endpoints.ledger.is_deployed(address)
            ctx.metadata.update({"address": address, "deployed": deployed})

        return SmartAccount(
            address=address,
            chain_id=endpoints.chain_id,
            authority=authority,
            entry_point=get_entrypoint(sudo.entry_point_version),
            index=index,
            factory=factory,
            factory_data=factory_data,
            deployed=deployed,
            endpoints=endpoints,
        )

    async def resolve_all(
        self,
        endpoint_sets: Sequence[ChainEndpoints],
        authorities: Sequence[AuthorityRecord],
        index: Optional[int] = None,
    ) -> list[SmartAccount]:
        """Resolve every chain concurrently, then enforce address equality."""
        if len(endpoint_sets) != len(authorities):
            raise ValueError("One authority record is required per chain")
        accounts = await asyncio.gather(*(
            self.resolve(endpoints, authority, index)
            for endpoints, authority in zip(endpoint_sets, authorities)
        ))
        assert_same_address(accounts)
        logger.info("Resolved account %s on chains %s", accounts[0].address, [a.chain_id for a in accounts])
        return list(accounts)
