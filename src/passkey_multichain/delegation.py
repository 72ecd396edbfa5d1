"""
Delegated session authority for Kernel accounts.

A session key is first bound as a placeholder (address only) in the
regular permission slot of every chain's account. The sudo holder then
approves all chains' permissions with one signature, producing one
serialized CapabilityApproval per chain. Each approval is consumed exactly
once to bind the real session signer.

Flow per chain:
    EPHEMERAL_BOUND -> APPROVAL_ISSUED -> REAL_SIGNER_BOUND
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .accounts import (
    KERNEL_V3_EXECUTE,
    AuthorityRecord,
    DelegatedAuthority,
    KernelAccountResolver,
    SmartAccount,
    assert_same_address,
    is_kernel_v3,
)
from .endpoints import ChainEndpoints
from .erc4337.entrypoint import EntryPointVersion, get_entrypoint
from .exceptions import AddressDivergenceError, ApprovalConsumptionError, DelegationStateError
from .identity import SessionKey
from .kernel_constants import (
    KERNEL_DOMAIN_NAME,
    VALIDATION_TYPE_PERMISSION,
    ZERO_ADDRESS,
    AccountVersion,
    ValidatorKind,
)
from .logging_utils import OperationType, get_operation_logger
from .merkle import MerkleTree, decode_multi_chain_signature, encode_multi_chain_signature, verify_proof
from .signers import ECDSASigner, Signer
from .validators import ChainValidator, Policy, PermissionValidator, to_permission_validator
from .webauthn import WebAuthnKey, verify_webauthn_signature

logger = logging.getLogger(__name__)

APPROVAL_KIND = "kernel-permission-approval"
APPROVAL_VERSION = 1

ENABLE_TYPEHASH = bytes(Web3.keccak(
    text="Enable(bytes21 validationId,uint32 nonce,address hook,bytes validatorData,bytes hookData,bytes selectorData)"
))
DOMAIN_TYPEHASH = bytes(Web3.keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
))


# =============================================================================
# Kernel enable approvals
# =============================================================================

def permission_validation_id(permission: PermissionValidator) -> bytes:
    """bytes21 validation id: type byte then the permission id, right padded."""
    return bytes([VALIDATION_TYPE_PERMISSION]) + permission.permission_id.ljust(20, b"\x00")


def enable_selector_data() -> bytes:
    """Grant the permission the account's execute selector, no executor, no hook."""
    zero = bytes.fromhex(ZERO_ADDRESS[2:])
    return KERNEL_V3_EXECUTE + zero + zero


def enable_digest(
    chain_id: int,
    account_address: str,
    account_version: AccountVersion,
    permission: PermissionValidator,
    nonce: int,
) -> bytes:
    """EIP-712 digest of Kernel's Enable struct for one chain."""
    struct_hash = Web3.keccak(encode(
        ["bytes32", "bytes21", "uint32", "address", "bytes32", "bytes32", "bytes32"],
        [
            ENABLE_TYPEHASH,
            permission_validation_id(permission),
            nonce,
            ZERO_ADDRESS,
            Web3.keccak(permission.validator_data()),
            Web3.keccak(b""),
            Web3.keccak(enable_selector_data()),
        ],
    ))
    domain_separator = Web3.keccak(encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            DOMAIN_TYPEHASH,
            Web3.keccak(text=KERNEL_DOMAIN_NAME),
            Web3.keccak(text=account_version.value),
            chain_id,
            Web3.to_checksum_address(account_address),
        ],
    ))
    return bytes(Web3.keccak(b"\x19\x01" + bytes(domain_separator) + bytes(struct_hash)))


def encode_enable_mode_signature(
    permission: PermissionValidator,
    enable_signature: bytes,
    user_op_signature: bytes,
) -> bytes:
    """hook(20) ++ abi.encode(validatorData, hookData, selectorData, enableSig, userOpSig)."""
    return bytes.fromhex(ZERO_ADDRESS[2:]) + encode(
        ["bytes", "bytes", "bytes", "bytes", "bytes"],
        [permission.validator_data(), b"", enable_selector_data(), enable_signature, user_op_signature],
    )


# =============================================================================
# Capability approvals
# =============================================================================

@dataclass(frozen=True)
class CapabilityApproval:
    """Chain-scoped grant: the committed signer may act under the permission's policies."""
    approval_id: str
    chain_id: int
    entry_point_version: EntryPointVersion
    account_version: AccountVersion
    account_address: str
    sudo_validator: dict[str, Any]
    permission: dict[str, Any]
    enable_nonce: int
    enable_signature: str
    index: int = 0
    rp_id: str = ""
    merkle_root: Optional[str] = None
    merkle_proof: tuple[str, ...] = field(default_factory=tuple)

    @property
    def authorized_signer(self) -> str:
        return self.permission["signer_address"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": APPROVAL_KIND,
            "version": APPROVAL_VERSION,
            "approval_id": self.approval_id,
            "chain_id": self.chain_id,
            "entry_point_version": self.entry_point_version.value,
            "account_version": self.account_version.value,
            "account_address": self.account_address,
            "sudo_validator": self.sudo_validator,
            "permission": self.permission,
            "enable_nonce": self.enable_nonce,
            "enable_signature": self.enable_signature,
            "index": self.index,
            "rp_id": self.rp_id,
            "merkle_root": self.merkle_root,
            "merkle_proof": list(self.merkle_proof),
        }

    def serialize(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return base64.b64encode(canonical.encode("utf-8")).decode("ascii")

    @classmethod
    def deserialize(cls, data: str) -> "CapabilityApproval":
        try:
            payload = json.loads(base64.b64decode(data.encode("ascii"), validate=True))
        except (binascii.Error, UnicodeError, ValueError) as e:
            raise ApprovalConsumptionError(f"Approval is not valid base64 JSON: {e}") from e
        if not isinstance(payload, dict) or payload.get("kind") != APPROVAL_KIND:
            raise ApprovalConsumptionError("Payload is not a permission approval")
        if payload.get("version") != APPROVAL_VERSION:
            raise ApprovalConsumptionError(f"Unsupported approval version: {payload.get('version')}")

        try:
            return cls(
                approval_id=str(payload["approval_id"]),
                chain_id=int(payload["chain_id"]),
                entry_point_version=EntryPointVersion(payload["entry_point_version"]),
                account_version=AccountVersion(payload["account_version"]),
                account_address=Web3.to_checksum_address(payload["account_address"]),
                sudo_validator=dict(payload["sudo_validator"]),
                permission=dict(payload["permission"]),
                enable_nonce=int(payload["enable_nonce"]),
                enable_signature=str(payload["enable_signature"]),
                index=int(payload.get("index", 0)),
                rp_id=str(payload.get("rp_id", "")),
                merkle_root=payload.get("merkle_root"),
                merkle_proof=tuple(payload.get("merkle_proof") or ()),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ApprovalConsumptionError(f"Approval is missing or has invalid fields: {e}") from e


class ApprovalRegistry:
    """Tracks consumed approvals; each may bind exactly one signer once."""

    def __init__(self) -> None:
        self._consumed: dict[str, str] = {}

    def is_consumed(self, approval_id: str) -> bool:
        return approval_id in self._consumed

    def consume(self, approval: CapabilityApproval, signer_address: str) -> None:
        bound = self._consumed.get(approval.approval_id)
        if bound is not None:
            raise ApprovalConsumptionError(
                f"Approval {approval.approval_id} was already consumed by {bound}",
                chain_id=approval.chain_id,
            )
        self._consumed[approval.approval_id] = Web3.to_checksum_address(signer_address)


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _unhex(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


async def _enable_nonce(account: SmartAccount) -> int:
    if not account.deployed or account.endpoints is None:
        return 1
    return await account.endpoints.ledger.kernel_current_nonce(account.address)


async def serialize_multi_chain_permission_accounts(
    accounts: Sequence[SmartAccount],
    sudo_signer: Optional[Signer] = None,
) -> list[str]:
    """Issue one approval per chain from a single sudo signing pass.

    With a multi-chain WebAuthn sudo validator, the enable digests of all
    chains are committed to one Merkle root and the passkey signs that root
    once; each approval carries its chain's proof. ECDSA sudo validators sign
    each digest on its own.
    """
    if not accounts:
        raise ValueError("No accounts to approve")
    chain_ids = [a.chain_id for a in accounts]
    if len(set(chain_ids)) != len(chain_ids):
        raise ValueError(f"Duplicate chains in approval set: {chain_ids}")
    assert_same_address(accounts)

    for account in accounts:
        if account.authority.delegated is None:
            raise DelegationStateError("Account has no delegated permission to approve", chain_id=account.chain_id)
        if not is_kernel_v3(account.account_version):
            raise DelegationStateError(
                f"Permission delegation requires Kernel 0.3.x, got {account.account_version.value}",
                chain_id=account.chain_id,
            )

    signer = sudo_signer or accounts[0].authority.sudo.signer
    if signer is None:
        raise DelegationStateError("No sudo signer available to approve the permission")

    nonces = await asyncio.gather(*(_enable_nonce(a) for a in accounts))
    digests = [
        enable_digest(a.chain_id, a.address, a.account_version, a.authority.delegated.permission, nonce)
        for a, nonce in zip(accounts, nonces)
    ]

    joint = all(a.authority.sudo.is_joint for a in accounts)
    async with get_operation_logger().operation_context(
        OperationType.APPROVAL_ISSUE, ",".join(str(c) for c in chain_ids), joint=joint,
    ):
        if joint:
            tree = MerkleTree(digests)
            root_signature = _unhex(await signer.sign_hash(tree.root))
            proofs = [tree.get_proof(i) for i in range(len(digests))]
            enable_signatures = [
                encode_multi_chain_signature(tree.root, proof, root_signature) for proof in proofs
            ]
            merkle_root: Optional[str] = _hex(tree.root)
        else:
            enable_signatures = [_unhex(await signer.sign_hash(d)) for d in digests]
            proofs = [[] for _ in digests]
            merkle_root = None

    rp_id = ""
    if isinstance(getattr(signer, "key", None), WebAuthnKey):
        rp_id = signer.key.rp_id

    approvals = []
    for account, nonce, enable_signature, proof in zip(accounts, nonces, enable_signatures, proofs):
        approval = CapabilityApproval(
            approval_id=uuid.uuid4().hex,
            chain_id=account.chain_id,
            entry_point_version=account.entry_point_version,
            account_version=account.account_version,
            account_address=account.address,
            sudo_validator=account.authority.sudo.to_dict(),
            permission=account.authority.delegated.permission.to_dict(),
            enable_nonce=nonce,
            enable_signature=_hex(enable_signature),
            index=account.index,
            rp_id=rp_id,
            merkle_root=merkle_root,
            merkle_proof=tuple(_hex(p) for p in proof),
        )
        approvals.append(approval.serialize())
    logger.info("Issued %d permission approvals for %s", len(approvals), accounts[0].address)
    return approvals


def _webauthn_key_from_validator(sudo: ChainValidator, rp_id: str) -> WebAuthnKey:
    (pub_x, pub_y), id_hash = decode(["(uint256,uint256)", "bytes32"], sudo.enable_data)
    return WebAuthnKey(
        pub_x=pub_x,
        pub_y=pub_y,
        authenticator_id="",
        authenticator_id_hash=_hex(id_hash),
        rp_id=rp_id or "localhost",
    )


def verify_enable_signature(approval: CapabilityApproval, sudo: ChainValidator, digest: bytes) -> bool:
    """Check that the sudo validator approved digest."""
    signature = _unhex(approval.enable_signature)
    try:
        if sudo.kind == ValidatorKind.MULTI_CHAIN_WEBAUTHN:
            root, proof, root_signature = decode_multi_chain_signature(signature)
            if approval.merkle_root is None or _unhex(approval.merkle_root) != root:
                return False
            if [_hex(p) for p in proof] != list(approval.merkle_proof):
                return False
            if not verify_proof(digest, proof, root):
                return False
            key = _webauthn_key_from_validator(sudo, approval.rp_id)
            return verify_webauthn_signature(key, root, root_signature)

        owner = Web3.to_checksum_address("0x" + sudo.enable_data.hex())
        return ECDSASigner.recover(digest, approval.enable_signature) == owner
    except (DecodingError, ValueError, TypeError):
        return False


async def _materialize_permission_account(
    endpoints: ChainEndpoints,
    entry_point: str,
    approval: CapabilityApproval,
    signer: ECDSASigner,
    registry: ApprovalRegistry,
    resolver: Optional[KernelAccountResolver],
) -> SmartAccount:
    chain_id = endpoints.chain_id
    if registry.is_consumed(approval.approval_id):
        raise ApprovalConsumptionError(
            f"Approval {approval.approval_id} was already consumed", chain_id=chain_id,
        )

    async with get_operation_logger().operation_context(
        OperationType.APPROVAL_CONSUME, endpoints.name, approval_id=approval.approval_id,
    ):
        if approval.chain_id != chain_id:
            raise ApprovalConsumptionError(
                f"Approval for chain {approval.chain_id} presented on {endpoints.name}", chain_id=chain_id,
            )
        if Web3.to_checksum_address(entry_point) != Web3.to_checksum_address(
            get_entrypoint(approval.entry_point_version)
        ):
            raise ApprovalConsumptionError(
                f"Approval targets EntryPoint {approval.entry_point_version.value}, got {entry_point}",
                chain_id=chain_id,
            )

        try:
            sudo = ChainValidator.from_dict(approval.sudo_validator)
            permission = PermissionValidator.from_dict(approval.permission, signer=signer)
        except (KeyError, TypeError, ValueError) as e:
            raise ApprovalConsumptionError(f"Approval carries an invalid authority: {e}", chain_id=chain_id) from e

        if sudo.chain_id != chain_id:
            raise ApprovalConsumptionError("Approval sudo validator is bound to another chain", chain_id=chain_id)
        if _hex(permission.permission_id) != approval.permission.get("permission_id"):
            raise ApprovalConsumptionError("Approval permission id does not match its policies", chain_id=chain_id)
        if signer.address.lower() != approval.authorized_signer.lower():
            raise ApprovalConsumptionError(
                f"Signer {signer.address} does not match the approved signer {approval.authorized_signer}",
                chain_id=chain_id,
            )

        digest = enable_digest(
            chain_id, approval.account_address, approval.account_version, permission, approval.enable_nonce,
        )
        if not verify_enable_signature(approval, sudo, digest):
            raise ApprovalConsumptionError("Approval signature does not verify", chain_id=chain_id)

        authority = AuthorityRecord(
            sudo=sudo,
            delegated=DelegatedAuthority(
                permission=permission,
                enable_signature=approval.enable_signature,
                enable_nonce=approval.enable_nonce,
            ),
        )
        account = await (resolver or KernelAccountResolver()).resolve(endpoints, authority, index=approval.index)

    if account.address != approval.account_address:
        raise AddressDivergenceError(
            {chain_id: account.address},
            message=f"Approval names {approval.account_address} but the authority resolves to {account.address}",
        )
    return account


async def deserialize_permission_account(
    endpoints: ChainEndpoints,
    entry_point: str,
    approval: Union[str, CapabilityApproval],
    signer: ECDSASigner,
    registry: ApprovalRegistry,
    resolver: Optional[KernelAccountResolver] = None,
) -> SmartAccount:
    """Re-materialize the account bound to signer, then consume the approval.

    The approval is consumed only once the account resolves to the approved
    address, so a failed attempt can be retried with the same approval.
    """
    if isinstance(approval, str):
        approval = CapabilityApproval.deserialize(approval)
    account = await _materialize_permission_account(endpoints, entry_point, approval, signer, registry, resolver)
    registry.consume(approval, signer.address)
    return account


# =============================================================================
# State machine
# =============================================================================

class DelegationState(str, Enum):
    """Per-chain delegation progress."""
    EPHEMERAL_BOUND = "ephemeral_bound"
    APPROVAL_ISSUED = "approval_issued"
    REAL_SIGNER_BOUND = "real_signer_bound"


class DelegationManager:
    """Drives delegation across all chains of one account."""

    def __init__(
        self,
        resolver: Optional[KernelAccountResolver] = None,
        registry: Optional[ApprovalRegistry] = None,
    ):
        self._resolver = resolver or KernelAccountResolver()
        self._registry = registry or ApprovalRegistry()
        self._states: dict[int, DelegationState] = {}

    def state(self, chain_id: int) -> Optional[DelegationState]:
        return self._states.get(chain_id)

    def _require(self, chain_id: int, expected: DelegationState) -> None:
        current = self._states.get(chain_id)
        if current != expected:
            raise DelegationStateError(
                f"Chain {chain_id} is in state {current.value if current else 'unbound'}, "
                f"expected {expected.value}",
                chain_id=chain_id,
            )

    async def bind_ephemeral(
        self,
        endpoint_sets: Sequence[ChainEndpoints],
        sudo_validators: Sequence[ChainValidator],
        session_key: SessionKey,
        policies: Optional[Sequence[Policy]] = None,
    ) -> list[SmartAccount]:
        """Resolve accounts whose regular slot holds the session key placeholder."""
        for validator in sudo_validators:
            if not is_kernel_v3(validator.account_version):
                raise DelegationStateError(
                    f"Permission delegation requires Kernel 0.3.x, got {validator.account_version.value}",
                    chain_id=validator.chain_id,
                )
            if validator.chain_id in self._states:
                self._require(validator.chain_id, DelegationState.REAL_SIGNER_BOUND)

        permission = to_permission_validator(session_key.placeholder(), policies)
        authorities = [
            AuthorityRecord(sudo=validator, delegated=DelegatedAuthority(permission=permission))
            for validator in sudo_validators
        ]
        accounts = await self._resolver.resolve_all(endpoint_sets, authorities)
        for account in accounts:
            self._states[account.chain_id] = DelegationState.EPHEMERAL_BOUND
        return accounts

    async def issue_approvals(
        self,
        accounts: Sequence[SmartAccount],
        sudo_signer: Optional[Signer] = None,
    ) -> list[str]:
        for account in accounts:
            self._require(account.chain_id, DelegationState.EPHEMERAL_BOUND)
        approvals = await serialize_multi_chain_permission_accounts(accounts, sudo_signer)
        for account in accounts:
            self._states[account.chain_id] = DelegationState.APPROVAL_ISSUED
        return approvals

    async def bind_real_signers(
        self,
        endpoint_sets: Sequence[ChainEndpoints],
        approvals: Sequence[str],
        signer: ECDSASigner,
    ) -> list[SmartAccount]:
        by_chain = {}
        for serialized in approvals:
            approval = CapabilityApproval.deserialize(serialized)
            by_chain[approval.chain_id] = approval

        for endpoints in endpoint_sets:
            self._require(endpoints.chain_id, DelegationState.APPROVAL_ISSUED)
            if endpoints.chain_id not in by_chain:
                raise ApprovalConsumptionError("No approval issued for this chain", chain_id=endpoints.chain_id)

        accounts = []
        for endpoints in endpoint_sets:
            approval = by_chain[endpoints.chain_id]
            accounts.append(await _materialize_permission_account(
                endpoints,
                get_entrypoint(approval.entry_point_version),
                approval,
                signer,
                self._registry,
                self._resolver,
            ))
        assert_same_address(accounts)

        # Nothing is consumed until every chain has resolved.
        for endpoints in endpoint_sets:
            self._registry.consume(by_chain[endpoints.chain_id], signer.address)
            self._states[endpoints.chain_id] = DelegationState.REAL_SIGNER_BOUND
        return accounts
