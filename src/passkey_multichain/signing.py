"""Pending operations and the two signing modes.

Independent signing produces one signature per chain. Joint signing commits
every chain's user operation hash to a Merkle root and runs a single
passkey assertion over it; the result cannot be split after the fact, so
all expected chains must be present.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional, Sequence

from .accounts import Call, SmartAccount, is_kernel_v3
from .delegation import encode_enable_mode_signature
from .erc4337.paymaster_client import SponsorshipData
from .erc4337.user_operation import UserOperation
from .exceptions import IncompleteMultiChainSignatureError, OperationSealedError, SignerError
from .kernel_constants import DUMMY_ECDSA_SIGNATURE, KERNEL_V2_SUDO_MODE, PERMISSION_SIGNER_INDEX
from .logging_utils import OperationType, get_operation_logger
from .merkle import MerkleTree, encode_multi_chain_signature
from .signers import Signer
from .webauthn import encode_webauthn_signature

logger = logging.getLogger(__name__)


class SigningMode(str, Enum):
    INDEPENDENT = "independent"
    JOINT = "joint"


def select_signing_mode(accounts: Sequence[SmartAccount]) -> SigningMode:
    """Delegated session keys and ECDSA sudo sign per chain; a WebAuthn sudo signs jointly."""
    if any(a.uses_delegated_authority for a in accounts):
        return SigningMode.INDEPENDENT
    if all(a.authority.sudo.is_joint for a in accounts):
        return SigningMode.JOINT
    return SigningMode.INDEPENDENT


class PendingOperation:
    """One chain's user operation. Mutable until a signature is attached."""

    def __init__(
        self,
        account: SmartAccount,
        calls: Sequence[Call],
        user_op: UserOperation,
        enable_mode: bool = False,
    ):
        self._account = account
        self._calls = tuple(calls)
        self._user_op = user_op
        self._enable_mode = enable_mode
        self._sponsorship: Optional[SponsorshipData] = None
        self._sealed = False

    @property
    def chain_id(self) -> int:
        return self._account.chain_id

    @property
    def account(self) -> SmartAccount:
        return self._account

    @property
    def calls(self) -> tuple[Call, ...]:
        return self._calls

    @property
    def user_op(self) -> UserOperation:
        """A copy; changes go through update()."""
        return self._user_op.copy()

    @property
    def nonce(self) -> int:
        return self._user_op.nonce

    @property
    def enable_mode(self) -> bool:
        return self._enable_mode

    @property
    def sponsorship(self) -> Optional[SponsorshipData]:
        return self._sponsorship

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def signature(self) -> str:
        return self._user_op.signature

    def _check_mutable(self) -> None:
        if self._sealed:
            raise OperationSealedError("Operation is signed and can no longer change", chain_id=self.chain_id)

    def update(self, **changes: Any) -> None:
        self._check_mutable()
        self._user_op = self._user_op.copy(**changes)

    def apply_sponsorship(self, sponsorship: SponsorshipData) -> None:
        self._check_mutable()
        self._user_op = sponsorship.apply(self._user_op)
        self._sponsorship = sponsorship

    def user_op_hash(self) -> bytes:
        return self._user_op.hash(self._account.entry_point, self.chain_id, self._account.entry_point_version)

    def attach_signature(self, signature: str) -> None:
        self._check_mutable()
        self._user_op = self._user_op.copy(signature=signature)
        self._sealed = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "sender": self._account.address,
            "entry_point": self._account.entry_point,
            "enable_mode": self._enable_mode,
            "calls": [c.to_dict() for c in self._calls],
            "user_op": self._user_op.to_rpc(self._account.entry_point_version),
            "user_op_hash": "0x" + self.user_op_hash().hex(),
        }

    def __repr__(self) -> str:
        return f"PendingOperation(chain_id={self.chain_id}, nonce={self.nonce}, sealed={self._sealed})"


@dataclass(frozen=True)
class SignedOperation:
    chain_id: int
    operation: PendingOperation
    signature: str


@dataclass(frozen=True)
class SignedOperationSet:
    """Operations signed together, in signing order."""
    mode: SigningMode
    entries: tuple[SignedOperation, ...]
    merkle_root: Optional[str] = None

    def __iter__(self) -> Iterator[SignedOperation]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def chain_ids(self) -> list[int]:
        return [e.chain_id for e in self.entries]

    @property
    def signatures(self) -> dict[int, str]:
        return {e.chain_id: e.signature for e in self.entries}

    def for_chain(self, chain_id: int) -> SignedOperation:
        for entry in self.entries:
            if entry.chain_id == chain_id:
                return entry
        raise KeyError(chain_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "merkle_root": self.merkle_root,
            "operations": [e.operation.to_dict() for e in self.entries],
        }


def _unhex(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


def wrap_signature(pending: PendingOperation, validator_signature: bytes) -> str:
    """Frame a validator signature the way the account expects it on this path."""
    account = pending.account
    delegated = account.authority.delegated

    if delegated is not None:
        permission_signature = PERMISSION_SIGNER_INDEX + validator_signature
        if pending.enable_mode:
            if not delegated.enable_signature:
                raise SignerError("Delegated permission has no enable approval")
            framed = encode_enable_mode_signature(
                delegated.permission, _unhex(delegated.enable_signature), permission_signature,
            )
            return "0x" + framed.hex()
        return "0x" + permission_signature.hex()

    if not is_kernel_v3(account.account_version):
        return "0x" + (KERNEL_V2_SUDO_MODE + validator_signature).hex()
    return "0x" + validator_signature.hex()


_DUMMY_CLIENT_DATA = (
    '{"type":"webauthn.get","challenge":"' + "A" * 43
    + '","origin":"http://localhost:3000","crossOrigin":false}'
)


def dummy_signature(account: SmartAccount, enable_mode: bool = False, chain_count: int = 1) -> str:
    """Placeholder of realistic size for gas estimation and sponsorship."""
    delegated = account.authority.delegated
    if delegated is not None:
        validator_signature = _unhex(DUMMY_ECDSA_SIGNATURE)
    elif account.authority.sudo.is_joint:
        webauthn = encode_webauthn_signature(b"\x49" * 37, _DUMMY_CLIENT_DATA, 1, 1)
        depth = max(0, (chain_count - 1).bit_length())
        validator_signature = encode_multi_chain_signature(b"\x11" * 32, [b"\x22" * 32] * depth, webauthn)
    else:
        validator_signature = _unhex(DUMMY_ECDSA_SIGNATURE)

    if delegated is not None:
        permission_signature = PERMISSION_SIGNER_INDEX + validator_signature
        if enable_mode:
            enable = _unhex(delegated.enable_signature) if delegated.enable_signature else _unhex(DUMMY_ECDSA_SIGNATURE)
            return "0x" + encode_enable_mode_signature(delegated.permission, enable, permission_signature).hex()
        return "0x" + permission_signature.hex()
    if not is_kernel_v3(account.account_version):
        return "0x" + (KERNEL_V2_SUDO_MODE + validator_signature).hex()
    return "0x" + validator_signature.hex()


def _order_for_joint(
    pending: Sequence[PendingOperation],
    expected_chain_ids: Sequence[int],
) -> list[PendingOperation]:
    present = [p.chain_id for p in pending]
    if len(set(present)) != len(present) or sorted(present) != sorted(expected_chain_ids):
        raise IncompleteMultiChainSignatureError(list(expected_chain_ids), present)
    by_chain = {p.chain_id: p for p in pending}
    return [by_chain[chain_id] for chain_id in expected_chain_ids]


async def sign_jointly(
    pending: Sequence[PendingOperation],
    signer: Signer,
    expected_chain_ids: Sequence[int],
) -> SignedOperationSet:
    """One signature over all chains' operation hashes, ordered by expected_chain_ids."""
    ordered = _order_for_joint(pending, expected_chain_ids)
    for op in ordered:
        op._check_mutable()
        if op.account.uses_delegated_authority:
            raise SignerError("Delegated permissions sign per chain")

    hashes = [op.user_op_hash() for op in ordered]
    tree = MerkleTree(hashes)

    async with get_operation_logger().operation_context(
        OperationType.SIGNING, ",".join(str(c) for c in expected_chain_ids), mode=SigningMode.JOINT.value,
    ):
        root_signature = _unhex(await signer.sign_hash(tree.root))

    entries = []
    for i, op in enumerate(ordered):
        validator_signature = encode_multi_chain_signature(tree.root, tree.get_proof(i), root_signature)
        signature = wrap_signature(op, validator_signature)
        op.attach_signature(signature)
        entries.append(SignedOperation(chain_id=op.chain_id, operation=op, signature=signature))

    return SignedOperationSet(mode=SigningMode.JOINT, entries=tuple(entries), merkle_root="0x" + tree.root.hex())


async def _sign_one(op: PendingOperation) -> SignedOperation:
    op._check_mutable()
    authority = op.account.authority
    signer = authority.acting_signer
    if signer is None:
        raise SignerError("No signer bound to the acting authority")

    if authority.delegated is not None and not authority.delegated.permission.allows(op.user_op):
        raise SignerError(f"Permission policies do not allow this operation on chain {op.chain_id}")

    async with get_operation_logger().operation_context(
        OperationType.SIGNING, str(op.chain_id), mode=SigningMode.INDEPENDENT.value,
    ):
        validator_signature = _unhex(await signer.sign_hash(op.user_op_hash()))

    signature = wrap_signature(op, validator_signature)
    op.attach_signature(signature)
    return SignedOperation(chain_id=op.chain_id, operation=op, signature=signature)


async def sign_independently(pending: Sequence[PendingOperation]) -> SignedOperationSet:
    """Each chain's operation signed on its own by its acting signer."""
    entries = await asyncio.gather(*(_sign_one(op) for op in pending))
    return SignedOperationSet(mode=SigningMode.INDEPENDENT, entries=tuple(entries))
