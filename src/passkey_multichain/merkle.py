"""
Keccak Merkle tree over per-chain digests.

One passkey assertion over the root authorizes every leaf. Pairs are hashed
in sorted order and an odd node is carried up unchanged, which matches
OpenZeppelin's MerkleProof.verify: proofs are plain sibling lists.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from eth_abi import decode, encode
from web3 import Web3


def _hash_pair(a: bytes, b: bytes) -> bytes:
    # Concatenate in sorted order for deterministic results
    return bytes(Web3.keccak(a + b if a <= b else b + a))


@dataclass
class MerkleTree:
    """Merkle tree whose leaves are 32-byte digests (not re-hashed)."""
    leaves: list[bytes]
    _levels: list[list[bytes]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.leaves:
            raise ValueError("Cannot build Merkle tree from empty leaves")
        for leaf in self.leaves:
            if len(leaf) != 32:
                raise ValueError("Merkle leaves must be 32-byte digests")
        self._levels = self._build(list(self.leaves))

    @staticmethod
    def _build(level: list[bytes]) -> list[list[bytes]]:
        levels = [level]
        while len(level) > 1:
            next_level = []
            for i in range(0, len(level), 2):
                if i + 1 < len(level):
                    next_level.append(_hash_pair(level[i], level[i + 1]))
                else:
                    # Odd node is promoted
                    next_level.append(level[i])
            levels.append(next_level)
            level = next_level
        return levels

    @property
    def root(self) -> bytes:
        return self._levels[-1][0]

    def get_proof(self, index: int) -> list[bytes]:
        """Sibling hashes from leaf index up to the root."""
        if index < 0 or index >= len(self.leaves):
            raise ValueError(f"Index {index} out of range [0, {len(self.leaves)})")

        proof: list[bytes] = []
        for level in self._levels[:-1]:
            sibling = index ^ 1
            if sibling < len(level):
                proof.append(level[sibling])
            index //= 2
        return proof


def verify_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
    """Recompute the root from a leaf and its proof."""
    computed = leaf
    for sibling in proof:
        computed = _hash_pair(computed, sibling)
    return computed == root


def encode_multi_chain_signature(root: bytes, proof: Sequence[bytes], signature: bytes) -> bytes:
    """Per-chain signature: abi.encode(merkleRoot, merkleProof, rootSignature)."""
    return encode(["bytes32", "bytes32[]", "bytes"], [root, list(proof), signature])


def decode_multi_chain_signature(data: bytes) -> tuple[bytes, list[bytes], bytes]:
    root, proof, signature = decode(["bytes32", "bytes32[]", "bytes"], data)
    return root, list(proof), signature
