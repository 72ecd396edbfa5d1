"""Tests for the keccak Merkle tree used by joint signing."""
import pytest
from web3 import Web3

from passkey_multichain.merkle import (
    MerkleTree,
    decode_multi_chain_signature,
    encode_multi_chain_signature,
    verify_proof,
)


def leaf(n: int) -> bytes:
    return bytes(Web3.keccak(text=f"leaf-{n}"))


class TestMerkleTree:
    def test_single_leaf_is_root(self):
        tree = MerkleTree([leaf(0)])
        assert tree.root == leaf(0)
        assert tree.get_proof(0) == []

    def test_two_leaves_hash_sorted_pair(self):
        a, b = leaf(0), leaf(1)
        expected = bytes(Web3.keccak(min(a, b) + max(a, b)))
        assert MerkleTree([a, b]).root == expected
        assert MerkleTree([b, a]).root == expected

    def test_every_proof_verifies(self):
        leaves = [leaf(i) for i in range(5)]
        tree = MerkleTree(leaves)
        for i, value in enumerate(leaves):
            assert verify_proof(value, tree.get_proof(i), tree.root)

    def test_odd_leaf_is_promoted(self):
        tree = MerkleTree([leaf(0), leaf(1), leaf(2)])
        # Leaf 2 has no sibling on the first level
        assert len(tree.get_proof(2)) == 1
        assert len(tree.get_proof(0)) == 2

    def test_wrong_leaf_fails(self):
        tree = MerkleTree([leaf(0), leaf(1)])
        assert not verify_proof(leaf(9), tree.get_proof(0), tree.root)

    def test_rejects_bad_leaves(self):
        with pytest.raises(ValueError):
            MerkleTree([])
        with pytest.raises(ValueError):
            MerkleTree([b"\x01" * 31])

    def test_proof_index_out_of_range(self):
        with pytest.raises(ValueError):
            MerkleTree([leaf(0)]).get_proof(1)


class TestMultiChainSignature:
    def test_encoding_carries_root_proof_and_signature(self):
        tree = MerkleTree([leaf(0), leaf(1)])
        encoded = encode_multi_chain_signature(tree.root, tree.get_proof(1), b"\xaa" * 65)
        root, proof, signature = decode_multi_chain_signature(encoded)
        assert root == tree.root
        assert proof == [leaf(0)]
        assert signature == b"\xaa" * 65
