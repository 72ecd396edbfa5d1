"""UserOperation primitives for ERC-4337 (EntryPoint v0.6 and v0.7)."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from eth_abi import encode
from web3 import Web3

from .entrypoint import EntryPointVersion


def zero_hex() -> str:
    return "0x"


def _to_hex_int(value: int) -> str:
    return hex(max(0, int(value)))


def _hex_bytes(value: str) -> bytes:
    value = value or "0x"
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def _address(value: str) -> str:
    return Web3.to_checksum_address(value)


def _pack_uint128_pair(high: int, low: int) -> bytes:
    return ((int(high) << 128) | int(low)).to_bytes(32, "big")


@dataclass
class UserOperation:
    """Unpacked user operation.

    v0.7 splits initCode into factory/factory_data and paymasterAndData into
    its parts; v0.6 carries them packed. The same object renders both shapes.
    """
    sender: str
    nonce: int
    call_data: str
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    factory: str = ""
    factory_data: str = "0x"
    paymaster: str = ""
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0
    paymaster_data: str = "0x"
    signature: str = "0x"

    @property
    def init_code(self) -> str:
        if not self.factory:
            return zero_hex()
        return "0x" + _hex_bytes(self.factory).hex() + _hex_bytes(self.factory_data).hex()

    def paymaster_and_data(self, version: EntryPointVersion) -> str:
        if not self.paymaster:
            return zero_hex()
        if version == EntryPointVersion.V06:
            return "0x" + _hex_bytes(self.paymaster).hex() + _hex_bytes(self.paymaster_data).hex()
        return "0x" + (
            _hex_bytes(self.paymaster)
            + int(self.paymaster_verification_gas_limit).to_bytes(16, "big")
            + int(self.paymaster_post_op_gas_limit).to_bytes(16, "big")
            + _hex_bytes(self.paymaster_data)
        ).hex()

    def copy(self, **changes: Any) -> "UserOperation":
        return replace(self, **changes)

    def to_rpc(self, version: EntryPointVersion = EntryPointVersion.V07) -> dict[str, Any]:
        if version == EntryPointVersion.V06:
            return {
                "sender": self.sender,
                "nonce": _to_hex_int(self.nonce),
                "initCode": self.init_code,
                "callData": self.call_data,
                "callGasLimit": _to_hex_int(self.call_gas_limit),
                "verificationGasLimit": _to_hex_int(self.verification_gas_limit),
                "preVerificationGas": _to_hex_int(self.pre_verification_gas),
                "maxFeePerGas": _to_hex_int(self.max_fee_per_gas),
                "maxPriorityFeePerGas": _to_hex_int(self.max_priority_fee_per_gas),
                "paymasterAndData": self.paymaster_and_data(version),
                "signature": self.signature,
            }

        rpc: dict[str, Any] = {
            "sender": self.sender,
            "nonce": _to_hex_int(self.nonce),
            "callData": self.call_data,
            "callGasLimit": _to_hex_int(self.call_gas_limit),
            "verificationGasLimit": _to_hex_int(self.verification_gas_limit),
            "preVerificationGas": _to_hex_int(self.pre_verification_gas),
            "maxFeePerGas": _to_hex_int(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex_int(self.max_priority_fee_per_gas),
            "signature": self.signature,
        }
        if self.factory:
            rpc["factory"] = self.factory
            rpc["factoryData"] = self.factory_data
        if self.paymaster:
            rpc["paymaster"] = self.paymaster
            rpc["paymasterVerificationGasLimit"] = _to_hex_int(self.paymaster_verification_gas_limit)
            rpc["paymasterPostOpGasLimit"] = _to_hex_int(self.paymaster_post_op_gas_limit)
            rpc["paymasterData"] = self.paymaster_data
        return rpc

    def _pack_for_hash(self, version: EntryPointVersion) -> bytes:
        init_code_hash = Web3.keccak(_hex_bytes(self.init_code))
        call_data_hash = Web3.keccak(_hex_bytes(self.call_data))
        paymaster_hash = Web3.keccak(_hex_bytes(self.paymaster_and_data(version)))

        if version == EntryPointVersion.V06:
            return encode(
                ["address", "uint256", "bytes32", "bytes32", "uint256", "uint256",
                 "uint256", "uint256", "uint256", "bytes32"],
                [
                    _address(self.sender),
                    int(self.nonce),
                    init_code_hash,
                    call_data_hash,
                    int(self.call_gas_limit),
                    int(self.verification_gas_limit),
                    int(self.pre_verification_gas),
                    int(self.max_fee_per_gas),
                    int(self.max_priority_fee_per_gas),
                    paymaster_hash,
                ],
            )

        return encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                _address(self.sender),
                int(self.nonce),
                init_code_hash,
                call_data_hash,
                _pack_uint128_pair(self.verification_gas_limit, self.call_gas_limit),
                int(self.pre_verification_gas),
                _pack_uint128_pair(self.max_priority_fee_per_gas, self.max_fee_per_gas),
                paymaster_hash,
            ],
        )

    def hash(self, entrypoint: str, chain_id: int, version: EntryPointVersion = EntryPointVersion.V07) -> bytes:
        """Compute the EntryPoint userOpHash locally.

        keccak256(abi.encode(keccak256(pack(userOp)), entryPoint, chainId)).
        The signature field is excluded, so the hash is stable across signing.
        """
        inner = Web3.keccak(self._pack_for_hash(version))
        return bytes(Web3.keccak(
            encode(["bytes32", "address", "uint256"], [inner, _address(entrypoint), int(chain_id)])
        ))
