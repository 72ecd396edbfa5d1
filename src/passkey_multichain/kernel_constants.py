"""Kernel smart account deployments and validator plugin addresses.

Kernel factories, implementations and the ECDSA validator plugin are deployed
with CREATE2 through the deterministic deployment proxy, so every address below
is identical on all supported EVM chains. The multi-chain WebAuthn validator
address is deployment configuration (MultiChainSettings.webauthn_validator_address).
Counterfactual account addresses are therefore a function of the account
version, the EntryPoint revision and the root validator's address and
initialization data only.

Reference: https://github.com/zerodevapp/kernel
"""
from __future__ import annotations

from enum import Enum

from .erc4337.entrypoint import EntryPointVersion


class AccountVersion(str, Enum):
    """Kernel account releases."""
    V0_2_4 = "0.2.4"
    V0_3_0 = "0.3.0"
    V0_3_1 = "0.3.1"


# Kernel 0.2.x speaks EntryPoint v0.6, Kernel 0.3.x speaks v0.7
ACCOUNT_ENTRYPOINT_COMPATIBILITY: dict[AccountVersion, EntryPointVersion] = {
    AccountVersion.V0_2_4: EntryPointVersion.V06,
    AccountVersion.V0_3_0: EntryPointVersion.V07,
    AccountVersion.V0_3_1: EntryPointVersion.V07,
}

DEFAULT_ACCOUNT_VERSION: dict[EntryPointVersion, AccountVersion] = {
    EntryPointVersion.V06: AccountVersion.V0_2_4,
    EntryPointVersion.V07: AccountVersion.V0_3_1,
}

KERNEL_ADDRESSES: dict[AccountVersion, dict[str, str]] = {
    AccountVersion.V0_2_4: {
        "factory": "0x5de4839a76cf55d0c90e2061ef4386d962e15ae3",
        "implementation": "0xd3082872f8b06073a021b4602e022d5a070d7cfc",
    },
    AccountVersion.V0_3_0: {
        "factory": "0x6723b44abeec4e71ebe3232bd5b455805badd22f",
        "implementation": "0x94f097e1ebeb4eca3aae54cabb08905b239a7d27",
    },
    AccountVersion.V0_3_1: {
        "factory": "0xaac5d4240af87249b3f71bc8e4a2cae074a3e419",
        "implementation": "0xbac849bb641841b44e965fb01a4bf5f074f84b4d",
    },
}


class ValidatorKind(str, Enum):
    """Validator plugins that may occupy the sudo slot."""
    MULTI_CHAIN_WEBAUTHN = "multi_chain_webauthn"
    ECDSA = "ecdsa"


ECDSA_VALIDATOR_ADDRESSES: dict[EntryPointVersion, str] = {
    EntryPointVersion.V06: "0xd9ab5096a832b9ce79914329daee236f8eea0390",
    EntryPointVersion.V07: "0x845adb2c711129d4f3966735ed98a9f09fc4ce57",
}

# Kernel v3 validation types (first byte of a ValidationId)
VALIDATION_TYPE_ROOT = 0x00
VALIDATION_TYPE_VALIDATOR = 0x01
VALIDATION_TYPE_PERMISSION = 0x02

# Kernel v3 validation modes (first byte of the nonce key)
VALIDATION_MODE_DEFAULT = 0x00
VALIDATION_MODE_ENABLE = 0x01

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Solady LibClone ERC-1967 proxy creation code, split around the implementation
ERC1967_PROXY_PREFIX = bytes.fromhex("603d3d8160223d3973")
ERC1967_PROXY_SUFFIX = bytes.fromhex(
    "60095155f3363d3d373d3d363d7f360894a13ba1a3210667c828492db98dca3e2076cc"
    "3735a920a3ca505d382bbc545af43d6000803e6038573d6000fd5b3d6000f3"
)

# Kernel v3 execution modes (bytes32, left aligned)
EXEC_MODE_SINGLE = b"\x00" * 32
EXEC_MODE_BATCH = b"\x01" + b"\x00" * 31

# Permission validator marker preceding a signer signature when no policy signs
PERMISSION_SIGNER_INDEX = b"\xff"

# Placeholder ECDSA signature used for gas estimation before real signing
DUMMY_ECDSA_SIGNATURE = "0x" + "f" * 31 + "0" * 33 + "7" + "a" * 63 + "1c"

# EIP-712 domain name used by Kernel for Enable approvals
KERNEL_DOMAIN_NAME = "Kernel"

# Permission plugin modules (Kernel 0.3.x only)
ECDSA_SIGNER_ADDRESS = "0x6a6f069e2a08c2468e7724ab3250cdbfba14d4ff"


class PolicyKind(str, Enum):
    """Policies a delegated permission can carry."""
    SUDO = "sudo"
    TIMESTAMP = "timestamp"
    GAS = "gas"


POLICY_ADDRESSES: dict[PolicyKind, str] = {
    PolicyKind.SUDO: "0x67b436cad8a6d025df6c82c5bb43fbf11fc5b9b7",
    PolicyKind.TIMESTAMP: "0xb9f8f524be6ecd8c945b1b87f9ae5c192fdce20f",
    PolicyKind.GAS: "0xaefc5abc67ffd258abd0a3e54f65e70326f84b23",
}

# Kernel v2 signature prefix selecting sudo mode
KERNEL_V2_SUDO_MODE = b"\x00\x00\x00\x00"
