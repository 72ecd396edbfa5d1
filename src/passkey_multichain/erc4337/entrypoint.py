"""EntryPoint revisions and addresses for ERC-4337."""

from __future__ import annotations

from enum import Enum


class EntryPointVersion(str, Enum):
    """EntryPoint revisions that change the user operation layout."""
    V06 = "0.6"
    V07 = "0.7"


# Same on every EVM chain (deterministic deployment)
ENTRYPOINT_ADDRESSES: dict[EntryPointVersion, str] = {
    EntryPointVersion.V06: "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789",
    EntryPointVersion.V07: "0x0000000071727De22E5E9d8BAf0edAc6f37da032",
}


def get_entrypoint(version: EntryPointVersion | str) -> str:
    return ENTRYPOINT_ADDRESSES[EntryPointVersion(version)]
