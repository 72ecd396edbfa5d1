"""
Configuration management for passkey multi-chain accounts.

Provides centralized configuration for:
- Participating chains and their bundler / paymaster / passkey endpoints
- EntryPoint and Kernel account version pinning
- Receipt wait timeouts and polling
- Logging and audit artifact output

Settings load from environment variables with prefix PASSKEY_MC_ and from
an optional .env file.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from .erc4337.entrypoint import EntryPointVersion
from .erc4337.paymaster_client import PaymasterProvider
from .exceptions import ConfigurationError
from .kernel_constants import ACCOUNT_ENTRYPOINT_COMPATIBILITY, AccountVersion

logger = logging.getLogger(__name__)

ZERODEV_RPC_BASE = "https://rpc.zerodev.app/api/v2"
ZERODEV_PASSKEY_BASE = "https://passkeys.zerodev.app/api/v3"
USER_OP_EXPLORER_URL = "https://jiffyscan.xyz"


@dataclass(frozen=True)
class ChainSpec:
    """Static facts about a supported network."""
    name: str
    chain_id: int
    display_name: str
    explorer_url: str
    is_testnet: bool = False
    native_token: str = "ETH"

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"

    def user_op_url(self, user_op_hash: str) -> str:
        return f"{USER_OP_EXPLORER_URL}/userOpHash/{user_op_hash}?network={self.name.replace('_', '-')}"

    def account_url(self, address: str) -> str:
        return f"{USER_OP_EXPLORER_URL}/account/{address}"


CHAIN_SPECS: dict[str, ChainSpec] = {
    "ethereum": ChainSpec("ethereum", 1, "Ethereum", "https://etherscan.io"),
    "optimism": ChainSpec("optimism", 10, "Optimism", "https://optimistic.etherscan.io"),
    "base": ChainSpec("base", 8453, "Base", "https://basescan.org"),
    "arbitrum": ChainSpec("arbitrum", 42161, "Arbitrum One", "https://arbiscan.io"),
    "polygon": ChainSpec("polygon", 137, "Polygon", "https://polygonscan.com", native_token="POL"),
    "sepolia": ChainSpec("sepolia", 11155111, "Sepolia", "https://sepolia.etherscan.io", is_testnet=True),
    "optimism_sepolia": ChainSpec(
        "optimism_sepolia", 11155420, "Optimism Sepolia", "https://sepolia-optimism.etherscan.io", is_testnet=True,
    ),
    "base_sepolia": ChainSpec("base_sepolia", 84532, "Base Sepolia", "https://sepolia.basescan.org", is_testnet=True),
    "arbitrum_sepolia": ChainSpec(
        "arbitrum_sepolia", 421614, "Arbitrum Sepolia", "https://sepolia.arbiscan.io", is_testnet=True,
    ),
    "polygon_amoy": ChainSpec(
        "polygon_amoy", 80002, "Polygon Amoy", "https://amoy.polygonscan.com", is_testnet=True, native_token="POL",
    ),
}

CHAIN_ID_MAP: dict[str, int] = {name: spec.chain_id for name, spec in CHAIN_SPECS.items()}


def get_chain_spec(name: str) -> ChainSpec:
    """Look up a supported chain by name."""
    spec = CHAIN_SPECS.get(name)
    if spec is None:
        raise ConfigurationError(
            f"Unknown chain: {name}",
            details={"supported": sorted(CHAIN_SPECS)},
        )
    return spec


def validate_chain_id(chain: str, received_chain_id: int) -> bool:
    """
    Validate that the chain ID reported by an endpoint matches expected.

    SECURITY: A validator bound through the wrong endpoint would produce an
    account on a network the user never intended to use.
    """
    expected = CHAIN_ID_MAP.get(chain)
    if expected is None:
        logger.warning(f"Unknown chain for validation: {chain}")
        return False

    if received_chain_id != expected:
        logger.error(
            f"SECURITY: Chain ID mismatch for {chain}! "
            f"Expected {expected}, got {received_chain_id}."
        )
        return False

    return True


class ChainSettings(BaseModel):
    """Per-chain endpoint configuration.

    Explicit URLs win; otherwise ZeroDev URLs are built from project_id.
    """
    name: str
    project_id: str = ""
    rpc_url: str = ""
    bundler_url: str = ""
    paymaster_url: str = ""
    passkey_server_url: str = ""
    receipt_timeout_seconds: Optional[float] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v not in CHAIN_SPECS:
            raise ValueError(f"Unknown chain: {v}")
        return v

    @property
    def spec(self) -> ChainSpec:
        return CHAIN_SPECS[self.name]

    @property
    def chain_id(self) -> int:
        return self.spec.chain_id

    def _project_id(self) -> str:
        # Per-chain override, e.g. PASSKEY_MC_SEPOLIA_PROJECT_ID
        return self.project_id or os.getenv(f"PASSKEY_MC_{self.name.upper()}_PROJECT_ID", "")

    def resolved_bundler_url(self) -> str:
        if self.bundler_url:
            return self.bundler_url
        project_id = self._project_id()
        if not project_id:
            raise ConfigurationError(
                f"No bundler URL or project id configured for {self.name}",
                details={"chain": self.name},
            )
        return f"{ZERODEV_RPC_BASE}/bundler/{project_id}"

    def resolved_paymaster_url(self) -> str:
        if self.paymaster_url:
            return self.paymaster_url
        project_id = self._project_id()
        if not project_id:
            return ""
        return f"{ZERODEV_RPC_BASE}/paymaster/{project_id}"

    def resolved_passkey_server_url(self) -> str:
        if self.passkey_server_url:
            return self.passkey_server_url
        project_id = self._project_id()
        if not project_id:
            return ""
        return f"{ZERODEV_PASSKEY_BASE}/{project_id}"

    def resolved_rpc_url(self) -> str:
        # The bundler proxies standard read calls
        return self.rpc_url or self.resolved_bundler_url()


class MultiChainSettings(BaseSettings):
    """Main configuration for multi-chain passkey accounts."""

    model_config = SettingsConfigDict(
        env_prefix="PASSKEY_MC_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    environment: Literal["dev", "testnet", "prod"] = "dev"

    # Participating chains, in signing order
    chains: List[ChainSettings] = Field(default_factory=lambda: [
        ChainSettings(name="sepolia"),
        ChainSettings(name="optimism_sepolia"),
    ])

    # Version pinning shared by every chain
    entry_point_version: EntryPointVersion = EntryPointVersion.V07
    account_version: AccountVersion = AccountVersion.V0_3_1
    account_index: int = 0

    # Multi-chain WebAuthn validator plugin for the pinned EntryPoint. Required:
    # it is part of every account address.
    webauthn_validator_address: str

    # Sponsorship
    use_paymaster: bool = True
    paymaster_provider: PaymasterProvider = PaymasterProvider.ZERODEV
    sponsorship_policy_id: str = ""

    # Network behaviour
    http_timeout_seconds: float = 30.0
    receipt_timeout_seconds: float = 180.0
    receipt_poll_seconds: float = 2.0

    # WebAuthn relying party
    rp_id: str = "localhost"
    origin: str = "http://localhost:3000"

    # Logging and audit
    log_level: str = "INFO"
    json_logs: bool = False
    audit_log_path: str = ""
    artifact_dir: str = ""

    @field_validator("webauthn_validator_address")
    @classmethod
    def validate_validator_address(cls, v: str) -> str:
        if not Web3.is_address(v):
            raise ValueError(f"Not an address: {v}")
        return Web3.to_checksum_address(v)

    @model_validator(mode="after")
    def validate_chains(self) -> "MultiChainSettings":
        names = [c.name for c in self.chains]
        if len(names) < 2:
            raise ValueError("At least two chains are required for a multi-chain account")
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate chains configured: {names}")
        expected = ACCOUNT_ENTRYPOINT_COMPATIBILITY[self.account_version]
        if expected != self.entry_point_version:
            raise ValueError(
                f"Account version {self.account_version.value} requires EntryPoint "
                f"{expected.value}, got {self.entry_point_version.value}"
            )
        return self

    @property
    def chain_ids(self) -> list[int]:
        return [c.chain_id for c in self.chains]

    def get_chain_settings(self, name: str) -> ChainSettings:
        for chain in self.chains:
            if chain.name == name:
                return chain
        raise ConfigurationError(f"Chain not configured: {name}", details={"chain": name})

    def receipt_timeout_for(self, name: str) -> float:
        chain = self.get_chain_settings(name)
        if chain.receipt_timeout_seconds is not None:
            return chain.receipt_timeout_seconds
        return self.receipt_timeout_seconds


@lru_cache
def load_settings(env_file: str | None = None) -> MultiChainSettings:
    """Load MultiChainSettings once per process."""
    env_path = Path(env_file) if env_file else None
    return MultiChainSettings(_env_file=env_path)
