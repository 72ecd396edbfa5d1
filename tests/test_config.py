"""Tests for settings loading and chain validation."""
import pytest
from pydantic import ValidationError
from web3 import Web3

from passkey_multichain.config import (
    ZERODEV_PASSKEY_BASE,
    ZERODEV_RPC_BASE,
    ChainSettings,
    MultiChainSettings,
    get_chain_spec,
    validate_chain_id,
)
from passkey_multichain.erc4337.entrypoint import EntryPointVersion
from passkey_multichain.exceptions import ConfigurationError
from passkey_multichain.kernel_constants import AccountVersion

WEBAUTHN_VALIDATOR = "0x" + "a1" * 20


class TestMultiChainSettings:
    """Tests for MultiChainSettings validation."""

    def test_defaults(self):
        settings = MultiChainSettings(webauthn_validator_address=WEBAUTHN_VALIDATOR, _env_file=None)
        assert settings.chain_ids == [11155111, 11155420]
        assert settings.entry_point_version == EntryPointVersion.V07
        assert settings.account_version == AccountVersion.V0_3_1

    def test_single_chain_rejected(self):
        with pytest.raises(ValidationError, match="At least two chains"):
            MultiChainSettings(
                chains=[ChainSettings(name="sepolia")],
                webauthn_validator_address=WEBAUTHN_VALIDATOR,
                _env_file=None,
            )

    def test_duplicate_chains_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate chains"):
            MultiChainSettings(
                chains=[ChainSettings(name="sepolia"), ChainSettings(name="sepolia")],
                webauthn_validator_address=WEBAUTHN_VALIDATOR,
                _env_file=None,
            )

    def test_incompatible_version_pinning_rejected(self):
        with pytest.raises(ValidationError, match="requires EntryPoint"):
            MultiChainSettings(
                account_version=AccountVersion.V0_2_4,
                entry_point_version=EntryPointVersion.V07,
                webauthn_validator_address=WEBAUTHN_VALIDATOR,
                _env_file=None,
            )

    def test_kernel_v2_with_entry_point_v06(self):
        settings = MultiChainSettings(
            account_version=AccountVersion.V0_2_4,
            entry_point_version=EntryPointVersion.V06,
            webauthn_validator_address=WEBAUTHN_VALIDATOR,
            _env_file=None,
        )
        assert settings.account_version == AccountVersion.V0_2_4

    def test_webauthn_validator_address_is_required(self, monkeypatch):
        monkeypatch.delenv("PASSKEY_MC_WEBAUTHN_VALIDATOR_ADDRESS", raising=False)
        with pytest.raises(ValidationError, match="webauthn_validator_address"):
            MultiChainSettings(_env_file=None)

    def test_webauthn_validator_address_is_checksummed(self):
        settings = MultiChainSettings(webauthn_validator_address=WEBAUTHN_VALIDATOR, _env_file=None)
        assert settings.webauthn_validator_address == Web3.to_checksum_address(WEBAUTHN_VALIDATOR)

    def test_malformed_webauthn_validator_address(self):
        with pytest.raises(ValidationError, match="Not an address"):
            MultiChainSettings(webauthn_validator_address="0x1234", _env_file=None)

    def test_unknown_chain_rejected(self):
        with pytest.raises(ValidationError, match="Unknown chain"):
            ChainSettings(name="atlantis")

    def test_loads_from_environment(self, monkeypatch):
        monkeypatch.setenv("PASSKEY_MC_RECEIPT_TIMEOUT_SECONDS", "42")
        monkeypatch.setenv(
            "PASSKEY_MC_CHAINS",
            '[{"name": "base_sepolia"}, {"name": "arbitrum_sepolia", "receipt_timeout_seconds": 7}]',
        )
        settings = MultiChainSettings(webauthn_validator_address=WEBAUTHN_VALIDATOR, _env_file=None)
        assert settings.chain_ids == [84532, 421614]
        assert settings.receipt_timeout_for("base_sepolia") == 42
        assert settings.receipt_timeout_for("arbitrum_sepolia") == 7

    def test_unconfigured_chain_lookup(self):
        settings = MultiChainSettings(webauthn_validator_address=WEBAUTHN_VALIDATOR, _env_file=None)
        with pytest.raises(ConfigurationError):
            settings.get_chain_settings("base")


class TestChainSettings:
    """Tests for per-chain endpoint resolution."""

    def test_explicit_urls_win(self):
        chain = ChainSettings(
            name="sepolia",
            project_id="proj",
            bundler_url="https://bundler.example/rpc",
            rpc_url="https://node.example",
        )
        assert chain.resolved_bundler_url() == "https://bundler.example/rpc"
        assert chain.resolved_rpc_url() == "https://node.example"

    def test_urls_from_project_id(self):
        chain = ChainSettings(name="sepolia", project_id="proj")
        assert chain.resolved_bundler_url() == f"{ZERODEV_RPC_BASE}/bundler/proj"
        assert chain.resolved_paymaster_url() == f"{ZERODEV_RPC_BASE}/paymaster/proj"
        assert chain.resolved_passkey_server_url() == f"{ZERODEV_PASSKEY_BASE}/proj"
        assert chain.resolved_rpc_url() == chain.resolved_bundler_url()

    def test_project_id_from_environment(self, monkeypatch):
        monkeypatch.setenv("PASSKEY_MC_SEPOLIA_PROJECT_ID", "env-proj")
        chain = ChainSettings(name="sepolia")
        assert chain.resolved_bundler_url().endswith("/bundler/env-proj")

    def test_missing_bundler_raises(self, monkeypatch):
        monkeypatch.delenv("PASSKEY_MC_SEPOLIA_PROJECT_ID", raising=False)
        chain = ChainSettings(name="sepolia")
        with pytest.raises(ConfigurationError):
            chain.resolved_bundler_url()
        assert chain.resolved_paymaster_url() == ""
        assert chain.resolved_passkey_server_url() == ""


class TestChainSpecs:
    def test_get_chain_spec(self):
        spec = get_chain_spec("base_sepolia")
        assert spec.chain_id == 84532
        assert spec.is_testnet
        assert spec.tx_url("0xabc") == "https://sepolia.basescan.org/tx/0xabc"

    def test_unknown_chain_spec(self):
        with pytest.raises(ConfigurationError):
            get_chain_spec("atlantis")

    def test_validate_chain_id(self):
        assert validate_chain_id("sepolia", 11155111)
        assert not validate_chain_id("sepolia", 1)
        assert not validate_chain_id("atlantis", 1)
