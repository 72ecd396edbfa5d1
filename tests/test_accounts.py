"""Tests for Kernel account resolution and call encoding."""
from dataclasses import replace

import pytest
from web3 import Web3

from conftest import CHAIN_A_ID, CHAIN_B_ID, NOOP_CALL

from passkey_multichain.accounts import (
    KERNEL_V2_EXECUTE,
    KERNEL_V2_EXECUTE_BATCH,
    KERNEL_V3_CREATE_ACCOUNT,
    KERNEL_V3_EXECUTE,
    AuthorityRecord,
    Call,
    KernelAccountResolver,
    assert_same_address,
    compute_account_address,
    encode_calls,
    encode_nonce_key,
)
from passkey_multichain.erc4337.entrypoint import EntryPointVersion, get_entrypoint
from passkey_multichain.exceptions import AddressDivergenceError, ValidatorBindingError
from passkey_multichain.kernel_constants import (
    ECDSA_VALIDATOR_ADDRESSES,
    EXEC_MODE_BATCH,
    VALIDATION_MODE_ENABLE,
    VALIDATION_TYPE_PERMISSION,
    AccountVersion,
    ValidatorKind,
)
from passkey_multichain.validators import to_multi_chain_webauthn_validator

RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class TestResolver:
    """Tests for cross-chain account resolution."""

    async def test_same_address_on_every_chain(self, passkey_accounts):
        a, b = passkey_accounts
        assert a.address == b.address
        assert (a.chain_id, b.chain_id) == (CHAIN_A_ID, CHAIN_B_ID)
        assert a.address == Web3.to_checksum_address(a.address)

    async def test_undeployed_account_carries_factory(self, passkey_accounts):
        account = passkey_accounts[0]
        assert not account.deployed
        assert account.factory
        assert account.factory_data.startswith("0x" + KERNEL_V3_CREATE_ACCOUNT.hex())
        assert account.entry_point == get_entrypoint(EntryPointVersion.V07)

    async def test_address_is_chain_independent(self, webauthn_validators):
        a, b = webauthn_validators
        assert compute_account_address(a) == compute_account_address(b)

    @pytest.mark.parametrize(
        "changes",
        [
            {"validator_address": "0x" + "b2" * 20},
            {"enable_data": b"\x01" * 64},
            {"kind": ValidatorKind.ECDSA, "validator_address": ECDSA_VALIDATOR_ADDRESSES[EntryPointVersion.V07]},
            {"account_version": AccountVersion.V0_3_0},
        ],
    )
    async def test_address_follows_address_material(self, webauthn_validators, changes):
        validator = webauthn_validators[0]
        changed = replace(validator, **changes)
        assert changed.address_material() != validator.address_material()
        assert compute_account_address(changed)[0] != compute_account_address(validator)[0]

    async def test_chain_id_is_not_address_material(self, webauthn_validators):
        validator = webauthn_validators[0]
        moved = replace(validator, chain_id=1)
        assert moved.address_material() == validator.address_material()
        assert compute_account_address(moved) == compute_account_address(validator)

    async def test_index_changes_address(self, webauthn_validators):
        validator = webauthn_validators[0]
        assert compute_account_address(validator, 0)[0] != compute_account_address(validator, 1)[0]

    async def test_reads_deployment_state(self, endpoint_sets, webauthn_validators):
        endpoint_sets[0].ledger.deployed = True
        account = await KernelAccountResolver().resolve(endpoint_sets[0], AuthorityRecord(sudo=webauthn_validators[0]))
        assert account.deployed

    async def test_entry_point_mismatch_diverges(self, endpoint_sets, identity, webauthn_validators):
        v06 = await to_multi_chain_webauthn_validator(
            endpoint_sets[1], identity, entry_point_version=EntryPointVersion.V06,
        )
        with pytest.raises(AddressDivergenceError) as exc_info:
            await KernelAccountResolver().resolve_all(
                endpoint_sets,
                [AuthorityRecord(sudo=webauthn_validators[0]), AuthorityRecord(sudo=v06)],
            )
        assert set(exc_info.value.addresses) == {CHAIN_A_ID, CHAIN_B_ID}

    async def test_validator_bound_to_other_chain(self, endpoint_sets, webauthn_validators):
        with pytest.raises(ValidatorBindingError):
            await KernelAccountResolver().resolve(endpoint_sets[1], AuthorityRecord(sudo=webauthn_validators[0]))

    async def test_authorities_must_match_chains(self, endpoint_sets, webauthn_validators):
        with pytest.raises(ValueError):
            await KernelAccountResolver().resolve_all(endpoint_sets, [AuthorityRecord(sudo=webauthn_validators[0])])

    async def test_assert_same_address_ignores_case(self, passkey_accounts):
        a, b = passkey_accounts
        b.address = b.address.lower()
        assert assert_same_address([a, b]) == a.address


class TestNoncePlan:
    async def test_root_nonce(self, passkey_accounts):
        assert await passkey_accounts[0].nonce_plan() == (0, False)

    async def test_delegated_first_use_enables(self, delegated_accounts):
        account = delegated_accounts[0]
        permission_id = account.authority.delegated.permission.permission_id
        enable_key = encode_nonce_key(VALIDATION_MODE_ENABLE, VALIDATION_TYPE_PERMISSION, permission_id)

        nonce, enable_mode = await account.nonce_plan()
        assert enable_mode
        assert nonce == enable_key << 64

    async def test_delegated_after_install(self, delegated_accounts):
        account = delegated_accounts[0]
        permission_id = account.authority.delegated.permission.permission_id
        enable_key = encode_nonce_key(VALIDATION_MODE_ENABLE, VALIDATION_TYPE_PERMISSION, permission_id)
        account.endpoints.ledger.sequences[enable_key] = 1

        nonce, enable_mode = await account.nonce_plan()
        assert not enable_mode
        assert nonce >> 64 != enable_key


class TestEncoding:
    def test_nonce_key_layout(self):
        key = encode_nonce_key(1, 2, b"\x12\x34\x56\x78", key=3)
        packed = key.to_bytes(24, "big")
        assert packed[0] == 1
        assert packed[1] == 2
        assert packed[2:6] == b"\x12\x34\x56\x78"
        assert packed[6:22] == b"\x00" * 16
        assert packed[22:] == b"\x00\x03"

    def test_nonce_key_identifier_too_long(self):
        with pytest.raises(ValueError):
            encode_nonce_key(0, 0, b"\x01" * 21)

    def test_v3_single_call(self):
        data = encode_calls(AccountVersion.V0_3_1, [Call(to=RECIPIENT, value=5, data="0xabcd")])
        raw = bytes.fromhex(data[2:])
        assert raw[:4] == KERNEL_V3_EXECUTE
        assert raw[4:36] == b"\x00" * 32
        # execution calldata is packed: to(20) | value(32) | data
        assert bytes.fromhex(RECIPIENT[2:]) + (5).to_bytes(32, "big") + b"\xab\xcd" in raw

    def test_v3_batch(self):
        data = encode_calls(AccountVersion.V0_3_1, [NOOP_CALL, Call(to=RECIPIENT, value=1)])
        raw = bytes.fromhex(data[2:])
        assert raw[:4] == KERNEL_V3_EXECUTE
        assert raw[4:36] == EXEC_MODE_BATCH

    def test_v2_single_and_batch(self):
        single = encode_calls(AccountVersion.V0_2_4, [NOOP_CALL])
        batch = encode_calls(AccountVersion.V0_2_4, [NOOP_CALL, NOOP_CALL])
        assert single.startswith("0x" + KERNEL_V2_EXECUTE.hex())
        assert batch.startswith("0x" + KERNEL_V2_EXECUTE_BATCH.hex())

    def test_no_calls(self):
        with pytest.raises(ValueError):
            encode_calls(AccountVersion.V0_3_1, [])
