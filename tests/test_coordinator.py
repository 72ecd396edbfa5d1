"""Tests for the multi-chain operation coordinator."""
import asyncio
import json
from pathlib import Path

import httpx
import pytest

from conftest import CHAIN_A_ID, CHAIN_B, CHAIN_B_ID, NOOP_CALL, PAYMASTER, TX_HASH, FakePaymaster

from passkey_multichain.accounts import AuthorityRecord, KernelAccountResolver, encode_nonce_key
from passkey_multichain.coordinator import (
    ActionOutcome,
    ChainStatus,
    MultiChainCoordinator,
    SubmissionResult,
    aggregate_outcome,
)
from passkey_multichain.erc4337.bundler_client import BundlerClient, BundlerConfig
from passkey_multichain.erc4337.entrypoint import EntryPointVersion
from passkey_multichain.exceptions import (
    AddressDivergenceError,
    CredentialCancelledError,
    OperationRevertedError,
    ReceiptTimeoutError,
    SponsorshipDeniedError,
    SubmissionRejectedError,
    exception_from_rpc_error,
)
from passkey_multichain.kernel_constants import VALIDATION_MODE_ENABLE, VALIDATION_TYPE_PERMISSION
from passkey_multichain.ledger_client import RPCError
from passkey_multichain.signing import SigningMode
from passkey_multichain.validators import to_multi_chain_webauthn_validator

BOTH = [[NOOP_CALL], [NOOP_CALL]]


def nonce_rejection(chain_id: int) -> SubmissionRejectedError:
    return exception_from_rpc_error(
        {"code": -32500, "message": "AA25 invalid account nonce"},
        chain_id=chain_id,
        method="eth_sendUserOperation",
    )


def bundler(account):
    return account.endpoints.bundler


class TestJointSubmission:
    """Passkey sudo accounts: one assertion, every chain submitted."""

    async def test_all_chains_succeed(self, passkey_accounts):
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.SUCCEEDED
        assert result.succeeded
        assert result.error is None
        assert result.signed_set.mode == SigningMode.JOINT
        for account in passkey_accounts:
            chain_result = result.result_for(account.chain_id)
            assert chain_result.status == ChainStatus.SUCCEEDED
            assert chain_result.tx_hash == TX_HASH
            assert chain_result.explorer_url.endswith(TX_HASH)
            assert len(bundler(account).sent) == 1

    async def test_same_root_on_every_chain(self, passkey_accounts):
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)
        signatures = [bundler(a).sent[0].signature for a in passkey_accounts]
        root = result.signed_set.merkle_root
        assert all(sig[2:66] == root[2:] for sig in signatures)

    async def test_undeployed_operations_carry_factory(self, passkey_accounts):
        await MultiChainCoordinator().submit(passkey_accounts, BOTH)
        for account in passkey_accounts:
            sent = bundler(account).sent[0]
            assert sent.factory == account.factory
            assert sent.factory_data == account.factory_data

    async def test_deployed_operation_has_no_factory(self, endpoint_sets, webauthn_validators):
        for endpoints in endpoint_sets:
            endpoints.ledger.deployed = True
        accounts = await KernelAccountResolver().resolve_all(
            endpoint_sets, [AuthorityRecord(sudo=v) for v in webauthn_validators],
        )
        await MultiChainCoordinator().submit(accounts, BOTH)
        assert bundler(accounts[0]).sent[0].factory == ""

    async def test_cancelled_passkey_aborts(self, authenticator, passkey_accounts):
        authenticator.cancel_next = True
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.ABORTED
        assert isinstance(result.error, CredentialCancelledError)
        assert all(r.status == ChainStatus.NOT_SUBMITTED for r in result.results)
        assert not any(bundler(a).sent for a in passkey_accounts)

    async def test_build_failure_blocks_every_chain(self, passkey_accounts):
        passkey_accounts[1].endpoints.ledger.error = RPCError("header not found")
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.ABORTED
        assert result.result_for(CHAIN_B_ID).status == ChainStatus.FAILED
        assert isinstance(result.result_for(CHAIN_B_ID).error, SubmissionRejectedError)
        assert result.result_for(CHAIN_A_ID).status == ChainStatus.NOT_SUBMITTED
        assert bundler(passkey_accounts[0]).sent == []

    async def test_address_divergence_aborts(self, endpoint_sets, identity, passkey_signer, webauthn_validators):
        v06 = await to_multi_chain_webauthn_validator(
            endpoint_sets[1], identity, passkey_signer, entry_point_version=EntryPointVersion.V06,
        )
        resolver = KernelAccountResolver()
        accounts = [
            await resolver.resolve(endpoint_sets[0], AuthorityRecord(sudo=webauthn_validators[0])),
            await resolver.resolve(endpoint_sets[1], AuthorityRecord(sudo=v06)),
        ]
        assert accounts[0].address != accounts[1].address

        result = await MultiChainCoordinator().submit(accounts, BOTH)
        assert result.outcome == ActionOutcome.ABORTED
        assert isinstance(result.error, AddressDivergenceError)
        assert not any(e.bundler.sent for e in endpoint_sets)

    async def test_payload_count_must_match(self, passkey_accounts):
        with pytest.raises(ValueError):
            await MultiChainCoordinator().submit(passkey_accounts, [[NOOP_CALL]])


class TestIndependentSubmission:
    """Session key accounts: each chain signed and submitted on its own."""

    async def test_delegated_first_use_enables(self, delegated_accounts):
        result = await MultiChainCoordinator().submit(delegated_accounts, BOTH)

        assert result.outcome == ActionOutcome.SUCCEEDED
        assert result.signed_set.mode == SigningMode.INDEPENDENT
        for account in delegated_accounts:
            permission_id = account.authority.delegated.permission.permission_id
            enable_key = encode_nonce_key(VALIDATION_MODE_ENABLE, VALIDATION_TYPE_PERMISSION, permission_id)
            assert bundler(account).sent[0].nonce == enable_key << 64

    async def test_build_failure_is_per_chain(self, delegated_accounts):
        delegated_accounts[0].endpoints.ledger.error = RPCError("header not found")
        result = await MultiChainCoordinator().submit(delegated_accounts, BOTH)

        assert result.outcome == ActionOutcome.PARTIAL
        assert result.result_for(CHAIN_A_ID).status == ChainStatus.FAILED
        assert result.result_for(CHAIN_B_ID).status == ChainStatus.SUCCEEDED


class TestPerChainOutcomes:
    """One chain's failure never rolls back another."""

    async def test_nonce_race_on_one_chain(self, passkey_accounts):
        bundler(passkey_accounts[1]).reject = nonce_rejection(CHAIN_B_ID)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.PARTIAL
        assert result.result_for(CHAIN_A_ID).status == ChainStatus.SUCCEEDED
        failed = result.result_for(CHAIN_B_ID)
        assert failed.status == ChainStatus.FAILED
        assert failed.error.nonce_conflict
        assert not failed.submitted

    async def test_stale_nonce_does_not_block_other_chain(self, passkey_accounts):
        bundler(passkey_accounts[0]).reject = nonce_rejection(CHAIN_A_ID)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.result_for(CHAIN_A_ID).status == ChainStatus.FAILED
        assert result.result_for(CHAIN_B_ID).status == ChainStatus.SUCCEEDED
        assert len(bundler(passkey_accounts[1]).sent) == 1

    async def test_all_rejected_is_failed(self, passkey_accounts):
        for account in passkey_accounts:
            bundler(account).reject = nonce_rejection(account.chain_id)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.FAILED
        assert result.error is None
        assert all(r.attempted and not r.submitted for r in result.results)

    async def test_receipt_timeout_is_pending(self, passkey_accounts):
        bundler(passkey_accounts[1]).receipt_error = ReceiptTimeoutError("no receipt", chain_id=CHAIN_B_ID)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.PARTIAL
        pending = result.result_for(CHAIN_B_ID)
        assert pending.status == ChainStatus.PENDING
        assert pending.submitted
        assert pending.tx_hash is None

    async def test_every_receipt_times_out(self, passkey_accounts):
        for account in passkey_accounts:
            bundler(account).receipt_error = ReceiptTimeoutError("no receipt", chain_id=account.chain_id)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)
        assert result.outcome == ActionOutcome.PENDING

    async def test_revert_is_failed(self, passkey_accounts):
        bundler(passkey_accounts[0]).success = False
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        reverted = result.result_for(CHAIN_A_ID)
        assert reverted.status == ChainStatus.FAILED
        assert isinstance(reverted.error, OperationRevertedError)
        assert reverted.tx_hash == TX_HASH
        assert result.outcome == ActionOutcome.PARTIAL

    async def test_every_chain_reverts(self, passkey_accounts):
        for account in passkey_accounts:
            bundler(account).success = False
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)
        assert result.outcome == ActionOutcome.FAILED

    async def test_receipt_timeout_override(self, passkey_accounts):
        bundler(passkey_accounts[0]).receipt_error = ReceiptTimeoutError("no receipt", chain_id=CHAIN_A_ID)
        result = await MultiChainCoordinator().submit(
            passkey_accounts, BOTH, receipt_timeouts={CHAIN_A_ID: 0.5},
        )
        assert result.result_for(CHAIN_A_ID).status == ChainStatus.PENDING
        assert bundler(passkey_accounts[0]).receipt_timeouts == [0.5]
        assert bundler(passkey_accounts[1]).receipt_timeouts == [5.0]

    async def test_cancel_receipt_wait(self, passkey_accounts):
        held = bundler(passkey_accounts[1])
        held.hold_receipt = True
        coordinator = MultiChainCoordinator()

        task = asyncio.create_task(coordinator.submit(passkey_accounts, BOTH))
        await asyncio.wait_for(held.receipt_requested.wait(), timeout=5)
        assert coordinator.cancel_receipt_wait(CHAIN_B_ID)
        result = await asyncio.wait_for(task, timeout=5)

        assert result.result_for(CHAIN_B_ID).status == ChainStatus.PENDING
        assert isinstance(result.result_for(CHAIN_B_ID).error, ReceiptTimeoutError)
        assert result.outcome == ActionOutcome.PARTIAL
        assert not coordinator.cancel_receipt_wait(CHAIN_B_ID)

    async def test_cancel_targets_one_action(self, passkey_accounts):
        held = bundler(passkey_accounts[1])
        held.hold_receipt = True
        coordinator = MultiChainCoordinator()

        first = asyncio.create_task(coordinator.submit(passkey_accounts, BOTH, action_id="first"))
        second = asyncio.create_task(coordinator.submit(passkey_accounts, BOTH, action_id="second"))

        async def both_waiting():
            while len(held.receipt_timeouts) < 2:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(both_waiting(), timeout=5)
        assert coordinator.cancel_receipt_wait(CHAIN_B_ID, action_id="first")
        first_result = await asyncio.wait_for(first, timeout=5)
        assert first_result.result_for(CHAIN_B_ID).status == ChainStatus.PENDING
        assert not second.done()

        assert coordinator.cancel_receipt_wait(CHAIN_B_ID, action_id="second")
        second_result = await asyncio.wait_for(second, timeout=5)
        assert second_result.result_for(CHAIN_B_ID).status == ChainStatus.PENDING
        assert second_result.result_for(CHAIN_A_ID).status == ChainStatus.SUCCEEDED


class TestUnexpectedBundlerFailures:
    """A malformed bundler reply stays on its own chain."""

    async def test_html_reply_keeps_other_chain(self, passkey_accounts, httpx_mock):
        url = "https://bundler.test/optimism-sepolia"
        client = BundlerClient(
            BundlerConfig(url=url, chain_id=CHAIN_B_ID, chain=CHAIN_B, poll_seconds=0),
            client=httpx.AsyncClient(),
        )
        passkey_accounts[1].endpoints.bundler = client
        httpx_mock.add_response(
            url=url,
            method="POST",
            json={"jsonrpc": "2.0", "id": 1, "result": {
                "callGasLimit": "0x1d4c0", "verificationGasLimit": "0x927c0", "preVerificationGas": "0x11170",
            }},
        )
        httpx_mock.add_response(url=url, method="POST", status_code=200, text="<html>502 Bad Gateway</html>")

        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)
        await client.close()

        assert result.outcome == ActionOutcome.PARTIAL
        assert result.result_for(CHAIN_A_ID).status == ChainStatus.SUCCEEDED
        assert result.result_for(CHAIN_A_ID).user_op_hash is not None
        failed = result.result_for(CHAIN_B_ID)
        assert failed.status == ChainStatus.FAILED
        assert isinstance(failed.error, SubmissionRejectedError)

    async def test_unexpected_send_error_is_failed(self, passkey_accounts):
        bundler(passkey_accounts[1]).reject = AttributeError("'list' object has no attribute 'get'")
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.PARTIAL
        assert result.result_for(CHAIN_B_ID).status == ChainStatus.FAILED
        assert isinstance(result.result_for(CHAIN_B_ID).error, SubmissionRejectedError)

    async def test_unexpected_receipt_error_is_pending(self, passkey_accounts):
        bundler(passkey_accounts[1]).receipt_error = KeyError("receipt")
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        pending = result.result_for(CHAIN_B_ID)
        assert pending.status == ChainStatus.PENDING
        assert pending.submitted
        assert isinstance(pending.error, ReceiptTimeoutError)

    async def test_unexpected_build_error_is_per_chain(self, delegated_accounts):
        delegated_accounts[0].endpoints.ledger.error = TypeError("unexpected fee payload")
        result = await MultiChainCoordinator().submit(delegated_accounts, BOTH)

        assert result.outcome == ActionOutcome.PARTIAL
        assert result.result_for(CHAIN_A_ID).status == ChainStatus.FAILED
        assert isinstance(result.result_for(CHAIN_A_ID).error, SubmissionRejectedError)


class TestSponsorship:
    async def test_sponsored_gas_skips_estimation(self, passkey_accounts):
        for account in passkey_accounts:
            account.endpoints.paymaster = FakePaymaster(account.chain_id)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.succeeded
        for account in passkey_accounts:
            sent = bundler(account).sent[0]
            assert sent.paymaster == PAYMASTER
            assert sent.call_gas_limit == 200_000
            assert bundler(account).estimates == 0

    async def test_sponsorship_without_gas_estimates(self, passkey_accounts):
        for account in passkey_accounts:
            account.endpoints.paymaster = FakePaymaster(account.chain_id, with_gas=False)
        await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        for account in passkey_accounts:
            assert bundler(account).estimates == 1
            assert bundler(account).sent[0].call_gas_limit == 120_000

    async def test_denied_sponsorship(self, passkey_accounts):
        passkey_accounts[0].endpoints.paymaster = FakePaymaster(CHAIN_A_ID, deny=True)
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)

        assert result.outcome == ActionOutcome.ABORTED
        assert isinstance(result.result_for(CHAIN_A_ID).error, SponsorshipDeniedError)
        assert not any(bundler(a).sent for a in passkey_accounts)


class TestArtifacts:
    async def test_artifact_written(self, passkey_accounts, tmp_path):
        coordinator = MultiChainCoordinator(artifact_dir=str(tmp_path))
        result = await coordinator.submit(passkey_accounts, BOTH, action_id="action-1")

        record = json.loads(Path(result.artifact.path).read_text())
        assert record["action_id"] == "action-1"
        assert record["outcome"] == "succeeded"
        assert record["signing_mode"] == "joint"
        assert len(record["operations"]) == 2
        assert record["sha256"] == result.artifact.sha256

    async def test_no_artifact_by_default(self, passkey_accounts):
        result = await MultiChainCoordinator().submit(passkey_accounts, BOTH)
        assert result.artifact is None

    async def test_unwritable_artifact_dir_keeps_results(self, passkey_accounts, tmp_path, caplog):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        coordinator = MultiChainCoordinator(artifact_dir=str(blocker))

        result = await coordinator.submit(passkey_accounts, BOTH, action_id="action-2")

        assert result.outcome == ActionOutcome.SUCCEEDED
        assert result.artifact is None
        assert all(r.user_op_hash for r in result.results)
        assert "Failed to write artifact for action action-2" in caplog.text


@pytest.mark.parametrize(
    "statuses,submitted,attempted,expected",
    [
        ([ChainStatus.SUCCEEDED, ChainStatus.SUCCEEDED], True, True, ActionOutcome.SUCCEEDED),
        ([ChainStatus.SUCCEEDED, ChainStatus.FAILED], True, True, ActionOutcome.PARTIAL),
        ([ChainStatus.SUCCEEDED, ChainStatus.PENDING], True, True, ActionOutcome.PARTIAL),
        ([ChainStatus.PENDING, ChainStatus.FAILED], True, True, ActionOutcome.PENDING),
        ([ChainStatus.FAILED, ChainStatus.FAILED], True, True, ActionOutcome.FAILED),
        ([ChainStatus.FAILED, ChainStatus.FAILED], False, True, ActionOutcome.FAILED),
        ([ChainStatus.FAILED, ChainStatus.NOT_SUBMITTED], False, False, ActionOutcome.ABORTED),
    ],
)
def test_aggregate_outcome(statuses, submitted, attempted, expected):
    results = [
        SubmissionResult(
            chain_id=i,
            chain=f"chain-{i}",
            status=status,
            user_op_hash="0x01" if submitted else None,
            attempted=attempted,
        )
        for i, status in enumerate(statuses)
    ]
    assert aggregate_outcome(results) == expected
