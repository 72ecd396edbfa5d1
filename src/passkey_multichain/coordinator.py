"""
Multi-chain operation coordinator.

One logical action becomes one user operation per chain:

    build (concurrent) -> barrier -> sign -> submit + await receipt (concurrent)

The chains never commit atomically. Joint signing guarantees the
operations were authorized together; each chain then lands, fails or stays
pending on its own, and the result reports every chain separately.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Union

import httpx

from .accounts import Call, SmartAccount, assert_same_address
from .endpoints import ChainEndpoints
from .erc4337.artifact import SubmissionArtifact, write_submission_artifact
from .erc4337.user_operation import UserOperation
from .exceptions import (
    AddressDivergenceError,
    MultiChainError,
    OperationRevertedError,
    ReceiptTimeoutError,
    SignerError,
    SubmissionRejectedError,
)
from .ledger_client import RPCError
from .logging_utils import OperationType, get_operation_logger
from .retry import RPC_RETRY_CONFIG, RetryExhausted, retry_async
from .signers import Signer
from .signing import (
    PendingOperation,
    SignedOperation,
    SignedOperationSet,
    SigningMode,
    dummy_signature,
    select_signing_mode,
    sign_independently,
    sign_jointly,
)

logger = logging.getLogger(__name__)

CallPayload = Union[Call, Sequence[Call]]


class ChainStatus(str, Enum):
    """Outcome of one chain's operation."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    NOT_SUBMITTED = "not_submitted"


class ActionOutcome(str, Enum):
    """Outcome of the whole logical action."""
    SUCCEEDED = "succeeded"   # every chain succeeded
    PARTIAL = "partial"       # some chains succeeded, others failed or are pending
    PENDING = "pending"       # nothing failed outright, at least one chain unresolved
    FAILED = "failed"         # sent to a bundler, nothing succeeded
    ABORTED = "aborted"       # nothing was sent to any bundler


@dataclass
class SubmissionResult:
    chain_id: int
    chain: str
    status: ChainStatus
    user_op_hash: Optional[str] = None
    tx_hash: Optional[str] = None
    receipt: Optional[dict[str, Any]] = None
    error: Optional[MultiChainError] = None
    explorer_url: Optional[str] = None
    attempted: bool = False  # sent to the bundler, whether or not it was accepted

    @property
    def submitted(self) -> bool:
        return self.user_op_hash is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "chain": self.chain,
            "status": self.status.value,
            "attempted": self.attempted,
            "user_op_hash": self.user_op_hash,
            "tx_hash": self.tx_hash,
            "explorer_url": self.explorer_url,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ActionResult:
    action_id: str
    outcome: ActionOutcome
    results: list[SubmissionResult]
    signed_set: Optional[SignedOperationSet] = None
    error: Optional[MultiChainError] = None
    artifact: Optional[SubmissionArtifact] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == ActionOutcome.SUCCEEDED

    def result_for(self, chain_id: int) -> SubmissionResult:
        for result in self.results:
            if result.chain_id == chain_id:
                return result
        raise KeyError(chain_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "outcome": self.outcome.value,
            "signing_mode": self.signed_set.mode.value if self.signed_set else None,
            "results": [r.to_dict() for r in self.results],
            "error": self.error.to_dict() if self.error else None,
        }


def aggregate_outcome(results: Sequence[SubmissionResult]) -> ActionOutcome:
    statuses = [r.status for r in results]
    if statuses and all(s == ChainStatus.SUCCEEDED for s in statuses):
        return ActionOutcome.SUCCEEDED
    if ChainStatus.SUCCEEDED in statuses:
        return ActionOutcome.PARTIAL
    if ChainStatus.PENDING in statuses:
        return ActionOutcome.PENDING
    if any(r.attempted or r.submitted for r in results):
        return ActionOutcome.FAILED
    return ActionOutcome.ABORTED


def _normalize_calls(payload: CallPayload) -> list[Call]:
    if isinstance(payload, Call):
        return [payload]
    return list(payload)


def _require_endpoints(account: SmartAccount) -> ChainEndpoints:
    if account.endpoints is None:
        raise SubmissionRejectedError("Account has no endpoints bound", chain_id=account.chain_id)
    return account.endpoints


class MultiChainCoordinator:
    """Builds, signs and submits one operation per chain for a logical action."""

    def __init__(
        self,
        artifact_dir: str = "",
        sudo_signer: Optional[Signer] = None,
        receipt_poll_seconds: Optional[float] = None,
    ):
        self._artifact_dir = artifact_dir
        self._sudo_signer = sudo_signer
        self._receipt_poll_seconds = receipt_poll_seconds
        self._receipt_waits: dict[tuple[str, int], asyncio.Future] = {}

    def cancel_receipt_wait(self, chain_id: int, action_id: Optional[str] = None) -> bool:
        """Stop waiting on one chain's receipt; that chain reports PENDING.

        Without ``action_id`` every in-flight action's wait on the chain is cancelled.
        """
        cancelled = False
        for (wait_action, wait_chain), wait in list(self._receipt_waits.items()):
            if wait_chain != chain_id or (action_id is not None and wait_action != action_id):
                continue
            if not wait.done():
                cancelled = wait.cancel() or cancelled
        return cancelled

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build_operation(
        self,
        account: SmartAccount,
        calls: Sequence[Call],
        chain_count: int = 1,
    ) -> PendingOperation:
        """Nonce, call data, fees, then sponsorship (or bundler gas estimation)."""
        endpoints = _require_endpoints(account)
        op_logger = get_operation_logger()

        async with op_logger.operation_context(OperationType.OPERATION_BUILD, endpoints.name) as ctx:
            try:
                nonce, enable_mode = await retry_async(account.nonce_plan, config=RPC_RETRY_CONFIG)
                max_fee, priority_fee = await retry_async(endpoints.ledger.get_fee_data, config=RPC_RETRY_CONFIG)
            except RetryExhausted as e:
                raise SubmissionRejectedError(
                    f"Ledger reads failed on {endpoints.name}: {e.original_exception}", chain_id=account.chain_id,
                ) from e
            except (httpx.HTTPError, RPCError) as e:
                raise SubmissionRejectedError(
                    f"Ledger reads failed on {endpoints.name}: {e}", chain_id=account.chain_id,
                ) from e

            user_op = UserOperation(
                sender=account.address,
                nonce=nonce,
                call_data=account.encode_calls(calls),
                max_fee_per_gas=max_fee,
                max_priority_fee_per_gas=priority_fee,
                signature=dummy_signature(account, enable_mode, chain_count),
            )
            if not account.deployed:
                user_op = user_op.copy(factory=account.factory, factory_data=account.factory_data)
            pending = PendingOperation(account, calls, user_op, enable_mode=enable_mode)
            ctx.metadata.update({"nonce": nonce, "enable_mode": enable_mode, "deployed": account.deployed})

        if endpoints.paymaster is not None:
            async with op_logger.operation_context(OperationType.SPONSORSHIP, endpoints.name):
                sponsorship = await endpoints.paymaster.sponsor_user_operation(pending.user_op, account.entry_point)
                pending.apply_sponsorship(sponsorship)
            if sponsorship.call_gas_limit is not None:
                return pending

        try:
            gas = await endpoints.bundler.estimate_user_operation_gas(pending.user_op, account.entry_point)
        except httpx.HTTPError as e:
            raise SubmissionRejectedError(
                f"Gas estimation failed on {endpoints.name}: {e}", chain_id=account.chain_id,
            ) from e
        pending.update(
            call_gas_limit=gas.get("callGasLimit", 0),
            verification_gas_limit=gas.get("verificationGasLimit", 0),
            pre_verification_gas=gas.get("preVerificationGas", 0),
        )
        if pending.sponsorship is not None:
            pending.update(
                paymaster_verification_gas_limit=gas.get(
                    "paymasterVerificationGasLimit", pending.user_op.paymaster_verification_gas_limit,
                ),
                paymaster_post_op_gas_limit=gas.get(
                    "paymasterPostOpGasLimit", pending.user_op.paymaster_post_op_gas_limit,
                ),
            )
        return pending

    async def _build_safely(
        self,
        account: SmartAccount,
        calls: Sequence[Call],
        chain_count: int,
    ) -> Union[PendingOperation, MultiChainError]:
        try:
            return await self.build_operation(account, calls, chain_count)
        except MultiChainError as e:
            logger.warning("Build failed on chain %s: %s", account.chain_id, e.message)
            return e
        except Exception as e:
            logger.exception("Unexpected build failure on chain %s", account.chain_id)
            return SubmissionRejectedError(f"Build failed: {e!r}", chain_id=account.chain_id)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def _submit_and_wait(
        self,
        action_id: str,
        entry: SignedOperation,
        timeout_seconds: Optional[float],
    ) -> SubmissionResult:
        op = entry.operation
        account = op.account
        endpoints = _require_endpoints(account)
        spec = endpoints.chain
        op_logger = get_operation_logger()
        result = SubmissionResult(
            chain_id=op.chain_id, chain=spec.name, status=ChainStatus.NOT_SUBMITTED, attempted=True,
        )

        try:
            async with op_logger.operation_context(OperationType.SUBMISSION, spec.name):
                user_op_hash = await endpoints.bundler.send_user_operation(op.user_op, account.entry_point)
        except SubmissionRejectedError as e:
            result.status, result.error = ChainStatus.FAILED, e
            return result
        except httpx.HTTPError as e:
            result.status = ChainStatus.FAILED
            result.error = SubmissionRejectedError(f"Bundler unreachable: {e}", chain_id=op.chain_id)
            return result
        except Exception as e:
            logger.exception("Unexpected submission failure on chain %s", op.chain_id)
            result.status = ChainStatus.FAILED
            result.error = SubmissionRejectedError(f"Submission failed: {e!r}", chain_id=op.chain_id)
            return result

        result.user_op_hash = user_op_hash
        result.explorer_url = spec.user_op_url(user_op_hash)
        op_logger.log_submission(spec.name, account.address, user_op_hash, op.nonce)

        timeout = timeout_seconds if timeout_seconds is not None else endpoints.receipt_timeout_seconds
        wait = asyncio.ensure_future(endpoints.bundler.wait_for_receipt(
            user_op_hash, timeout_seconds=timeout, poll_seconds=self._receipt_poll_seconds,
        ))
        wait_key = (action_id, op.chain_id)
        self._receipt_waits[wait_key] = wait
        try:
            async with op_logger.operation_context(OperationType.RECEIPT_WAIT, spec.name, timeout=timeout):
                receipt = await asyncio.shield(wait)
        except asyncio.CancelledError:
            if not wait.cancelled():
                wait.cancel()
                raise
            result.status = ChainStatus.PENDING
            result.error = ReceiptTimeoutError(
                "Receipt wait cancelled; the operation may still be included",
                chain_id=op.chain_id,
                user_op_hash=user_op_hash,
            )
        except ReceiptTimeoutError as e:
            result.status, result.error = ChainStatus.PENDING, e
        except (SubmissionRejectedError, httpx.HTTPError) as e:
            result.status = ChainStatus.PENDING
            result.error = ReceiptTimeoutError(
                f"Receipt polling failed: {e}", chain_id=op.chain_id, user_op_hash=user_op_hash,
            )
        except Exception as e:
            logger.exception("Unexpected receipt failure on chain %s", op.chain_id)
            result.status = ChainStatus.PENDING
            result.error = ReceiptTimeoutError(
                f"Receipt polling failed: {e!r}", chain_id=op.chain_id, user_op_hash=user_op_hash,
            )
        else:
            result.receipt = receipt
            result.tx_hash = (receipt.get("receipt") or {}).get("transactionHash")
            if receipt.get("success") in (False, "false"):
                result.status = ChainStatus.FAILED
                result.error = OperationRevertedError(
                    f"UserOperation reverted on {spec.name}",
                    chain_id=op.chain_id,
                    user_op_hash=user_op_hash,
                    reason=receipt.get("reason"),
                )
            else:
                result.status = ChainStatus.SUCCEEDED
                if result.tx_hash:
                    result.explorer_url = spec.tx_url(result.tx_hash)
        finally:
            self._receipt_waits.pop(wait_key, None)

        op_logger.log_receipt(spec.name, user_op_hash, result.status.value, result.tx_hash)
        return result

    # ------------------------------------------------------------------
    # Action
    # ------------------------------------------------------------------

    async def _finish(
        self,
        action_id: str,
        accounts: Sequence[SmartAccount],
        results: list[SubmissionResult],
        signed_set: Optional[SignedOperationSet] = None,
        error: Optional[MultiChainError] = None,
    ) -> ActionResult:
        outcome = ActionOutcome.ABORTED if error is not None else aggregate_outcome(results)
        action = ActionResult(action_id, outcome, results, signed_set=signed_set, error=error)
        if self._artifact_dir and accounts:
            try:
                action.artifact = await asyncio.to_thread(
                    write_submission_artifact,
                    base_dir=self._artifact_dir,
                    action_id=action_id,
                    account_address=accounts[0].address,
                    signing_mode=signed_set.mode.value if signed_set else "",
                    outcome=outcome.value,
                    operations=signed_set.to_dict()["operations"] if signed_set else [],
                    results=[r.to_dict() for r in results],
                )
            except OSError as e:
                # The per-chain results are still returned.
                logger.error("Failed to write artifact for action %s: %s", action_id, e)
        logger.info("Action %s finished: %s", action_id, outcome.value)
        return action

    async def submit(
        self,
        accounts: Sequence[SmartAccount],
        calls: Sequence[CallPayload],
        receipt_timeouts: Optional[Mapping[int, float]] = None,
        action_id: Optional[str] = None,
    ) -> ActionResult:
        """Run one logical action across every account's chain.

        Fatal conditions (address divergence, signing failure, a missing
        chain under joint signing) end the action as ABORTED before anything
        is submitted. Per-chain conditions are reported per chain.
        """
        if len(accounts) != len(calls):
            raise ValueError("One call payload is required per account")
        action_id = action_id or uuid.uuid4().hex
        receipt_timeouts = receipt_timeouts or {}

        def not_submitted() -> list[SubmissionResult]:
            return [
                SubmissionResult(chain_id=a.chain_id, chain=_require_endpoints(a).name, status=ChainStatus.NOT_SUBMITTED)
                for a in accounts
            ]

        try:
            assert_same_address(accounts)
        except AddressDivergenceError as e:
            return await self._finish(action_id, accounts, not_submitted(), error=e)

        mode = select_signing_mode(accounts)
        built = await asyncio.gather(*(
            self._build_safely(account, _normalize_calls(payload), len(accounts))
            for account, payload in zip(accounts, calls)
        ))

        results = {
            account.chain_id: SubmissionResult(
                chain_id=account.chain_id, chain=_require_endpoints(account).name, status=ChainStatus.NOT_SUBMITTED,
            )
            for account in accounts
        }
        ready: list[PendingOperation] = []
        for account, outcome in zip(accounts, built):
            if isinstance(outcome, MultiChainError):
                results[account.chain_id].status = ChainStatus.FAILED
                results[account.chain_id].error = outcome
            else:
                ready.append(outcome)

        try:
            if mode == SigningMode.JOINT:
                if len(ready) != len(accounts):
                    # The joint signature cannot cover a chain that failed to build
                    return await self._finish(action_id, accounts, list(results.values()))
                signer = self._sudo_signer or accounts[0].authority.sudo.signer
                if signer is None:
                    raise SignerError("No sudo signer available for joint signing")
                signed_set = await sign_jointly(ready, signer, [a.chain_id for a in accounts])
            elif ready:
                signed_set = await sign_independently(ready)
            else:
                return await self._finish(action_id, accounts, list(results.values()))
        except MultiChainError as e:
            logger.error("Signing aborted action %s: %s", action_id, e.message)
            return await self._finish(action_id, accounts, list(results.values()), error=e)

        submitted = await asyncio.gather(*(
            self._submit_and_wait(action_id, entry, receipt_timeouts.get(entry.chain_id))
            for entry in signed_set
        ))
        for result in submitted:
            results[result.chain_id] = result

        return await self._finish(action_id, accounts, list(results.values()), signed_set=signed_set)
