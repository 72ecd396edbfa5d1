"""Unified exception hierarchy for passkey multi-chain accounts.

All errors inherit from MultiChainError, enabling:
- Consistent handling across the resolver, delegation and coordinator layers
- A clear split between fatal conditions (abort the whole action) and
  per-chain recoverable conditions (report for that chain, keep going)
- Structured results with machine-readable error codes

Usage:
    from passkey_multichain.exceptions import (
        MultiChainError,
        AddressDivergenceError,
        SubmissionRejectedError,
    )

    try:
        accounts = await resolver.resolve_all(endpoint_sets, authorities)
    except AddressDivergenceError as e:
        logger.error(e.to_dict())
        raise

All exceptions have:
- error_code: Machine-readable error code (e.g., "ADDRESS_DIVERGENCE")
- fatal: True when the whole multi-chain action must be aborted
- retryable: True when the same step may be attempted again
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a result/report format
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


class MultiChainError(Exception):
    """Base exception for all multi-chain account errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "MULTICHAIN_ERROR"
    fatal: bool = False
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a report entry."""
        result = {
            "error": self.error_code,
            "message": self.message,
            "fatal": self.fatal,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


class ChainScopedError(MultiChainError):
    """Base for errors that belong to one chain's outcome."""

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain_id is not None:
            details["chain_id"] = chain_id
        self.chain_id = chain_id
        super().__init__(message, details=details)


# =============================================================================
# Configuration & Identity
# =============================================================================

class ConfigurationError(MultiChainError):
    """Invalid or incomplete configuration."""

    error_code = "CONFIGURATION_ERROR"
    fatal = True


class CredentialError(MultiChainError):
    """Passkey ceremony failed or the passkey server could not be reached."""

    error_code = "CREDENTIAL_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        username: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if username:
            details["username"] = username
        super().__init__(message, details=details)


class CredentialCancelledError(CredentialError):
    """The user dismissed or cancelled the passkey prompt."""

    error_code = "CREDENTIAL_CANCELLED"


class SignerError(MultiChainError):
    """A signer could not produce a signature."""

    error_code = "SIGNER_ERROR"
    fatal = True


class ValidatorBindingError(ChainScopedError):
    """Validator could not be bound to a chain (bad pinning or unreachable credential)."""

    error_code = "VALIDATOR_BINDING_ERROR"
    fatal = True


# =============================================================================
# Account & Delegation
# =============================================================================

class AddressDivergenceError(MultiChainError):
    """Accounts resolved for the same authority differ across chains."""

    error_code = "ADDRESS_DIVERGENCE"
    fatal = True

    def __init__(
        self,
        addresses: Mapping[int, str],
        message: Optional[str] = None,
    ) -> None:
        self.addresses = dict(addresses)
        rendered = ", ".join(f"{chain_id}={addr}" for chain_id, addr in self.addresses.items())
        super().__init__(
            message or f"Smart account addresses do not match across chains: {rendered}",
            details={"addresses": {str(k): v for k, v in self.addresses.items()}},
        )


class ApprovalConsumptionError(ChainScopedError):
    """A capability approval is malformed, reused, or bound to another signer."""

    error_code = "APPROVAL_CONSUMPTION_ERROR"
    fatal = True


class DelegationStateError(ChainScopedError):
    """Delegation step requested out of order."""

    error_code = "DELEGATION_STATE_ERROR"
    fatal = True


# =============================================================================
# Operation Lifecycle (per chain)
# =============================================================================

class SponsorshipDeniedError(ChainScopedError):
    """Paymaster refused to sponsor the operation."""

    error_code = "SPONSORSHIP_DENIED"
    retryable = True


class SubmissionRejectedError(ChainScopedError):
    """Bundler rejected the signed operation."""

    error_code = "SUBMISSION_REJECTED"
    retryable = True

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        rpc_error: Optional[Any] = None,
        nonce_conflict: bool = False,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if rpc_error is not None:
            details["rpc_error"] = rpc_error
        details["nonce_conflict"] = nonce_conflict
        self.nonce_conflict = nonce_conflict
        super().__init__(message, chain_id=chain_id, details=details)


class OperationRevertedError(ChainScopedError):
    """Operation was included but its execution failed."""

    error_code = "OPERATION_REVERTED"

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        user_op_hash: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if user_op_hash:
            details["user_op_hash"] = user_op_hash
        if reason:
            details["reason"] = reason
        super().__init__(message, chain_id=chain_id, details=details)


class ReceiptTimeoutError(ChainScopedError):
    """No receipt within the wait window. The operation may still land."""

    error_code = "RECEIPT_TIMEOUT"
    retryable = True

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        user_op_hash: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if user_op_hash:
            details["user_op_hash"] = user_op_hash
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        self.user_op_hash = user_op_hash
        super().__init__(message, chain_id=chain_id, details=details)


class IncompleteMultiChainSignatureError(MultiChainError):
    """Joint signing was attempted with a partial set of chains."""

    error_code = "INCOMPLETE_MULTICHAIN_SIGNATURE"
    fatal = True

    def __init__(
        self,
        expected: list[int],
        present: list[int],
    ) -> None:
        self.expected = list(expected)
        self.present = list(present)
        missing = [c for c in self.expected if c not in self.present]
        super().__init__(
            f"Joint signature requires operations for all chains {self.expected}; missing {missing}",
            details={"expected": self.expected, "present": self.present, "missing": missing},
        )


class OperationSealedError(ChainScopedError):
    """A signed operation cannot be modified."""

    error_code = "OPERATION_SEALED"
    fatal = True


def exception_from_rpc_error(
    error: Any,
    chain_id: Optional[int] = None,
    method: str = "",
) -> SubmissionRejectedError:
    """Map a bundler JSON-RPC error object to a SubmissionRejectedError."""
    if isinstance(error, dict):
        code = error.get("code")
        text = str(error.get("message", ""))
    else:
        code = None
        text = str(error)

    lowered = text.lower()
    # AA25 is the EntryPoint's invalid-nonce revert code.
    nonce_conflict = "aa25" in lowered or "nonce" in lowered
    logger.debug("Bundler %s error on chain %s: code=%s message=%s", method, chain_id, code, text)
    return SubmissionRejectedError(
        f"Bundler rejected {method or 'request'}: {text or error}",
        chain_id=chain_id,
        rpc_error=error,
        nonce_conflict=nonce_conflict,
    )
