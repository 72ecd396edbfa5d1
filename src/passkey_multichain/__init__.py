"""
Passkey-controlled Kernel smart accounts spanning several EVM chains.

One passkey (optionally delegated to a session key) controls an account
that has the same address on every configured chain; one logical action
becomes one user operation per chain, authorized together.
"""

from .accounts import (
    AuthorityRecord,
    Call,
    DelegatedAuthority,
    KernelAccountResolver,
    SmartAccount,
    assert_same_address,
    encode_calls,
    encode_nonce_key,
)
from .config import ChainSettings, ChainSpec, MultiChainSettings, get_chain_spec, load_settings
from .coordinator import ActionOutcome, ActionResult, ChainStatus, MultiChainCoordinator, SubmissionResult
from .delegation import (
    ApprovalRegistry,
    CapabilityApproval,
    DelegationManager,
    DelegationState,
    deserialize_permission_account,
    serialize_multi_chain_permission_accounts,
)
from .endpoints import ChainEndpoints, build_endpoint_sets
from .erc4337 import EntryPointVersion, UserOperation
from .exceptions import (
    AddressDivergenceError,
    ApprovalConsumptionError,
    ConfigurationError,
    CredentialCancelledError,
    CredentialError,
    DelegationStateError,
    IncompleteMultiChainSignatureError,
    MultiChainError,
    OperationRevertedError,
    OperationSealedError,
    ReceiptTimeoutError,
    SignerError,
    SponsorshipDeniedError,
    SubmissionRejectedError,
    ValidatorBindingError,
)
from .identity import Identity, IdentityProvider, PasskeyServerClient, SessionKey
from .kernel_constants import AccountVersion, ValidatorKind
from .session import AccountsReady, MultiChainSession
from .signers import ECDSASigner, EmptySigner, WebAuthnSigner
from .signing import PendingOperation, SignedOperationSet, SigningMode, sign_independently, sign_jointly
from .validators import (
    ChainValidator,
    GasPolicy,
    PermissionValidator,
    SudoPolicy,
    TimestampPolicy,
    to_ecdsa_validator,
    to_multi_chain_webauthn_validator,
    to_permission_validator,
)
from .webauthn import SoftwareAuthenticator, WebAuthnKey

__version__ = "0.1.0"

__all__ = [
    "AccountVersion",
    "AccountsReady",
    "ActionOutcome",
    "ActionResult",
    "AddressDivergenceError",
    "ApprovalConsumptionError",
    "ApprovalRegistry",
    "AuthorityRecord",
    "Call",
    "CapabilityApproval",
    "ChainEndpoints",
    "ChainSettings",
    "ChainSpec",
    "ChainStatus",
    "ChainValidator",
    "ConfigurationError",
    "CredentialCancelledError",
    "CredentialError",
    "DelegatedAuthority",
    "DelegationManager",
    "DelegationState",
    "DelegationStateError",
    "ECDSASigner",
    "EmptySigner",
    "EntryPointVersion",
    "GasPolicy",
    "Identity",
    "IdentityProvider",
    "IncompleteMultiChainSignatureError",
    "KernelAccountResolver",
    "MultiChainCoordinator",
    "MultiChainError",
    "MultiChainSession",
    "MultiChainSettings",
    "OperationRevertedError",
    "OperationSealedError",
    "PasskeyServerClient",
    "PendingOperation",
    "PermissionValidator",
    "ReceiptTimeoutError",
    "SessionKey",
    "SignedOperationSet",
    "SignerError",
    "SigningMode",
    "SmartAccount",
    "SoftwareAuthenticator",
    "SponsorshipDeniedError",
    "SubmissionRejectedError",
    "SubmissionResult",
    "SudoPolicy",
    "TimestampPolicy",
    "UserOperation",
    "ValidatorBindingError",
    "ValidatorKind",
    "WebAuthnKey",
    "WebAuthnSigner",
    "assert_same_address",
    "build_endpoint_sets",
    "deserialize_permission_account",
    "encode_calls",
    "encode_nonce_key",
    "get_chain_spec",
    "load_settings",
    "serialize_multi_chain_permission_accounts",
    "sign_independently",
    "sign_jointly",
    "to_ecdsa_validator",
    "to_multi_chain_webauthn_validator",
    "to_permission_validator",
]
