"""ERC-4337 primitives and per-chain bundler / paymaster clients."""

from .entrypoint import ENTRYPOINT_ADDRESSES, EntryPointVersion, get_entrypoint
from .user_operation import UserOperation, zero_hex
from .bundler_client import BundlerClient, BundlerConfig
from .paymaster_client import (
    PaymasterClient,
    PaymasterConfig,
    PaymasterProvider,
    SponsorshipData,
    parse_sponsorship,
)
from .artifact import SubmissionArtifact, write_submission_artifact

__all__ = [
    "ENTRYPOINT_ADDRESSES",
    "EntryPointVersion",
    "get_entrypoint",
    "UserOperation",
    "zero_hex",
    "BundlerClient",
    "BundlerConfig",
    "PaymasterClient",
    "PaymasterConfig",
    "PaymasterProvider",
    "SponsorshipData",
    "parse_sponsorship",
    "SubmissionArtifact",
    "write_submission_artifact",
]
