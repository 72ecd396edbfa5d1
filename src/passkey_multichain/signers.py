"""Signers able to authorize user operations and enable approvals.

Every signer signs 32-byte digests and returns a 0x-prefixed hex signature
in the encoding its validator expects.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .exceptions import SignerError
from .webauthn import Authenticator, WebAuthnKey, b64url_encode, signature_from_assertion, verify_webauthn_signature

logger = logging.getLogger(__name__)


class Signer(Protocol):
    signer_type: str

    @property
    def commitment(self) -> str: ...

    async def sign_hash(self, digest: bytes) -> str: ...


def _check_digest(digest: bytes) -> None:
    if len(digest) != 32:
        raise SignerError(f"Expected a 32-byte digest, got {len(digest)} bytes")


class ECDSASigner:
    """secp256k1 key signer. Digests are signed as EIP-191 personal messages."""

    signer_type = "ecdsa"

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def commitment(self) -> str:
        return self._account.address

    async def sign_hash(self, digest: bytes) -> str:
        _check_digest(digest)
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return "0x" + bytes(signed.signature).hex()

    @staticmethod
    def recover(digest: bytes, signature: str) -> str:
        return Account.recover_message(encode_defunct(primitive=digest), signature=signature)

    def __repr__(self) -> str:
        return f"ECDSASigner(address={self.address})"


class EmptySigner:
    """Address-only stand-in for a signer whose key is not present.

    Used to compute approvals and addresses for a signer that will be bound
    later. Any attempt to sign fails.
    """

    signer_type = "ecdsa"

    def __init__(self, address: str):
        self._address = Web3.to_checksum_address(address)

    @property
    def address(self) -> str:
        return self._address

    @property
    def commitment(self) -> str:
        return self._address

    async def sign_hash(self, digest: bytes) -> str:
        raise SignerError(f"Signer {self._address} has no key material and cannot sign")

    def __repr__(self) -> str:
        return f"EmptySigner(address={self._address})"


class WebAuthnSigner:
    """Signs digests by running a WebAuthn assertion with the digest as challenge."""

    signer_type = "webauthn"

    def __init__(self, authenticator: Authenticator, key: WebAuthnKey, origin: Optional[str] = None):
        self._authenticator = authenticator
        self.key = key
        self._origin = origin

    @property
    def commitment(self) -> str:
        return self.key.commitment

    def _assertion_options(self, digest: bytes) -> dict[str, Any]:
        return {
            "challenge": b64url_encode(digest),
            "rpId": self.key.rp_id,
            "allowCredentials": [{"type": "public-key", "id": self.key.authenticator_id}],
            "userVerification": "required",
        }

    async def sign_hash(self, digest: bytes) -> str:
        _check_digest(digest)
        assertion = await self._authenticator.get_assertion(self._assertion_options(digest))
        try:
            signature = signature_from_assertion(assertion)
        except (KeyError, ValueError, TypeError) as e:
            raise SignerError(f"Authenticator returned an unusable assertion: {e}") from e

        if not verify_webauthn_signature(self.key, digest, signature, origin=self._origin):
            raise SignerError("Assertion does not verify against the registered passkey")
        return "0x" + signature.hex()

    def verify(self, digest: bytes, signature: str) -> bool:
        return verify_webauthn_signature(self.key, digest, bytes.fromhex(signature.removeprefix("0x")), self._origin)

    def __repr__(self) -> str:
        return f"WebAuthnSigner(authenticator_id={self.key.authenticator_id[:8]}...)"
