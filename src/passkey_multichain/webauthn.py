"""WebAuthn passkey primitives.

Covers the public key material a Kernel WebAuthn validator is initialized
with, the on-chain signature encoding, local verification, and a software
authenticator for development and tests. Device ceremonies are modelled by
the Authenticator protocol; browsers and hardware keys implement it outside
this package.
"""
from __future__ import annotations

import base64
import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .exceptions import CredentialCancelledError, CredentialError

# secp256r1 group order
P256_N = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04

_SIGNATURE_TYPES = ["bytes", "string", "uint256", "uint256", "uint256", "bool"]


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


@dataclass(frozen=True)
class WebAuthnKey:
    """Public half of a passkey, as the WebAuthn validator stores it."""
    pub_x: int
    pub_y: int
    authenticator_id: str
    authenticator_id_hash: str
    rp_id: str = "localhost"

    @classmethod
    def from_public_key(cls, public_key_der: bytes, authenticator_id: str, rp_id: str = "localhost") -> "WebAuthnKey":
        """Build from a DER SubjectPublicKeyInfo P-256 key."""
        public_key = serialization.load_der_public_key(public_key_der)
        if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(public_key.curve, ec.SECP256R1):
            raise ValueError("passkey public key must be a P-256 key")
        numbers = public_key.public_numbers()
        return cls(
            pub_x=numbers.x,
            pub_y=numbers.y,
            authenticator_id=authenticator_id,
            authenticator_id_hash="0x" + bytes(Web3.keccak(b64url_decode(authenticator_id))).hex(),
            rp_id=rp_id,
        )

    def public_key(self) -> ec.EllipticCurvePublicKey:
        return ec.EllipticCurvePublicNumbers(self.pub_x, self.pub_y, ec.SECP256R1()).public_key()

    @property
    def commitment(self) -> str:
        """keccak256(abi.encode(x, y)): stable identifier of the key."""
        return "0x" + bytes(Web3.keccak(encode(["uint256", "uint256"], [self.pub_x, self.pub_y]))).hex()

    def to_dict(self) -> dict[str, Any]:
        return {
            "pub_x": hex(self.pub_x),
            "pub_y": hex(self.pub_y),
            "authenticator_id": self.authenticator_id,
            "authenticator_id_hash": self.authenticator_id_hash,
            "rp_id": self.rp_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebAuthnKey":
        return cls(
            pub_x=int(data["pub_x"], 16),
            pub_y=int(data["pub_y"], 16),
            authenticator_id=data["authenticator_id"],
            authenticator_id_hash=data["authenticator_id_hash"],
            rp_id=data.get("rp_id", "localhost"),
        )


def encode_webauthn_signature(
    authenticator_data: bytes,
    client_data_json: str,
    r: int,
    s: int,
    use_precompiled: bool = False,
) -> bytes:
    """ABI-encode an assertion the way the WebAuthn validator decodes it.

    s is normalized to the lower half of the curve order.
    """
    if s > P256_N // 2:
        s = P256_N - s
    response_type_location = client_data_json.find('"type":"webauthn.get"')
    if response_type_location < 0:
        raise ValueError("clientDataJSON is not a webauthn.get response")
    return encode(
        _SIGNATURE_TYPES,
        [authenticator_data, client_data_json, response_type_location, r, s, use_precompiled],
    )


def decode_webauthn_signature(signature: bytes) -> tuple[bytes, str, int, int, int, bool]:
    return tuple(decode(_SIGNATURE_TYPES, signature))  # type: ignore[return-value]


def verify_webauthn_signature(
    key: WebAuthnKey,
    challenge: bytes,
    signature: bytes,
    origin: Optional[str] = None,
) -> bool:
    """Check an encoded WebAuthn signature over challenge against key."""
    try:
        authenticator_data, client_data_json, _, r, s, _ = decode_webauthn_signature(signature)
        client_data = json.loads(client_data_json)
    except (DecodingError, ValueError, TypeError):
        return False

    if client_data.get("type") != "webauthn.get":
        return False
    if client_data.get("challenge") != b64url_encode(challenge):
        return False
    if origin is not None and client_data.get("origin") != origin:
        return False
    if len(authenticator_data) < 37:
        return False
    if authenticator_data[:32] != hashlib.sha256(key.rp_id.encode()).digest():
        return False
    if not authenticator_data[32] & FLAG_USER_PRESENT:
        return False

    message = authenticator_data + hashlib.sha256(client_data_json.encode()).digest()
    try:
        key.public_key().verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


class Authenticator(Protocol):
    """Device-side WebAuthn ceremonies, in WebAuthn JSON shapes."""

    async def create_credential(self, options: dict[str, Any]) -> dict[str, Any]: ...

    async def get_assertion(self, options: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class _StoredCredential:
    credential_id: bytes
    private_key: ec.EllipticCurvePrivateKey
    rp_id: str
    user_handle: bytes
    user_name: str
    sign_count: int = 0


@dataclass
class SoftwareAuthenticator:
    """In-process P-256 authenticator.

    Produces genuine authenticatorData, clientDataJSON and DER signatures, so
    everything it signs verifies like a platform authenticator's output.
    Set cancel_next to simulate the user dismissing the next prompt.
    """
    origin: str = "http://localhost:3000"
    cancel_next: bool = False
    _credentials: dict[str, _StoredCredential] = field(default_factory=dict, repr=False)

    @property
    def credential_ids(self) -> list[str]:
        return list(self._credentials)

    def _check_cancel(self, ceremony: str) -> None:
        if self.cancel_next:
            self.cancel_next = False
            raise CredentialCancelledError(f"User cancelled passkey {ceremony}")

    def _client_data(self, ceremony_type: str, challenge: str) -> bytes:
        return json.dumps(
            {"type": ceremony_type, "challenge": challenge, "origin": self.origin, "crossOrigin": False},
            separators=(",", ":"),
        ).encode()

    @staticmethod
    def _authenticator_data(rp_id: str, sign_count: int) -> bytes:
        flags = FLAG_USER_PRESENT | FLAG_USER_VERIFIED
        return hashlib.sha256(rp_id.encode()).digest() + bytes([flags]) + sign_count.to_bytes(4, "big")

    async def create_credential(self, options: dict[str, Any]) -> dict[str, Any]:
        self._check_cancel("creation")
        try:
            rp_id = options["rp"]["id"]
            user = options["user"]
            challenge = options["challenge"]
        except (KeyError, TypeError) as e:
            raise CredentialError(f"Malformed credential creation options: {e}") from e

        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = os.urandom(32)
        encoded_id = b64url_encode(credential_id)
        self._credentials[encoded_id] = _StoredCredential(
            credential_id=credential_id,
            private_key=private_key,
            rp_id=rp_id,
            user_handle=b64url_decode(user.get("id", "")) if user.get("id") else user["name"].encode(),
            user_name=user["name"],
        )

        public_key_der = private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(self._client_data("webauthn.create", challenge)),
                "authenticatorData": b64url_encode(self._authenticator_data(rp_id, 0)),
                "publicKey": b64url_encode(public_key_der),
                "publicKeyAlgorithm": -7,
            },
            "clientExtensionResults": {},
        }

    async def get_assertion(self, options: dict[str, Any]) -> dict[str, Any]:
        self._check_cancel("assertion")
        rp_id = options.get("rpId", "localhost")
        allowed = [c["id"] for c in options.get("allowCredentials") or []]

        candidates = [
            c for cid, c in self._credentials.items()
            if c.rp_id == rp_id and (not allowed or cid in allowed)
        ]
        if not candidates:
            raise CredentialError(f"No passkey available for relying party {rp_id}")
        credential = candidates[0]
        credential.sign_count += 1

        authenticator_data = self._authenticator_data(rp_id, credential.sign_count)
        client_data = self._client_data("webauthn.get", options["challenge"])
        der_signature = credential.private_key.sign(
            authenticator_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        encoded_id = b64url_encode(credential.credential_id)
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(authenticator_data),
                "signature": b64url_encode(der_signature),
                "userHandle": b64url_encode(credential.user_handle),
            },
            "clientExtensionResults": {},
        }


def signature_from_assertion(assertion: dict[str, Any]) -> bytes:
    """Turn a WebAuthn assertion response into the validator's signature bytes."""
    response = assertion["response"]
    authenticator_data = b64url_decode(response["authenticatorData"])
    client_data_json = b64url_decode(response["clientDataJSON"]).decode()
    r, s = decode_dss_signature(b64url_decode(response["signature"]))
    return encode_webauthn_signature(authenticator_data, client_data_json, r, s)
