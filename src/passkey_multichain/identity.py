"""Passkey identities and session keys.

An Identity is created once per user by a WebAuthn registration and reused
on every chain. Session keys are ephemeral secp256k1 keys that only live in
process memory.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .exceptions import CredentialError
from .logging_utils import OperationType, get_operation_logger, mask_url
from .retry import RPC_RETRY_CONFIG, RetryExhausted, retry_async
from .signers import ECDSASigner, EmptySigner, WebAuthnSigner
from .webauthn import Authenticator, WebAuthnKey, b64url_decode, b64url_encode, signature_from_assertion, verify_webauthn_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """A registered passkey and the name it was registered under."""
    credential: WebAuthnKey
    credential_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"credential_name": self.credential_name, "credential": self.credential.to_dict()}


class SessionKey:
    """Ephemeral signing key for delegated sessions.

    Key material stays in memory: there is no export method, the repr shows
    only the address, and pickling is refused.
    """

    __slots__ = ("_account",)

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def generate(cls) -> "SessionKey":
        return cls(Account.create())

    @property
    def address(self) -> str:
        return self._account.address

    def signer(self) -> ECDSASigner:
        return ECDSASigner(self._account)

    def placeholder(self) -> EmptySigner:
        """Address-only signer standing in for this key before delegation completes."""
        return EmptySigner(self._account.address)

    def __repr__(self) -> str:
        return f"SessionKey(address={self.address})"

    def __reduce__(self):
        raise TypeError("Session keys cannot be serialized")


class PasskeyServerClient:
    """Client for a passkey server's registration and login ceremonies."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _send(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        response = await self._client.post(f"{self._base_url}{path}", json=payload)
        response.raise_for_status()
        return response

    async def _post(self, path: str, payload: dict[str, Any], username: Optional[str] = None) -> dict[str, Any]:
        try:
            response = await retry_async(self._send, path, payload, config=RPC_RETRY_CONFIG)
            data = response.json()
        except RetryExhausted as e:
            raise CredentialError(
                f"Passkey server unreachable at {mask_url(self._base_url)}: {e.original_exception}",
                username=username,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CredentialError(f"Passkey server request {path} failed: {e}", username=username) from e
        if not isinstance(data, dict):
            raise CredentialError(f"Passkey server returned a non-object for {path}", username=username)
        return data

    async def register_options(self, username: str) -> dict[str, Any]:
        return await self._post("/register/options", {"username": username}, username)

    async def register_verify(self, username: str, user_id: Optional[str], credential: dict[str, Any]) -> dict[str, Any]:
        return await self._post(
            "/register/verify",
            {"username": username, "userId": user_id, "cred": credential},
            username,
        )

    async def login_options(self, username: Optional[str] = None) -> dict[str, Any]:
        return await self._post("/login/options", {"username": username} if username else {}, username)

    async def login_verify(self, credential: dict[str, Any], username: Optional[str] = None) -> dict[str, Any]:
        return await self._post("/login/verify", {"cred": credential}, username)

    async def close(self) -> None:
        await self._client.aclose()


class IdentityProvider:
    """Runs passkey ceremonies and hands out identities and session keys.

    With a PasskeyServerClient the server issues challenges and verifies
    responses. Without one, challenges are generated and checked locally and
    registered keys are remembered for the life of the provider, which is
    enough for development against a SoftwareAuthenticator.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        server: Optional[PasskeyServerClient] = None,
        rp_id: str = "localhost",
        origin: Optional[str] = None,
    ):
        self._authenticator = authenticator
        self._server = server
        self._rp_id = rp_id
        self._origin = origin
        self._local_keys: dict[str, WebAuthnKey] = {}

    def _local_creation_options(self, username: str) -> dict[str, Any]:
        return {
            "options": {
                "rp": {"id": self._rp_id, "name": self._rp_id},
                "user": {"id": b64url_encode(os.urandom(16)), "name": username, "displayName": username},
                "challenge": b64url_encode(os.urandom(32)),
                "pubKeyCredParams": [{"type": "public-key", "alg": -7}],
                "authenticatorSelection": {"residentKey": "required", "userVerification": "required"},
            },
        }

    def _local_request_options(self, username: str) -> dict[str, Any]:
        known = self._local_keys.get(username)
        allow = [{"type": "public-key", "id": known.authenticator_id}] if known else []
        return {
            "options": {
                "challenge": b64url_encode(os.urandom(32)),
                "rpId": self._rp_id,
                "allowCredentials": allow,
                "userVerification": "required",
            },
        }

    async def register(self, username: str) -> Identity:
        """Create a new passkey named username."""
        async with get_operation_logger().operation_context(
            OperationType.CREDENTIAL_CEREMONY, "*", mode="register", username=username,
        ):
            if self._server is not None:
                options = await self._server.register_options(username)
            else:
                options = self._local_creation_options(username)

            creation_options = options.get("options", options)
            credential = await self._authenticator.create_credential(creation_options)

            if self._server is not None:
                result = await self._server.register_verify(username, options.get("userId"), credential)
                if not result.get("verified"):
                    raise CredentialError("Passkey registration was not verified", username=username)
            else:
                client_data = json.loads(b64url_decode(credential["response"]["clientDataJSON"]))
                if client_data.get("type") != "webauthn.create" or client_data.get("challenge") != creation_options["challenge"]:
                    raise CredentialError("Passkey registration response does not match the challenge", username=username)

            try:
                key = WebAuthnKey.from_public_key(
                    b64url_decode(credential["response"]["publicKey"]),
                    credential["id"],
                    rp_id=creation_options["rp"]["id"],
                )
            except (KeyError, ValueError) as e:
                raise CredentialError(f"Registration response carries no usable public key: {e}", username=username) from e

            self._local_keys[username] = key
            logger.info("Registered passkey %s for %s", key.authenticator_id[:8], username)
            return Identity(credential=key, credential_name=username)

    async def login(self, username: str) -> Identity:
        """Restore an existing passkey by asserting with it."""
        async with get_operation_logger().operation_context(
            OperationType.CREDENTIAL_CEREMONY, "*", mode="login", username=username,
        ):
            if self._server is not None:
                options = await self._server.login_options(username)
            else:
                options = self._local_request_options(username)

            request_options = options.get("options", options)
            assertion = await self._authenticator.get_assertion(request_options)

            if self._server is not None:
                result = await self._server.login_verify(assertion, username)
                if not result.get("verified"):
                    raise CredentialError("Passkey login was not verified", username=username)
                try:
                    key = WebAuthnKey.from_public_key(
                        b64url_decode(result["publicKey"]),
                        assertion["id"],
                        rp_id=request_options.get("rpId", self._rp_id),
                    )
                except (KeyError, ValueError) as e:
                    raise CredentialError(f"Login response carries no usable public key: {e}", username=username) from e
            else:
                key = self._local_keys.get(username)
                if key is None or key.authenticator_id != assertion.get("id"):
                    raise CredentialError(f"No passkey registered for {username}", username=username)
                challenge = b64url_decode(request_options["challenge"])
                try:
                    signature = signature_from_assertion(assertion)
                except (KeyError, ValueError) as e:
                    raise CredentialError(f"Malformed assertion: {e}", username=username) from e
                if not verify_webauthn_signature(key, challenge, signature, origin=self._origin):
                    raise CredentialError("Passkey assertion failed verification", username=username)

            self._local_keys[username] = key
            logger.info("Logged in with passkey %s for %s", key.authenticator_id[:8], username)
            return Identity(credential=key, credential_name=username)

    def signer_for(self, identity: Identity) -> WebAuthnSigner:
        return WebAuthnSigner(self._authenticator, identity.credential, origin=self._origin)

    @staticmethod
    def create_session_key() -> SessionKey:
        return SessionKey.generate()

    async def close(self) -> None:
        if self._server is not None:
            await self._server.close()
