"""Upward surface for presentation code.

A MultiChainSession holds everything one user session needs: endpoints,
identity provider, resolved accounts. Sessions share nothing, so several
can run side by side.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Union

import httpx

from .accounts import AuthorityRecord, Call, KernelAccountResolver, SmartAccount
from .config import MultiChainSettings
from .coordinator import ActionResult, CallPayload, MultiChainCoordinator
from .delegation import ApprovalRegistry, DelegationManager
from .endpoints import ChainEndpoints, build_endpoint_sets
from .identity import Identity, IdentityProvider, PasskeyServerClient
from .validators import Policy, to_multi_chain_webauthn_validator
from .webauthn import Authenticator

logger = logging.getLogger(__name__)


@dataclass
class AccountsReady:
    """Accounts resolved on every chain at one shared address."""
    address: str
    accounts: list[SmartAccount]
    delegated: bool
    session_key_address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "delegated": self.delegated,
            "session_key_address": self.session_key_address,
            "accounts": [a.to_dict() for a in self.accounts],
        }


class MultiChainSession:
    """Register or log in, build the accounts, then submit actions."""

    def __init__(
        self,
        settings: MultiChainSettings,
        authenticator: Authenticator,
        endpoint_sets: Optional[Sequence[ChainEndpoints]] = None,
        identity_provider: Optional[IdentityProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._endpoint_sets = list(endpoint_sets) if endpoint_sets is not None else build_endpoint_sets(
            settings, client=http_client,
        )
        if identity_provider is None:
            server_url = self._endpoint_sets[0].passkey_server_url if self._endpoint_sets else ""
            server = (
                PasskeyServerClient(server_url, settings.http_timeout_seconds, client=http_client)
                if server_url else None
            )
            identity_provider = IdentityProvider(authenticator, server, rp_id=settings.rp_id, origin=settings.origin)
        self._identity_provider = identity_provider
        self._resolver = KernelAccountResolver(index=settings.account_index)
        self._registry = ApprovalRegistry()
        self._coordinator = MultiChainCoordinator(
            artifact_dir=settings.artifact_dir,
            receipt_poll_seconds=settings.receipt_poll_seconds,
        )
        self._accounts: Optional[list[SmartAccount]] = None

    @property
    def endpoint_sets(self) -> list[ChainEndpoints]:
        return list(self._endpoint_sets)

    @property
    def accounts(self) -> Optional[list[SmartAccount]]:
        return self._accounts

    @property
    def coordinator(self) -> MultiChainCoordinator:
        return self._coordinator

    async def register(self, username: str) -> Identity:
        return await self._identity_provider.register(username)

    async def login(self, username: str) -> Identity:
        return await self._identity_provider.login(username)

    async def build_accounts(
        self,
        identity: Identity,
        delegate: bool = True,
        policies: Optional[Sequence[Policy]] = None,
    ) -> AccountsReady:
        """Bind the passkey on every chain and resolve the shared account.

        With delegate, a fresh session key is approved by the passkey (one
        assertion for all chains) and becomes the acting signer.

        Raises:
            AddressDivergenceError: the chains disagree on the account address
        """
        signer = self._identity_provider.signer_for(identity)
        validators = await asyncio.gather(*(
            to_multi_chain_webauthn_validator(
                endpoints,
                identity,
                signer,
                entry_point_version=self._settings.entry_point_version,
                account_version=self._settings.account_version,
            )
            for endpoints in self._endpoint_sets
        ))

        session_key_address = None
        if not delegate:
            accounts = await self._resolver.resolve_all(
                self._endpoint_sets, [AuthorityRecord(sudo=v) for v in validators],
            )
        else:
            session_key = self._identity_provider.create_session_key()
            session_key_address = session_key.address
            manager = DelegationManager(self._resolver, self._registry)
            ephemeral = await manager.bind_ephemeral(self._endpoint_sets, validators, session_key, policies)
            approvals = await manager.issue_approvals(ephemeral, signer)
            accounts = await manager.bind_real_signers(self._endpoint_sets, approvals, session_key.signer())

        self._accounts = accounts
        logger.info("Accounts ready at %s (delegated=%s)", accounts[0].address, delegate)
        return AccountsReady(
            address=accounts[0].address,
            accounts=accounts,
            delegated=delegate,
            session_key_address=session_key_address,
        )

    async def submit_action(
        self,
        calls: Union[Call, Sequence[CallPayload]],
        receipt_timeouts: Optional[Mapping[int, float]] = None,
    ) -> ActionResult:
        """Submit one action; a single Call is sent on every chain."""
        if self._accounts is None:
            raise RuntimeError("build_accounts() must complete before submitting actions")
        payloads: Sequence[CallPayload] = [calls] * len(self._accounts) if isinstance(calls, Call) else calls
        return await self._coordinator.submit(self._accounts, payloads, receipt_timeouts=receipt_timeouts)

    async def close(self) -> None:
        for endpoints in self._endpoint_sets:
            await endpoints.close()
        await self._identity_provider.close()

    async def __aenter__(self) -> "MultiChainSession":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
