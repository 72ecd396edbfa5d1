"""Tests for MultiChainSession."""
import pytest

from conftest import CHAIN_A, CHAIN_A_ID, CHAIN_B, CHAIN_B_ID, NOOP_CALL, make_endpoints

from passkey_multichain.coordinator import ActionOutcome
from passkey_multichain.exceptions import CredentialError
from passkey_multichain.identity import IdentityProvider
from passkey_multichain.session import MultiChainSession
from passkey_multichain.signing import SigningMode


@pytest.fixture
def session(settings, authenticator, endpoint_sets, identity_provider):
    return MultiChainSession(settings, authenticator, endpoint_sets=endpoint_sets, identity_provider=identity_provider)


class TestMultiChainSession:
    async def test_register_and_login(self, session):
        registered = await session.register("alice")
        restored = await session.login("alice")
        assert restored.credential == registered.credential

    async def test_login_without_registration(self, session):
        with pytest.raises(CredentialError):
            await session.login("alice")

    async def test_build_delegated_accounts(self, session):
        identity = await session.register("alice")
        ready = await session.build_accounts(identity)

        assert ready.delegated
        assert ready.session_key_address
        assert [a.chain_id for a in ready.accounts] == [CHAIN_A_ID, CHAIN_B_ID]
        assert all(a.address == ready.address for a in ready.accounts)
        assert all(a.uses_delegated_authority for a in ready.accounts)
        assert session.accounts == ready.accounts

    async def test_delegation_keeps_passkey_address(self, session):
        identity = await session.register("alice")
        direct = await session.build_accounts(identity, delegate=False)
        delegated = await session.build_accounts(identity, delegate=True)

        assert not direct.delegated
        assert direct.session_key_address is None
        assert direct.address == delegated.address

    async def test_submit_requires_accounts(self, session):
        with pytest.raises(RuntimeError):
            await session.submit_action(NOOP_CALL)

    async def test_submit_delegated_action(self, session, endpoint_sets):
        identity = await session.register("alice")
        await session.build_accounts(identity)
        result = await session.submit_action(NOOP_CALL)

        assert result.outcome == ActionOutcome.SUCCEEDED
        assert result.signed_set.mode == SigningMode.INDEPENDENT
        assert all(len(e.bundler.sent) == 1 for e in endpoint_sets)

    async def test_submit_passkey_action(self, session, endpoint_sets):
        identity = await session.register("alice")
        await session.build_accounts(identity, delegate=False)
        result = await session.submit_action([[NOOP_CALL], [NOOP_CALL, NOOP_CALL]])

        assert result.outcome == ActionOutcome.SUCCEEDED
        assert result.signed_set.mode == SigningMode.JOINT

    async def test_context_manager_closes_endpoints(self, settings, authenticator, endpoint_sets):
        async with MultiChainSession(
            settings, authenticator, endpoint_sets=endpoint_sets, identity_provider=IdentityProvider(authenticator),
        ) as session:
            assert session.endpoint_sets == endpoint_sets

        for endpoints in endpoint_sets:
            assert endpoints.ledger.closed
            assert endpoints.bundler.closed

    async def test_sessions_are_independent(self, settings, authenticator):
        first = MultiChainSession(
            settings, authenticator,
            endpoint_sets=[make_endpoints(CHAIN_A), make_endpoints(CHAIN_B)],
            identity_provider=IdentityProvider(authenticator),
        )
        second = MultiChainSession(
            settings, authenticator,
            endpoint_sets=[make_endpoints(CHAIN_A), make_endpoints(CHAIN_B)],
            identity_provider=IdentityProvider(authenticator),
        )
        identity = await first.register("alice")
        ready_first = await first.build_accounts(identity)
        ready_second = await second.build_accounts(identity)

        assert ready_first.address == ready_second.address
        assert ready_first.session_key_address != ready_second.session_key_address
        assert second.accounts is not first.accounts
