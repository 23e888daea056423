"""
Tests for the session manager and stored accounts.
"""

import asyncio
import json

import pytest

from entitlement_sync.app.cache.local_cache import entitlement_namespace
from entitlement_sync.app.cache.store import InMemoryStore
from entitlement_sync.app.main import build_session_manager
from entitlement_sync.app.session.accounts import AccountStore, CREDENTIAL_KEY, credential_namespace
from shared.config import SyncConfig
from shared.errors import AuthenticationError
from shared.test_helpers import (
    FakeRealtimeHub,
    FrozenClock,
    MockBackend,
    create_mock_jwt_token,
    wait_for_condition,
)


class TestSessionManager:
    """Test cases for SessionManager."""

    @pytest.fixture
    def backend(self):
        return MockBackend()

    @pytest.fixture
    def hub(self, backend):
        return FakeRealtimeHub(backend)

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def config(self):
        return SyncConfig(
            api_base_url="http://test/api",
            max_retries=0,
            retry_base_delay=0.0,
            remote_check_ttl=0,
            reconnect_attempts=2,
            reconnect_base_delay=0.01
        )

    @pytest.fixture
    def make_manager(self, config, backend, hub, store):
        def factory(realtime=True):
            return build_session_manager(
                config,
                transport=backend.transport,
                transport_factory=hub.transport_factory,
                store=store,
                realtime=realtime
            )
        return factory

    @pytest.fixture
    def manager(self, make_manager):
        return make_manager()

    @pytest.fixture
    def tokens(self):
        return {user: create_mock_jwt_token(user) for user in ("u1", "u2")}

    @pytest.mark.asyncio
    async def test_login_opens_session_and_resyncs(self, manager, hub, tokens):
        result = await manager.login("u1", tokens["u1"])

        assert result.previous is None
        assert result.current == "u1"
        assert manager.current_identity == "u1"
        assert result.resync.via == "realtime"
        assert hub.events("authenticate")[-1]["userId"] == "u1"
        assert hub.events("user:syncAccessRights")[-1] == {"userId": "u1", "forceRefresh": True}
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_switch_isolates_identities(self, manager, backend, store, tokens):
        backend.grant("u1", "Q1")
        await manager.login("u1", tokens["u1"])
        assert await manager.has_access("Q1") is True

        result = await manager.login("u2", tokens["u2"])

        assert result.previous == "u1"
        assert result.cleared_entries >= 1
        assert await store.items(entitlement_namespace("u1")) == {}
        assert await manager.has_access("Q1") is False
        assert backend.requests[-1].url.params["userId"] == "u2"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_switch_aborts_in_flight_checks(self, manager, backend, store, tokens):
        backend.grant("u1", "Q1")
        await manager.login("u1", tokens["u1"])
        backend.delay = 0.2

        pending = asyncio.create_task(manager.has_access("Q1"))
        await asyncio.sleep(0.02)
        result = await manager.login("u2", tokens["u2"])

        assert result.aborted_requests == 1
        assert await pending is False
        assert await store.items(entitlement_namespace("u1")) == {}
        assert await store.items(entitlement_namespace("u2")) == {}
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_old_resolver_ignores_late_pushes(self, manager, hub, store, tokens):
        await manager.login("u1", tokens["u1"])
        old_resolver = manager.resolver
        await manager.login("u2", tokens["u2"])

        await hub.push("u2", "questionSet:accessUpdate", {"questionSetId": "Q1", "hasAccess": True})

        assert await wait_for_condition(lambda: "Q1" in store._data.get(entitlement_namespace("u2"), {}))
        assert old_resolver.closed
        assert await store.items(entitlement_namespace("u1")) == {}
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_http_resync_without_realtime(self, make_manager, backend, tokens):
        manager = make_manager(realtime=False)
        backend.purchases["u1"] = [
            {"id": "p1", "userId": "u1", "questionSetId": "Q3", "status": "active",
             "expiryDate": "2999-01-01T00:00:00+00:00"}
        ]

        result = await manager.login("u1", tokens["u1"])

        assert result.resync.via == "http"
        assert await result.resync.wait() == 1
        assert await manager.has_access("Q3") is True
        assert backend.call_count("/purchases/check/Q3") == 0
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_unavailable_channel_falls_back_to_http(self, manager, hub, tokens):
        hub.refuse_connections = True

        result = await manager.login("u1", tokens["u1"])

        assert manager.current_identity == "u1"
        assert result.resync.via == "http"
        await result.resync.wait()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_switch_back_uses_stored_credential(self, manager, backend, tokens):
        await manager.login("u1", tokens["u1"])
        await manager.login("u2", tokens["u2"])

        result = await manager.switch_account("u1")
        await manager.has_access("Q1")

        assert result.previous == "u2"
        assert manager.current_identity == "u1"
        assert backend.requests[-1].headers["Authorization"] == f"Bearer {tokens['u1']}"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_switch_to_expired_credential_is_refused(self, manager, tokens):
        await manager.login("u1", create_mock_jwt_token("u1", expires_in=-60))
        await manager.login("u2", tokens["u2"])

        with pytest.raises(AuthenticationError):
            await manager.switch_account("u1")
        with pytest.raises(AuthenticationError):
            await manager.switch_account("nobody")
        assert manager.current_identity == "u2"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_logout_tears_down_session(self, manager, backend, hub, store, tokens):
        backend.grant("u1", "Q1")
        await manager.login("u1", tokens["u1"])
        await manager.has_access("Q1")

        result = await manager.logout()

        assert result.previous == "u1"
        assert manager.current_identity is None
        assert manager.channel.connected is False
        assert await store.items(entitlement_namespace("u1")) == {}
        with pytest.raises(AuthenticationError):
            await manager.has_access("Q1")
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_forget_account_removes_everything(self, manager, store, tokens):
        await manager.login("u1", tokens["u1"])

        await manager.forget_account("u1")

        assert manager.current_identity is None
        assert await manager.accounts.credential_for("u1") is None
        assert await manager.accounts.accounts() == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_switches_are_serialized(self, manager, hub, tokens):
        await asyncio.gather(
            manager.login("u1", tokens["u1"]),
            manager.login("u2", tokens["u2"]),
        )

        assert manager.current_identity == "u2"
        assert manager.channel.user_id == "u2"
        assert [s for s in hub.sessions.get("u1", [])] == []
        await manager.aclose()


class TestAccountStore:
    """Test cases for AccountStore."""

    @pytest.fixture
    def clock(self):
        return FrozenClock()

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def accounts(self, store, clock):
        return AccountStore(store, clock=clock)

    @pytest.mark.asyncio
    async def test_accounts_are_listed_newest_first(self, accounts, clock):
        await accounts.remember("u1", "t1", username="alice")
        clock.advance(minutes=5)
        await accounts.remember("u2", "t2")

        listed = await accounts.accounts()

        assert [a.user_id for a in listed] == ["u2", "u1"]
        assert listed[1].username == "alice"

    @pytest.mark.asyncio
    async def test_remember_keeps_profile_fields(self, accounts):
        await accounts.remember("u1", "t1", username="alice", auto_login=True)
        account = await accounts.remember("u1", "t1b")

        assert account.username == "alice"
        assert account.auto_login is True
        assert await accounts.credential_for("u1") == "t1b"

    @pytest.mark.asyncio
    async def test_jwt_credential_expires_with_clock(self, accounts, clock):
        token = create_mock_jwt_token("u1", expires_in=3600, now=clock())
        await accounts.remember("u1", token)

        assert await accounts.credential_for("u1") == token
        clock.advance(hours=2)
        assert await accounts.credential_for("u1") is None
        assert await accounts.credential_for("u1") is None

    @pytest.mark.asyncio
    async def test_opaque_token_never_expires(self, accounts, clock):
        await accounts.remember("u1", "opaque-session-token")
        clock.advance(days=365)
        assert await accounts.credential_for("u1") == "opaque-session-token"

    @pytest.mark.asyncio
    async def test_corrupt_credential_is_cleared(self, accounts, store):
        await store.set(credential_namespace("u1"), CREDENTIAL_KEY, "{oops")

        assert await accounts.credential_for("u1") is None
        assert await store.items(credential_namespace("u1")) == {}

    @pytest.mark.asyncio
    async def test_set_auto_login(self, accounts):
        assert await accounts.set_auto_login("u1", True) is False
        await accounts.remember("u1", "t1")
        assert await accounts.set_auto_login("u1", True) is True
        assert (await accounts.get_account("u1")).auto_login is True

    @pytest.mark.asyncio
    async def test_forget_clears_all_namespaces(self, accounts, store):
        await accounts.remember("u1", "t1")
        await store.set(entitlement_namespace("u1"), "Q1", "{}")
        await store.set("redemptions:u1", "Q1", "{}")
        await store.set(entitlement_namespace("u2"), "Q1", "{}")

        await accounts.forget("u1")

        assert store.namespaces() == [entitlement_namespace("u2")]
        assert json.loads(await store.get(entitlement_namespace("u2"), "Q1")) == {}
