"""Tests for the token lifecycle manager."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio

from typing import TYPE_CHECKING, Any

import httpx
import pytest
import pytest_asyncio

from authserver_oauth.auth.lifecycle import TokenLifecycleManager
from authserver_oauth.auth.storage import MemoryStore
from authserver_oauth.exceptions import NetworkError, RefreshFailedError
from authserver_oauth.types import TokenSet


if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from conftest import FakeAuthServer, FakeClock

    from authserver_oauth.auth.token_client import TokenExchangeClient


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def backend() -> MemoryStore:
    """Create the backing store."""
    return MemoryStore()


@pytest_asyncio.fixture
async def manager(
    token_client: TokenExchangeClient, backend: MemoryStore, clock: FakeClock
) -> AsyncIterator[TokenLifecycleManager]:
    """Create a lifecycle manager with a settable clock."""
    mgr = TokenLifecycleManager(token_client, backend, clock=clock)
    yield mgr
    await mgr.close()
    await token_client.close()


def tokens_at(clock: FakeClock, expires_in: int | None = 3600, refresh: str | None = "rt-0") -> TokenSet:
    return TokenSet(
        access_token="at-0",
        refresh_token=refresh,
        expires_in=expires_in,
        issued_at=clock(),
    )


def recorder() -> tuple[list[Any], Callable[[Any], None]]:
    seen: list[Any] = []
    return seen, seen.append


# ── Persistence ─────────────────────────────────────────────────────


class TestPersistence:
    """Tests for reading and writing the token set."""

    @pytest.mark.asyncio
    async def test_set_and_get(
        self, manager: TokenLifecycleManager, backend: MemoryStore, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        restored = await manager.get_tokens()
        assert restored is not None
        assert restored.access_token == "at-0"
        assert restored.refresh_token == "rt-0"
        assert backend.keys() == ["authserver_tokens"]

    @pytest.mark.asyncio
    async def test_unreadable_tokens(self, manager: TokenLifecycleManager, backend: MemoryStore) -> None:
        await backend.set("authserver_tokens", '{"no_access_token": true}')
        assert await manager.get_tokens() is None

    @pytest.mark.asyncio
    async def test_user_profile(self, manager: TokenLifecycleManager) -> None:
        await manager.save_user({"sub": "u1"})
        assert await manager.get_user() == {"sub": "u1"}
        await manager.save_user(None)
        assert await manager.get_user() is None

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, manager: TokenLifecycleManager, clock: FakeClock) -> None:
        seen, listener = recorder()
        unsubscribe = manager.subscribe(listener)
        tokens = tokens_at(clock)

        await manager.set_tokens(tokens)
        unsubscribe()
        await manager.clear()

        assert seen == [tokens]

    @pytest.mark.asyncio
    async def test_async_and_failing_subscribers(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        """A raising listener does not stop the others."""
        seen: list[Any] = []

        def broken(_tokens: Any) -> None:
            raise RuntimeError("boom")

        async def async_listener(tokens: Any) -> None:
            seen.append(tokens)

        manager.subscribe(broken)
        manager.subscribe(async_listener)
        await manager.set_tokens(tokens_at(clock))
        assert len(seen) == 1


# ── Access ──────────────────────────────────────────────────────────


class TestAccessToken:
    """Tests for get_access_token / is_authenticated."""

    @pytest.mark.asyncio
    async def test_signed_out(self, manager: TokenLifecycleManager) -> None:
        assert await manager.get_access_token() is None
        assert not await manager.is_authenticated()

    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        assert await manager.get_access_token() == "at-0"
        assert auth_server.token_forms == []
        assert await manager.is_authenticated()

    @pytest.mark.asyncio
    async def test_expiring_token_refreshed(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        manager.auto_refresh = False
        await manager.set_tokens(tokens_at(clock))
        clock.advance(3550)

        assert await manager.get_access_token() == "at-1"
        assert auth_server.grants("refresh_token")[0]["refresh_token"] == "rt-0"
        stored = await manager.get_tokens()
        assert stored is not None
        assert stored.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, refresh=None))
        clock.advance(3600)
        assert await manager.get_access_token() is None
        assert not await manager.is_authenticated()

    @pytest.mark.asyncio
    async def test_expiring_without_refresh_token_still_usable(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, refresh=None))
        clock.advance(3570)
        assert await manager.get_access_token() == "at-0"

    @pytest.mark.asyncio
    async def test_unknown_expiry_treated_as_expired(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, expires_in=None, refresh=None))
        assert await manager.get_access_token() is None


# ── Refresh ─────────────────────────────────────────────────────────


class TestRefresh:
    """Tests for single-flight refresh and failure handling."""

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_single_flight(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        results = await asyncio.gather(*(manager.refresh() for _ in range(5)))

        assert len(auth_server.grants("refresh_token")) == 1
        assert {r.access_token for r in results} == {"at-1"}

    @pytest.mark.asyncio
    async def test_concurrent_reads_near_expiry_share_refresh(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        manager.auto_refresh = False
        await manager.set_tokens(tokens_at(clock))
        clock.advance(3590)

        first, second = await asyncio.gather(manager.get_access_token(), manager.get_access_token())

        assert first == second == "at-1"
        assert len(auth_server.grants("refresh_token")) == 1

    @pytest.mark.asyncio
    async def test_new_login_during_refresh_wins(
        self,
        manager: TokenLifecycleManager,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        manager.auto_refresh = False
        old = TokenSet(access_token="old", refresh_token="rt-old", expires_in=30, issued_at=clock())
        await manager.set_tokens(old)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_refresh(_refresh_token: str) -> TokenSet:
            started.set()
            await release.wait()
            return TokenSet(
                access_token="from-old-refresh",
                refresh_token="rt-x",
                expires_in=3600,
                issued_at=clock(),
            )

        monkeypatch.setattr(manager.token_client, "refresh", slow_refresh)
        reader = asyncio.create_task(manager.get_access_token())
        await started.wait()

        login = TokenSet(access_token="new-login", refresh_token="rt-new", expires_in=3600, issued_at=clock())
        await manager.set_tokens(login)
        release.set()

        assert await reader == "new-login"
        stored = await manager.get_tokens()
        assert stored is not None
        assert stored.access_token == "new-login"
        assert stored.refresh_token == "rt-new"

    @pytest.mark.asyncio
    async def test_sign_out_during_refresh_discards_result(
        self,
        manager: TokenLifecycleManager,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        manager.auto_refresh = False
        await manager.set_tokens(tokens_at(clock))
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_refresh(_refresh_token: str) -> TokenSet:
            started.set()
            await release.wait()
            return tokens_at(clock)

        monkeypatch.setattr(manager.token_client, "refresh", slow_refresh)
        pending = asyncio.create_task(manager.refresh())
        await started.wait()
        await manager.clear()
        release.set()

        with pytest.raises(RefreshFailedError, match="Session ended"):
            await pending
        assert await manager.get_tokens() is None

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, manager: TokenLifecycleManager, clock: FakeClock) -> None:
        await manager.set_tokens(tokens_at(clock, refresh=None))
        with pytest.raises(RefreshFailedError, match="No refresh token"):
            await manager.refresh()

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_session(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        await manager.save_user({"sub": "u1"})
        seen, listener = recorder()
        manager.subscribe(listener)
        auth_server.token_queue.append(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(RefreshFailedError):
            await manager.refresh()

        assert await manager.get_tokens() is None
        assert await manager.get_user() is None
        assert seen == [None]

    @pytest.mark.asyncio
    async def test_network_failure_keeps_session(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        auth_server.network_down = True
        with pytest.raises(NetworkError):
            await manager.refresh()
        assert await manager.get_tokens() is not None


# ── Scheduling ──────────────────────────────────────────────────────


class TestScheduling:
    """Tests for the background refresh schedule."""

    @pytest.mark.asyncio
    async def test_fire_at_threshold_before_expiry(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        assert manager.has_scheduled_refresh
        assert manager.fire_at == pytest.approx(clock() + 3600 - 60)

    @pytest.mark.asyncio
    async def test_short_lifetime_fires_at_expiry(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, expires_in=30))
        assert manager.fire_at == pytest.approx(clock() + 30)

    @pytest.mark.asyncio
    async def test_exp_claim_drives_schedule(
        self,
        manager: TokenLifecycleManager,
        clock: FakeClock,
        jwt_factory: Callable[[dict[str, Any]], str],
    ) -> None:
        tokens = TokenSet(
            access_token=jwt_factory({"exp": clock() + 600}),
            refresh_token="rt-0",
            expires_in=3600,
            issued_at=clock(),
        )
        await manager.set_tokens(tokens)
        assert manager.fire_at == pytest.approx(clock() + 540)

    @pytest.mark.asyncio
    async def test_no_schedule_without_refresh_token(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, refresh=None))
        assert not manager.has_scheduled_refresh
        assert manager.fire_at is None

    @pytest.mark.asyncio
    async def test_no_schedule_for_unknown_expiry(
        self, manager: TokenLifecycleManager, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, expires_in=None))
        assert not manager.has_scheduled_refresh

    @pytest.mark.asyncio
    async def test_no_schedule_when_auto_refresh_disabled(
        self, token_client: TokenExchangeClient, clock: FakeClock
    ) -> None:
        mgr = TokenLifecycleManager(token_client, MemoryStore(), auto_refresh=False, clock=clock)
        await mgr.set_tokens(tokens_at(clock))
        assert not mgr.has_scheduled_refresh

    @pytest.mark.asyncio
    async def test_scheduled_refresh_runs(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        refreshed = asyncio.Event()

        def listener(tokens: TokenSet | None) -> None:
            if tokens is not None and tokens.access_token == "at-1":
                refreshed.set()

        manager.subscribe(listener)
        # Expiry 60.01s away with a 60s threshold: fires almost immediately
        tokens = tokens_at(clock)
        tokens.issued_at = clock() - 3600 + 60.01
        await manager.set_tokens(tokens)

        await asyncio.wait_for(refreshed.wait(), timeout=2)
        assert len(auth_server.grants("refresh_token")) == 1

    @pytest.mark.asyncio
    async def test_failed_scheduled_refresh_signs_out(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        signed_out = asyncio.Event()

        def listener(tokens: TokenSet | None) -> None:
            if tokens is None:
                signed_out.set()

        manager.subscribe(listener)
        auth_server.network_down = True
        tokens = tokens_at(clock)
        tokens.issued_at = clock() - 3600 + 60.01
        await manager.set_tokens(tokens)

        await asyncio.wait_for(signed_out.wait(), timeout=2)
        assert await manager.get_tokens() is None

    @pytest.mark.asyncio
    async def test_clear_cancels_schedule(self, manager: TokenLifecycleManager, clock: FakeClock) -> None:
        await manager.set_tokens(tokens_at(clock))
        await manager.clear()
        assert not manager.has_scheduled_refresh


# ── Initialize / logout ─────────────────────────────────────────────


class TestInitialize:
    """Tests for restoring a persisted session."""

    @pytest.mark.asyncio
    async def test_nothing_stored(self, manager: TokenLifecycleManager) -> None:
        assert await manager.initialize() is None

    @pytest.mark.asyncio
    async def test_restores_and_schedules(
        self, token_client: TokenExchangeClient, backend: MemoryStore, clock: FakeClock
    ) -> None:
        first = TokenLifecycleManager(token_client, backend, clock=clock, auto_refresh=False)
        await first.set_tokens(tokens_at(clock))

        second = TokenLifecycleManager(token_client, backend, clock=clock)
        restored = await second.initialize()
        assert restored is not None
        assert restored.access_token == "at-0"
        assert second.has_scheduled_refresh
        await second.close()

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_is_cleared(
        self, manager: TokenLifecycleManager, backend: MemoryStore, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock, refresh=None))
        clock.advance(4000)
        assert await manager.initialize() is None
        assert backend.keys() == []


class TestLogout:
    """Tests for sign-out."""

    @pytest.mark.asyncio
    async def test_logout_revokes_and_clears(
        self,
        manager: TokenLifecycleManager,
        auth_server: FakeAuthServer,
        backend: MemoryStore,
        clock: FakeClock,
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        seen, listener = recorder()
        manager.subscribe(listener)

        await manager.logout()

        assert auth_server.revoke_forms[0]["token"] == "at-0"
        assert auth_server.revoke_forms[0]["token_type_hint"] == "access_token"
        assert backend.keys() == []
        assert seen == [None]
        assert not manager.has_scheduled_refresh

    @pytest.mark.asyncio
    async def test_revocation_failure_still_clears(
        self,
        manager: TokenLifecycleManager,
        auth_server: FakeAuthServer,
        clock: FakeClock,
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        auth_server.revoke_status = 500
        await manager.logout()
        assert await manager.get_tokens() is None

    @pytest.mark.asyncio
    async def test_logout_without_revoke(
        self, manager: TokenLifecycleManager, auth_server: FakeAuthServer, clock: FakeClock
    ) -> None:
        await manager.set_tokens(tokens_at(clock))
        await manager.logout(revoke=False)
        assert auth_server.revoke_forms == []
        assert await manager.get_tokens() is None
