"""Token lifecycle manager with automatic refresh.

Manages the lifecycle of OAuth2 tokens including persistence, expiry
tracking, single-flight refresh and revocation. Refreshes are scheduled
on the running event loop with ``loop.call_later``.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time

from typing import TYPE_CHECKING, Any

from ..exceptions import AuthServerOAuthError, RefreshFailedError
from ..types import TokenSet
from .claims import is_expired, is_expiring, token_expiry
from .storage import TOKENS_KEY, USER_KEY, NamespacedStore


if TYPE_CHECKING:
    from collections.abc import Callable

    from .storage import KeyValueStore
    from .token_client import TokenExchangeClient

    TokenListener = Callable[[TokenSet | None], Any]


logger = logging.getLogger("authserver_oauth.auth")


class TokenLifecycleManager:
    """Owns the persisted TokenSet and keeps it fresh.

    Parameters
    ----------
    token_client : TokenExchangeClient
        Client used for refresh and revocation.
    store : KeyValueStore
        Persistence backend. Keys are namespaced with ``storage_prefix``
        unless a :class:`NamespacedStore` is passed.
    storage_prefix : str
        Key prefix (default ``"authserver"``).
    refresh_threshold : float
        Seconds before expiry at which a token is refreshed (default ``60``).
    auto_refresh : bool
        Schedule background refreshes (default ``True``).
    clock : callable
        Returns the current Unix time (default ``time.time``).
    """

    def __init__(
        self,
        token_client: TokenExchangeClient,
        store: KeyValueStore,
        storage_prefix: str = "authserver",
        refresh_threshold: float = 60,
        auto_refresh: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the lifecycle manager."""
        self.token_client = token_client
        self.store = store if isinstance(store, NamespacedStore) else NamespacedStore(store, storage_prefix)
        self.refresh_threshold = refresh_threshold
        self.auto_refresh = auto_refresh
        self._clock = clock

        self._listeners: list[TokenListener] = []
        self._refresh_task: asyncio.Task[TokenSet] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._scheduled_task: asyncio.Task[None] | None = None
        self._fire_at: float | None = None
        # Bumped on every write or sign-out; a refresh started under an
        # older generation must not store its result
        self._generation = 0

    # ── Subscribers ──────────────────────────────────────────────────

    def subscribe(self, listener: TokenListener) -> Callable[[], None]:
        """Register a listener called with the new TokenSet (or None on sign-out).

        Returns
        -------
        callable
            Call to unsubscribe.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _notify(self, tokens: TokenSet | None) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(tokens)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Token listener raised")

    # ── Persistence ──────────────────────────────────────────────────

    async def get_tokens(self) -> TokenSet | None:
        """Read the persisted TokenSet, or None if absent or unreadable."""
        data = await self.store.get_json(TOKENS_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return TokenSet.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable persisted token set")
            return None

    async def set_tokens(self, tokens: TokenSet) -> None:
        """Persist ``tokens``, reschedule refresh and notify subscribers.

        The TokenSet is written as one document so readers never observe a
        partial update. A refresh already in flight for the previous
        TokenSet is discarded when it completes.
        """
        self._generation += 1
        await self.store.set_json(TOKENS_KEY, tokens.to_dict())
        self._schedule(tokens)
        await self._notify(tokens)

    async def save_user(self, user: dict[str, Any] | None) -> None:
        """Persist (or remove) the user profile."""
        if user is None:
            await self.store.remove(USER_KEY)
        else:
            await self.store.set_json(USER_KEY, user)

    async def get_user(self) -> dict[str, Any] | None:
        """Read the persisted user profile."""
        user = await self.store.get_json(USER_KEY)
        return user if isinstance(user, dict) else None

    async def initialize(self) -> TokenSet | None:
        """Restore a persisted session and reschedule its refresh.

        Returns
        -------
        TokenSet or None
            The restored tokens, or None when nothing usable is stored.
        """
        tokens = await self.get_tokens()
        if tokens is None:
            return None
        if not tokens.refresh_token and is_expired(tokens, self._clock()):
            logger.debug("Persisted session expired without a refresh token")
            await self.clear()
            return None
        self._schedule(tokens)
        return tokens

    # ── Access ───────────────────────────────────────────────────────

    async def get_access_token(self) -> str | None:
        """Get a usable access token, refreshing it when near expiry.

        Returns
        -------
        str or None
            The access token, or None when signed out or expired without a
            refresh token.

        Raises
        ------
        RefreshFailedError
            If the server rejects the refresh (the session is cleared).
        NetworkError
            If the server cannot be reached during the refresh.
        """
        tokens = await self.get_tokens()
        if tokens is None:
            return None

        now = self._clock()
        if not is_expiring(tokens, self.refresh_threshold, now):
            return tokens.access_token

        if tokens.refresh_token:
            new_tokens = await self.refresh()
            return new_tokens.access_token

        if is_expired(tokens, now):
            return None
        return tokens.access_token

    async def is_authenticated(self) -> bool:
        """Whether a token set that is not yet expired (or refreshable) exists."""
        tokens = await self.get_tokens()
        if tokens is None:
            return False
        return bool(tokens.refresh_token) or not is_expired(tokens, self._clock())

    # ── Refresh ──────────────────────────────────────────────────────

    async def refresh(self) -> TokenSet:
        """Refresh the access token (single flight).

        Concurrent callers share one in-flight request and its result.

        Returns
        -------
        TokenSet
            The new token set.

        Raises
        ------
        RefreshFailedError
            If there is no refresh token, or the server rejects it (the
            session is cleared first).
        NetworkError
            If the server cannot be reached.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> TokenSet:
        generation = self._generation
        tokens = await self.get_tokens()
        if tokens is None or not tokens.refresh_token:
            msg = "No refresh token available"
            raise RefreshFailedError(msg)

        try:
            new_tokens = await self.token_client.refresh(tokens.refresh_token)
        except RefreshFailedError as exc:
            if generation != self._generation:
                return await self._current_after_stale_refresh()
            logger.warning("Token refresh rejected: %s", exc)
            await self.clear()
            raise

        if generation != self._generation:
            return await self._current_after_stale_refresh()

        await self.set_tokens(new_tokens)
        logger.info("Access token refreshed")
        return new_tokens

    async def _current_after_stale_refresh(self) -> TokenSet:
        """Return the TokenSet stored while a refresh was in flight."""
        logger.debug("Discarding refresh result for a replaced session")
        current = await self.get_tokens()
        if current is None:
            msg = "Session ended during refresh"
            raise RefreshFailedError(msg)
        return current

    # ── Scheduling ───────────────────────────────────────────────────

    @property
    def fire_at(self) -> float | None:
        """Unix time of the scheduled refresh, or None if none is scheduled."""
        return self._fire_at if self._timer is not None else None

    @property
    def has_scheduled_refresh(self) -> bool:
        """Whether a background refresh is scheduled."""
        return self._timer is not None

    def _schedule(self, tokens: TokenSet) -> None:
        """Replace the refresh schedule for ``tokens``."""
        self._cancel_schedule()

        if not self.auto_refresh or not tokens.refresh_token:
            return
        expiry = token_expiry(tokens)
        if expiry is None:
            # Unknown expiry reads as expired, so refresh happens on demand
            return

        now = self._clock()
        fire_at = expiry - self.refresh_threshold
        if fire_at <= now:
            # Lifetime shorter than the threshold
            fire_at = expiry
        delay = max(0.0, fire_at - now)

        logger.debug("Scheduling token refresh in %.0fs", delay)
        self._fire_at = fire_at
        self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._scheduled_task = asyncio.get_running_loop().create_task(self._scheduled_refresh())

    async def _scheduled_refresh(self) -> None:
        """Run a background refresh; failures sign out instead of raising."""
        try:
            await self.refresh()
        except RefreshFailedError:
            pass  # Session already cleared
        except Exception as exc:
            logger.warning("Background token refresh failed: %s", exc)
            await self.clear()

    def _cancel_schedule(self) -> None:
        """Cancel any pending refresh timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._fire_at = None

    # ── Sign-out ─────────────────────────────────────────────────────

    async def clear(self) -> None:
        """Drop the persisted tokens and user, cancel the schedule, notify."""
        self._generation += 1
        self._cancel_schedule()
        await self.store.remove(TOKENS_KEY)
        await self.store.remove(USER_KEY)
        await self._notify(None)

    async def logout(self, revoke: bool = True) -> None:
        """Sign out: cancel refreshes, revoke the access token, clear all state.

        Parameters
        ----------
        revoke : bool
            Best-effort revocation of the access token (default ``True``).
        """
        self._generation += 1
        self._cancel_schedule()
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()

        tokens = await self.get_tokens()
        if revoke and tokens is not None:
            with contextlib.suppress(AuthServerOAuthError):
                await self.token_client.revoke(tokens.access_token, "access_token")

        await self.store.clear()
        await self._notify(None)
        logger.info("Signed out")

    async def close(self) -> None:
        """Cancel timers and in-flight background work."""
        self._cancel_schedule()
        for task in (self._scheduled_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._scheduled_task = None
        self._refresh_task = None
