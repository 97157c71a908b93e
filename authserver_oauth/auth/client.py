"""High-level OAuth2 client for the Auth Server.

``AuthClient`` composes the PKCE generators, one transport (popup,
redirect proxy or full-page redirect), the token exchange client and the
lifecycle manager into the surface applications call.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import inspect
import logging
import time

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from ..exceptions import AuthenticationError, ConfigurationError, MalformedResponseError
from ..types import AuthState, FlowState, TokenSet
from .lifecycle import TokenLifecycleManager
from .pkce import build_authorize_url, generate_nonce, generate_pkce, generate_state, normalize_server_url
from .popup import PopupHandoffCoordinator
from .redirect import RedirectHandoff
from .storage import MemoryStore, NamespacedStore, create_store
from .token_client import TokenExchangeClient


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ..config import ClientSettings
    from ..types import AuthorizationResult
    from .popup import MessageSource, WindowOpener
    from .storage import KeyValueStore


logger = logging.getLogger("authserver_oauth.auth")

# Lifetime assumed for access tokens handed over by the redirect proxy
DIRECT_TOKEN_LIFETIME = 3600


class AuthClient:
    """OAuth2 Authorization Code + PKCE client.

    Parameters
    ----------
    server_url : str
        Auth Server base URL.
    client_id : str
        The OAuth client ID.
    redirect_uri : str
        Redirect URI registered for the client.
    scopes : iterable of str, optional
        Requested scopes (default ``openid profile email``).
    client_secret : str
        Only for confidential integrations; leave empty for PKCE clients.
    store : KeyValueStore, optional
        Persistence backend (default: a new in-memory store).
    storage_prefix : str
        Key prefix for persisted state (default ``"authserver"``).
    opener : WindowOpener, optional
        Opens popups; required for :meth:`authorize` and the popup logins.
    messages : MessageSource, optional
        Delivers popup results; required together with ``opener``.
    refresh_threshold : float
        Seconds before expiry at which tokens are refreshed.
    auto_refresh : bool
        Schedule background refreshes.
    popup_width, popup_height : int
        Popup size in pixels.
    poll_interval : float
        Seconds between popup-closed checks.
    auth_timeout : float, optional
        Maximum seconds to wait for a popup result.
    token_client : TokenExchangeClient, optional
        Pre-built token client (custom transports, tests).
    clock : callable
        Returns the current Unix time.

    Raises
    ------
    ConfigurationError
        If ``server_url``, ``client_id`` or ``redirect_uri`` is missing or
        malformed.
    """

    def __init__(
        self,
        server_url: str,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str] | None = None,
        client_secret: str = "",
        store: KeyValueStore | None = None,
        storage_prefix: str = "authserver",
        opener: WindowOpener | None = None,
        messages: MessageSource | None = None,
        refresh_threshold: float = 60,
        auto_refresh: bool = True,
        popup_width: int = 500,
        popup_height: int = 600,
        poll_interval: float = 0.5,
        auth_timeout: float | None = None,
        token_client: TokenExchangeClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the client."""
        if not client_id:
            msg = "client_id is required"
            raise ConfigurationError(msg)
        if not redirect_uri:
            msg = "redirect_uri is required"
            raise ConfigurationError(msg, client_id=client_id)

        self.server_url = normalize_server_url(server_url)
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes) if scopes is not None else ["openid", "profile", "email"]

        self.store = NamespacedStore(store or MemoryStore(), storage_prefix)
        self.token_client = token_client or TokenExchangeClient(
            self.server_url, client_id, client_secret=client_secret
        )
        self.lifecycle = TokenLifecycleManager(
            self.token_client,
            self.store,
            refresh_threshold=refresh_threshold,
            auto_refresh=auto_refresh,
            clock=clock,
        )
        self.redirect = RedirectHandoff(self.store, clock=clock)
        self.popup: PopupHandoffCoordinator | None = None
        if opener is not None and messages is not None:
            self.popup = PopupHandoffCoordinator(
                opener,
                messages,
                popup_width=popup_width,
                popup_height=popup_height,
                poll_interval=poll_interval,
                timeout=auth_timeout,
            )

        self._user_listeners: list[Callable[[dict[str, Any] | None], Any]] = []
        self.lifecycle.subscribe(self._on_tokens_changed)

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        opener: WindowOpener | None = None,
        messages: MessageSource | None = None,
        store: KeyValueStore | None = None,
        **kwargs: Any,
    ) -> AuthClient:
        """Create a client from :class:`~authserver_oauth.config.ClientSettings`.

        The persistence backend is built from ``storage_backend`` unless
        ``store`` is given.
        """
        if store is None:
            store = create_store(
                settings.storage_backend,
                redis_url=settings.redis_url,
                prefix=settings.storage_prefix,
            )
        token_client = kwargs.pop("token_client", None)
        if token_client is None and settings.server_url:
            token_client = TokenExchangeClient.from_settings(settings)
        return cls(
            server_url=settings.server_url,
            client_id=settings.client_id,
            redirect_uri=kwargs.pop("redirect_uri", settings.redirect_uri),
            scopes=settings.scopes,
            client_secret=settings.client_secret,
            store=store,
            storage_prefix=settings.storage_prefix,
            opener=opener,
            messages=messages,
            refresh_threshold=settings.refresh_threshold,
            auto_refresh=settings.auto_refresh,
            popup_width=settings.popup_width,
            popup_height=settings.popup_height,
            poll_interval=settings.poll_interval,
            auth_timeout=settings.auth_timeout,
            token_client=token_client,
            **kwargs,
        )

    # ── Subscriptions ────────────────────────────────────────────────

    def on_token_update(self, listener: Callable[[TokenSet | None], Any]) -> Callable[[], None]:
        """Call ``listener`` whenever tokens change (None on sign-out)."""
        return self.lifecycle.subscribe(listener)

    def on_user_update(
        self, listener: Callable[[dict[str, Any] | None], Any]
    ) -> Callable[[], None]:
        """Call ``listener`` whenever the user profile changes (None on sign-out)."""
        self._user_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._user_listeners:
                self._user_listeners.remove(listener)

        return _unsubscribe

    async def _notify_user(self, user: dict[str, Any] | None) -> None:
        for listener in list(self._user_listeners):
            try:
                result = listener(user)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("User listener raised")

    async def _on_tokens_changed(self, tokens: TokenSet | None) -> None:
        if tokens is None:
            await self._notify_user(None)

    # ── Flows ────────────────────────────────────────────────────────

    def _new_flow(self, redirect_uri: str | None = None) -> tuple[FlowState, str]:
        """Create a FlowState and its authorization URL."""
        pkce = generate_pkce()
        flow = FlowState(
            state=generate_state(),
            verifier=pkce.verifier,
            redirect_uri=redirect_uri or self.redirect_uri,
            nonce=generate_nonce(),
        )
        url = build_authorize_url(
            self.server_url,
            self.client_id,
            flow.redirect_uri,
            self.scopes,
            flow.state,
            pkce.challenge,
            nonce=flow.nonce,
        )
        return flow, url

    def _require_popup(self) -> PopupHandoffCoordinator:
        if self.popup is None:
            msg = "Popup login requires an opener and a message source"
            raise ConfigurationError(msg, client_id=self.client_id)
        return self.popup

    async def authorize(self) -> AuthorizationResult:
        """Run the popup transport and return the validated authorization result.

        Raises
        ------
        ConfigurationError
            If no opener/message source was configured.
        AuthenticationError
            Any rejection of the popup attempt.
        """
        popup = self._require_popup()
        flow, url = self._new_flow()
        return await popup.authorize(url, flow)

    async def _apply_result(self, result: AuthorizationResult) -> TokenSet:
        """Turn a transport result into persisted tokens."""
        if result.code:
            tokens = await self.token_client.exchange_code(
                result.code, result.verifier or "", result.redirect_uri
            )
        elif result.token:
            tokens = TokenSet(
                access_token=result.token,
                expires_in=DIRECT_TOKEN_LIFETIME,
            )
        else:
            msg = "Authorization result carried neither a code nor a token"
            raise MalformedResponseError(msg)
        await self.lifecycle.set_tokens(tokens)
        return tokens

    async def login_with_popup(self) -> TokenSet:
        """Sign in through a popup and exchange the code.

        Returns
        -------
        TokenSet
            The persisted tokens.
        """
        result = await self.authorize()
        tokens = await self._apply_result(result)
        logger.info("Signed in via popup")
        return tokens

    async def login_with_proxy(
        self,
        proxy_url: str,
        site_id: str | None = None,
        provider: str = "auth-server",
        scope: str | None = None,
    ) -> TokenSet:
        """Sign in through an edge redirect proxy.

        The proxy performs the exchange server side and posts the access
        token back; ``client_state`` lets the popup validate the result.

        Parameters
        ----------
        proxy_url : str
            Base URL of the redirect proxy.
        site_id : str, optional
            The requesting site, checked against the proxy allow-list.
        provider : str
            Provider name echoed in the result messages.
        scope : str, optional
            Requested scopes (default: the client's scopes).
        """
        popup = self._require_popup()
        state = generate_state()
        params: dict[str, str] = {
            "provider": provider,
            "scope": scope or " ".join(self.scopes),
            "client_state": state,
        }
        if site_id:
            params["site_id"] = site_id
        base = normalize_server_url(proxy_url)
        url = f"{base}/authorize-start?{urlencode(params)}"
        flow = FlowState(state=state, verifier="", redirect_uri=f"{base}/authorize-callback")

        result = await popup.authorize(url, flow)
        if not result.token:
            msg = "Redirect proxy did not return an access token"
            raise MalformedResponseError(msg)
        tokens = await self._apply_result(result)
        logger.info("Signed in via redirect proxy")
        return tokens

    async def begin_redirect_login(self) -> str:
        """Persist a new flow and return the URL to navigate the page to."""
        flow, url = self._new_flow()
        await self.redirect.begin(flow)
        return url

    async def handle_redirect_callback(self, callback_url: str) -> TokenSet:
        """Complete a full-page redirect login.

        Parameters
        ----------
        callback_url : str
            The URL the browser was redirected back to.
        """
        result = await self.redirect.complete(callback_url)
        tokens = await self._apply_result(result)
        logger.info("Signed in via redirect")
        return tokens

    def cancel(self) -> None:
        """Cancel a pending popup attempt."""
        if self.popup is not None:
            self.popup.cancel()

    # ── Session ──────────────────────────────────────────────────────

    async def initialize(self) -> TokenSet | None:
        """Restore a persisted session."""
        return await self.lifecycle.initialize()

    async def get_access_token(self) -> str | None:
        """Return a usable access token (refreshing when near expiry), or None."""
        return await self.lifecycle.get_access_token()

    async def get_tokens(self) -> TokenSet | None:
        """Return the persisted token set."""
        return await self.lifecycle.get_tokens()

    async def refresh(self) -> TokenSet:
        """Refresh the access token now."""
        return await self.lifecycle.refresh()

    async def fetch_userinfo(self) -> dict[str, Any]:
        """Fetch, persist and broadcast the user profile.

        Raises
        ------
        AuthenticationError
            If there is no usable access token.
        """
        access_token = await self.get_access_token()
        if access_token is None:
            msg = "Not authenticated"
            raise AuthenticationError(msg)
        user = await self.token_client.get_userinfo(access_token)
        await self.lifecycle.save_user(user)
        await self._notify_user(user)
        return user

    async def get_user(self) -> dict[str, Any] | None:
        """Return the persisted user profile."""
        return await self.lifecycle.get_user()

    async def is_authenticated(self) -> bool:
        """Whether a usable session exists."""
        return await self.lifecycle.is_authenticated()

    async def get_state(self) -> AuthState:
        """Snapshot of the session for UIs."""
        return AuthState(
            is_authenticated=await self.is_authenticated(),
            user=await self.get_user(),
            tokens=await self.get_tokens(),
        )

    async def logout(self, revoke: bool = True) -> None:
        """Sign out, optionally revoking the access token first."""
        self.cancel()
        await self.redirect.discard()
        await self.lifecycle.logout(revoke=revoke)

    async def close(self) -> None:
        """Cancel pending work and close the HTTP client."""
        self.cancel()
        await self.lifecycle.close()
        await self.token_client.close()
