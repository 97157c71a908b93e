"""OAuth2 Authorization Code + PKCE client for the Auth Server.

Provides the PKCE and state generators, the popup, loopback and
full-page redirect transports, the token endpoint client, persistence
backends and the token lifecycle manager.
"""

from __future__ import annotations

from .browser import CallbackWindowOpener, SystemBrowserOpener
from .callback_server import LoopbackCallbackServer
from .claims import decode_jwt_claims, is_expired, is_expiring, token_expiry
from .client import AuthClient
from .lifecycle import TokenLifecycleManager
from .messages import normalize_message, parse_callback_result, resolve_callback
from .pkce import (
    PKCEChallenge,
    build_authorize_url,
    compute_challenge,
    generate_nonce,
    generate_pkce,
    generate_state,
    states_match,
)
from .popup import (
    MessageEvent,
    MessageSource,
    PopupHandoffCoordinator,
    PopupWindow,
    WindowOpener,
    compute_popup_geometry,
)
from .redirect import RedirectHandoff
from .storage import (
    KeyringStore,
    KeyValueStore,
    MemoryStore,
    NamespacedStore,
    RedisStore,
    create_store,
)
from .token_client import TokenExchangeClient


__all__ = [
    "AuthClient",
    "CallbackWindowOpener",
    "KeyValueStore",
    "KeyringStore",
    "LoopbackCallbackServer",
    "MemoryStore",
    "MessageEvent",
    "MessageSource",
    "NamespacedStore",
    "PKCEChallenge",
    "PopupHandoffCoordinator",
    "PopupWindow",
    "RedirectHandoff",
    "RedisStore",
    "SystemBrowserOpener",
    "TokenExchangeClient",
    "TokenLifecycleManager",
    "WindowOpener",
    "build_authorize_url",
    "compute_challenge",
    "compute_popup_geometry",
    "create_store",
    "decode_jwt_claims",
    "generate_nonce",
    "generate_pkce",
    "generate_state",
    "is_expired",
    "is_expiring",
    "normalize_message",
    "parse_callback_result",
    "resolve_callback",
    "states_match",
    "token_expiry",
]
