"""authserver-oauth - OAuth2 PKCE client and edge redirect proxy.

This package signs users in against the Auth Server with the
Authorization Code flow and PKCE, keeps their tokens fresh, and ships a
stateless redirect proxy for sites that cannot run the exchange
themselves.
"""

from .auth import (
    AuthClient,
    CallbackWindowOpener,
    KeyValueStore,
    LoopbackCallbackServer,
    MemoryStore,
    PKCEChallenge,
    PopupHandoffCoordinator,
    RedirectHandoff,
    SystemBrowserOpener,
    TokenExchangeClient,
    TokenLifecycleManager,
    build_authorize_url,
    create_store,
    generate_pkce,
    generate_state,
)
from .config import ClientSettings, LogSettings, ProxySettings, Settings, get_settings
from .exceptions import (
    AuthenticationError,
    AuthFlowTimeout,
    AuthorizationDeniedError,
    AuthServerOAuthError,
    ConfigurationError,
    CsrfDetectedError,
    FlowInProgressError,
    InvalidSessionError,
    MalformedResponseError,
    NetworkError,
    PopupBlockedError,
    RefreshFailedError,
    RevocationError,
    SessionExpiredError,
    TokenError,
    TokenExchangeError,
    UnsupportedDomainError,
    UserCancelledError,
)
from .log import enable_debug, get_logger, set_level
from .types import (
    AuthorizationResult,
    AuthState,
    CallbackError,
    CallbackSuccess,
    FlowState,
    PopupState,
    TokenSet,
    Viewport,
)


__version__ = "0.1.0"

__all__ = [
    "AuthClient",
    "AuthFlowTimeout",
    "AuthServerOAuthError",
    "AuthState",
    "AuthenticationError",
    "AuthorizationDeniedError",
    "AuthorizationResult",
    "CallbackError",
    "CallbackSuccess",
    "CallbackWindowOpener",
    "ClientSettings",
    "ConfigurationError",
    "CsrfDetectedError",
    "FlowInProgressError",
    "FlowState",
    "InvalidSessionError",
    "KeyValueStore",
    "LogSettings",
    "LoopbackCallbackServer",
    "MalformedResponseError",
    "MemoryStore",
    "NetworkError",
    "PKCEChallenge",
    "PopupBlockedError",
    "PopupHandoffCoordinator",
    "PopupState",
    "ProxySettings",
    "RedirectHandoff",
    "RefreshFailedError",
    "RevocationError",
    "SessionExpiredError",
    "Settings",
    "SystemBrowserOpener",
    "TokenError",
    "TokenExchangeClient",
    "TokenExchangeError",
    "TokenLifecycleManager",
    "TokenSet",
    "UnsupportedDomainError",
    "UserCancelledError",
    "Viewport",
    "__version__",
    "build_authorize_url",
    "create_store",
    "enable_debug",
    "generate_pkce",
    "generate_state",
    "get_logger",
    "get_settings",
    "set_level",
]
