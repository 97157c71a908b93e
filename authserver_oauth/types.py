"""Type definitions for authserver-oauth.

Shared data model used by the transports, the token exchange client and
the lifecycle manager.
"""

from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class PopupState(str, Enum):
    """State of a popup authorization attempt."""

    IDLE = "idle"
    OPENING = "opening"
    AWAITING_RESULT = "awaiting_result"
    RESOLVED = "resolved"
    REJECTED = "rejected"


@dataclass
class TokenSet:
    """OAuth2 token set returned by the Auth Server.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Optional refresh token for obtaining new access tokens.
    expires_in : int or None
        Token lifetime in seconds from issuance.
    id_token : str or None
        Optional OIDC ID token (JWT).
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the server.
    issued_at : float
        Unix timestamp when the token was issued.
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)

    @property
    def expires_at(self) -> float | None:
        """Get the expiry timestamp from ``expires_in``, or None if unknown."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "id_token": self.id_token,
            "scope": self.scope,
            "raw": self.raw,
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> TokenSet:
        """Deserialize from a dict produced by :meth:`to_dict`."""
        return cls(
            access_token=obj["access_token"],
            token_type=obj.get("token_type") or "Bearer",
            refresh_token=obj.get("refresh_token"),
            expires_in=obj.get("expires_in"),
            id_token=obj.get("id_token"),
            scope=obj.get("scope") or "",
            raw=obj.get("raw") or {},
            issued_at=obj.get("issued_at", time.time()),
        )


@dataclass
class FlowState:
    """Transient state of one authorization attempt.

    Attributes
    ----------
    state : str
        The CSRF correlation token sent to the authorize endpoint.
    verifier : str
        The PKCE code verifier.
    redirect_uri : str
        The redirect URI used in the authorize request (and the exchange).
    created_at : float
        Unix timestamp when the attempt started.
    nonce : str or None
        Optional OIDC nonce.
    client_state : str or None
        State supplied by the opener of a proxy flow, echoed back in the
        posted result.
    """

    state: str
    verifier: str
    redirect_uri: str
    created_at: float = field(default_factory=time.time)
    nonce: str | None = None
    client_state: str | None = None

    def is_expired(self, ttl: float, now: float | None = None) -> bool:
        """Check whether the flow is older than ``ttl`` seconds."""
        current = time.time() if now is None else now
        return current - self.created_at > ttl

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the compact JSON shape used by cookies and stores."""
        data: dict[str, Any] = {
            "state": self.state,
            "verifier": self.verifier,
            "redirectUri": self.redirect_uri,
            "createdAt": self.created_at,
        }
        if self.nonce is not None:
            data["nonce"] = self.nonce
        if self.client_state is not None:
            data["clientState"] = self.client_state
        return data

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> FlowState:
        """Deserialize from :meth:`to_dict` output.

        Raises
        ------
        KeyError
            If a required field is missing.
        """
        return cls(
            state=str(obj["state"]),
            verifier=str(obj["verifier"]),
            redirect_uri=str(obj["redirectUri"]),
            created_at=float(obj["createdAt"]),
            nonce=obj.get("nonce"),
            client_state=obj.get("clientState"),
        )


@dataclass(frozen=True)
class CallbackSuccess:
    """A callback carrying an authorization code (or a proxy-issued token)."""

    state: str | None
    code: str | None = None
    token: str | None = None


@dataclass(frozen=True)
class CallbackError:
    """A callback carrying an OAuth error."""

    error: str
    description: str | None = None
    state: str | None = None


CallbackResult = Union[CallbackSuccess, CallbackError]


@dataclass
class AuthorizationResult:
    """Resolved value of an authorization transport.

    Attributes
    ----------
    state : str
        The validated state token.
    redirect_uri : str
        The redirect URI that must accompany the code exchange.
    code : str or None
        The authorization code (popup/redirect transports).
    verifier : str or None
        The PKCE verifier paired with ``code``.
    token : str or None
        An access token already exchanged by the redirect proxy.
    """

    state: str
    redirect_uri: str
    code: str | None = None
    verifier: str | None = None
    token: str | None = None


@dataclass(frozen=True)
class Viewport:
    """Position and size of the window that opens the popup."""

    left: int = 0
    top: int = 0
    width: int = 1280
    height: int = 800


@dataclass(frozen=True)
class PopupGeometry:
    """Size and screen position of a popup."""

    width: int
    height: int
    left: int
    top: int

    def features(self) -> str:
        """Render as a ``window.open`` feature string."""
        return f"width={self.width},height={self.height},left={self.left},top={self.top}"


@dataclass
class AuthState:
    """Snapshot of the client session for UIs."""

    is_authenticated: bool
    user: dict[str, Any] | None = None
    tokens: TokenSet | None = None
