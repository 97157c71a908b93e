"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).

Also provides the state/nonce generators and the authorization URL
builder shared by every transport.
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlencode, urlparse

from ..exceptions import ConfigurationError


if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


# 32 random bytes -> 43 URL-safe characters (256 bits of entropy)
STATE_BYTES = 32


def compute_challenge(verifier: str) -> str:
    """Return base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 64) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of random bytes for the verifier (default 64, giving an
            86-character verifier). Must be between 32 and 96 so the
            verifier stays within RFC 7636's 43-128 characters.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        if not 32 <= length <= 96:
            msg = f"PKCE verifier length must be between 32 and 96 bytes, got {length}"
            raise ValueError(msg)
        verifier = secrets.token_urlsafe(length)
        return cls(verifier=verifier, challenge=compute_challenge(verifier))


def generate_pkce(length: int = 64) -> PKCEChallenge:
    """Generate a PKCE pair (alias of :meth:`PKCEChallenge.generate`)."""
    return PKCEChallenge.generate(length)


def generate_state() -> str:
    """Generate a CSRF state token.

    Returns
    -------
    str
        43 characters from the URL-safe base64 alphabet ``[A-Za-z0-9_-]``.
    """
    return secrets.token_urlsafe(STATE_BYTES)


def generate_nonce() -> str:
    """Generate an OIDC nonce with the same properties as the state token."""
    return secrets.token_urlsafe(STATE_BYTES)


def states_match(received: str | None, expected: str) -> bool:
    """Compare a returned state token with the pending one in constant time."""
    if received is None:
        return False
    return secrets.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def normalize_server_url(server_base_url: str) -> str:
    """Validate an Auth Server base URL and strip trailing slashes.

    Raises
    ------
    ConfigurationError
        If the URL lacks an http(s) scheme or a host.
    """
    parsed = urlparse(server_base_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(
            "Auth Server URL must be an absolute http(s) URL",
            server_url=server_base_url,
        )
    return server_base_url.rstrip("/")


def build_authorize_url(
    server_base_url: str,
    client_id: str,
    redirect_uri: str,
    scopes: Iterable[str] | str,
    state: str,
    challenge: str,
    nonce: str | None = None,
    extra_params: Mapping[str, str] | None = None,
) -> str:
    """Build the authorization request URL.

    Parameters
    ----------
    server_base_url : str
        Auth Server base URL (trailing slashes are ignored).
    client_id : str
        The OAuth client ID.
    redirect_uri : str
        Where the server sends the browser back with the code.
    scopes : iterable of str or str
        Requested scopes; joined with spaces.
    state : str
        The CSRF state token.
    challenge : str
        The PKCE S256 code challenge.
    nonce : str, optional
        OIDC nonce.
    extra_params : mapping, optional
        Additional query parameters appended after the standard ones.

    Returns
    -------
    str
        ``{server}/oauth/authorize?...``

    Raises
    ------
    ConfigurationError
        If ``server_base_url`` is malformed.
    """
    base = normalize_server_url(server_base_url)
    scope = scopes if isinstance(scopes, str) else " ".join(scopes)
    params: dict[str, str] = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    if nonce:
        params["nonce"] = nonce
    if extra_params:
        params.update(extra_params)
    return f"{base}/oauth/authorize?{urlencode(params)}"
