"""Token endpoint client for the Auth Server.

Wraps the ``/oauth/token``, ``/oauth/revoke`` and ``/oauth/userinfo``
endpoints behind one shared ``httpx.AsyncClient`` and maps every failure
onto the typed exceptions in :mod:`authserver_oauth.exceptions`.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import time

from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import (
    MalformedResponseError,
    NetworkError,
    RefreshFailedError,
    RevocationError,
    TokenExchangeError,
)
from ..log import redact_sensitive_data
from ..types import TokenSet
from .pkce import normalize_server_url


if TYPE_CHECKING:
    from ..config import ClientSettings, ProxySettings


logger = logging.getLogger("authserver_oauth.auth")


def _error_fields(resp: httpx.Response) -> tuple[str | None, str | None]:
    """Extract ``{error, error_description}`` from an error response."""
    try:
        body = resp.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    description = body.get("error_description")
    return (
        str(error) if error else None,
        str(description) if description else None,
    )


def _token_set_from_response(raw: Any, previous_refresh_token: str | None = None) -> TokenSet:
    """Build a TokenSet from a token endpoint success body.

    Raises
    ------
    MalformedResponseError
        If the body is not an object or lacks ``access_token``.
    """
    if not isinstance(raw, dict) or not raw.get("access_token"):
        raise MalformedResponseError("Token response did not contain an access_token")
    expires_in = raw.get("expires_in")
    try:
        expires_in = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        expires_in = None
    return TokenSet(
        access_token=str(raw["access_token"]),
        token_type=raw.get("token_type") or "Bearer",
        # Rotation is supported, not assumed
        refresh_token=raw.get("refresh_token") or previous_refresh_token,
        expires_in=expires_in,
        id_token=raw.get("id_token"),
        scope=raw.get("scope") or "",
        raw=raw,
        issued_at=time.time(),
    )


class TokenExchangeClient:
    """Client for the Auth Server token, revocation and userinfo endpoints.

    Parameters
    ----------
    server_url : str
        Auth Server base URL.
    client_id : str
        The OAuth client ID.
    client_secret : str
        Client secret, sent only by confidential integrations (empty for
        public PKCE clients).
    timeout : float
        Request timeout in seconds.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        server_url: str,
        client_id: str,
        client_secret: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the token exchange client."""
        self.server_url = normalize_server_url(server_url)
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings | ProxySettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> TokenExchangeClient:
        """Create a client from client or proxy settings."""
        server_url = getattr(settings, "server_url", None) or getattr(
            settings, "auth_server_url", ""
        )
        return cls(
            server_url=server_url,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            timeout=settings.http_timeout,
            transport=transport,
        )

    @property
    def token_url(self) -> str:
        """The token endpoint."""
        return f"{self.server_url}/oauth/token"

    @property
    def revocation_url(self) -> str:
        """The revocation endpoint."""
        return f"{self.server_url}/oauth/revoke"

    @property
    def userinfo_url(self) -> str:
        """The userinfo endpoint."""
        return f"{self.server_url}/oauth/userinfo"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client. Call from app shutdown lifecycle."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    async def _post_token(
        self,
        data: dict[str, str],
        error_cls: type[TokenExchangeError],
        action: str,
    ) -> Any:
        """POST a grant to the token endpoint and return the decoded body."""
        if self.client_secret:
            data["client_secret"] = self.client_secret
        logger.debug("Token request (%s): %s", action, redact_sensitive_data(data))

        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"{action} request failed: {exc}"
            raise NetworkError(msg) from exc

        if not resp.is_success:
            error, description = _error_fields(resp)
            msg = description or error or f"{action} failed: {resp.status_code}"
            logger.warning("%s rejected (%s): %s", action, resp.status_code, error)
            raise error_cls(
                msg,
                error=error,
                error_description=description,
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as exc:
            msg = f"{action} response was not valid JSON"
            raise MalformedResponseError(msg, status_code=resp.status_code) from exc

    async def exchange_code(self, code: str, verifier: str, redirect_uri: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        code : str
            The authorization code from the callback.
        verifier : str
            The PKCE code verifier paired with the authorize request.
        redirect_uri : str
            The redirect URI used in the authorization request.

        Returns
        -------
        TokenSet
            The token set issued by the server.

        Raises
        ------
        NetworkError
            If the server cannot be reached.
        TokenExchangeError
            If the server rejects the grant.
        MalformedResponseError
            If the success body is unusable.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "code_verifier": verifier,
        }
        raw = await self._post_token(data, TokenExchangeError, "Token exchange")
        return _token_set_from_response(raw)

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Refresh an access token.

        The returned set always carries the new access token; the refresh
        token is replaced only when the server issues a new one.

        Raises
        ------
        NetworkError
            If the server cannot be reached.
        RefreshFailedError
            If the server rejects the refresh grant.
        MalformedResponseError
            If the success body is unusable.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        raw = await self._post_token(data, RefreshFailedError, "Token refresh")
        return _token_set_from_response(raw, previous_refresh_token=refresh_token)

    async def revoke(self, token: str, token_type_hint: str | None = None) -> None:
        """Revoke a token (RFC 7009).

        Parameters
        ----------
        token : str
            The token to revoke (access or refresh).
        token_type_hint : str, optional
            ``access_token`` or ``refresh_token``.

        Raises
        ------
        NetworkError
            If the server cannot be reached.
        RevocationError
            If the server rejects the request.
        """
        data = {"token": token, "client_id": self.client_id}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        if self.client_secret:
            data["client_secret"] = self.client_secret

        try:
            client = await self._get_client()
            resp = await client.post(self.revocation_url, data=data)
        except httpx.HTTPError as exc:
            msg = f"Token revocation request failed: {exc}"
            raise NetworkError(msg) from exc

        if not resp.is_success:
            error, description = _error_fields(resp)
            msg = description or error or f"Token revocation failed: {resp.status_code}"
            raise RevocationError(
                msg,
                error=error,
                error_description=description,
                status_code=resp.status_code,
            )

    async def get_userinfo(self, access_token: str) -> dict[str, Any]:
        """Fetch the user profile for ``access_token``.

        Raises
        ------
        NetworkError
            If the server cannot be reached.
        TokenExchangeError
            If the server rejects the token.
        MalformedResponseError
            If the body is not a JSON object.
        """
        resp = await self.userinfo_passthrough(f"Bearer {access_token}")
        if not resp.is_success:
            error, description = _error_fields(resp)
            msg = description or error or f"Userinfo request failed: {resp.status_code}"
            raise TokenExchangeError(
                msg,
                error=error,
                error_description=description,
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            msg = "Userinfo response was not valid JSON"
            raise MalformedResponseError(msg) from exc
        if not isinstance(body, dict):
            msg = "Userinfo response was not a JSON object"
            raise MalformedResponseError(msg)
        return body

    async def userinfo_passthrough(self, authorization: str) -> httpx.Response:
        """Forward an ``Authorization`` header to the userinfo endpoint.

        Returns the server's response unchanged.

        Raises
        ------
        NetworkError
            If the server cannot be reached.
        """
        try:
            client = await self._get_client()
            return await client.get(
                self.userinfo_url,
                headers={"Authorization": authorization, "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Userinfo request failed: {exc}"
            raise NetworkError(msg) from exc
