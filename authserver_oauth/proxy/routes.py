"""FastAPI routes for the edge redirect proxy.

Provides the start/finish pair of the authorization redirect, a bearer
passthrough to the userinfo endpoint, a health probe and a catch-all
that answers CORS preflights and 404s everything else. Flow state lives
only in the signed ``oauth-state`` cookie.
"""

# pylint: disable=logging-too-many-args,too-many-statements

from __future__ import annotations

import collections
import fnmatch
import logging
import threading
import time

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from ..auth.pkce import build_authorize_url, generate_nonce, generate_pkce, generate_state, states_match
from ..exceptions import (
    AuthServerOAuthError,
    CsrfDetectedError,
    InvalidSessionError,
    MalformedResponseError,
    NetworkError,
    SessionExpiredError,
    TokenExchangeError,
    UnsupportedDomainError,
)
from ..types import FlowState
from .cookies import COOKIE_NAME, decode_flow_cookie, encode_flow_cookie, expire_flow_cookie, set_flow_cookie
from .pages import PAGE_HEADERS, render_result_page


if TYPE_CHECKING:
    from ..auth.token_client import TokenExchangeClient
    from ..config import ProxySettings


logger = logging.getLogger("authserver_oauth.proxy")

START_PATHS = ("/authorize-start", "/auth", "/oauth/authorize")
FINISH_PATHS = ("/authorize-callback", "/callback", "/oauth/callback", "/oauth/redirect")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type",
    "Access-Control-Max-Age": "86400",
}


# ── Rate Limiter ─────────────────────────────────────────────────────


class LoginRateLimiter:
    """Simple in-process sliding-window rate limiter for start requests.

    Limits by client IP address with a configurable window and max requests.

    Parameters
    ----------
    max_requests : int
        Maximum number of requests allowed per window.
    window_seconds : float
        Time window in seconds.
    """

    def __init__(self, max_requests: int = 30, window_seconds: float = 60.0) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, collections.deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def is_allowed(self, client_ip: str) -> bool:
        """Check if a request from *client_ip* is allowed.

        Clients whose requests have all left the window are dropped by a
        sweep that runs at most once per window.
        """
        now = time.monotonic()
        cutoff = now - self._window
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(cutoff)
                self._last_sweep = now
            dq = self._requests.setdefault(client_ip, collections.deque())
            while dq and dq[0] < cutoff:
                dq.popleft()
            if len(dq) >= self._max_requests:
                return False
            dq.append(now)
            return True

    def _sweep(self, cutoff: float) -> None:
        for client_ip in list(self._requests):
            dq = self._requests[client_ip]
            while dq and dq[0] < cutoff:
                dq.popleft()
            if not dq:
                del self._requests[client_ip]

    @property
    def tracked_clients(self) -> int:
        """Number of client addresses currently tracked."""
        with self._lock:
            return len(self._requests)

    def reset(self) -> None:
        """Clear all rate limit state."""
        with self._lock:
            self._requests.clear()


# ── Allow-list ───────────────────────────────────────────────────────


def is_site_allowed(site_id: str | None, patterns: list[str]) -> bool:
    """Match ``site_id`` against glob ``patterns`` (case-insensitive).

    An empty allow-list permits every site; a configured one rejects a
    missing ``site_id``.
    """
    if not patterns:
        return True
    if not site_id:
        return False
    site = site_id.strip().lower()
    return any(fnmatch.fnmatchcase(site, pattern.strip().lower()) for pattern in patterns)


# ── Router ───────────────────────────────────────────────────────────


def create_proxy_router(  # noqa: C901, PLR0915
    settings: ProxySettings,
    token_client: TokenExchangeClient | None = None,
    rate_limiter: LoginRateLimiter | None = None,
    include_catch_all: bool = True,
) -> APIRouter:
    """Create the redirect proxy router.

    Parameters
    ----------
    settings : ProxySettings
        Proxy configuration.
    token_client : TokenExchangeClient, optional
        Client for the exchange and userinfo passthrough. Without it (or
        without a server URL and client id) every flow route renders
        ``MISCONFIGURED_CLIENT``.
    rate_limiter : LoginRateLimiter, optional
        Limiter for start requests (default: built from settings).
    include_catch_all : bool
        Register the OPTIONS/404 catch-all (must be the last route).

    Returns
    -------
    APIRouter
        Router with the proxy routes.
    """
    router = APIRouter(tags=["oauth-proxy"])
    limiter = rate_limiter or LoginRateLimiter(
        settings.rate_limit_requests, settings.rate_limit_window
    )
    configured = bool(settings.auth_server_url and settings.client_id and token_client)

    def _page(
        status_code: int = 200,
        *,
        provider: str | None = None,
        token: str | None = None,
        error: str | None = None,
        error_code: str | None = None,
        state: str | None = None,
        finish: bool = False,
    ) -> HTMLResponse:
        response = HTMLResponse(
            render_result_page(
                provider or settings.provider,
                token=token,
                error=error,
                error_code=error_code,
                state=state,
                close_delay_ms=settings.close_delay_ms,
            ),
            status_code=status_code,
            headers=PAGE_HEADERS,
        )
        if finish:
            expire_flow_cookie(response, secure=settings.cookie_secure)
        return response

    def _error_page(
        exc: AuthServerOAuthError,
        status_code: int,
        *,
        provider: str | None = None,
        state: str | None = None,
        finish: bool = True,
    ) -> HTMLResponse:
        return _page(
            status_code,
            provider=provider,
            error=exc.message,
            error_code=exc.error_code,
            state=state,
            finish=finish,
        )

    def _misconfigured(
        provider: str | None = None,
        state: str | None = None,
        finish: bool = False,
    ) -> HTMLResponse:
        logger.error("Redirect proxy is missing its Auth Server URL or client id")
        return _page(
            500,
            provider=provider,
            error="OAuth client is not configured",
            error_code="MISCONFIGURED_CLIENT",
            state=state,
            finish=finish,
        )

    async def authorize_start(
        request: Request,
        provider: str | None = None,
        scope: str | None = None,
        site_id: str | None = None,
        client_state: str | None = None,
    ) -> Response:
        """Start an authorization redirect.

        Validates the requesting site, stores the flow in the signed
        cookie and redirects to the Auth Server's authorize endpoint.
        """
        client_ip = request.client.host if request.client else "unknown"
        if not limiter.is_allowed(client_ip):
            logger.warning("Rate limited start request from %s", client_ip)
            return _page(
                429,
                provider=provider,
                error="Too many login attempts. Please try again later.",
                error_code="RATE_LIMITED",
                state=client_state,
            )

        if not configured or token_client is None:
            return _misconfigured(provider=provider, state=client_state)

        if not is_site_allowed(site_id, settings.allowed_domains):
            logger.warning("Rejected start request for unsupported site %r", site_id)
            rejected = UnsupportedDomainError(
                "This domain is not allowed to use this authentication proxy.",
                site_id=site_id,
            )
            return _error_page(rejected, 403, provider=provider, state=client_state, finish=False)

        redirect_uri = settings.redirect_uri or str(request.url_for("authorize_callback"))
        pkce = generate_pkce()
        flow = FlowState(
            state=generate_state(),
            verifier=pkce.verifier,
            redirect_uri=redirect_uri,
            nonce=generate_nonce(),
            client_state=client_state,
        )
        authorize_url = build_authorize_url(
            settings.auth_server_url,
            settings.client_id,
            redirect_uri,
            scope or settings.default_scope,
            flow.state,
            pkce.challenge,
            nonce=flow.nonce,
        )

        response = RedirectResponse(url=authorize_url, status_code=302)
        set_flow_cookie(
            response,
            encode_flow_cookie(flow, settings.cookie_secret),
            max_age=settings.cookie_max_age,
            secure=settings.cookie_secure,
        )
        logger.info("Started authorization redirect for site %r", site_id)
        return response

    async def authorize_callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> Response:
        """Finish an authorization redirect.

        Verifies the cookie and the echoed state, exchanges the code server
        side and renders the result page. The cookie is expired in every
        response.
        """
        flow: FlowState | None = None
        flow_error: AuthServerOAuthError | None = None
        try:
            flow = decode_flow_cookie(
                request.cookies.get(COOKIE_NAME),
                settings.cookie_secret,
                max_age=settings.cookie_max_age,
            )
        except (SessionExpiredError, InvalidSessionError) as exc:
            flow_error = exc
        client_state = flow.client_state if flow is not None else None

        if not configured or token_client is None:
            return _misconfigured(state=client_state, finish=True)

        if error:
            logger.info("Auth Server returned error on callback: %s", error)
            return _page(
                400,
                error=error_description or error,
                error_code=error.upper(),
                state=client_state,
                finish=True,
            )

        if flow is None:
            rejection = flow_error or SessionExpiredError("Your session has expired. Please try again.")
            logger.info("Callback rejected: %s", rejection.error_code)
            return _error_page(rejection, 400)

        if not states_match(state, flow.state):
            logger.warning("Callback state mismatch (possible CSRF attack)")
            mismatch = CsrfDetectedError("State parameter mismatch (possible CSRF attack)")
            return _error_page(mismatch, 400, state=client_state)

        if not code:
            return _page(
                400,
                error="Failed to receive an authorization code. Please try again.",
                error_code="AUTH_CODE_REQUEST_FAILED",
                state=client_state,
                finish=True,
            )

        try:
            tokens = await token_client.exchange_code(code, flow.verifier, flow.redirect_uri)
        except NetworkError as exc:
            logger.warning("Token exchange could not reach the Auth Server: %s", exc)
            return _error_page(exc, 502, state=client_state)
        except TokenExchangeError as exc:
            return _page(
                400,
                error=exc.error_description or exc.message,
                error_code=(exc.error or "token_exchange_failed").upper(),
                state=client_state,
                finish=True,
            )
        except MalformedResponseError as exc:
            return _error_page(exc, 502, state=client_state)

        logger.info("Authorization completed through the redirect proxy")
        return _page(token=tokens.access_token, state=client_state, finish=True)

    for index, path in enumerate(START_PATHS):
        router.add_api_route(
            path,
            authorize_start,
            methods=["GET"],
            name="authorize_start" if index == 0 else f"authorize_start_{index}",
        )
    for index, path in enumerate(FINISH_PATHS):
        router.add_api_route(
            path,
            authorize_callback,
            methods=["GET"],
            name="authorize_callback" if index == 0 else f"authorize_callback_{index}",
        )

    @router.get("/userinfo")
    async def userinfo(request: Request) -> Response:
        """Forward a bearer token to the Auth Server's userinfo endpoint."""
        authorization = request.headers.get("authorization")
        if not authorization:
            return JSONResponse(
                status_code=401,
                content={"error": "unauthorized", "error_description": "Missing Authorization header"},
                headers=CORS_HEADERS,
            )
        if not configured or token_client is None:
            return JSONResponse(
                status_code=500,
                content={"error": "misconfigured_client"},
                headers=CORS_HEADERS,
            )
        try:
            upstream = await token_client.userinfo_passthrough(authorization)
        except NetworkError as exc:
            logger.warning("Userinfo passthrough failed: %s", exc)
            return JSONResponse(
                status_code=502,
                content={"error": "server_error", "error_description": "Auth Server is unreachable"},
                headers=CORS_HEADERS,
            )
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "application/json"),
            headers=CORS_HEADERS,
        )

    @router.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse(content={"status": "ok"}, headers=CORS_HEADERS)

    if include_catch_all:

        @router.api_route(
            "/{path:path}",
            methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
            include_in_schema=False,
        )
        async def catch_all(request: Request, path: str) -> Response:  # pylint: disable=unused-argument
            """Answer preflights; everything else is not found."""
            if request.method == "OPTIONS":
                return Response(status_code=204, headers=CORS_HEADERS)
            return JSONResponse(status_code=404, content={"error": "not_found"})

    return router
