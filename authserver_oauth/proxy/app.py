"""Standalone FastAPI application for the redirect proxy."""

from __future__ import annotations

import logging

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..auth.token_client import TokenExchangeClient
from ..config import get_settings
from .routes import create_proxy_router


if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ..config import ProxySettings


logger = logging.getLogger("authserver_oauth.proxy")


def create_app(
    settings: ProxySettings | None = None,
    token_client: TokenExchangeClient | None = None,
) -> FastAPI:
    """Create the redirect proxy application.

    Parameters
    ----------
    settings : ProxySettings, optional
        Proxy configuration (default: ``get_settings().proxy``).
    token_client : TokenExchangeClient, optional
        Pre-built token client (default: built from ``settings`` when an
        Auth Server URL is configured).

    Returns
    -------
    FastAPI
        The application.
    """
    settings = settings or get_settings().proxy
    if token_client is None and settings.auth_server_url and settings.client_id:
        token_client = TokenExchangeClient.from_settings(settings)
    if token_client is None:
        logger.warning("Redirect proxy started without Auth Server URL or client id")

    @asynccontextmanager
    async def _lifespan(
        app: FastAPI,  # pylint: disable=unused-argument
    ) -> AsyncIterator[None]:
        yield
        if token_client is not None:
            await token_client.close()

    app = FastAPI(title="authserver-oauth redirect proxy", lifespan=_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.include_router(create_proxy_router(settings, token_client))
    app.state.settings = settings
    app.state.token_client = token_client
    return app
