"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import base64
import json
import os
import time

from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs

import httpx
import pytest

from authserver_oauth.auth.token_client import TokenExchangeClient
from authserver_oauth.config import clear_settings
from authserver_oauth.types import Viewport


if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from authserver_oauth.auth.popup import MessageEvent
    from authserver_oauth.types import PopupGeometry


SERVER_URL = "https://auth.example.com"


# ── Browsing context fakes ──────────────────────────────────────────


class FakePopup:
    """A popup whose ``closed`` flag tests can flip."""

    def __init__(self) -> None:
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeOpener:
    """Records opened URLs; returns None when ``blocked``."""

    def __init__(self, viewport: Viewport | None = None) -> None:
        self.blocked = False
        self.urls: list[str] = []
        self.geometries: list[PopupGeometry] = []
        self.popups: list[FakePopup] = []
        self._viewport = viewport or Viewport()

    def open(self, url: str, name: str, geometry: PopupGeometry) -> FakePopup | None:
        del name
        self.urls.append(url)
        self.geometries.append(geometry)
        if self.blocked:
            return None
        popup = FakePopup()
        self.popups.append(popup)
        return popup

    def viewport(self) -> Viewport:
        return self._viewport

    def last_query(self) -> dict[str, str]:
        """Query parameters of the most recently opened URL."""
        query = parse_qs(httpx.URL(self.urls[-1]).query.decode())
        return {k: v[0] for k, v in query.items()}


class FakeMessageSource:
    """In-process window message bus."""

    def __init__(self) -> None:
        self.listeners: list[Callable[[MessageEvent], None]] = []

    def add_listener(self, listener: Callable[[MessageEvent], None]) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: Callable[[MessageEvent], None]) -> None:
        self.listeners.remove(listener)

    def post(self, data: Any, origin: str = "https://auth.example.com") -> None:
        from authserver_oauth.auth.popup import MessageEvent

        for listener in list(self.listeners):
            listener(MessageEvent(data, origin))


# ── Auth Server fake ────────────────────────────────────────────────


class FakeAuthServer:
    """``httpx.MockTransport`` handler emulating the Auth Server endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_forms: list[dict[str, str]] = []
        self.revoke_forms: list[dict[str, str]] = []
        self.token_queue: list[httpx.Response] = []
        self.revoke_status = 200
        self.userinfo_status = 200
        self.userinfo: Any = {"sub": "user-1", "email": "user@example.com"}
        self.network_down = False
        self._issued = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def grants(self, grant_type: str) -> list[dict[str, str]]:
        return [f for f in self.token_forms if f.get("grant_type") == grant_type]

    def _form(self, request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.network_down:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/oauth/token":
            self.token_forms.append(self._form(request))
            if self.token_queue:
                return self.token_queue.pop(0)
            self._issued += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"at-{self._issued}",
                    "token_type": "Bearer",
                    "refresh_token": f"rt-{self._issued}",
                    "expires_in": 3600,
                    "scope": "openid profile email",
                },
            )
        if path == "/oauth/revoke":
            self.revoke_forms.append(self._form(request))
            return httpx.Response(self.revoke_status)
        if path == "/oauth/userinfo":
            if self.userinfo_status != 200:
                return httpx.Response(
                    self.userinfo_status,
                    json={"error": "invalid_token", "error_description": "Token expired"},
                )
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)


def make_jwt(claims: dict[str, Any]) -> str:
    """Build an unsigned compact JWT carrying ``claims``."""

    def _segment(obj: dict[str, Any]) -> str:
        raw = json.dumps(obj).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    return f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{_segment(claims)}.sig"


class FakeClock:
    """Settable replacement for ``time.time``."""

    def __init__(self, now: float | None = None) -> None:
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep config files and AUTHSERVER_OAUTH_* variables out of every test."""
    for name in list(os.environ):
        if name.startswith("AUTHSERVER_OAUTH_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture()
def opener() -> FakeOpener:
    """Create a popup opener fake."""
    return FakeOpener()


@pytest.fixture()
def messages() -> FakeMessageSource:
    """Create a window message bus fake."""
    return FakeMessageSource()


@pytest.fixture()
def auth_server() -> FakeAuthServer:
    """Create a fake Auth Server."""
    return FakeAuthServer()


@pytest.fixture()
def token_client(auth_server: FakeAuthServer) -> TokenExchangeClient:
    """Create a token client wired to the fake Auth Server."""
    return TokenExchangeClient(SERVER_URL, "client-123", transport=auth_server.transport)


@pytest.fixture()
def clock() -> FakeClock:
    """Create a settable clock."""
    return FakeClock()


@pytest.fixture()
def jwt_factory() -> Callable[[dict[str, Any]], str]:
    """Return the unsigned JWT builder."""
    return make_jwt
