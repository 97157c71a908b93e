"""Signed ``oauth-state`` cookie holding the proxy's FlowState.

Token format: ``base64url(json(flow)).hex(HMAC-SHA256(secret, payload))``.
The proxy keeps no server-side state; the cookie is the only record of a
pending flow and is expired by every finish response.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import TYPE_CHECKING

from ..config import FLOW_TTL
from ..exceptions import InvalidSessionError, SessionExpiredError
from ..types import FlowState


if TYPE_CHECKING:
    from fastapi import Response


COOKIE_NAME = "oauth-state"


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def encode_flow_cookie(flow: FlowState, secret: str) -> str:
    """Serialize and sign ``flow``.

    Parameters
    ----------
    flow : FlowState
        The pending flow.
    secret : str
        HMAC key.

    Returns
    -------
    str
        The cookie value.
    """
    raw = json.dumps(flow.to_dict(), separators=(",", ":")).encode("utf-8")
    payload = urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return f"{payload}.{_sign(payload, secret)}"


def decode_flow_cookie(
    value: str | None,
    secret: str,
    max_age: float = FLOW_TTL,
    now: float | None = None,
) -> FlowState:
    """Verify and decode a cookie produced by :func:`encode_flow_cookie`.

    Parameters
    ----------
    value : str or None
        The cookie value (None when the cookie is absent).
    secret : str
        HMAC key.
    max_age : float
        Maximum flow age in seconds.
    now : float, optional
        Current Unix time (default ``time.time()``).

    Returns
    -------
    FlowState
        The verified flow.

    Raises
    ------
    SessionExpiredError
        If the cookie is missing or older than ``max_age``.
    InvalidSessionError
        If the cookie is malformed or its signature does not verify.
    """
    if not value:
        msg = "Your session has expired. Please try again."
        raise SessionExpiredError(msg)

    payload, sep, signature = value.rpartition(".")
    if not sep or not payload:
        msg = "Malformed session cookie"
        raise InvalidSessionError(msg)
    if not hmac.compare_digest(signature.encode("utf-8"), _sign(payload, secret).encode("ascii")):
        msg = "Session cookie signature is invalid"
        raise InvalidSessionError(msg)

    try:
        raw = urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        flow = FlowState.from_dict(json.loads(raw))
    except (KeyError, TypeError, ValueError) as exc:
        msg = "Session cookie could not be decoded"
        raise InvalidSessionError(msg) from exc

    current = time.time() if now is None else now
    if flow.is_expired(max_age, current):
        msg = "Your session has expired. Please try again."
        raise SessionExpiredError(msg)
    return flow


def set_flow_cookie(
    response: Response,
    value: str,
    max_age: int = FLOW_TTL,
    secure: bool = True,
) -> None:
    """Attach the ``oauth-state`` cookie to ``response``."""
    response.set_cookie(
        key=COOKIE_NAME,
        value=value,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
        max_age=max_age,
    )


def expire_flow_cookie(response: Response, secure: bool = True) -> None:
    """Invalidate the ``oauth-state`` cookie (``Max-Age=0``)."""
    response.set_cookie(
        key=COOKIE_NAME,
        value="deleted",
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
        max_age=0,
    )
