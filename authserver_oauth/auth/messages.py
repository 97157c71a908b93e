"""Window-message normalization for authorization results.

Two wire shapes reach an opener:

- structured: ``{"type": "oauth_callback", "code"?, "state"?, "error"?,
  "error_description"?, "token"?}``
- legacy string: ``authorization:<provider>:<status-or-state>:<json>``

Both are reduced to one :data:`CallbackResult` here so the popup state
machine and the redirect handoff only ever see a single contract, and
:func:`resolve_callback` applies the same validation for both.
"""

from __future__ import annotations

import json
import logging

from typing import TYPE_CHECKING, Any

from ..exceptions import AuthorizationDeniedError, CsrfDetectedError, MalformedResponseError
from ..types import AuthorizationResult, CallbackError, CallbackResult, CallbackSuccess
from .pkce import states_match


if TYPE_CHECKING:
    from ..types import FlowState


logger = logging.getLogger("authserver_oauth.auth")

MESSAGE_TYPE = "oauth_callback"
LEGACY_PREFIX = "authorization:"
HANDSHAKE_PREFIX = "authorizing:"

_STATUS_WORDS = frozenset({"success", "error"})
_FIELDS = ("code", "state", "error", "error_description", "token")


def _parse_legacy(data: str) -> dict[str, Any] | None:
    """Parse ``authorization:<provider>:<segment>:<json>``."""
    parts = data.split(":", 3)
    if len(parts) < 4:
        return None
    _, provider, segment, payload_str = parts
    try:
        payload = json.loads(payload_str)
    except ValueError:
        logger.debug("Ignoring legacy message with unparsable payload")
        return None
    if not isinstance(payload, dict):
        return None

    message: dict[str, Any] = {"type": MESSAGE_TYPE, "provider": provider}
    message.update(payload)

    # The proxy page sends {error: <description>, errorCode: <CODE>}
    if payload.get("errorCode") and "error_description" not in payload:
        message["error_description"] = payload.get("error")
        message["error"] = payload["errorCode"]

    if not message.get("state") and segment not in _STATUS_WORDS:
        message["state"] = segment
    return message


def normalize_message(data: Any) -> dict[str, Any] | None:
    """Reduce a raw window message to the structured callback shape.

    Parameters
    ----------
    data : Any
        The ``data`` of a message event.

    Returns
    -------
    dict or None
        The structured message, or None when ``data`` is not an
        authorization callback (handshakes, unrelated app messages).
    """
    if isinstance(data, str):
        if not data.startswith(LEGACY_PREFIX):
            return None
        return _parse_legacy(data)
    if isinstance(data, dict) and data.get("type") == MESSAGE_TYPE:
        return dict(data)
    return None


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_callback_result(data: Any) -> CallbackResult | None:
    """Normalize a window message into a CallbackResult.

    A message carrying ``error`` becomes a :class:`CallbackError`;
    anything else (including a message with neither code nor token)
    becomes a :class:`CallbackSuccess` for the caller to validate.
    """
    message = normalize_message(data)
    if message is None:
        return None
    state = _opt_str(message.get("state"))
    error = _opt_str(message.get("error"))
    if error:
        return CallbackError(
            error=error,
            description=_opt_str(message.get("error_description")),
            state=state,
        )
    return CallbackSuccess(
        state=state,
        code=_opt_str(message.get("code")),
        token=_opt_str(message.get("token")),
    )


def callback_from_query(params: dict[str, Any]) -> dict[str, Any]:
    """Build a structured message from redirect query parameters."""
    message: dict[str, Any] = {"type": MESSAGE_TYPE}
    for name in _FIELDS:
        value = params.get(name)
        if isinstance(value, list):
            value = value[0] if value else None
        if value:
            message[name] = value
    return message


def build_callback_message(
    provider: str,
    state: str | None = None,
    token: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> dict[str, Any]:
    """Build the structured object a result page posts to its opener."""
    message: dict[str, Any] = {"type": MESSAGE_TYPE, "provider": provider}
    if state is not None:
        message["state"] = state
    if error:
        message["error"] = error
        if error_description:
            message["error_description"] = error_description
    elif token:
        message["token"] = token
    return message


def format_legacy_message(provider: str, status: str, payload: dict[str, Any]) -> str:
    """Format ``authorization:<provider>:<status>:<json>``."""
    return f"{LEGACY_PREFIX}{provider}:{status}:{json.dumps(payload, separators=(',', ':'))}"


def handshake_message(provider: str) -> str:
    """The ``authorizing:<provider>`` handshake a result page announces."""
    return f"{HANDSHAKE_PREFIX}{provider}"


def resolve_callback(
    result: CallbackResult,
    flow: FlowState,
    flow_id: str | None = None,
) -> AuthorizationResult:
    """Validate a callback against the pending flow.

    The state comparison always comes first; nothing derived from a
    callback with a foreign state reaches the code exchange.

    Raises
    ------
    CsrfDetectedError
        If ``result.state`` differs from ``flow.state``.
    AuthorizationDeniedError
        If the server reported an OAuth error.
    MalformedResponseError
        If the callback carries neither code nor token.
    """
    if not states_match(result.state, flow.state):
        logger.warning("Auth flow %s: state mismatch in callback", flow_id)
        msg = "State parameter mismatch (possible CSRF attack)"
        raise CsrfDetectedError(msg, flow_id=flow_id)
    if isinstance(result, CallbackError):
        raise AuthorizationDeniedError(
            result.description or result.error,
            error=result.error,
            flow_id=flow_id,
        )
    if result.code:
        return AuthorizationResult(
            state=flow.state,
            redirect_uri=flow.redirect_uri,
            code=result.code,
            verifier=flow.verifier,
        )
    if result.token:
        return AuthorizationResult(
            state=flow.state,
            redirect_uri=flow.redirect_uri,
            token=result.token,
        )
    msg = "Callback carried neither a code nor a token"
    raise MalformedResponseError(msg, flow_id=flow_id)
