"""Popup handoff coordinator.

Opens the authorization page in a new browsing context and waits for the
result to be posted back as a window message. The coordinator owns the
FlowState of the attempt and validates the echoed state before anything
is handed to the code exchange.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import secrets

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from ..exceptions import (
    AuthenticationError,
    AuthFlowTimeout,
    FlowInProgressError,
    PopupBlockedError,
    UserCancelledError,
)
from ..types import PopupGeometry, PopupState, Viewport
from .messages import parse_callback_result, resolve_callback


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..types import AuthorizationResult, FlowState


logger = logging.getLogger("authserver_oauth.auth")

DEFAULT_WINDOW_NAME = "authserver_login"


@dataclass(frozen=True)
class MessageEvent:
    """A window message delivered to the opener.

    ``origin`` is informational only; authenticity rests on the state check.
    """

    data: Any
    origin: str = ""


class PopupWindow(Protocol):
    """A browsing context that can be observed and closed."""

    @property
    def closed(self) -> bool:
        """Whether the context has been closed."""

    def close(self) -> None:
        """Close the context."""


class WindowOpener(Protocol):
    """Opens browsing contexts for the coordinator."""

    def open(self, url: str, name: str, geometry: PopupGeometry) -> PopupWindow | None:
        """Open ``url``; return None when the context could not be created."""

    def viewport(self) -> Viewport:
        """The position and size of the opening window."""


class MessageSource(Protocol):
    """Delivers window messages to registered listeners."""

    def add_listener(self, listener: Callable[[MessageEvent], None]) -> None:
        """Register ``listener``."""

    def remove_listener(self, listener: Callable[[MessageEvent], None]) -> None:
        """Unregister ``listener``."""


def compute_popup_geometry(viewport: Viewport, width: int, height: int) -> PopupGeometry:
    """Centre a ``width`` x ``height`` popup over ``viewport``."""
    left = viewport.left + max(0, (viewport.width - width) // 2)
    top = viewport.top + max(0, (viewport.height - height) // 2)
    return PopupGeometry(width=width, height=height, left=left, top=top)


class PopupHandoffCoordinator:
    """Runs one popup authorization attempt at a time.

    Parameters
    ----------
    opener : WindowOpener
        Opens the authorization browsing context.
    messages : MessageSource
        Delivers the result messages posted by the callback page.
    popup_width : int
        Popup width in pixels (default ``500``).
    popup_height : int
        Popup height in pixels (default ``600``).
    poll_interval : float
        Seconds between popup-closed checks (default ``0.5``).
    timeout : float, optional
        Maximum seconds to wait for a result (default: wait until closed).
    window_name : str
        Name given to the browsing context.
    """

    def __init__(
        self,
        opener: WindowOpener,
        messages: MessageSource,
        popup_width: int = 500,
        popup_height: int = 600,
        poll_interval: float = 0.5,
        timeout: float | None = None,
        window_name: str = DEFAULT_WINDOW_NAME,
    ) -> None:
        """Initialize the coordinator."""
        self.opener = opener
        self.messages = messages
        self.popup_width = popup_width
        self.popup_height = popup_height
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.window_name = window_name

        self._state = PopupState.IDLE
        self._flow: FlowState | None = None
        self._flow_id: str | None = None
        self._popup: PopupWindow | None = None
        self._future: asyncio.Future[AuthorizationResult] | None = None
        self._poller: asyncio.Task[None] | None = None
        self._listening = False
        self._cleaned_up = True

    @property
    def state(self) -> PopupState:
        """Current state of the coordinator."""
        return self._state

    @property
    def in_progress(self) -> bool:
        """Whether an attempt is opening or awaiting its result."""
        return self._state in (PopupState.OPENING, PopupState.AWAITING_RESULT)

    async def authorize(self, authorize_url: str, flow: FlowState) -> AuthorizationResult:
        """Open the popup and wait for the authorization result.

        Parameters
        ----------
        authorize_url : str
            The authorization request URL.
        flow : FlowState
            The attempt's state; ``flow.state`` must be echoed by the result.

        Returns
        -------
        AuthorizationResult
            The validated code and verifier (or a proxy-issued token).

        Raises
        ------
        FlowInProgressError
            If another attempt is still pending.
        PopupBlockedError
            If the popup could not be opened.
        UserCancelledError
            If the popup was closed or :meth:`cancel` was called.
        CsrfDetectedError
            If the result's state does not match ``flow.state``.
        AuthorizationDeniedError
            If the server reported an OAuth error.
        MalformedResponseError
            If the result carries neither code, token nor error.
        AuthFlowTimeout
            If ``timeout`` elapsed without a result.
        """
        if self.in_progress:
            msg = "An authorization popup is already open"
            raise FlowInProgressError(msg, flow_id=self._flow_id)

        loop = asyncio.get_running_loop()
        self._state = PopupState.OPENING
        self._flow = flow
        self._flow_id = secrets.token_urlsafe(8)
        self._future = loop.create_future()
        self._cleaned_up = False
        flow_id = self._flow_id

        try:
            geometry = compute_popup_geometry(
                self.opener.viewport(), self.popup_width, self.popup_height
            )
            popup = self.opener.open(authorize_url, self.window_name, geometry)
            if popup is None:
                self._state = PopupState.REJECTED
                msg = "Failed to open the authorization popup. Please allow popups for this site."
                raise PopupBlockedError(msg, flow_id=flow_id)

            self._popup = popup
            self.messages.add_listener(self._on_message)
            self._listening = True
            self._state = PopupState.AWAITING_RESULT
            self._poller = loop.create_task(self._poll_closed())
            logger.info("Auth flow %s: awaiting popup result", flow_id)

            try:
                return await asyncio.wait_for(self._future, self.timeout)
            except asyncio.TimeoutError:
                self._state = PopupState.REJECTED
                msg = f"Authorization timed out after {self.timeout}s"
                raise AuthFlowTimeout(msg, timeout=self.timeout or 0.0, flow_id=flow_id) from None
        except asyncio.CancelledError:
            if self.in_progress:
                self._state = PopupState.REJECTED
            raise
        finally:
            self._cleanup()

    def cancel(self) -> None:
        """Cancel the pending attempt; ``authorize`` raises UserCancelledError."""
        if not self.in_progress:
            return
        self._reject(UserCancelledError("Authorization was cancelled", flow_id=self._flow_id))

    # ── Result handling ──────────────────────────────────────────────

    def _resolve(self, result: AuthorizationResult) -> None:
        if self._future is None or self._future.done():
            return
        self._state = PopupState.RESOLVED
        self._future.set_result(result)
        self._cleanup()

    def _reject(self, error: AuthenticationError) -> None:
        if self._future is None or self._future.done():
            return
        self._state = PopupState.REJECTED
        self._future.set_exception(error)
        self._cleanup()

    def _on_message(self, event: MessageEvent) -> None:
        """Handle one window message; non-callback messages are ignored."""
        if self._future is None or self._future.done() or self._flow is None:
            return
        result = parse_callback_result(event.data)
        if result is None:
            return

        logger.debug(
            "Auth flow %s: callback message from origin %r", self._flow_id, event.origin
        )
        try:
            resolved = resolve_callback(result, self._flow, self._flow_id)
        except AuthenticationError as exc:
            self._reject(exc)
        else:
            self._resolve(resolved)

    async def _poll_closed(self) -> None:
        """Reject with UserCancelledError once the popup is closed."""
        while self._future is not None and not self._future.done():
            await asyncio.sleep(self.poll_interval)
            popup = self._popup
            if popup is None or popup.closed:
                logger.info("Auth flow %s: popup closed by user", self._flow_id)
                self._reject(
                    UserCancelledError(
                        "The authorization window was closed", flow_id=self._flow_id
                    )
                )
                return

    def _cleanup(self) -> None:
        """Release the listener, poller, popup and flow state (runs once)."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        if self._listening:
            self.messages.remove_listener(self._on_message)
            self._listening = False

        poller = self._poller
        self._poller = None
        if poller is not None and not poller.done() and poller is not asyncio.current_task():
            poller.cancel()

        popup = self._popup
        self._popup = None
        if popup is not None and not popup.closed:
            try:
                popup.close()
            except Exception:  # noqa: BLE001
                logger.debug("Could not close the authorization window", exc_info=True)

        self._flow = None
        logger.debug("Auth flow %s: cleaned up", self._flow_id)
