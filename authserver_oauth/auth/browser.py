"""Browsing-context openers for the popup coordinator.

``SystemBrowserOpener`` hands the URL to the user's default browser;
``CallbackWindowOpener`` adapts native-window callables
(``show_window(url, config) -> label``, ``close_window(label)``,
``is_open(label)``) to the :class:`~.popup.WindowOpener` protocol.
"""

from __future__ import annotations

import logging
import webbrowser

from typing import TYPE_CHECKING, Any

from ..types import Viewport


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..types import PopupGeometry


logger = logging.getLogger("authserver_oauth.auth")


class _BrowserTab:
    """A system browser tab; it cannot be observed once handed off."""

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        # Tabs of the system browser cannot be closed from here
        self._closed = True


class SystemBrowserOpener:
    """Open authorization pages in the system browser.

    The tab cannot be observed, so flows using this opener should set a
    coordinator timeout.

    Parameters
    ----------
    viewport : Viewport, optional
        Reported viewport used for geometry (informational only).
    """

    def __init__(self, viewport: Viewport | None = None) -> None:
        """Initialize the opener."""
        self._viewport = viewport or Viewport()

    def open(self, url: str, name: str, geometry: PopupGeometry) -> _BrowserTab | None:
        """Open ``url`` in a new browser window, or None if no browser is available."""
        del name, geometry
        if not webbrowser.open(url, new=1):
            logger.warning("No system browser available to open the authorization page")
            return None
        return _BrowserTab()

    def viewport(self) -> Viewport:
        """Return the configured viewport."""
        return self._viewport


class _NativeWindow:
    """A native window identified by its label."""

    def __init__(
        self,
        label: str,
        close_window: Callable[[str], Any] | None,
        is_open: Callable[[str], bool] | None,
    ) -> None:
        self.label = label
        self._close_window = close_window
        self._is_open = is_open
        self._closed = False

    @property
    def closed(self) -> bool:
        if self._closed:
            return True
        if self._is_open is not None:
            return not self._is_open(self.label)
        return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close_window is not None:
            self._close_window(self.label)


class CallbackWindowOpener:
    """Open authorization pages through native-window callables.

    Parameters
    ----------
    show_window : callable
        ``show_window(url: str, config: dict) -> str | None``; returns the
        window label, or None when the window could not be created.
    close_window : callable, optional
        ``close_window(label: str) -> None``.
    is_open : callable, optional
        ``is_open(label: str) -> bool``; lets the coordinator notice that
        the user closed the window.
    viewport : Viewport, optional
        Position and size of the parent window.
    title : str
        Window title (default ``"Sign In"``).
    """

    def __init__(
        self,
        show_window: Callable[[str, dict[str, Any]], str | None],
        close_window: Callable[[str], Any] | None = None,
        is_open: Callable[[str], bool] | None = None,
        viewport: Viewport | None = None,
        title: str = "Sign In",
    ) -> None:
        """Initialize the opener."""
        self._show_window = show_window
        self._close_window = close_window
        self._is_open = is_open
        self._viewport = viewport or Viewport()
        self.title = title

    def open(self, url: str, name: str, geometry: PopupGeometry) -> _NativeWindow | None:
        """Show a native window at ``url``."""
        config = {
            "name": name,
            "title": self.title,
            "width": geometry.width,
            "height": geometry.height,
            "x": geometry.left,
            "y": geometry.top,
            "resizable": True,
        }
        label = self._show_window(url, config)
        if not label:
            return None
        logger.debug("Auth window opened: %s", label)
        return _NativeWindow(label, self._close_window, self._is_open)

    def viewport(self) -> Viewport:
        """Return the parent window's viewport."""
        return self._viewport
