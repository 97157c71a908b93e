"""Full-page redirect handoff.

For applications that navigate the whole page to the authorize endpoint
instead of opening a popup: the FlowState is persisted under the
``flow`` key before leaving, and read back (exactly once) when the app is
loaded again at the redirect URI.
"""

from __future__ import annotations

import json
import logging
import time

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from ..config import FLOW_TTL
from ..exceptions import InvalidSessionError, MalformedResponseError, SessionExpiredError
from ..types import FlowState
from .messages import callback_from_query, parse_callback_result, resolve_callback
from .storage import FLOW_KEY


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..types import AuthorizationResult
    from .storage import KeyValueStore


logger = logging.getLogger("authserver_oauth.auth")


class RedirectHandoff:
    """Persists and validates the FlowState of a full-page redirect login.

    Parameters
    ----------
    store : KeyValueStore
        Where the flow is kept between the two page loads.
    flow_ttl : float
        Maximum age of a pending flow in seconds (default 600).
    clock : callable
        Returns the current Unix time.
    """

    def __init__(
        self,
        store: KeyValueStore,
        flow_ttl: float = FLOW_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the handoff."""
        self.store = store
        self.flow_ttl = flow_ttl
        self._clock = clock

    async def begin(self, flow: FlowState) -> None:
        """Persist ``flow``, replacing any abandoned attempt."""
        await self.store.set_json(FLOW_KEY, flow.to_dict())

    async def pending(self) -> bool:
        """Whether a flow is waiting for its callback."""
        return await self.store.get(FLOW_KEY) is not None

    async def _take_flow(self) -> FlowState:
        """Read and remove the persisted flow (single use)."""
        data = await self.store.get(FLOW_KEY)
        await self.store.remove(FLOW_KEY)
        if data is None:
            msg = "No pending authorization flow (session expired)"
            raise SessionExpiredError(msg)
        try:
            flow = FlowState.from_dict(json.loads(data))
        except (KeyError, TypeError, ValueError) as exc:
            msg = "Stored authorization flow is unreadable"
            raise InvalidSessionError(msg) from exc
        if flow.is_expired(self.flow_ttl, self._clock()):
            msg = "Authorization flow expired"
            raise SessionExpiredError(msg)
        return flow

    async def complete(self, callback_url: str) -> AuthorizationResult:
        """Validate the redirect back to the application.

        Parameters
        ----------
        callback_url : str
            The full URL the browser was redirected to.

        Returns
        -------
        AuthorizationResult
            The validated code and verifier.

        Raises
        ------
        SessionExpiredError
            If no flow is pending or it is older than ``flow_ttl``.
        InvalidSessionError
            If the stored flow cannot be read.
        CsrfDetectedError
            If the callback state does not match.
        AuthorizationDeniedError
            If the server reported an OAuth error.
        MalformedResponseError
            If the callback carries no code.
        """
        query = parse_qs(urlparse(callback_url).query)
        result = parse_callback_result(callback_from_query(query))
        flow = await self._take_flow()
        if result is None:
            msg = "Callback URL carried no authorization result"
            raise MalformedResponseError(msg)
        return resolve_callback(result, flow)

    async def discard(self) -> None:
        """Drop any pending flow."""
        await self.store.remove(FLOW_KEY)
