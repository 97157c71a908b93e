"""authserver-oauth exception hierarchy.

All library exceptions inherit from AuthServerOAuthError, enabling
catch-all handling while supporting specific error types. Each class
carries an ``error_code`` used by the redirect proxy result pages.
"""

from __future__ import annotations

from typing import Any, ClassVar


class AuthServerOAuthError(Exception):
    """Base exception for all authserver-oauth errors."""

    error_code: ClassVar[str] = "UNKNOWN_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (flow_id, status_code, error, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(AuthServerOAuthError):
    """Client or proxy configuration is missing or malformed.

    Raised before any flow starts (missing client id, malformed server URL).
    """

    error_code = "MISCONFIGURED_CLIENT"


class AuthenticationError(AuthServerOAuthError):
    """Base exception for all authentication failures.

    Raised when an authorization attempt, token exchange or token
    lifecycle operation fails.
    """

    error_code = "AUTHENTICATION_FAILED"

    def __init__(
        self,
        message: str,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        flow_id : str, optional
            The identifier of the authorization attempt that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, flow_id=flow_id, **context)
        self.flow_id = flow_id


class PopupBlockedError(AuthenticationError):
    """The browsing context for the authorization page could not be opened."""

    error_code = "POPUP_BLOCKED"


class UserCancelledError(AuthenticationError):
    """The user closed the authorization window or the attempt was cancelled."""

    error_code = "USER_CANCELLED"


class AuthFlowTimeout(AuthenticationError):
    """No authorization result arrived within the configured timeout."""

    error_code = "AUTH_TIMEOUT"

    def __init__(
        self,
        message: str,
        timeout: float,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        flow_id : str, optional
            The identifier of the authorization attempt.
        **context : Any
            Additional context.
        """
        super().__init__(message, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class FlowInProgressError(AuthenticationError):
    """An authorization attempt is already awaiting its result."""

    error_code = "FLOW_IN_PROGRESS"


class CsrfDetectedError(AuthenticationError):
    """The callback state does not match the state of the pending flow."""

    error_code = "CSRF_DETECTED"


class SessionExpiredError(AuthenticationError):
    """The transient flow state is missing or older than its lifetime."""

    error_code = "SESSION_EXPIRED"


class InvalidSessionError(AuthenticationError):
    """The transient flow state could not be parsed or verified."""

    error_code = "INVALID_SESSION"


class UnsupportedDomainError(AuthenticationError):
    """The requesting site is not on the proxy allow-list."""

    error_code = "UNSUPPORTED_DOMAIN"


class AuthorizationDeniedError(AuthenticationError):
    """The identity server reported an OAuth error on the callback."""

    error_code = "ACCESS_DENIED"

    def __init__(
        self,
        message: str,
        error: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authorization denied error.

        Parameters
        ----------
        message : str
            The server's ``error_description`` (or the error code).
        error : str, optional
            The OAuth error code (e.g. ``access_denied``).
        flow_id : str, optional
            The identifier of the authorization attempt.
        **context : Any
            Additional context.
        """
        super().__init__(message, flow_id=flow_id, error=error, **context)
        self.error = error


class NetworkError(AuthenticationError):
    """The identity server could not be reached."""

    error_code = "CONNECTION_FAILED"


class TokenError(AuthenticationError):
    """Base exception for token endpoint failures."""

    error_code = "TOKEN_ERROR"


class TokenExchangeError(TokenError):
    """The token endpoint returned a non-success response.

    Carries the server's OAuth ``error`` code and ``error_description``.
    """

    error_code = "TOKEN_EXCHANGE_FAILED"

    def __init__(
        self,
        message: str,
        error: str | None = None,
        error_description: str | None = None,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        """Initialize token exchange error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str, optional
            The OAuth error code returned by the server.
        error_description : str, optional
            The server's description of the error.
        status_code : int, optional
            The HTTP status of the token endpoint response.
        **context : Any
            Additional context.
        """
        super().__init__(message, error=error, status_code=status_code, **context)
        self.error = error
        self.error_description = error_description
        self.status_code = status_code


class RefreshFailedError(TokenExchangeError):
    """The refresh_token grant was rejected.

    Triggers a full local sign-out in the lifecycle manager.
    """

    error_code = "REFRESH_FAILED"


class RevocationError(TokenExchangeError):
    """The revocation endpoint rejected the request."""

    error_code = "REVOCATION_FAILED"


class MalformedResponseError(TokenError):
    """The server responded with data that could not be interpreted."""

    error_code = "MALFORMED_RESPONSE"
