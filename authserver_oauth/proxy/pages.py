"""HTML result page rendered by the redirect proxy.

Every finish (and every start-time error) ends on this page. It always
shows a terminal, human-readable state, then hands the result to the
opener in both wire shapes and closes itself after a short delay.
"""

from __future__ import annotations

import html
import json

from typing import Any

from ..auth.messages import build_callback_message, format_legacy_message, handshake_message


_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>OAuth Callback</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
           display: flex; justify-content: center; align-items: center;
           height: 100vh; margin: 0; background: #f5f5f5; }}
    .container {{ text-align: center; padding: 2rem; background: white;
                 border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
    .success {{ color: #22c55e; }}
    .error {{ color: #ef4444; }}
    code {{ color: #666; }}
  </style>
</head>
<body>
  <div class="container">
    <p class="{status}">{heading}</p>
    <p>{detail}</p>
    {code_line}
  </div>
  <script>
    (() => {{
      const handshake = {handshake};
      const legacy = {legacy};
      const message = {message};
      const opener = window.opener;
      window.addEventListener('message', ({{ data, origin }}) => {{
        if (data === handshake && opener) {{
          opener.postMessage(legacy, origin);
        }}
      }});
      if (opener) {{
        opener.postMessage(handshake, '*');
        opener.postMessage(legacy, '*');
        opener.postMessage(message, '*');
      }}
      setTimeout(() => window.close(), {close_delay});
    }})();
  </script>
</body>
</html>"""

PAGE_HEADERS = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "Content-Security-Policy": (
        "default-src 'none'; script-src 'unsafe-inline'; style-src 'unsafe-inline'"
    ),
}


def _script_json(value: Any) -> str:
    """JSON for embedding inside a ``<script>`` element."""
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def render_result_page(
    provider: str,
    token: str | None = None,
    error: str | None = None,
    error_code: str | None = None,
    state: str | None = None,
    close_delay_ms: int = 1000,
) -> str:
    """Render the proxy result page.

    Parameters
    ----------
    provider : str
        Provider name used in the handshake and legacy messages.
    token : str, optional
        The access token on success.
    error : str, optional
        Human-readable error message.
    error_code : str, optional
        Machine-readable error code (``CSRF_DETECTED``, ...).
    state : str, optional
        The opener's ``client_state``, echoed so it can validate the result.
    close_delay_ms : int
        Delay before the page closes itself.

    Returns
    -------
    str
        The HTML document.
    """
    failed = bool(error or error_code)
    status = "error" if failed else "success"

    content: dict[str, Any] = {"provider": provider}
    if failed:
        content["error"] = error or error_code
        content["errorCode"] = error_code or "UNKNOWN_ERROR"
    else:
        content["token"] = token
    if state is not None:
        content["state"] = state

    message = build_callback_message(
        provider,
        state=state,
        token=token,
        error=error_code or ("UNKNOWN_ERROR" if failed else None),
        error_description=error,
    )
    if failed:
        message["errorCode"] = error_code or "UNKNOWN_ERROR"

    code_line = f"<p><code>{html.escape(error_code)}</code></p>" if error_code else ""
    return _PAGE_TEMPLATE.format(
        status=status,
        heading="Authentication failed" if failed else "Authentication successful",
        detail=html.escape(error or "You can close this window.") if failed else "Redirecting...",
        code_line=code_line,
        handshake=_script_json(handshake_message(provider)),
        legacy=_script_json(format_legacy_message(provider, status, content)),
        message=_script_json(message),
        close_delay=int(close_delay_ms),
    )
