"""Edge redirect proxy: FastAPI routes that keep flow state in a signed cookie."""

from .app import create_app
from .cookies import COOKIE_NAME, decode_flow_cookie, encode_flow_cookie
from .pages import render_result_page
from .routes import LoginRateLimiter, create_proxy_router, is_site_allowed


__all__ = [
    "COOKIE_NAME",
    "LoginRateLimiter",
    "create_app",
    "create_proxy_router",
    "decode_flow_cookie",
    "encode_flow_cookie",
    "is_site_allowed",
    "render_result_page",
]
