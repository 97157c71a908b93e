"""Command-line interface for authserver-oauth."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from pathlib import Path
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from .config import ClientSettings, Settings
    from .types import TokenSet


# Fallback wait for the loopback login, since browser tabs cannot be observed
_LOGIN_TIMEOUT = 300.0


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Parameters
    ----------
    argv : list of str, optional
        Arguments (default: ``sys.argv[1:]``).

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="authserver-oauth",
        description="OAuth2 PKCE client and redirect proxy for the Auth Server",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # proxy command
    proxy_parser = subparsers.add_parser(
        "proxy",
        help="Run the edge redirect proxy",
    )
    proxy_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    proxy_parser.add_argument("--port", type=int, default=8787, help="Bind port")

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Sign in through the system browser and a loopback redirect",
    )
    login_parser.add_argument("--server-url", help="Auth Server base URL")
    login_parser.add_argument("--client-id", help="OAuth client ID")
    login_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=f"Seconds to wait for the browser (default {_LOGIN_TIMEOUT:.0f})",
    )

    args = parser.parse_args(argv)

    if args.command == "config":
        return handle_config(args)
    if args.command == "proxy":
        return handle_proxy(args)
    if args.command == "login":
        return handle_login(args)
    parser.print_help()
    return 0


def _load_settings() -> Settings:
    from .config import Settings
    from .log import configure

    settings = Settings()
    configure(settings.log)
    return settings


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    settings = _load_settings()

    if args.sources:
        return show_config_sources()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "authserver_oauth" / "config.toml"
    else:
        user_config = Path("~/.config/authserver_oauth/config.toml")
    sources = [
        ("pyproject.toml [tool.authserver_oauth]", Path("pyproject.toml")),
        ("./authserver_oauth.toml", Path("authserver_oauth.toml")),
        ("User config", user_config.expanduser()),
    ]
    env_file = os.environ.get("AUTHSERVER_OAUTH_CONFIG_FILE")
    if env_file:
        sources.append(("AUTHSERVER_OAUTH_CONFIG_FILE", Path(env_file)))

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)
    print(f"{'Built-in defaults':<40} {'Active':<15}")
    for name, path in sources:
        status = "Found" if path.exists() else "Not found"
        print(f"{name:<40} {status:<15} {path}")

    env_vars = [k for k in os.environ if k.startswith("AUTHSERVER_OAUTH_")]
    status = f"{len(env_vars)} vars" if env_vars else "No vars"
    print(f"{'Environment variables':<40} {status:<15} {', '.join(env_vars[:3])}")

    print("\nNote: Later sources override earlier ones.")
    return 0


def handle_proxy(args: argparse.Namespace) -> int:
    """Handle the proxy command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    try:
        import uvicorn
    except ImportError:
        print("Error: uvicorn is required to run the proxy: pip install uvicorn", file=sys.stderr)
        return 1

    from .proxy import create_app

    settings = _load_settings()
    app = create_app(settings.proxy)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log.level.lower())
    return 0


def handle_login(args: argparse.Namespace) -> int:
    """Handle the login command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .exceptions import AuthServerOAuthError

    settings = _load_settings()
    client_settings = settings.client
    overrides = {}
    if args.server_url:
        overrides["server_url"] = args.server_url
    if args.client_id:
        overrides["client_id"] = args.client_id
    if overrides:
        client_settings = client_settings.model_copy(update=overrides)

    timeout = args.timeout or client_settings.auth_timeout or _LOGIN_TIMEOUT
    try:
        tokens = asyncio.run(_login(client_settings, timeout))
    except AuthServerOAuthError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(format_token_summary(tokens))
    return 0


async def _login(settings: ClientSettings, timeout: float) -> TokenSet:
    """Run a loopback login with the system browser."""
    from .auth.browser import SystemBrowserOpener
    from .auth.callback_server import LoopbackCallbackServer
    from .auth.client import AuthClient

    server = LoopbackCallbackServer()
    redirect_uri = server.start()
    try:
        client = AuthClient.from_settings(
            settings.model_copy(update={"auth_timeout": timeout}),
            opener=SystemBrowserOpener(),
            messages=server,
            redirect_uri=redirect_uri,
        )
        try:
            print(f"Waiting for sign-in in your browser (callback: {redirect_uri})")
            return await client.login_with_popup()
        finally:
            await client.close()
    finally:
        server.stop()


def format_token_summary(tokens: TokenSet) -> str:
    """Describe a token set without revealing secrets.

    Parameters
    ----------
    tokens : TokenSet
        The token set.

    Returns
    -------
    str
        Human-readable summary.
    """
    lines = [
        "Signed in.",
        f"  token_type    = {tokens.token_type}",
        f"  expires_in    = {tokens.expires_in}",
        f"  scope         = {tokens.scope or '-'}",
        f"  refresh_token = {'yes' if tokens.refresh_token else 'no'}",
        f"  id_token      = {'yes' if tokens.id_token else 'no'}",
    ]
    return "\n".join(lines)


if __name__ == "__main__":
    sys.exit(main())
