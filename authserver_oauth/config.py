"""Configuration system for authserver-oauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.authserver_oauth] section (project-level)
3. ./authserver_oauth.toml (project-level, explicit)
4. ~/.config/authserver_oauth/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use the AUTHSERVER_OAUTH_ prefix with nested delimiter __.
Example: AUTHSERVER_OAUTH_CLIENT__CLIENT_ID, AUTHSERVER_OAUTH_PROXY__ALLOWED_DOMAINS
"""

from __future__ import annotations

import os
import secrets
import sys

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, ClassVar, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore[import-not-found]
    except ImportError:
        tomllib = None


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("authserver_oauth.toml")
    if project_toml.exists():
        files.append(project_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "authserver_oauth" / "config.toml"
    else:
        user_config = Path("~/.config/authserver_oauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("AUTHSERVER_OAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    if tomllib is None:
        return {}

    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue  # Unreadable config files are skipped

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("authserver_oauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
    "cookie_secret",
    "redis_url",
}

_REDACTED = "********"

# Upper bound for any transient flow state (popup, redirect, proxy cookie).
FLOW_TTL = 600


def _split_csv(v: Any) -> list[str]:
    """Accept a comma-separated string (from env var) or a list."""
    if isinstance(v, str):
        v = [p.strip() for p in v.split(",") if p.strip()]
    if not isinstance(v, list):
        msg = f"Expected a list or comma-separated string, got {type(v).__name__}"
        raise ValueError(msg)
    return v


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: AUTHSERVER_OAUTH_LOG__
    Example: AUTHSERVER_OAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHSERVER_OAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class ClientSettings(BaseSettings):
    """OAuth2 client (SDK) configuration.

    Environment prefix: AUTHSERVER_OAUTH_CLIENT__
    Example: AUTHSERVER_OAUTH_CLIENT__SERVER_URL=https://auth.example.com

    TOML section: [tool.authserver_oauth.client]
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHSERVER_OAUTH_CLIENT__",
        extra="ignore",
    )

    server_url: str = Field(default="", description="Auth Server base URL")
    client_id: str = Field(default="", description="OAuth client ID")
    client_secret: str = Field(
        default="",
        description="Client secret (confidential integrations only; empty for PKCE public clients)",
    )
    redirect_uri: str = Field(
        default="",
        description="Redirect URI registered for the client (empty to use the loopback server)",
    )
    scopes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["openid", "profile", "email"],
        description="Requested scopes (comma-separated in env vars)",
    )

    storage_backend: Literal["memory", "keyring", "redis"] = Field(
        default="memory",
        description="Persistence backend for tokens and flow state",
    )
    storage_prefix: str = Field(default="authserver", description="Storage key prefix")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")

    auto_refresh: bool = Field(default=True, description="Refresh tokens before expiry")
    refresh_threshold: int = Field(
        default=60,
        ge=0,
        description="Seconds before expiry at which a token counts as expiring",
    )

    popup_width: int = Field(default=500, ge=200)
    popup_height: int = Field(default=600, ge=200)
    poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Seconds between popup-closed checks",
    )
    auth_timeout: float | None = Field(
        default=None,
        description="Maximum seconds to wait for an authorization result (None waits until closed)",
    )
    http_timeout: float = Field(default=30.0, gt=0, description="Token endpoint timeout")

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, v: Any) -> list[str]:
        """Accept comma- or space-separated strings as well as lists."""
        if isinstance(v, str):
            v = v.replace(",", " ").split()
        return _split_csv(v)


class ProxySettings(BaseSettings):
    """Edge redirect proxy configuration.

    Environment prefix: AUTHSERVER_OAUTH_PROXY__
    Example: AUTHSERVER_OAUTH_PROXY__ALLOWED_DOMAINS=*.example.com,cms.example.org

    TOML section: [tool.authserver_oauth.proxy]
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHSERVER_OAUTH_PROXY__",
        extra="ignore",
    )

    auth_server_url: str = Field(default="", description="Auth Server base URL")
    client_id: str = Field(default="", description="OAuth client ID of the proxy")
    client_secret: str = Field(
        default="",
        description="Client secret sent on exchange (the proxy is a confidential client)",
    )
    redirect_uri: str = Field(
        default="",
        description="Fixed callback URL (empty to derive <origin>/authorize-callback)",
    )
    allowed_domains: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Glob patterns for permitted site_id values (empty allows all)",
    )
    default_scope: str = Field(default="openid profile email")
    provider: str = Field(default="auth-server", description="Provider name posted to openers")

    cookie_secret: str = Field(
        default="",
        description="HMAC key for the state cookie (generated per process when empty)",
    )
    cookie_max_age: int = Field(default=FLOW_TTL, gt=0, le=FLOW_TTL)
    cookie_secure: bool = Field(default=True)
    close_delay_ms: int = Field(default=1000, ge=0)

    rate_limit_requests: int = Field(default=30, gt=0)
    rate_limit_window: float = Field(default=60.0, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)

    @field_validator("allowed_domains", mode="before")
    @classmethod
    def _parse_allowed_domains(cls, v: Any) -> list[str]:
        """Accept a comma-separated string (from env var) or a list."""
        return _split_csv(v)

    def model_post_init(self, __context: Any) -> None:
        """Generate a cookie secret if not provided."""
        if not self.cookie_secret:
            self.cookie_secret = secrets.token_hex(32)


class Settings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.authserver_oauth] section
    3. ./authserver_oauth.toml (project-level)
    4. ~/.config/authserver_oauth/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHSERVER_OAUTH_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    client: ClientSettings = Field(default_factory=ClientSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()
        # Explicit keyword data wins over TOML files
        merged = _deep_merge(toml_config, data)
        super().__init__(**merged)

    _SECTIONS: ClassVar[tuple[str, ...]] = ("client", "proxy", "log")

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# authserver-oauth configuration", "# Generated by: authserver-oauth config --toml", ""]

        all_data = self.model_dump(exclude=dict.fromkeys(self._SECTIONS, _SENSITIVE_FIELDS))

        for section_name in self._SECTIONS:
            section_data = all_data.get(section_name, {})
            lines.append(f"[{section_name}]")
            for field_name, field_value in section_data.items():
                if field_value is None:
                    continue
                if isinstance(field_value, list):
                    value_str = "[" + ", ".join(f'"{v}"' for v in field_value) + "]"
                elif isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            section_cls = type(getattr(self, section_name))
            lines.extend(
                f'{rn} = "{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# authserver-oauth environment variables",
            "# Generated by: authserver-oauth config --env",
            "",
        ]

        all_data = self.model_dump(exclude=dict.fromkeys(self._SECTIONS, _SENSITIVE_FIELDS))

        for section_name in self._SECTIONS:
            section_data = all_data.get(section_name, {})
            for field_name, field_value in section_data.items():
                env_name = f"AUTHSERVER_OAUTH_{section_name.upper()}__{field_name.upper()}"
                if field_value is None:
                    continue
                if isinstance(field_value, list):
                    value_str = ",".join(str(v) for v in field_value)
                elif isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            section_cls = type(getattr(self, section_name))
            for redacted_name in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys()):
                env_name = f"AUTHSERVER_OAUTH_{section_name.upper()}__{redacted_name.upper()}"
                lines.append(f'export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["authserver-oauth configuration", "=" * 60, ""]

        titles = {"client": "Client (SDK)", "proxy": "Redirect Proxy", "log": "Logging"}
        all_data = self.model_dump(exclude=dict.fromkeys(self._SECTIONS, _SENSITIVE_FIELDS))

        for section_name in self._SECTIONS:
            lines.append(f"\n{titles[section_name]}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(section_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:20} = {value_str}")
            section_cls = type(getattr(self, section_name))
            lines.extend(
                f"  {rn:20} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return Settings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> Settings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
