"""
Configuration module for the OIDC proxy.

This module uses Pydantic Settings to load and validate environment variables
(prefixed with ``OIDC_PROXY_``) for the identity providers, the callback URL,
the cookie keys, the upstream service and the server itself.

Environment variables are loaded from .env file or system environment.
Additional providers are read from a JSON provider config file.
"""

import json
import logging
import sys
from functools import lru_cache
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError
from .models import Provider

logger = logging.getLogger(__name__)


DEFAULT_SCOPES = "openid,email,profile,offline_access"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The ``ISSUER_URL``/``CLIENT_ID``/``CLIENT_SECRET``/``SCOPES`` fields
    describe the ``default`` provider; more providers can be listed in the
    file named by ``PROVIDER_CONFIG``.
    """

    # =========================================================================
    # Default Provider (OIDC / OAuth2)
    # =========================================================================

    ISSUER_URL: Optional[str] = Field(
        None,
        description="OIDC issuer URL of the default provider",
    )

    CLIENT_ID: Optional[str] = Field(
        None,
        description="Client ID of the default provider (provider is skipped if unset)",
    )

    CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret of the default provider",
    )

    SCOPES: str = Field(
        default=DEFAULT_SCOPES,
        description="Comma-separated list of scopes requested from the default provider",
    )

    PROVIDER_CONFIG: Optional[str] = Field(
        None,
        description="Path of a JSON file mapping provider names to provider configs",
    )

    CALLBACK_URL: str = Field(
        ...,
        description="Redirect URI registered at the providers (e.g., https://proxy.example.com/callback)",
        min_length=1,
    )

    # =========================================================================
    # Secure Cookie Configuration
    # =========================================================================

    COOKIE_HASH_KEY: Optional[str] = Field(
        None,
        description="Cookie signing key, 32 or 64 bytes (random if unset)",
    )

    COOKIE_ENC_KEY: Optional[str] = Field(
        None,
        description="Cookie encryption key, 16, 24 or 32 bytes (cookies are only signed if unset)",
    )

    SESSION_COOKIE_NAME: str = Field(
        default="oprox",
        description="Name of the session cookie",
        min_length=1,
    )

    COOKIE_MAX_AGE_SECONDS: int = Field(
        default=86400 * 30,
        description="Maximum age of signed cookies in seconds",
        ge=60,
    )

    # =========================================================================
    # Handler Paths
    # =========================================================================

    LOGIN_PATH: str = Field(default="/login")
    LOGOUT_PATH: str = Field(default="/logout")
    DEBUG_PATH: str = Field(
        default="/debug",
        description="Path of the session debug page (empty string disables it)",
    )

    # =========================================================================
    # Upstream & Server Configuration
    # =========================================================================

    UPSTREAM: Optional[str] = Field(
        None,
        description="URL of the upstream service. If not configured the debug page is shown.",
    )

    HOST: str = Field(
        default="localhost",
        description="Host to bind the proxy server",
    )

    PORT: int = Field(
        default=8080,
        description="Port to bind the proxy server",
        ge=1,
        le=65535,
    )

    ADDR: Optional[str] = Field(
        None,
        description="Listen address as host:port (overrides HOST and PORT)",
    )

    TLS_CERT: Optional[str] = Field(None, description="TLS certificate file")
    TLS_KEY: Optional[str] = Field(None, description="TLS key file")

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for calls to identity providers and the upstream",
        gt=0,
    )

    LOG_LEVEL: str = Field(default="INFO")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_prefix="OIDC_PROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def scopes_list(self) -> List[str]:
        return [scope.strip() for scope in self.SCOPES.split(",") if scope.strip()]

    @property
    def callback_path(self) -> str:
        return urlsplit(self.CALLBACK_URL).path or "/"

    @property
    def secure_cookies(self) -> bool:
        """Cookies get the Secure flag when the proxy is reached over https."""
        return urlsplit(self.CALLBACK_URL).scheme == "https"

    @property
    def hash_key_bytes(self) -> Optional[bytes]:
        return self.COOKIE_HASH_KEY.encode("utf-8") if self.COOKIE_HASH_KEY else None

    @property
    def enc_key_bytes(self) -> Optional[bytes]:
        return self.COOKIE_ENC_KEY.encode("utf-8") if self.COOKIE_ENC_KEY else None

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("CALLBACK_URL", "UPSTREAM")
    @classmethod
    def validate_absolute_url(cls, v: Optional[str]) -> Optional[str]:
        """Callback and upstream must be absolute http(s) URLs."""
        if v is None:
            return v

        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(
                f"Invalid URL: '{v}'. Expected an absolute http(s) URL"
            )
        return v

    @field_validator("COOKIE_HASH_KEY")
    @classmethod
    def validate_hash_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v.encode("utf-8")) not in (32, 64):
            raise ValueError(
                "cookie hash key has invalid key length. a length of 32 or 64 is required"
            )
        return v or None

    @field_validator("COOKIE_ENC_KEY")
    @classmethod
    def validate_enc_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v.encode("utf-8")) not in (16, 24, 32):
            raise ValueError(
                "cookie encryption key has invalid key length. a length of 16, 24 or 32 is required"
            )
        return v or None

    @field_validator("LOGIN_PATH", "LOGOUT_PATH")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Invalid path: '{v}'. Paths must start with '/'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        v = v.upper()
        if v not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return v

    @model_validator(mode="after")
    def apply_listen_address(self) -> "Settings":
        """Split ``ADDR`` into HOST and PORT."""
        if not self.ADDR:
            return self

        host, _, port = self.ADDR.rpartition(":")
        if not host or not port.isdigit() or not 1 <= int(port) <= 65535:
            raise ValueError(f"Invalid listen address: '{self.ADDR}'. Expected host:port")

        self.HOST = host.strip("[]")
        self.PORT = int(port)
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    The settings are loaded only once during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


def parse_settings(args: Optional[List[str]] = None) -> Settings:
    """
    Load settings from command line flags, the environment and defaults.

    Every setting is also a kebab-case flag (``--issuer-url``,
    ``--callback-url``, ``--addr`` ...). Flags take precedence over
    environment variables, which take precedence over defaults.

    Args:
        args: Command line arguments (defaults to ``sys.argv[1:]``)

    Raises:
        ValidationError: If the resulting settings are invalid
    """
    return Settings(
        _cli_parse_args=sys.argv[1:] if args is None else args,
        _cli_prog_name="oidc-proxy",
        _cli_kebab_case=True,
    )


# =============================================================================
# Provider Loading
# =============================================================================

def read_provider_file(path: str) -> Dict[str, Provider]:
    """
    Read providers from a JSON provider config file.

    The file maps provider names to provider entries. Inside an entry the
    human readable label may be given as ``display_name`` or ``name``, and
    endpoints either nested under ``endpoints`` or as ``<name>_endpoint`` keys.

    Args:
        path: File path

    Returns:
        Mapping of provider name to Provider

    Raises:
        ConfigError: If the file cannot be read or an entry is invalid
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw_providers = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"failed to read provider config {path}: {e}") from e

    if not isinstance(raw_providers, dict):
        raise ConfigError(f"provider config {path} must contain a JSON object")

    providers = {}
    for name, entry in raw_providers.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"provider '{name}' must be a JSON object")

        entry = dict(entry)
        if "display_name" not in entry and "name" in entry:
            entry["display_name"] = entry.pop("name")
        entry["name"] = name

        try:
            providers[name] = Provider.model_validate(entry)
        except ValidationError as e:
            raise ConfigError(f"invalid configuration for provider '{name}': {e}") from e

    return providers


def load_providers(settings: Settings) -> Dict[str, Provider]:
    """
    Collect all configured providers.

    Providers from the provider config file come first; the ``default``
    provider built from the environment is added when CLIENT_ID is set.

    Raises:
        ConfigError: If no provider is configured or the file is invalid
    """
    providers: Dict[str, Provider] = {}
    if settings.PROVIDER_CONFIG:
        providers.update(read_provider_file(settings.PROVIDER_CONFIG))

    if settings.CLIENT_ID:
        providers["default"] = Provider(
            name="default",
            issuer_url=settings.ISSUER_URL or "",
            client_id=settings.CLIENT_ID,
            client_secret=settings.CLIENT_SECRET or "",
            scopes=settings.scopes_list,
        )

    if not providers:
        raise ConfigError("no configured providers")

    for name, provider in providers.items():
        logger.info(
            f"configured provider {name}",
            extra={"display_name": provider.display_name, "issuer_url": provider.issuer_url},
        )

    return providers
