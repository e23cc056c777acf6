"""
Exception hierarchy for the OIDC proxy.

Every error carries the HTTP status code the gateway answers with when the
error ends a request. Startup errors (ConfigError) never reach a client:
they abort the application lifespan before the server accepts connections.
"""

from fastapi import status


class OIDCProxyError(Exception):
    """Base exception for all proxy errors"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConfigError(OIDCProxyError):
    """Invalid or incomplete configuration detected at startup"""


class CookieError(OIDCProxyError):
    """
    A cookie could not be encoded or decoded.

    On read this always degrades to "no value"; on write it ends the
    request with a server error.
    """


class BadRequestError(OIDCProxyError):
    """The request cannot be processed as sent (unknown provider, bad state)"""

    status_code = status.HTTP_400_BAD_REQUEST


class CSRFMismatchError(BadRequestError):
    """The callback's state parameter does not match the state cookie"""


class ProviderProtocolError(OIDCProxyError):
    """The identity provider returned an error or an unusable response"""


class RefreshError(OIDCProxyError):
    """Silent token renewal failed (the gateway falls back to login)"""


class RevocationError(OIDCProxyError):
    """Token revocation failed (logged, never surfaced)"""


__all__ = [
    "OIDCProxyError",
    "ConfigError",
    "CookieError",
    "BadRequestError",
    "CSRFMismatchError",
    "ProviderProtocolError",
    "RefreshError",
    "RevocationError",
]
