"""
Authentication Package

This package handles all authentication functionality of the proxy using
OpenID Connect (OIDC) and plain OAuth2 authorization code flow.

Key responsibilities:
- Provider registry with OIDC discovery
- Login, callback and logout flows
- ID token validation using the issuer's JWKS
- Silent access token refresh
- Signed and encrypted session cookies

Modules:
- gateway: Request dispatcher in front of every path
- flows: Login, callback and logout handling
- refresh: Token refresh policy
- registry: Provider registry built at startup
- cookies: Secure cookie codec
- utils: Discovery, JWKS, ID token and token endpoint helpers

The authentication flow:
1. An anonymous GET is redirected to the login path
2. The user picks a provider and is sent to its authorization endpoint
3. The provider redirects back to the callback path with a code
4. The proxy exchanges the code, verifies the ID token and sets the session cookie
5. Later requests are forwarded with the session's access token
"""

from .cookies import SecureCookieStore
from .gateway import AuthGateway
from .registry import ProviderRegistry, RegisteredProvider

__all__ = [
    "AuthGateway",
    "ProviderRegistry",
    "RegisteredProvider",
    "SecureCookieStore",
]
