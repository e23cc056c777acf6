"""
OIDC Proxy
==========

Authenticating reverse proxy: every request to the upstream service must
carry a session established through OpenID Connect / OAuth2 authorization
code flow. Sessions live entirely in signed (optionally encrypted) cookies.
"""

__version__ = "1.0.0"
