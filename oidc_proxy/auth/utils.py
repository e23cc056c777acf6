"""
Authentication utilities for OIDC discovery, token endpoint calls and
ID token verification.

This module handles:
- OIDC discovery documents
- Fetching and caching provider JWKS (JSON Web Key Set)
- Verifying ID tokens against the issuer's published keys
- Form-encoded calls to token and revocation endpoints
- CSRF state generation
"""

import asyncio
import base64
import logging
import secrets
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs

import httpx
from jose import JWTError, jwk, jwt

logger = logging.getLogger(__name__)

# Random bytes in a CSRF state value.
STATE_LENGTH = 20

# Clock skew tolerance for ID token time claims.
ID_TOKEN_LEEWAY_SECONDS = 10

FormData = Dict[str, Any]


def generate_state(length: int = STATE_LENGTH) -> str:
    """
    Generate an unguessable CSRF state value.

    Returns:
        URL-safe base64 encoding of ``length`` random bytes, without padding
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(length)).decode("ascii").rstrip("=")


def flatten_parameters(parameters: Dict[str, Sequence[str]]) -> List[Tuple[str, str]]:
    """Turn a multi-valued parameter map into (key, value) pairs, one per value."""
    return [(key, value) for key, values in parameters.items() for value in values]


# =============================================================================
# OIDC Discovery
# =============================================================================

async def fetch_discovery_document(client: httpx.AsyncClient, issuer_url: str) -> Dict[str, Any]:
    """
    Fetch the OIDC discovery document of an issuer.

    Args:
        client: HTTP client
        issuer_url: Issuer URL (e.g. ``https://auth.example.com``)

    Returns:
        Parsed ``.well-known/openid-configuration`` document

    Raises:
        httpx.HTTPError: If the document cannot be fetched
        ValueError: If the document is not a JSON object or names another issuer
    """
    discovery_url = f"{issuer_url.rstrip('/')}/.well-known/openid-configuration"

    response = await client.get(discovery_url)
    response.raise_for_status()
    document = response.json()

    if not isinstance(document, dict):
        raise ValueError(f"Invalid discovery document from {discovery_url}")

    discovered_issuer = str(document.get("issuer", ""))
    if discovered_issuer.rstrip("/") != issuer_url.rstrip("/"):
        raise ValueError(
            f"OIDC issuer mismatch: expected '{issuer_url}', got '{discovered_issuer}'"
        )

    return document


# =============================================================================
# JWKS Cache
# =============================================================================

class RemoteKeySet:
    """
    JWKS of one issuer, fetched lazily and refetched when a token names an
    unknown key ID (key rotation).

    The key set is replaced as a whole under a lock; readers never see a
    partially updated set.
    """

    def __init__(self, client: httpx.AsyncClient, jwks_uri: str):
        self._client = client
        self.jwks_uri = jwks_uri
        self._jwks: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    async def fetch(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Return the JWKS document, fetching it if needed.

        Raises:
            httpx.HTTPError: If the JWKS endpoint is unreachable
            ValueError: If the response is invalid
        """
        if self._jwks is not None and not force_refresh:
            return self._jwks

        async with self._lock:
            # Another task may have refreshed while we waited.
            if self._jwks is not None and not force_refresh:
                return self._jwks

            response = await self._client.get(self.jwks_uri)
            response.raise_for_status()
            jwks_data = response.json()

            if not isinstance(jwks_data, dict) or "keys" not in jwks_data:
                raise ValueError("Invalid JWKS response: missing 'keys' field")

            self._jwks = jwks_data
            return jwks_data

    async def get_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        """Find the key for ``kid``, refetching the JWKS once if it is unknown."""
        key = get_signing_key(kid, await self.fetch())
        if key is None:
            logger.info(f"unknown key id {kid}, refreshing JWKS from {self.jwks_uri}")
            key = get_signing_key(kid, await self.fetch(force_refresh=True))
        return key


def get_signing_key(kid: Optional[str], jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the public key from JWKS that matches the token's kid.

    A token without kid matches the only signing key of a single-key set.
    """
    keys = [key for key in jwks.get("keys", []) if key.get("use", "sig") == "sig"]

    if kid is None:
        return keys[0] if len(keys) == 1 else None

    for key in keys:
        if key.get("kid") == kid:
            return key
    return None


async def verify_id_token(
    id_token: str,
    key_set: RemoteKeySet,
    issuer: str,
    client_id: str,
    algorithms: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Verify and decode an ID token.

    This function performs comprehensive validation:
    1. Finds the issuer's public key matching the token's kid
    2. Verifies the token signature
    3. Validates iss, aud (must contain the client ID), exp, nbf and iat
    4. Returns decoded claims

    Args:
        id_token: Raw ID token
        key_set: JWKS of the issuer
        issuer: Expected ``iss`` claim
        client_id: Expected audience
        algorithms: Accepted signing algorithms (default RS256)

    Returns:
        Dictionary of verified token claims

    Raises:
        JWTError: If the token is malformed, expired, or signature doesn't match
        httpx.HTTPError: If the JWKS endpoint is unreachable
    """
    algorithms = algorithms or ["RS256"]

    try:
        header = jwt.get_unverified_header(id_token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    algorithm = header.get("alg")
    if algorithm not in algorithms:
        raise JWTError(f"Unsupported signing algorithm: {algorithm}")

    signing_key = await key_set.get_key(header.get("kid"))
    if signing_key is None:
        raise JWTError("Unable to find matching signing key in JWKS")

    try:
        public_key = jwk.construct(signing_key, algorithm=signing_key.get("alg", algorithm))
    except Exception as e:
        raise JWTError(f"Failed to construct public key from JWK: {e}")

    try:
        return jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=[algorithm],
            audience=client_id,
            issuer=issuer,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iat": True,
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iss": True,
                "verify_sub": True,
                "verify_jti": False,
                "verify_at_hash": False,
                "leeway": ID_TOKEN_LEEWAY_SECONDS,
            },
        )
    except jwt.ExpiredSignatureError:
        raise JWTError("ID token has expired")
    except jwt.JWTClaimsError as e:
        raise JWTError(f"Invalid token claims: {e}")


def decode_token_without_verification(token: str) -> Dict[str, Any]:
    """
    Decode a JWT without verifying signature (for debugging only).

    Raises:
        JWTError: If token is malformed
    """
    return jwt.get_unverified_claims(token)


# =============================================================================
# Token Endpoint Helpers
# =============================================================================

class TokenEndpointError(Exception):
    """Raised when a token endpoint call fails or returns an error."""


def parse_token_response(response: httpx.Response) -> Dict[str, Any]:
    """
    Parse a token endpoint response.

    Accepts JSON and form-encoded bodies (some OAuth2 providers ignore the
    Accept header) and providers that report errors with HTTP 200.

    Raises:
        TokenEndpointError: On error status, ``error`` field, or missing access_token
    """
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = response.json()
        except ValueError:
            data = {}
    else:
        parsed = parse_qs(response.text)
        data = {k: v[0] if len(v) == 1 else v for k, v in parsed.items()}

    if not isinstance(data, dict):
        data = {}

    if not response.is_success or "error" in data:
        error = data.get("error") or f"status code {response.status_code}"
        description = data.get("error_description")
        raise TokenEndpointError(
            f"{error}: {description}" if description else str(error)
        )

    if not data.get("access_token"):
        raise TokenEndpointError("server response missing access_token")

    return data


async def post_token_request(
    client: httpx.AsyncClient,
    token_endpoint: str,
    form: FormData,
) -> Dict[str, Any]:
    """
    POST a form-encoded grant to a token endpoint.

    Raises:
        TokenEndpointError: If the request fails or the provider rejects it
    """
    try:
        response = await client.post(
            token_endpoint,
            data=form,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        raise TokenEndpointError(f"request to {token_endpoint} failed: {e}") from e

    return parse_token_response(response)
