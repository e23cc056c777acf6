"""
Shared fixtures for the OIDC proxy tests.

Identity providers and the upstream service are simulated with
httpx.MockTransport; ID tokens are signed with a test RSA key.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from oidc_proxy.config import Settings
from oidc_proxy.main import create_app
from oidc_proxy.models import Provider, Session, Tokens


ISSUER = "https://idp.test"
CLIENT_ID = "test-client-id"
CLIENT_SECRET = "test-client-secret"
CALLBACK_URL = "http://proxy.test/callback"
UPSTREAM_HOST = "upstream.test"
HASH_KEY = "h" * 32
TEST_KID = "test-key-id-2024"


# Test RSA key pair generation for mocking JWKS
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    return private_pem.decode(), private_key.public_key()


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
OTHER_PRIVATE_KEY, _ = generate_test_keys()


def create_id_token(
    sub: str = "test-user-sub-123",
    audience: str = CLIENT_ID,
    issuer: str = ISSUER,
    kid: str = TEST_KID,
    exp_delta_minutes: int = 60,
    private_key: str = TEST_PRIVATE_KEY,
) -> str:
    """
    Create an ID token signed with a test private key.

    Args:
        sub: Subject claim
        audience: Audience claim
        issuer: Issuer claim
        kid: Key ID for JWKS matching
        exp_delta_minutes: Token expiry in minutes (negative for expired)
        private_key: Signing key

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": issuer,
        "sub": sub,
        "aud": audience,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now,
        "email": "user@example.com",
        "name": "Test User",
    }

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def create_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    """Create a JWKS document with the test public key."""
    jwk = RSAAlgorithm.to_jwk(TEST_PUBLIC_KEY, as_dict=True)
    jwk['kid'] = kid
    jwk['use'] = 'sig'
    jwk['alg'] = 'RS256'

    return {"keys": [jwk]}


def form_of(request: httpx.Request) -> Dict[str, List[str]]:
    """Decode a form-encoded request body."""
    return parse_qs(request.content.decode("utf-8"))


class FakeIdentityProvider:
    """
    Identity provider and upstream service behind one MockTransport.

    Every request is recorded; ``token_response``, ``token_status``,
    ``revocation_status`` and ``signing_algs`` control the provider's answers.
    """

    def __init__(self, issuer: str = ISSUER):
        self.issuer = issuer
        self.revocation = True
        self.end_session = False
        self.token_response: Optional[Dict[str, Any]] = None
        self.token_status = 200
        self.revocation_status = 200
        self.upstream_error: Optional[Exception] = None
        self.signing_algs: List[str] = ["RS256"]
        self.requests: List[httpx.Request] = []

    @property
    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def discovery_document(self) -> Dict[str, Any]:
        document = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "jwks_uri": f"{self.issuer}/jwks",
            "id_token_signing_alg_values_supported": self.signing_algs,
        }
        if self.revocation:
            document["revocation_endpoint"] = f"{self.issuer}/revoke"
        if self.end_session:
            document["end_session_endpoint"] = f"{self.issuer}/end-session"
        return document

    def default_token_response(self) -> Dict[str, Any]:
        return {
            "access_token": "access-token-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-token-1",
            "id_token": create_id_token(),
        }

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == UPSTREAM_HOST:
            return self.upstream(request)

        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery_document())
        if path == "/jwks":
            return httpx.Response(200, json=create_jwks())
        if path == "/token":
            body = self.token_response if self.token_response is not None else self.default_token_response()
            return httpx.Response(self.token_status, json=body)
        if path == "/revoke":
            return httpx.Response(self.revocation_status, text="")
        return httpx.Response(404, text="not found")

    def upstream(self, request: httpx.Request) -> httpx.Response:
        if self.upstream_error is not None:
            raise self.upstream_error
        return httpx.Response(
            200,
            headers=[("x-upstream", "yes"), ("set-cookie", "a=1"), ("set-cookie", "b=2")],
            json={
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query.decode("ascii"),
                "headers": [[k, v] for k, v in request.headers.multi_items()],
                "body": request.content.decode("utf-8"),
            },
        )


def upstream_echo(response: httpx.Response) -> Dict[str, Any]:
    return json.loads(response.content)


# =============================================================================
# Session Helpers
# =============================================================================

def valid_session(**overrides) -> Session:
    values = {
        "provider": "acme",
        "tokens": Tokens(
            access_token="access-token-1",
            token_type="Bearer",
            refresh_token="refresh-token-1",
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        ),
        "id_token": create_id_token(),
    }
    values.update(overrides)
    return Session(**values)


def expired_tokens(refresh_token: str = "refresh-token-1") -> Tokens:
    return Tokens(
        access_token="stale-access-token",
        token_type="Bearer",
        refresh_token=refresh_token,
        expiry=datetime.now(timezone.utc) - timedelta(minutes=5),
    )


def set_cookie(client: TestClient, app, name: str, value) -> None:
    """Encode a model with the app's cookie store and put it in the client's jar."""
    raw = app.state.gateway.cookies.dumps(name, value)
    client.cookies.set(name, raw, domain="proxy.test")


def cookie_updates(response: httpx.Response) -> Dict[str, str]:
    """Map cookie name to "deleted" or "set" from the response's Set-Cookie headers."""
    updates = {}
    for header in response.headers.get_list("set-cookie"):
        name = header.split("=", 1)[0]
        updates[name] = "deleted" if "Max-Age=0" in header else "set"
    return updates


def make_client(app) -> TestClient:
    return TestClient(app, base_url="http://proxy.test", follow_redirects=False)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def idp():
    return FakeIdentityProvider()


@pytest.fixture
def provider_config():
    return Provider(
        name="acme",
        display_name="Acme Login",
        issuer_url=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        scopes=["openid", "email"],
    )


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        CALLBACK_URL=CALLBACK_URL,
        COOKIE_HASH_KEY=HASH_KEY,
    )


@pytest.fixture
def app(settings, provider_config, idp):
    return create_app(settings, {"acme": provider_config}, idp.client)


@pytest.fixture
def client(app):
    with make_client(app) as client:
        yield client
