"""
Provider Registry Tests

Tests registry construction, OIDC discovery, endpoint merging and
ID token verification against the discovered key set.
"""

import httpx
import pytest
import pytest_asyncio
from jose import JWTError

from oidc_proxy.auth.registry import ProviderRegistry, RegisteredProvider
from oidc_proxy.auth.utils import verify_id_token
from oidc_proxy.exceptions import ConfigError
from oidc_proxy.models import Endpoints, Provider

from .conftest import (
    CALLBACK_URL,
    CLIENT_ID,
    ISSUER,
    OTHER_PRIVATE_KEY,
    FakeIdentityProvider,
    create_id_token,
)


def oauth2_provider(**overrides):
    values = {
        "name": "github",
        "client_id": "gh-client",
        "endpoints": {
            "authorization": "https://github.test/authorize",
            "token": "https://github.test/token",
        },
    }
    values.update(overrides)
    return Provider(**values)


class TestRegistryBuild:
    """Test suite for registry construction"""

    @pytest.mark.asyncio
    async def test_oidc_provider_discovery(self, idp, provider_config):
        registry = await ProviderRegistry.build({"acme": provider_config}, CALLBACK_URL, idp.client)

        acme = registry["acme"]
        assert acme.is_oidc
        assert acme.issuer == ISSUER
        assert acme.redirect_uri == CALLBACK_URL
        assert acme.endpoints.authorization == f"{ISSUER}/authorize"
        assert acme.endpoints.token == f"{ISSUER}/token"
        assert acme.endpoints.revocation == f"{ISSUER}/revoke"
        assert len(idp.requests_to("/.well-known/openid-configuration")) == 1

    @pytest.mark.asyncio
    async def test_plain_oauth2_provider_skips_discovery(self, idp):
        registry = await ProviderRegistry.build({"github": oauth2_provider()}, CALLBACK_URL, idp.client)

        assert not registry["github"].is_oidc
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_missing_client_id_fails(self, idp, provider_config):
        providers = {
            "github": oauth2_provider(),
            "broken": provider_config.model_copy(update={"client_id": ""}),
        }

        with pytest.raises(ConfigError, match="client id missing"):
            await ProviderRegistry.build(providers, CALLBACK_URL, idp.client)

    @pytest.mark.asyncio
    async def test_missing_token_endpoint_fails(self, idp):
        provider = oauth2_provider(endpoints={"authorization": "https://github.test/authorize"})

        with pytest.raises(ConfigError, match="token endpoint"):
            await ProviderRegistry.build({"github": provider}, CALLBACK_URL, idp.client)

    @pytest.mark.asyncio
    async def test_discovery_failure_fails(self, provider_config):
        def unreachable(request):
            raise httpx.ConnectError("connection refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))

        with pytest.raises(ConfigError, match="discovery failed"):
            await ProviderRegistry.build({"acme": provider_config}, CALLBACK_URL, client)

    @pytest.mark.asyncio
    async def test_discovery_issuer_mismatch_fails(self, provider_config):
        idp = FakeIdentityProvider()
        idp.issuer = "https://evil.test"

        with pytest.raises(ConfigError, match="issuer mismatch"):
            await ProviderRegistry.build({"acme": provider_config}, CALLBACK_URL, idp.client)

    @pytest.mark.asyncio
    async def test_explicit_endpoints_are_not_overwritten(self, idp, provider_config):
        config = provider_config.model_copy(
            update={"endpoints": Endpoints(token="https://custom.test/token")}
        )

        registry = await ProviderRegistry.build({"acme": config}, CALLBACK_URL, idp.client)

        assert registry["acme"].endpoints.token == "https://custom.test/token"
        assert registry["acme"].endpoints.authorization == f"{ISSUER}/authorize"

    @pytest.mark.asyncio
    async def test_registry_is_read_only(self, idp):
        registry = await ProviderRegistry.build({"github": oauth2_provider()}, CALLBACK_URL, idp.client)

        with pytest.raises(TypeError):
            registry["other"] = registry["github"]
        assert list(registry) == ["github"]
        assert len(registry) == 1

    def test_client_credentials_omit_empty_secret(self):
        provider = RegisteredProvider(config=oauth2_provider(), redirect_uri=CALLBACK_URL)

        assert provider.client_credentials() == {"client_id": "gh-client"}


class TestIdTokenVerification:
    """Test suite for ID token validation with the discovered JWKS"""

    @pytest_asyncio.fixture
    async def acme(self, idp, provider_config):
        registry = await ProviderRegistry.build({"acme": provider_config}, CALLBACK_URL, idp.client)
        return registry["acme"]

    async def verify(self, provider, token):
        return await verify_id_token(
            token,
            provider.key_set,
            issuer=provider.issuer,
            client_id=CLIENT_ID,
            algorithms=list(provider.id_token_algorithms),
        )

    @pytest.mark.asyncio
    async def test_valid_token(self, acme, idp):
        claims = await self.verify(acme, create_id_token(sub="user-1"))

        assert claims["sub"] == "user-1"
        assert claims["aud"] == CLIENT_ID
        assert len(idp.requests_to("/jwks")) == 1

    @pytest.mark.asyncio
    async def test_jwks_is_cached(self, acme, idp):
        await self.verify(acme, create_id_token())
        await self.verify(acme, create_id_token())

        assert len(idp.requests_to("/jwks")) == 1

    @pytest.mark.asyncio
    async def test_wrong_audience(self, acme):
        with pytest.raises(JWTError):
            await self.verify(acme, create_id_token(audience="someone-else"))

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, acme):
        with pytest.raises(JWTError):
            await self.verify(acme, create_id_token(issuer="https://evil.test"))

    @pytest.mark.asyncio
    async def test_expired_token(self, acme):
        with pytest.raises(JWTError, match="expired"):
            await self.verify(acme, create_id_token(exp_delta_minutes=-5))

    @pytest.mark.asyncio
    async def test_wrong_signature(self, acme):
        with pytest.raises(JWTError):
            await self.verify(acme, create_id_token(private_key=OTHER_PRIVATE_KEY))

    @pytest.mark.asyncio
    async def test_unknown_kid_refetches_jwks_once(self, acme, idp):
        with pytest.raises(JWTError, match="signing key"):
            await self.verify(acme, create_id_token(kid="rotated-key"))

        assert len(idp.requests_to("/jwks")) == 2
