"""
Token Refresh Tests

Tests the refresh policy against a fake token endpoint.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from oidc_proxy.auth.refresh import RefreshPolicy
from oidc_proxy.auth.registry import ProviderRegistry
from oidc_proxy.exceptions import RefreshError
from oidc_proxy.models import Session, Tokens

from .conftest import CALLBACK_URL, CLIENT_ID, CLIENT_SECRET, form_of


EXPIRED = datetime.now(timezone.utc) - timedelta(minutes=5)


def expired_session(refresh_token="refresh-token-1", id_token="old.id.token"):
    return Session(
        provider="acme",
        tokens=Tokens(
            access_token="stale-access-token",
            token_type="Bearer",
            refresh_token=refresh_token,
            expiry=EXPIRED,
        ),
        id_token=id_token,
    )


@pytest_asyncio.fixture
async def policy(idp, provider_config):
    registry = await ProviderRegistry.build({"acme": provider_config}, CALLBACK_URL, idp.client)
    idp.requests.clear()
    return RefreshPolicy(registry, idp.client)


class TestRefreshPolicy:
    """Test suite for silent token renewal"""

    @pytest.mark.asyncio
    async def test_without_refresh_token_makes_no_request(self, policy, idp):
        with pytest.raises(RefreshError, match="no refresh token available"):
            await policy.refresh(expired_session(refresh_token=""))

        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_only_refresh_token_is_sent(self, policy, idp):
        idp.token_response = {"access_token": "new-access-token", "expires_in": 3600}

        await policy.refresh(expired_session())

        (request,) = idp.requests_to("/token")
        form = form_of(request)
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-token-1"]
        assert form["client_id"] == [CLIENT_ID]
        assert form["client_secret"] == [CLIENT_SECRET]
        assert "stale-access-token" not in request.content.decode()

    @pytest.mark.asyncio
    async def test_new_tokens_replace_old_ones(self, policy, idp):
        idp.token_response = {
            "access_token": "new-access-token",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-token-2",
            "id_token": "new.id.token",
        }

        session = await policy.refresh(expired_session())

        assert session.provider == "acme"
        assert session.tokens.access_token == "new-access-token"
        assert session.tokens.refresh_token == "refresh-token-2"
        assert session.tokens.is_valid()
        assert session.id_token == "new.id.token"

    @pytest.mark.asyncio
    async def test_missing_id_token_keeps_previous(self, policy, idp):
        idp.token_response = {"access_token": "new-access-token", "expires_in": 3600}

        session = await policy.refresh(expired_session(id_token="old.id.token"))

        assert session.id_token == "old.id.token"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_keeps_previous(self, policy, idp):
        idp.token_response = {"access_token": "new-access-token"}

        session = await policy.refresh(expired_session())

        assert session.tokens.refresh_token == "refresh-token-1"

    @pytest.mark.asyncio
    async def test_provider_error_is_refresh_error(self, policy, idp):
        idp.token_status = 400
        idp.token_response = {"error": "invalid_grant", "error_description": "token revoked"}

        with pytest.raises(RefreshError, match="invalid_grant"):
            await policy.refresh(expired_session())

        assert len(idp.requests_to("/token")) == 1

    @pytest.mark.asyncio
    async def test_unknown_provider(self, policy, idp):
        session = expired_session().model_copy(update={"provider": "gone"})

        with pytest.raises(RefreshError, match="unknown provider"):
            await policy.refresh(session)

        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_malformed_token_response_is_refresh_error(self, policy, idp):
        idp.token_response = {"access_token": "new-access-token", "token_type": 42}

        with pytest.raises(RefreshError, match="invalid token response"):
            await policy.refresh(expired_session())

    @pytest.mark.asyncio
    async def test_huge_expires_in_refreshes_without_expiry(self, policy, idp):
        idp.token_response = {"access_token": "new-access-token", "expires_in": 10**15}

        session = await policy.refresh(expired_session())

        assert session.tokens.access_token == "new-access-token"
        assert session.tokens.expiry is None
