"""
Token refresh policy.

Renews an expired access token with the session's refresh token. Failures
are reported as RefreshError and never retried here; the gateway decides
what a failed refresh means for the current request.
"""

import logging

import httpx

from ..exceptions import RefreshError
from ..models import Session, Tokens
from .registry import ProviderRegistry
from .utils import TokenEndpointError, post_token_request

logger = logging.getLogger(__name__)


class RefreshPolicy:
    def __init__(self, registry: ProviderRegistry, http_client: httpx.AsyncClient):
        self.registry = registry
        self.http_client = http_client

    async def refresh(self, session: Session) -> Session:
        """
        Obtain a new session from the session's refresh token.

        Only the refresh token is sent: the stale access token is dropped so
        the provider has to mint a new one.

        Args:
            session: Session with an expired access token

        Returns:
            New Session for the same provider. The previous ID token and
            refresh token are kept if the provider does not return new ones.

        Raises:
            RefreshError: If there is no refresh token, the provider is
                         unknown, the token endpoint call fails or its
                         response is unusable
        """
        refresh_token = session.tokens.refresh_token
        if not refresh_token:
            raise RefreshError("token expired or missing and no refresh token available")

        provider = self.registry.get(session.provider)
        if provider is None:
            raise RefreshError(f"unknown provider {session.provider}")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **provider.client_credentials(),
        }

        try:
            data = await post_token_request(self.http_client, provider.endpoints.token, form)
        except TokenEndpointError as e:
            raise RefreshError(f"token refresh failed: {e}") from e

        try:
            tokens = Tokens.from_token_response(data)
        except ValueError as e:
            raise RefreshError(f"token refresh failed: invalid token response: {e}") from e

        if not tokens.refresh_token:
            tokens = tokens.model_copy(update={"refresh_token": refresh_token})

        id_token = data.get("id_token")
        if not isinstance(id_token, str) or not id_token:
            logger.info("token refresh did not return new id_token")
            id_token = session.id_token

        logger.info(
            "token refreshed",
            extra={"provider": session.provider, "refresh_token": bool(data.get("refresh_token"))},
        )

        return Session(provider=session.provider, tokens=tokens, id_token=id_token)
