"""
Provider Registry
=================

Holds every configured identity provider together with its discovered
endpoints and its ID token key set. Built once during application startup;
read-only afterwards, so concurrent requests share it without locking.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Optional

import httpx

from ..exceptions import ConfigError
from ..models import Endpoints, Provider
from .utils import RemoteKeySet, fetch_discovery_document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredProvider:
    """
    A provider ready for use by the flows.

    ``config`` holds the merged endpoints. ``issuer`` and ``key_set`` are
    only set for OIDC providers.
    """

    config: Provider
    redirect_uri: str
    issuer: str = ""
    key_set: Optional[RemoteKeySet] = None
    id_token_algorithms: tuple = ("RS256",)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def endpoints(self) -> Endpoints:
        return self.config.endpoints

    @property
    def is_oidc(self) -> bool:
        return self.key_set is not None

    def client_credentials(self) -> Dict[str, str]:
        """Client authentication parameters for token endpoint requests."""
        credentials = {"client_id": self.config.client_id}
        if self.config.client_secret:
            credentials["client_secret"] = self.config.client_secret
        return credentials


class ProviderRegistry(Mapping):
    """Immutable mapping of provider name to RegisteredProvider."""

    def __init__(self, providers: Dict[str, RegisteredProvider]):
        self._providers = MappingProxyType(dict(providers))

    def __getitem__(self, name: str) -> RegisteredProvider:
        return self._providers[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    @classmethod
    async def build(
        cls,
        configs: Mapping[str, Provider],
        callback_url: str,
        http_client: httpx.AsyncClient,
    ) -> "ProviderRegistry":
        """
        Build the registry, performing OIDC discovery for every provider
        with an issuer URL.

        Construction is all-or-nothing: the first invalid provider aborts
        the build.

        Args:
            configs: Provider configurations by name
            callback_url: Redirect URI used for every provider
            http_client: Client for discovery (and later JWKS) requests

        Returns:
            Fully initialized registry

        Raises:
            ConfigError: On missing client ID, failed discovery or missing
                        authorization/token endpoint
        """
        providers = {}
        for name, config in configs.items():
            providers[name] = await register_provider(name, config, callback_url, http_client)
        return cls(providers)


async def register_provider(
    name: str,
    config: Provider,
    callback_url: str,
    http_client: httpx.AsyncClient,
) -> RegisteredProvider:
    """Validate one provider and merge its discovered endpoints."""
    if not config.client_id:
        raise ConfigError(f"client id missing in configuration of provider '{name}'")

    if config.name != name:
        config = config.model_copy(update={"name": name})

    issuer = ""
    key_set = None
    algorithms: List[str] = ["RS256"]

    if config.issuer_url:
        try:
            document = await fetch_discovery_document(http_client, config.issuer_url)
        except (httpx.HTTPError, ValueError) as e:
            raise ConfigError(f"OIDC discovery failed for provider '{name}': {e}") from e

        # explicitly configured endpoints win
        endpoints = config.endpoints.merge(Endpoints.from_discovery(document))
        config = config.model_copy(update={"endpoints": endpoints})

        issuer = document["issuer"]
        jwks_uri = document.get("jwks_uri")
        if not jwks_uri:
            raise ConfigError(f"discovery document of provider '{name}' has no jwks_uri")
        key_set = RemoteKeySet(http_client, jwks_uri)
        supported = document.get("id_token_signing_alg_values_supported") or []
        algorithms = [alg for alg in supported if alg and alg != "none"] or algorithms

    if not config.endpoints.authorization:
        raise ConfigError(f"authorization endpoint not set for provider '{name}'")
    if not config.endpoints.token:
        raise ConfigError(f"token endpoint not set for provider '{name}'")

    logger.info(
        f"registered provider {name}",
        extra={"issuer": issuer, "oidc": key_set is not None},
    )

    return RegisteredProvider(
        config=config,
        redirect_uri=callback_url,
        issuer=issuer,
        key_set=key_set,
        id_token_algorithms=tuple(algorithms),
    )
