"""
Data Models Module

Pydantic models shared by the gateway, the flows and the cookie codec.

Models are organized by functional area:
- Provider configuration (endpoints, client parameters)
- Token set returned by a provider's token endpoint
- Cookie payloads (Session, LoginState)

All models are frozen: a provider is never changed after the registry is
built, and a session is replaced rather than mutated when it is refreshed.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Access tokens are treated as expired this long before their real expiry.
EXPIRY_DELTA = timedelta(seconds=10)


# ============================================================================
# Provider Configuration Models
# ============================================================================

class Endpoints(BaseModel):
    """Endpoint URLs of an identity provider. Empty string means unset."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    authorization: str = ""
    token: str = ""
    introspection: str = ""
    userinfo: str = ""
    end_session: str = ""
    revocation: str = ""

    @classmethod
    def from_discovery(cls, document: Dict[str, Any]) -> "Endpoints":
        """
        Build endpoints from an OIDC discovery document.

        Args:
            document: Parsed ``.well-known/openid-configuration`` JSON

        Returns:
            Endpoints with every ``<name>_endpoint`` value found in the document
        """
        return cls(**{
            name: document.get(f"{name}_endpoint") or ""
            for name in cls.model_fields
        })

    def merge(self, other: "Endpoints") -> "Endpoints":
        """
        Fill unset endpoints from another endpoint set.

        Explicit (non-empty) values of ``self`` always win, so merging the
        same ``other`` twice gives the same result as merging it once.
        """
        update = {
            name: getattr(other, name)
            for name in type(self).model_fields
            if not getattr(self, name)
        }
        return self.model_copy(update=update)


class Provider(BaseModel):
    """
    Static configuration of one identity provider.

    A provider without ``issuer_url`` is a plain OAuth2 provider: no
    discovery happens and no identity token is verified.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Registry key")
    display_name: str = Field(default="", description="Label shown on the provider selection page")
    issuer_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    scopes: Tuple[str, ...] = ()
    authorization_parameters: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    token_parameters: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    endpoints: Endpoints = Field(default_factory=Endpoints)

    @model_validator(mode="before")
    @classmethod
    def collect_flat_endpoints(cls, data: Any) -> Any:
        """Accept ``authorization_endpoint``-style keys next to ``endpoints``."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        endpoints = data.get("endpoints") or {}
        if isinstance(endpoints, Endpoints):
            endpoints = endpoints.model_dump()
        endpoints = dict(endpoints)

        for name in Endpoints.model_fields:
            flat_value = data.pop(f"{name}_endpoint", None)
            if flat_value and not endpoints.get(name):
                endpoints[name] = flat_value

        data["endpoints"] = endpoints
        return data

    @field_validator("scopes", mode="before")
    @classmethod
    def dedupe_scopes(cls, v: Any) -> Tuple[str, ...]:
        """Keep scopes as an ordered set; a comma separated string is split."""
        if v is None:
            return ()
        if isinstance(v, str):
            v = v.split(",")

        seen = set()
        unique_scopes = []
        for scope in v:
            scope = scope.strip()
            if scope and scope not in seen:
                seen.add(scope)
                unique_scopes.append(scope)
        return tuple(unique_scopes)

    @field_validator("authorization_parameters", "token_parameters", mode="before")
    @classmethod
    def normalize_parameters(cls, v: Any) -> Dict[str, Tuple[str, ...]]:
        """Multi-valued parameters; a single string becomes a one-element list."""
        if not v:
            return {}
        return {
            key: (values,) if isinstance(values, str) else tuple(values)
            for key, values in v.items()
        }

    @property
    def label(self) -> str:
        return self.display_name or self.name


# ============================================================================
# Token Models
# ============================================================================

class Tokens(BaseModel):
    """OAuth2 token set as stored in the session cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str = ""
    token_type: str = ""
    refresh_token: str = ""
    expiry: Optional[datetime] = None

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> "Tokens":
        """
        Build a token set from a token endpoint response.

        Args:
            data: Parsed token endpoint response
            now: Reference time for ``expires_in`` (defaults to current UTC time)

        Returns:
            Tokens with an absolute expiry if the response carried ``expires_in``
        """
        now = now or datetime.now(timezone.utc)

        expiry = None
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in > 0:
            try:
                expiry = now + timedelta(seconds=expires_in)
            except OverflowError:
                # beyond datetime range, treated as never expiring
                expiry = None

        return cls(
            access_token=data.get("access_token") or "",
            token_type=data.get("token_type") or "",
            refresh_token=data.get("refresh_token") or "",
            expiry=expiry,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """
        Check the access token against its own expiry.

        A token without expiry never expires. A token is considered expired
        EXPIRY_DELTA before its actual expiry to absorb clock skew.
        """
        if not self.access_token:
            return False
        if self.expiry is None:
            return True

        now = now or datetime.now(timezone.utc)
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry - EXPIRY_DELTA > now


# ============================================================================
# Cookie Payload Models
# ============================================================================

class Session(BaseModel):
    """Login session carried in the session cookie. The cookie is the record."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., description="Registry key of the provider that issued the tokens")
    tokens: Tokens
    id_token: str = Field(default="", description="Raw identity token (OIDC providers only)")


class LoginState(BaseModel):
    """CSRF state carried in the short-lived state cookie."""

    model_config = ConfigDict(frozen=True)

    state: str = Field(..., description="Unguessable value echoed back by the provider")
    origin_uri: str = Field(default="", description="Resource to resume after login")
    provider: str = Field(..., description="Registry key chosen by the user")
