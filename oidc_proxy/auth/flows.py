"""
Authentication flows for OIDC login, callback and logout handling.

This module implements the OAuth 2.0 / OIDC authorization code flow
against any number of configured providers:

- LoginFlow: provider selection page, or redirect to the provider's
  authorization endpoint with a fresh CSRF state cookie
- CallbackFlow: state validation, code exchange, ID token verification,
  session cookie
- LogoutFlow: best-effort token revocation, RP-initiated or local logout
"""

import html
import logging
import time
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request, Response, status
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from jose.exceptions import JOSEError

from ..exceptions import (
    BadRequestError,
    CookieError,
    CSRFMismatchError,
    OIDCProxyError,
    ProviderProtocolError,
    RevocationError,
)
from ..models import LoginState, Session, Tokens
from .cookies import SecureCookieStore
from .registry import ProviderRegistry, RegisteredProvider
from .utils import (
    TokenEndpointError,
    flatten_parameters,
    generate_state,
    post_token_request,
    verify_id_token,
)

logger = logging.getLogger(__name__)


STATE_COOKIE_NAME = "state"


def error_response(exc: OIDCProxyError) -> PlainTextResponse:
    """Plain-text error response for a proxy error."""
    return PlainTextResponse(str(exc), status_code=exc.status_code)


def internal_error_response() -> PlainTextResponse:
    return PlainTextResponse(
        "Internal Server Error",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def safe_origin_uri(origin_uri: Optional[str]) -> str:
    """
    Only local absolute paths are resumed after login.

    Anything else (absolute URLs, scheme-relative ``//host`` paths) is
    dropped so the callback cannot be used as an open redirect.
    """
    if not origin_uri:
        return ""
    if not origin_uri.startswith("/") or origin_uri.startswith(("//", "/\\")):
        logger.info("ignoring non-local origin_uri")
        return ""
    return origin_uri


def build_authorization_url(provider: RegisteredProvider, state: str) -> str:
    """
    Build the provider's authorization URL.

    Standard OAuth2 parameters come first, then every configured
    authorization parameter value as its own query entry.
    """
    params = [
        ("client_id", provider.config.client_id),
        ("redirect_uri", provider.redirect_uri),
        ("response_type", "code"),
    ]
    if provider.config.scopes:
        params.append(("scope", " ".join(provider.config.scopes)))
    params.append(("state", state))
    params.extend(flatten_parameters(provider.config.authorization_parameters))

    endpoint = provider.endpoints.authorization
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode(params)}"


# =============================================================================
# Login
# =============================================================================

class LoginFlow:
    def __init__(self, registry: ProviderRegistry, cookies: SecureCookieStore):
        self.registry = registry
        self.cookies = cookies

    async def handle(self, request: Request) -> Response:
        """
        Show the provider selection page or start the authorization code flow.

        Query Parameters:
            provider: Registry key of the chosen provider
            origin_uri: Resource to return to after login

        Returns:
            HTMLResponse with provider links, or 303 RedirectResponse to the
            provider's authorization endpoint
        """
        provider_name = request.query_params.get("provider")
        if not provider_name:
            return self.render_selection_page(request)

        provider = self.registry.get(provider_name)
        if provider is None:
            return error_response(BadRequestError("unknown provider"))

        login_state = LoginState(
            state=generate_state(),
            origin_uri=safe_origin_uri(request.query_params.get("origin_uri")),
            provider=provider_name,
        )

        redirect_url = build_authorization_url(provider, login_state.state)
        response = RedirectResponse(redirect_url, status_code=status.HTTP_303_SEE_OTHER)

        try:
            self.cookies.set(response, STATE_COOKIE_NAME, login_state)
        except CookieError as e:
            logger.error(f"failed to set state cookie: {e}")
            return internal_error_response()

        logger.debug(
            "redirect for authentication",
            extra={"provider": provider_name, "origin_uri": login_state.origin_uri},
        )
        return response

    def render_selection_page(self, request: Request) -> HTMLResponse:
        """List every provider, each link repeating the current query plus ``provider``."""
        query = [
            (key, value)
            for key, value in request.query_params.multi_items()
            if key != "provider"
        ]

        links = []
        for name, provider in self.registry.items():
            href = f"{request.url.path}?{urlencode(query + [('provider', name)])}"
            links.append(
                f'<div><a href="{html.escape(href)}">{html.escape(provider.config.label)}</a></div>'
            )

        html_content = "<h1>select login provider</h1>\n" + "\n".join(links) + "\n"
        return HTMLResponse(content=html_content, headers={"Cache-Control": "no-cache"})


# =============================================================================
# Callback
# =============================================================================

class CallbackFlow:
    def __init__(
        self,
        registry: ProviderRegistry,
        cookies: SecureCookieStore,
        http_client: httpx.AsyncClient,
        session_cookie_name: str,
    ):
        self.registry = registry
        self.cookies = cookies
        self.http_client = http_client
        self.session_cookie_name = session_cookie_name

    async def handle(self, request: Request) -> Response:
        """
        Handle the provider's redirect back to the proxy.

        The state cookie is consumed exactly once: every response produced
        here deletes it, whatever the outcome.

        Query Parameters:
            state: State parameter (must match the state cookie)
            code: Authorization code
            error: Error code if authentication failed
            error_description: Human-readable error description

        Returns:
            303 RedirectResponse to the original resource with the session
            cookie set, or a plain-text error response
        """
        try:
            response = await self._handle(request)
        except Exception as e:
            logger.error(f"callback failed: {e}", exc_info=True)
            response = internal_error_response()

        self.cookies.delete(response, STATE_COOKIE_NAME)
        return response

    async def _handle(self, request: Request) -> Response:
        try:
            login_state = self.cookies.get(request, STATE_COOKIE_NAME, LoginState)
        except CookieError as e:
            logger.info(f"invalid state cookie: {e}")
            return error_response(BadRequestError("invalid state cookie"))

        if login_state is None:
            return error_response(BadRequestError("state cookie missing"))

        try:
            session = await self.establish_session(request, login_state)
        except OIDCProxyError as e:
            logger.info(f"login failed: {e}", extra={"provider": login_state.provider})
            return error_response(e)

        origin_uri = login_state.origin_uri or "/"
        response = RedirectResponse(origin_uri, status_code=status.HTTP_303_SEE_OTHER)

        try:
            self.cookies.set(response, self.session_cookie_name, session)
        except CookieError as e:
            logger.error(f"failed to set session cookie: {e}")
            return internal_error_response()

        logger.info(
            "token successfully issued",
            extra={"provider": session.provider, "refresh_token": bool(session.tokens.refresh_token)},
        )
        return response

    async def establish_session(self, request: Request, login_state: LoginState) -> Session:
        """
        Validate the callback and exchange the code for a session.

        Raises:
            CSRFMismatchError: If the state parameter does not match
            ProviderProtocolError: If the provider reported an error, the
                                  exchange failed or the ID token is invalid
            BadRequestError: If the provider of the login state is unknown
        """
        params = request.query_params

        if params.get("state") != login_state.state:
            raise CSRFMismatchError("state mismatch")

        if params.get("error"):
            raise ProviderProtocolError(
                f"error={params.get('error')}, error_description={params.get('error_description', '')}"
            )

        provider = self.registry.get(login_state.provider)
        if provider is None:
            raise BadRequestError("invalid state unknown provider")

        start = time.monotonic()
        token_data = await self.exchange_code(provider, params.get("code", ""))
        logger.info(
            "token issued",
            extra={"provider": provider.name, "duration": time.monotonic() - start},
        )

        id_token = ""
        # pure OAuth2 providers have no issuer and no id_token
        if provider.is_oidc:
            id_token = token_data.get("id_token")
            if not isinstance(id_token, str) or not id_token:
                raise ProviderProtocolError("missing id_token")

            try:
                await verify_id_token(
                    id_token,
                    provider.key_set,
                    issuer=provider.issuer,
                    client_id=provider.config.client_id,
                    algorithms=list(provider.id_token_algorithms),
                )
            except (JOSEError, httpx.HTTPError, ValueError) as e:
                raise ProviderProtocolError(f"failed to validate id_token: {e}") from e

        try:
            tokens = Tokens.from_token_response(token_data)
        except ValueError as e:
            raise ProviderProtocolError(f"invalid token response: {e}") from e

        return Session(provider=login_state.provider, tokens=tokens, id_token=id_token)

    async def exchange_code(self, provider: RegisteredProvider, code: str) -> dict:
        """
        Exchange the authorization code at the provider's token endpoint.

        Configured token parameters are added to (and override) the
        standard form fields.

        Raises:
            ProviderProtocolError: If the exchange fails
        """
        if not code:
            raise ProviderProtocolError("token exchange failed: missing code")

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": provider.redirect_uri,
            **provider.client_credentials(),
        }
        for key, values in provider.config.token_parameters.items():
            form[key] = list(values)

        try:
            return await post_token_request(self.http_client, provider.endpoints.token, form)
        except TokenEndpointError as e:
            raise ProviderProtocolError(f"token exchange failed: {e}") from e


# =============================================================================
# Logout
# =============================================================================

class LogoutFlow:
    def __init__(
        self,
        registry: ProviderRegistry,
        cookies: SecureCookieStore,
        http_client: httpx.AsyncClient,
        session_cookie_name: str,
    ):
        self.registry = registry
        self.cookies = cookies
        self.http_client = http_client
        self.session_cookie_name = session_cookie_name

    async def handle(self, request: Request, session: Optional[Session]) -> Response:
        """
        Log the user out.

        The session cookie is deleted on every response. Revocation is
        best-effort; an end-session endpoint takes precedence over the local
        "logged out" confirmation.
        """
        response = await self._handle(session)
        self.cookies.delete(response, self.session_cookie_name)
        return response

    async def _handle(self, session: Optional[Session]) -> Response:
        if session is None:
            return logged_out_response()

        provider = self.registry.get(session.provider)
        if provider is None:
            logger.info(f"logout for unknown provider {session.provider}")
            return logged_out_response()

        if provider.endpoints.revocation:
            try:
                await self.revoke_token(provider, session)
            except RevocationError as e:
                logger.warning(f"{e}", extra={"provider": provider.name})

        if provider.endpoints.end_session:
            return RedirectResponse(
                end_session_url(provider, session),
                status_code=status.HTTP_303_SEE_OTHER,
            )

        return logged_out_response()

    async def revoke_token(self, provider: RegisteredProvider, session: Session) -> None:
        """
        Revoke the session's refresh token (or access token) per RFC 7009.

        Raises:
            RevocationError: On transport errors or a status outside 200-399
        """
        token = session.tokens.refresh_token or session.tokens.access_token
        body = {
            "token": token,
            "client_id": provider.config.client_id,
            "client_secret": provider.config.client_secret,
        }

        try:
            response = await self.http_client.post(provider.endpoints.revocation, data=body)
        except httpx.HTTPError as e:
            raise RevocationError(f"revocation failed: {e}") from e

        if response.status_code < 200 or response.status_code > 399:
            raise RevocationError(
                f"revocation failed: returned status code {response.status_code} "
                f"with body '{response.text[:1000]}'"
            )
        logger.info("token revoked", extra={"provider": provider.name})


def end_session_url(provider: RegisteredProvider, session: Session) -> str:
    """RP-initiated logout URL, with ``id_token_hint`` when an ID token exists."""
    endpoint = provider.endpoints.end_session
    if not session.id_token:
        return endpoint

    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode({'id_token_hint': session.id_token})}"


def logged_out_response() -> PlainTextResponse:
    return PlainTextResponse("logged out")
