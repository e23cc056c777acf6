"""
Authentication Gateway
======================

Single entry point for every inbound request. Each request is classified
fresh from its path and cookies; nothing is kept between requests.

Dispatch order (first match wins):
    1. debug path    -> debug handler, with the session if there is one
    2. logout path   -> LogoutFlow
    3. login path    -> LoginFlow
    4. callback path -> CallbackFlow
    5. anything else -> protected resource: valid (or refreshed) session
                        required, then the downstream handler is called

The resolved session is attached to ``request.state.session`` and also
passed to the downstream handler as an explicit argument.
"""

import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request, Response, status
from fastapi.responses import PlainTextResponse, RedirectResponse

from ..exceptions import CookieError, RefreshError
from ..models import Session
from .cookies import SecureCookieStore
from .flows import CallbackFlow, LoginFlow, LogoutFlow, internal_error_response
from .refresh import RefreshPolicy
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Downstream handlers receive the request and the session approved for it.
Handler = Callable[[Request, Optional[Session]], Awaitable[Response]]

SAFE_METHODS = ("GET", "HEAD")


class AuthGateway:
    def __init__(
        self,
        registry: ProviderRegistry,
        cookies: SecureCookieStore,
        http_client: httpx.AsyncClient,
        downstream: Handler,
        callback_path: str,
        debug_handler: Optional[Handler] = None,
        session_cookie_name: str = "oprox",
        login_path: str = "/login",
        logout_path: str = "/logout",
        debug_path: str = "/debug",
    ):
        """
        Initialize the gateway and its flows.

        Args:
            registry: Read-only provider registry
            cookies: Cookie codec for the session and state cookies
            http_client: Client for token, refresh and revocation calls
            downstream: Handler for authorized protected requests
            callback_path: Path component of the configured callback URL
            debug_handler: Handler for the debug path (None disables it)
            session_cookie_name: Name of the session cookie
            login_path: Path of the login flow
            logout_path: Path of the logout flow
            debug_path: Path of the debug handler (empty disables it)
        """
        self.registry = registry
        self.cookies = cookies
        self.downstream = downstream
        self.debug_handler = debug_handler
        self.session_cookie_name = session_cookie_name
        self.login_path = login_path
        self.logout_path = logout_path
        self.debug_path = debug_path
        self.callback_path = callback_path

        self.login = LoginFlow(registry, cookies)
        self.callback = CallbackFlow(registry, cookies, http_client, session_cookie_name)
        self.logout = LogoutFlow(registry, cookies, http_client, session_cookie_name)
        self.refresh_policy = RefreshPolicy(registry, http_client)

    async def dispatch(self, request: Request) -> Response:
        """Route one request through the gateway."""
        path = request.url.path

        if self.debug_path and self.debug_handler is not None and path == self.debug_path:
            session = self.resolve_session(request)
            request.state.session = session
            return await self.debug_handler(request, session)

        if path == self.logout_path:
            return await self.logout.handle(request, self.resolve_session(request))

        if path == self.login_path:
            return await self.login.handle(request)

        if path == self.callback_path:
            return await self.callback.handle(request)

        return await self.handle_protected(request)

    def resolve_session(self, request: Request) -> Optional[Session]:
        """Read the session cookie. Invalid cookies count as no session."""
        try:
            return self.cookies.get(request, self.session_cookie_name, Session)
        except CookieError as e:
            logger.info(f"ignoring session cookie: {e}")
            return None

    # =========================================================================
    # Protected Resources
    # =========================================================================

    async def handle_protected(self, request: Request) -> Response:
        """
        Require a valid session before calling the downstream handler.

        An expired access token is refreshed once; the renewed session
        cookie is set on the downstream response. A failed refresh leaves
        the stale cookie as it is and is treated like a missing session.
        """
        session = self.resolve_session(request)
        if session is None:
            return self.unauthenticated(request)

        session_cookie = None
        if not session.tokens.is_valid():
            try:
                session = await self.refresh_policy.refresh(session)
            except RefreshError as e:
                logger.info(f"{e}", extra={"provider": session.provider})
                return self.unauthenticated(request)

            try:
                session_cookie = self.cookies.dumps(self.session_cookie_name, session)
            except CookieError as e:
                logger.error(f"failed to encode refreshed session: {e}")
                return internal_error_response()

        request.state.session = session
        response = await self.downstream(request, session)

        if session_cookie is not None:
            self.cookies.write(response, self.session_cookie_name, session_cookie)
        return response

    def unauthenticated(self, request: Request) -> Response:
        """
        Send the user to the login page.

        Only safe methods are redirected; redirecting any other method would
        drop its request body, so those get 401 instead.
        """
        if request.method not in SAFE_METHODS:
            return PlainTextResponse("Unauthorized", status_code=status.HTTP_401_UNAUTHORIZED)

        origin_uri = request.url.path
        if request.url.query:
            origin_uri = f"{origin_uri}?{request.url.query}"

        location = f"{self.login_path}?{urlencode({'origin_uri': origin_uri}, safe='/')}"
        return RedirectResponse(location, status_code=status.HTTP_303_SEE_OTHER)
