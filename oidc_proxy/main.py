"""
FastAPI OIDC Proxy Application Factory
======================================

This is the main entry point for the authenticating reverse proxy that sits
in front of an upstream HTTP service.

Architecture:
    Browser → OIDC Proxy (this service) → Upstream service
                  ↕
           Identity providers (OIDC / OAuth2)

Every path belongs to the authentication gateway; there are no other
routes. Login, logout, debug and callback paths are configurable.

Environment Variables (prefix OIDC_PROXY_):
    - CALLBACK_URL: Redirect URI registered at the providers (required)
    - ISSUER_URL / CLIENT_ID / CLIENT_SECRET / SCOPES: Default provider
    - PROVIDER_CONFIG: JSON file with additional providers
    - COOKIE_HASH_KEY: Cookie signing key (32 or 64 bytes)
    - COOKIE_ENC_KEY: Cookie encryption key (16, 24 or 32 bytes)
    - UPSTREAM: Upstream URL (the debug page is served if unset)
    - LOG_LEVEL: Logging level (default: INFO)

Every variable is also a command line flag in kebab case without the prefix
(--issuer-url, --callback-url, --upstream, --addr ...); flags win over the
environment.

Running the Service:
    python -m oidc_proxy --callback-url http://localhost:8080/callback --addr localhost:8080

    uvicorn oidc_proxy.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from .auth import AuthGateway, ProviderRegistry, SecureCookieStore
from .auth.cookies import generate_key
from . import __version__
from .config import Settings, get_settings, load_providers, parse_settings
from .exceptions import OIDCProxyError
from .models import Provider
from .proxy import ReverseForwarder, render_info

logger = logging.getLogger(__name__)


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def build_gateway(
    settings: Settings,
    registry: ProviderRegistry,
    http_client: httpx.AsyncClient,
) -> AuthGateway:
    """
    Wire the gateway from settings and a built registry.

    Without a configured hash key a random one is generated, so sessions do
    not survive a restart.
    """
    hash_key = settings.hash_key_bytes
    if hash_key is None:
        logger.warning("no cookie hash key configured, generating a random key")
        hash_key = generate_key(32)

    cookies = SecureCookieStore(
        hash_key,
        settings.enc_key_bytes,
        max_age=settings.COOKIE_MAX_AGE_SECONDS,
        secure=settings.secure_cookies,
    )

    if settings.UPSTREAM:
        downstream = ReverseForwarder(settings.UPSTREAM, http_client)
    else:
        logger.info("no upstream configured, serving the info page for authorized requests")
        downstream = render_info

    return AuthGateway(
        registry,
        cookies,
        http_client,
        downstream=downstream,
        callback_path=settings.callback_path,
        debug_handler=render_info,
        session_cookie_name=settings.SESSION_COOKIE_NAME,
        login_path=settings.LOGIN_PATH,
        logout_path=settings.LOGOUT_PATH,
        debug_path=settings.DEBUG_PATH,
    )


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    providers: Optional[Dict[str, Provider]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates the FastAPI application with:
        - Lifespan management (provider registry, HTTP client, gateway)
        - Request logging middleware
        - A catch-all route handing every request to the gateway
        - Exception handlers

    Args:
        settings: Settings (loaded from the environment if omitted)
        providers: Provider configs (loaded from settings if omitted)
        http_client: Client for provider and upstream calls (created and
                     closed by the app if omitted)

    Returns:
        FastAPI: Configured application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup fails fast: an invalid provider aborts the process before
        any request is served.
        """
        app_settings = settings or get_settings()
        setup_logging(app_settings.LOG_LEVEL)

        provider_configs = providers if providers is not None else load_providers(app_settings)

        client = http_client or httpx.AsyncClient(timeout=app_settings.HTTP_TIMEOUT_SECONDS)
        try:
            registry = await ProviderRegistry.build(
                provider_configs, app_settings.CALLBACK_URL, client
            )
            app.state.gateway = build_gateway(app_settings, registry, client)

            logger.info(
                "OIDC proxy started",
                extra={
                    "providers": list(registry),
                    "upstream": app_settings.UPSTREAM,
                    "callback_url": app_settings.CALLBACK_URL,
                },
            )

            yield
        finally:
            if http_client is None:
                await client.aclose()
            logger.info("OIDC proxy shutdown complete")

    app = FastAPI(
        title="OIDC Proxy",
        description="Authenticating reverse proxy for OpenID Connect and OAuth2 providers",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )
        return response

    async def gateway_route(request: Request) -> Response:
        return await request.app.state.gateway.dispatch(request)

    # a plain route without a method list matches every method, custom ones included
    app.add_route("/{path:path}", gateway_route, include_in_schema=False)

    @app.exception_handler(OIDCProxyError)
    async def proxy_error_handler(request: Request, exc: OIDCProxyError) -> PlainTextResponse:
        logger.warning(
            f"{exc}",
            extra={"path": request.url.path, "exception_type": type(exc).__name__},
        )
        return PlainTextResponse(str(exc), status_code=exc.status_code)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a plain-text 500 without details.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return PlainTextResponse("Internal Server Error", status_code=500)

    return app


def run(argv: Optional[List[str]] = None) -> None:
    """
    Command line entry point.

    Settings come from flags, then the environment, then defaults;
    ``--version`` prints the version and exits.
    """
    args = sys.argv[1:] if argv is None else argv
    if "--version" in args:
        print(f"oidc-proxy {__version__}")
        return

    settings = parse_settings(args)
    setup_logging(settings.LOG_LEVEL)

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        ssl_certfile=settings.TLS_CERT,
        ssl_keyfile=settings.TLS_KEY,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
