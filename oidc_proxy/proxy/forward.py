"""
Reverse Forwarder - Upstream Request Forwarding
===============================================

Forwards authorized requests to the upstream service.

Security Model:
---------------
1. The gateway has already approved the request and resolved its session
2. Inbound Authorization and Cookie headers are dropped (the proxy's own
   cookies never reach the upstream)
3. The session's access token is sent as ``Authorization: Bearer``
4. X-Forwarded-For/Host/Proto describe the original request

Request and response bodies are streamed in both directions. Requests are
never retried.
"""

import logging
from typing import List, Optional, Set, Tuple

import httpx
from fastapi import Request, Response, status
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from ..models import Session

logger = logging.getLogger(__name__)


# RFC 7230 section 6.1
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "authorization", "cookie"}


def connection_tokens(headers: List[Tuple[str, str]]) -> Set[str]:
    """Header names listed in Connection are hop-by-hop as well."""
    return {
        token.strip().lower()
        for name, value in headers
        if name.lower() == "connection"
        for token in value.split(",")
        if token.strip()
    }


# ============================================================================
# Header Functions
# ============================================================================

def build_upstream_headers(request: Request, session: Optional[Session]) -> List[Tuple[str, str]]:
    """
    Build headers for the upstream request.

    Args:
        request: Inbound request
        session: Session approved by the gateway

    Returns:
        Header list (repeated headers keep every value)
    """
    original = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw]
    dropped = DROPPED_REQUEST_HEADERS | connection_tokens(original)

    headers = [
        (name, value) for name, value in original
        if name.lower() not in dropped and not name.lower().startswith("x-forwarded-")
    ]

    if session is not None and session.tokens.access_token:
        headers.append(("Authorization", f"Bearer {session.tokens.access_token}"))

    forwarded_for = request.headers.get("x-forwarded-for")
    if request.client is not None:
        client_host = request.client.host
        forwarded_for = f"{forwarded_for}, {client_host}" if forwarded_for else client_host
    if forwarded_for:
        headers.append(("X-Forwarded-For", forwarded_for))

    host = request.headers.get("host")
    if host:
        headers.append(("X-Forwarded-Host", host))
    headers.append(("X-Forwarded-Proto", request.url.scheme))

    return headers


def filter_response_headers(response: httpx.Response) -> List[Tuple[bytes, bytes]]:
    """Upstream response headers without hop-by-hop headers, names lowercased."""
    decoded = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in response.headers.raw]
    dropped = HOP_BY_HOP_HEADERS | connection_tokens(decoded)

    return [
        (name.lower(), value)
        for name, value in response.headers.raw
        if name.decode("latin-1").lower() not in dropped
    ]


def has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


# ============================================================================
# Forwarder
# ============================================================================

class ReverseForwarder:
    """Downstream handler forwarding to a single upstream base URL."""

    def __init__(self, upstream: str, http_client: httpx.AsyncClient):
        self.upstream = httpx.URL(upstream)
        self.http_client = http_client

    def build_url(self, request: Request) -> httpx.URL:
        """Join the upstream base path with the request path and keep the query."""
        base_path = self.upstream.path.rstrip("/")
        return self.upstream.copy_with(
            path=f"{base_path}{request.url.path}",
            query=request.url.query.encode("ascii") if request.url.query else None,
        )

    async def __call__(self, request: Request, session: Optional[Session]) -> Response:
        """
        Forward the request and stream the upstream response back.

        Returns:
            StreamingResponse with the upstream status, headers and body;
            502 if the upstream cannot be reached, 504 on timeout
        """
        url = self.build_url(request)
        upstream_request = self.http_client.build_request(
            request.method,
            url,
            headers=build_upstream_headers(request, session),
            content=request.stream() if has_body(request) else None,
        )

        try:
            upstream_response = await self.http_client.send(upstream_request, stream=True)
        except httpx.TimeoutException:
            logger.error("Upstream request timeout", extra={"url": str(url)})
            return PlainTextResponse("Gateway Timeout", status_code=status.HTTP_504_GATEWAY_TIMEOUT)
        except httpx.HTTPError as e:
            logger.error(f"Upstream request failed: {e}", extra={"url": str(url)})
            return PlainTextResponse("Bad Gateway", status_code=status.HTTP_502_BAD_GATEWAY)

        response = StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = filter_response_headers(upstream_response)
        return response
