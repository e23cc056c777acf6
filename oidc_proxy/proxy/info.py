"""
Debug / info handler.

Shows what the proxy knows about the current request and session. Mounted
on the debug path, and used as downstream when no upstream is configured.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from jose import JWTError

from ..auth.utils import decode_token_without_verification
from ..models import Session


def describe_session(session: Optional[Session]) -> Optional[Dict[str, Any]]:
    if session is None:
        return None

    tokens = session.tokens
    info: Dict[str, Any] = {
        "provider": session.provider,
        "token_type": tokens.token_type,
        "expiry": tokens.expiry.isoformat() if tokens.expiry else None,
        "valid": tokens.is_valid(),
        "refresh_token": bool(tokens.refresh_token),
        "id_token_claims": None,
    }

    if session.id_token:
        # claims were verified at login; shown here without verification
        try:
            info["id_token_claims"] = decode_token_without_verification(session.id_token)
        except JWTError as e:
            info["id_token_claims"] = {"error": str(e)}

    return info


async def render_info(request: Request, session: Optional[Session]) -> JSONResponse:
    """
    Describe the request and its session as JSON.

    The Cookie header is left out; it carries the encoded session itself.
    """
    headers: Dict[str, str] = {
        name: value
        for name, value in request.headers.items()
        if name.lower() != "cookie"
    }

    return JSONResponse(
        content={
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request": {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "headers": headers,
            },
            "session": describe_session(session),
        },
        headers={"Cache-Control": "no-cache"},
    )
