"""OAuth middleware for the MCP endpoint.

Requires a Bearer token on every MCP request. The token is Google's access
token as handed out by /token; it is not validated here, the session built
from it fails on first use if Google rejects it.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


def bearer_token(authorization: str) -> str:
    """Token from an Authorization header value, or "" if not Bearer."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def www_authenticate(server_url: str, scopes: list[str]) -> str:
    return (
        f'Bearer resource_metadata="{server_url}/.well-known/oauth-protected-resource", '
        f'scope="{" ".join(scopes)}"'
    )


def unauthorized_response(server_url: str, scopes: list[str], error_description: str) -> JSONResponse:
    """Return 401 with WWW-Authenticate header pointing to resource metadata (RFC 9728)."""
    return JSONResponse(
        {"error": "unauthorized", "error_description": error_description},
        status_code=401,
        headers={"WWW-Authenticate": www_authenticate(server_url, scopes)},
    )


class MCPOAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to require OAuth Bearer tokens for the Streamable HTTP MCP endpoint."""

    def __init__(self, app, server_url: str, scopes: list[str]):
        super().__init__(app)
        self.server_url = server_url
        self.scopes = scopes

    async def dispatch(self, request: Request, call_next):
        # CORS preflight carries no credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        if not bearer_token(request.headers.get("Authorization", "")):
            logger.info("[AUTH] Request rejected: no Bearer token")
            return unauthorized_response(
                self.server_url, self.scopes, "Missing or invalid Authorization header"
            )

        return await call_next(request)
