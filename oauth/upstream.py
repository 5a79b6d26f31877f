"""Client for the upstream identity provider (Google).

The proxy talks to Google with plain authorization-code and refresh-token
grants. Nothing here is retried: a rejected code or refresh token will not
succeed on a second attempt.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN = 3600


class UpstreamExchangeError(Exception):
    """The provider rejected a code or refresh token, or could not be reached."""

    def __init__(self, error: str, description: Optional[str] = None):
        super().__init__(description or error)
        self.error = error
        self.description = description


@dataclass(frozen=True)
class UpstreamTokens:
    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def from_response(cls, data: dict) -> "UpstreamTokens":
        if not data.get("access_token"):
            raise UpstreamExchangeError("invalid_response", "Provider returned no access_token")
        try:
            expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=data["access_token"],
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )


class GoogleOAuthProvider:
    """Authorization-code and refresh grants against Google's OAuth server."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str],
        auth_url: str = GOOGLE_AUTH_URL,
        token_url: str = GOOGLE_TOKEN_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.auth_url = auth_url
        self.token_url = token_url
        self._http_client = http_client

    def authorization_url(self, state: str) -> str:
        """Upstream consent URL; offline access plus forced consent so a
        refresh token is issued even for users who consented before."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> UpstreamTokens:
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def _token_request(self, data: dict) -> UpstreamTokens:
        data = {**data, "client_id": self.client_id, "client_secret": self.client_secret}
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            logger.warning(f"[UPSTREAM] Token request failed: {e}")
            raise UpstreamExchangeError("temporarily_unavailable", f"Upstream request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code != 200:
            error = body.get("error") or f"http_{response.status_code}"
            description = body.get("error_description") or error
            logger.info(f"[UPSTREAM] {data['grant_type']} grant rejected: {error}")
            raise UpstreamExchangeError(error, description)

        return UpstreamTokens.from_response(body)
