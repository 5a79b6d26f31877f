"""OAuth 2.0 authorization proxy endpoints.

The proxy acts as an authorization server toward MCP clients and relays the
actual login to Google:

- Discovery metadata (/.well-known/*)
- Client registration (/register)
- Authorization flow (/authorize -> Google -> /callback -> client)
- Token endpoint (/token)

Codes handed to clients are opaque proxy-local keys; Google's code never
leaves the proxy.
"""

import base64
import hashlib
import json
import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from logging_config import redact
from oauth.errors import (
    ClientInputError,
    InvalidGrantError,
    OAuthError,
    StateMismatchError,
)
from oauth.models import AuthorizationCodeGrant, parse_token_request
from oauth.stores import PendingAuthorization, PendingAuthorizationStore, RegisteredClientStore
from oauth.token_store import PersistentTokenStore
from oauth.upstream import GoogleOAuthProvider, UpstreamExchangeError

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

# These will be set by init_oauth_routes()
_server_url: str = ""
_scopes: list[str] = []
_provider: Optional[GoogleOAuthProvider] = None
_pending: Optional[PendingAuthorizationStore] = None
_clients: Optional[RegisteredClientStore] = None
_token_store: Optional[PersistentTokenStore] = None


def init_oauth_routes(
    server_url: str,
    scopes: list[str],
    provider: GoogleOAuthProvider,
    token_store: PersistentTokenStore,
    pending: PendingAuthorizationStore,
    clients: RegisteredClientStore,
):
    """Bind the routes to the provider and stores they operate on.

    Must be called before including the router in the app.
    """
    global _server_url, _scopes, _provider, _pending, _clients, _token_store
    _server_url = server_url
    _scopes = list(scopes)
    _provider = provider
    _token_store = token_store
    _pending = pending
    _clients = clients


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers={"Cache-Control": "no-store"})


# ============== Discovery ==============

def authorization_server_metadata() -> dict:
    return {
        "issuer": _server_url,
        "authorization_endpoint": f"{_server_url}/authorize",
        "token_endpoint": f"{_server_url}/token",
        "registration_endpoint": f"{_server_url}/register",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        "scopes_supported": _scopes,
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    logger.info("[DISCOVERY] Authorization server metadata requested")
    return authorization_server_metadata()


@router.get("/.well-known/openid-configuration")
async def openid_configuration():
    """OpenID Connect discovery; some clients request this instead of RFC 8414."""
    logger.info("[DISCOVERY] OpenID configuration requested")
    return authorization_server_metadata()


@router.get("/.well-known/oauth-protected-resource")
@router.get("/.well-known/oauth-protected-resource/mcp")
async def oauth_protected_resource():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return {
        "resource": _server_url,
        "authorization_servers": [_server_url],
        "scopes_supported": _scopes,
        "bearer_methods_supported": ["header"],
        "resource_documentation": "https://developers.google.com/tasks",
    }


# ============== Client Registration ==============

@router.post("/register")
async def register_client(request: Request):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    raw = await request.body()
    try:
        data = json.loads(raw) if raw.strip() else {}
    except ValueError:
        data = None
    if not isinstance(data, dict):
        return ClientInputError("Invalid JSON body").to_response()

    redirect_uris = data.get("redirect_uris")
    if not isinstance(redirect_uris, list) or not redirect_uris:
        logger.info("[REGISTER] Rejected registration without redirect_uris")
        return ClientInputError("redirect_uris required").to_response()
    if not all(isinstance(uri, str) and uri for uri in redirect_uris):
        return ClientInputError("redirect_uris must be non-empty strings").to_response()

    client_name = data.get("client_name")
    client = await _clients.register(redirect_uris, client_name)
    logger.info(f"[REGISTER] Registered client {client.client_id} ({client_name or 'unnamed'})")

    payload = {
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "client_id_issued_at": int(client.created_at),
        "client_secret_expires_at": 0,  # never expires
        "redirect_uris": list(client.redirect_uris),
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "client_secret_post",
    }
    if client_name is not None:
        payload["client_name"] = client_name
    return _no_store(payload, status_code=201)


# ============== Authorization Flow ==============

@router.get("/authorize")
async def authorize(
    redirect_uri: str = "",
    state: str = "",
    code_challenge: str = "",
    code_challenge_method: str = "",
):
    """Start the flow: remember the client's request, send the user to Google."""
    if not redirect_uri:
        logger.info("[AUTHORIZE] Missing redirect_uri")
        return ClientInputError("redirect_uri required").to_response()
    if not state:
        logger.info("[AUTHORIZE] Missing state")
        return ClientInputError("state required").to_response()

    await _pending.start(
        redirect_uri=redirect_uri,
        state=state,
        code_challenge=code_challenge or None,
        code_challenge_method=code_challenge_method or None,
    )

    upstream_url = _provider.authorization_url(state)
    logger.info(f"[AUTHORIZE] Redirecting to Google for state {redact(state)}")
    return RedirectResponse(url=upstream_url, status_code=302)


def _with_query(url: str, **params) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


@router.get("/callback")
async def callback(code: str = "", state: str = "", error: str = ""):
    """Google redirects here; relay an opaque proxy code to the client."""
    if error:
        logger.info(f"[CALLBACK] Google returned error: {error}")
        return PlainTextResponse(f"Authorization failed: {error}", status_code=400)

    if not code or not state:
        logger.info("[CALLBACK] Missing code or state from Google")
        return PlainTextResponse("Missing code or state", status_code=400)

    auth = await _pending.attach_upstream_code(state, code)
    if auth is None:
        logger.warning(f"[SECURITY] Callback with unknown or expired state {redact(state)}")
        return PlainTextResponse("Invalid or expired state", status_code=400)

    redirect_url = _with_query(auth.client_redirect_uri, code=auth.proxy_code, state=auth.client_state)
    logger.info(f"[CALLBACK] Issued proxy code {redact(auth.proxy_code)}, redirecting to client")
    return RedirectResponse(url=redirect_url, status_code=302)


# ============== Token Endpoint ==============

async def _read_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            raise ClientInputError("Invalid JSON body")
        if not isinstance(data, dict):
            raise ClientInputError("Invalid JSON body")
        return data
    if "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items()}
    return {}


def verify_pkce(code_verifier: str, code_challenge: str, method: Optional[str]) -> bool:
    if (method or "S256") == "plain":
        return code_verifier == code_challenge
    expected = base64.urlsafe_b64encode(
        hashlib.sha256(code_verifier.encode()).digest()
    ).rstrip(b"=").decode()
    return expected == code_challenge


def _check_code_bindings(auth: PendingAuthorization, grant: AuthorizationCodeGrant) -> None:
    if auth.code_challenge and grant.code_verifier:
        if not verify_pkce(grant.code_verifier, auth.code_challenge, auth.code_challenge_method):
            logger.warning("[SECURITY] PKCE verification failed")
            raise InvalidGrantError("PKCE verification failed")
    elif auth.code_challenge:
        logger.info("[TOKEN] code_challenge captured but no code_verifier presented")

    if grant.redirect_uri and grant.redirect_uri != auth.client_redirect_uri:
        logger.warning("[SECURITY] redirect_uri at /token does not match /authorize")
        raise InvalidGrantError("redirect_uri mismatch")


async def _authorization_code_grant(grant: AuthorizationCodeGrant) -> dict:
    auth = await _pending.take_by_code(grant.code)
    if auth is None or not auth.upstream_code:
        logger.warning(f"[SECURITY] Unknown or expired proxy code {redact(grant.code)}")
        raise StateMismatchError("Invalid or expired code")

    _check_code_bindings(auth, grant)

    try:
        tokens = await _provider.exchange_code(auth.upstream_code)
    except UpstreamExchangeError as e:
        raise InvalidGrantError(e.description or "Failed to exchange code")

    if tokens.refresh_token:
        await _token_store.store(tokens.access_token, tokens.refresh_token, tokens.expires_in)
    else:
        logger.warning("[TOKEN] Google issued no refresh token; session cannot self-refresh")

    logger.info(f"[TOKEN] Issued access token {redact(tokens.access_token)} (expires in {tokens.expires_in}s)")
    payload = {
        "access_token": tokens.access_token,
        "token_type": "Bearer",
        "expires_in": tokens.expires_in,
        "scope": tokens.scope or " ".join(_scopes),
    }
    if tokens.refresh_token:
        payload["refresh_token"] = tokens.refresh_token
    return payload


async def _refresh_token_grant(grant) -> dict:
    try:
        tokens = await _provider.refresh(grant.refresh_token)
    except UpstreamExchangeError as e:
        raise InvalidGrantError(e.description or "Failed to refresh token")

    await _token_store.store(
        tokens.access_token,
        tokens.refresh_token or grant.refresh_token,
        tokens.expires_in,
    )

    logger.info(f"[TOKEN] Refreshed access token {redact(tokens.access_token)}")
    payload = {
        "access_token": tokens.access_token,
        "token_type": "Bearer",
        "expires_in": tokens.expires_in,
    }
    # Google does not always rotate the refresh token
    if tokens.refresh_token:
        payload["refresh_token"] = tokens.refresh_token
    if tokens.scope:
        payload["scope"] = tokens.scope
    return payload


@router.post("/token")
async def token(request: Request):
    """OAuth 2.0 Token Endpoint (form-urlencoded or JSON)."""
    try:
        grant = parse_token_request(await _read_body(request))
        logger.info(f"[TOKEN] grant_type: {grant.grant_type}")
        if isinstance(grant, AuthorizationCodeGrant):
            payload = await _authorization_code_grant(grant)
        else:
            payload = await _refresh_token_grant(grant)
    except OAuthError as e:
        if not isinstance(e, StateMismatchError):
            logger.info(f"[TOKEN] Rejected: {e.error} ({e.description})")
        return e.to_response()
    return _no_store(payload)
