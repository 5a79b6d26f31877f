"""Google Tasks MCP server with an OAuth authorization proxy.

This server:
- Serves MCP over Streamable HTTP at /mcp, one session per client
- Acts as an OAuth 2.0 authorization server toward MCP clients (ChatGPT,
  Claude, ...) and relays the login to Google (via oauth/)
- Persists Google refresh material so sessions survive token expiry and
  server restarts
"""
import contextlib
import logging
from typing import Optional

import anyio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Mount, Route

from config import Config
from google_tasks import TasksService, credentials_for
from oauth.middleware import MCPOAuthMiddleware
from oauth.stores import PendingAuthorizationStore, RegisteredClientStore, sweep_forever
from oauth.token_store import PersistentTokenStore
from oauth.upstream import GoogleOAuthProvider
from sessions import SessionManager
from tools import TOOL_NAMES

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
TRANSPORT = "streamable-http"


def create_app(
    config: Config,
    provider: Optional[GoogleOAuthProvider] = None,
    token_store: Optional[PersistentTokenStore] = None,
    pending: Optional[PendingAuthorizationStore] = None,
    clients: Optional[RegisteredClientStore] = None,
    service_factory=None,
    json_response: bool = False,
) -> FastAPI:
    """Assemble the FastAPI app. Collaborators can be injected for tests."""
    server_url = config.server_url

    if provider is None:
        provider = GoogleOAuthProvider(
            client_id=config.google_client_id,
            client_secret=config.google_client_secret,
            redirect_uri=f"{server_url}/callback",
            scopes=config.scopes,
        )
    if token_store is None:
        token_store = PersistentTokenStore(config.token_store_path)
        token_store.load()
    if pending is None:
        pending = PendingAuthorizationStore()
    if clients is None:
        clients = RegisteredClientStore()

    if service_factory is None:
        def service_factory(bearer: Optional[str]) -> TasksService:
            return TasksService(
                credentials_for(bearer, token_store, provider, config.google_refresh_token)
            )

    sessions = SessionManager(service_factory, json_response=json_response)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        async with anyio.create_task_group() as tg:
            tg.start_soon(sweep_forever, pending, token_store)
            async with sessions.run():
                yield
            tg.cancel_scope.cancel()

    # ============== MCP App ==============
    mcp_app = Starlette(
        routes=[Mount("/", app=sessions)],
        middleware=[
            Middleware(MCPOAuthMiddleware, server_url=server_url, scopes=config.scopes)
        ] if config.enable_oauth else [],
    )

    # ============== FastAPI App ==============
    app = FastAPI(
        title="Google Tasks MCP Server",
        description="MCP server for Google Tasks with an OAuth 2.0 authorization proxy",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.token_store = token_store
    app.state.pending = pending
    app.state.clients = clients
    app.state.sessions = sessions

    # CORS for browser-based MCP clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )

    app.router.routes.append(Route("/mcp", endpoint=mcp_app))
    app.mount("/mcp", mcp_app)

    if config.enable_oauth:
        from oauth.endpoints import router as oauth_router, init_oauth_routes
        init_oauth_routes(server_url, config.scopes, provider, token_store, pending, clients)
        app.include_router(oauth_router)

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "google-tasks-mcp", "transport": TRANSPORT}

    @app.get("/")
    async def root():
        response = {
            "name": "Google Tasks MCP Server",
            "version": VERSION,
            "transport": TRANSPORT,
            "endpoints": {"streamable_http": "/mcp"},
            "tools": list(TOOL_NAMES),
            "oauth_enabled": config.enable_oauth,
        }
        if config.enable_oauth:
            response["oauth"] = {
                "protected_resource": f"{server_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{server_url}/.well-known/oauth-authorization-server",
            }
        return response

    logger.info(f"[STARTUP] OAuth enabled: {config.enable_oauth}, server URL: {server_url or '<unset>'}")
    return app
