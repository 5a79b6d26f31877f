"""Google Tasks API client used by the MCP tools.

One TasksService belongs to one MCP session. It is built from one of three
credentials:

- StoredTokenCredentials: the bearer token is on file in the token store,
  so an expired access token is refreshed and the record rotated to the
  new token.
- RefreshTokenCredentials: the server's own GOOGLE_REFRESH_TOKEN, used when
  a session arrives without a bearer token.
- AccessTokenCredentials: a bearer token with no refresh material. It works
  until Google expires it, then every call raises TokenExpiredError.
"""

import logging
import re
import time
from typing import Callable, Optional
from urllib.parse import quote

import anyio
import httpx

from logging_config import redact
from oauth.token_store import PersistentTokenStore
from oauth.upstream import GoogleOAuthProvider, UpstreamExchangeError

logger = logging.getLogger(__name__)

TASKS_API_URL = "https://tasks.googleapis.com/tasks/v1"
DEFAULT_LIST_ID = "@default"
REFRESH_SKEW_SECONDS = 60

MAX_TITLE_LENGTH = 1024
MAX_NOTES_LENGTH = 8192
RFC3339_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?$")
TASK_STATUSES = ("needsAction", "completed")

REAUTHORIZE_HINT = "Access token expired and cannot be refreshed; reconnect to authorize again."


class TasksAPIError(Exception):
    """A Google Tasks call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenExpiredError(TasksAPIError):
    """The session's credential is no longer usable."""

    def __init__(self, message: str = REAUTHORIZE_HINT):
        super().__init__(message, status_code=401)


# ============== Credentials ==============

class AccessTokenCredentials:
    """Access token only; cannot refresh."""

    refreshable = False

    def __init__(self, access_token: str):
        self.access_token = access_token

    async def token(self) -> str:
        return self.access_token

    async def refresh(self, stale_token: Optional[str] = None) -> str:
        raise TokenExpiredError()


class RefreshTokenCredentials:
    """Refresh token from the environment; access tokens held in memory."""

    refreshable = True

    def __init__(
        self,
        provider: GoogleOAuthProvider,
        refresh_token: str,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.refresh_token = refresh_token
        self.access_token: Optional[str] = None
        self.expires_at = 0.0
        self._clock = clock
        self._lock = anyio.Lock()

    async def token(self) -> str:
        if not self.access_token or self._clock() >= self.expires_at - REFRESH_SKEW_SECONDS:
            return await self.refresh(self.access_token)
        return self.access_token

    async def refresh(self, stale_token: Optional[str] = None) -> str:
        async with self._lock:
            if self.access_token and self.access_token != stale_token:
                return self.access_token
            try:
                tokens = await self.provider.refresh(self.refresh_token)
            except UpstreamExchangeError as e:
                logger.warning(f"[AUTH] Default refresh token rejected: {e}")
                raise TokenExpiredError() from e
            self.access_token = tokens.access_token
            self.expires_at = self._clock() + tokens.expires_in
            if tokens.refresh_token:
                self.refresh_token = tokens.refresh_token
            return self.access_token


class StoredTokenCredentials:
    """Bearer token backed by refresh material in the persistent store.

    A refresh rotates the store's record from the old access token to the
    new one, preserving the refresh token and creation time. The refresh
    token is also captured up front: sessions sharing a bearer each refresh
    on their own, and only the first finds the record under the old key.
    """

    refreshable = True

    def __init__(
        self,
        token_store: PersistentTokenStore,
        provider: GoogleOAuthProvider,
        access_token: str,
        clock: Callable[[], float] = time.time,
    ):
        self.token_store = token_store
        self.provider = provider
        self.access_token = access_token
        self._clock = clock
        self._lock = anyio.Lock()
        record = token_store.get(access_token)
        self.refresh_token = record.refresh_token if record is not None else None

    async def token(self) -> str:
        record = self.token_store.get(self.access_token)
        if record is not None and record.is_expired(self._clock(), skew=REFRESH_SKEW_SECONDS):
            return await self.refresh(self.access_token)
        return self.access_token

    async def refresh(self, stale_token: Optional[str] = None) -> str:
        async with self._lock:
            if stale_token is not None and stale_token != self.access_token:
                # refreshed by a concurrent call
                return self.access_token

            record = self.token_store.get(self.access_token)
            if record is not None:
                self.refresh_token = record.refresh_token
            if self.refresh_token is None:
                logger.info("[AUTH] No refresh material on file for session token")
                raise TokenExpiredError()

            try:
                tokens = await self.provider.refresh(self.refresh_token)
            except UpstreamExchangeError as e:
                logger.warning(f"[AUTH] Stored refresh token rejected: {e}")
                if e.error == "invalid_grant":
                    # revoked or expired upstream, the record can never refresh again
                    await self.token_store.remove(self.access_token)
                raise TokenExpiredError() from e

            old_token = self.access_token
            record = await self.token_store.rotate(
                old_token, tokens.access_token, tokens.expires_in, tokens.refresh_token
            )
            if record is None:
                # another session already moved the record off the old key
                record = await self.token_store.store(
                    tokens.access_token, tokens.refresh_token or self.refresh_token, tokens.expires_in
                )
            self.refresh_token = record.refresh_token
            self.access_token = tokens.access_token
            logger.info(
                f"[AUTH] Refreshed session token {redact(old_token)} -> {redact(tokens.access_token)}"
            )
            return self.access_token


def credentials_for(
    bearer: Optional[str],
    token_store: PersistentTokenStore,
    provider: GoogleOAuthProvider,
    default_refresh_token: Optional[str] = None,
):
    """Pick the credential for a new session.

    A bearer token on file in the store gets refresh-capable credentials; an
    unknown one is used as-is; no bearer falls back to the server's default
    refresh token.
    """
    if bearer:
        if bearer in token_store:
            return StoredTokenCredentials(token_store, provider, bearer)
        logger.info("[AUTH] Bearer token has no refresh material on file; session cannot self-refresh")
        return AccessTokenCredentials(bearer)
    if default_refresh_token:
        return RefreshTokenCredentials(provider, default_refresh_token)
    raise TokenExpiredError("No bearer token and no default GOOGLE_REFRESH_TOKEN configured")


# ============== Service ==============

def validate_task_fields(title: Optional[str] = None, notes: Optional[str] = None,
                         due: Optional[str] = None, status: Optional[str] = None) -> None:
    if title is not None:
        if not title.strip():
            raise TasksAPIError("Task title is required")
        if len(title) > MAX_TITLE_LENGTH:
            raise TasksAPIError(f"Task title must be {MAX_TITLE_LENGTH} characters or less")
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise TasksAPIError(f"Task notes must be {MAX_NOTES_LENGTH} characters or less")
    if due is not None and not RFC3339_RE.match(due):
        raise TasksAPIError("Due date must be in RFC3339 format (e.g., 2024-12-31T23:59:59Z)")
    if status is not None and status not in TASK_STATUSES:
        raise TasksAPIError(f"Status must be one of: {', '.join(TASK_STATUSES)}")


class TasksService:
    """Thin async wrapper over the Google Tasks REST API."""

    def __init__(self, credentials, http_client: Optional[httpx.AsyncClient] = None,
                 base_url: str = TASKS_API_URL):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def refreshable(self) -> bool:
        return self.credentials.refreshable

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Optional[dict]:
        url = f"{self.base_url}{path}"
        token = await self.credentials.token()
        response = await self._send(method, url, token, **kwargs)

        if response.status_code == 401:
            # access token expired upstream before we expected it to
            token = await self.credentials.refresh(token)
            response = await self._send(method, url, token, **kwargs)
            if response.status_code == 401:
                raise TokenExpiredError()

        if response.status_code >= 400:
            raise TasksAPIError(_error_message(response), status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _send(self, method: str, url: str, token: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(
                method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.HTTPError as e:
            raise TasksAPIError(f"Google Tasks request failed: {e}") from e

    async def list_task_lists(self) -> list[dict]:
        data = await self._request("GET", "/users/@me/lists")
        return (data or {}).get("items", [])

    async def list_tasks(self, list_id: str = DEFAULT_LIST_ID, show_completed: bool = True) -> list[dict]:
        params = {"showCompleted": str(show_completed).lower()}
        data = await self._request("GET", f"/lists/{_quote(list_id)}/tasks", params=params)
        return (data or {}).get("items", [])

    async def create_task(self, title: str, notes: Optional[str] = None, due: Optional[str] = None,
                          list_id: str = DEFAULT_LIST_ID) -> dict:
        validate_task_fields(title=title, notes=notes, due=due)
        body = {"title": title.strip(), "status": "needsAction"}
        if notes:
            body["notes"] = notes.strip()
        if due:
            body["due"] = due
        return await self._request("POST", f"/lists/{_quote(list_id)}/tasks", json=body)

    async def update_task(self, task_id: str, list_id: str = DEFAULT_LIST_ID, title: Optional[str] = None,
                          notes: Optional[str] = None, due: Optional[str] = None,
                          status: Optional[str] = None) -> dict:
        validate_task_fields(title=title, notes=notes, due=due, status=status)
        body = {}
        if title is not None:
            body["title"] = title.strip()
        if notes is not None:
            body["notes"] = notes
        if due is not None:
            body["due"] = due
        if status is not None:
            body["status"] = status
            if status == "needsAction":
                body["completed"] = None
        if not body:
            raise TasksAPIError("Nothing to update: provide title, notes, due or status")
        return await self._request(
            "PATCH", f"/lists/{_quote(list_id)}/tasks/{_quote(task_id)}", json=body
        )

    async def delete_task(self, task_id: str, list_id: str = DEFAULT_LIST_ID) -> None:
        await self._request("DELETE", f"/lists/{_quote(list_id)}/tasks/{_quote(task_id)}")


def _quote(segment: str) -> str:
    return quote(segment, safe="@")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(error, str):
        return error
    return f"Google Tasks API returned HTTP {response.status_code}"
