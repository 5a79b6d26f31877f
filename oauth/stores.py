"""In-memory stores for OAuth flows in flight.

Pending authorizations live here between /authorize and /token; they are
never persisted, losing a half-finished login on restart is acceptable.
Each store owns its maps and only exposes atomic operations.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import anyio

logger = logging.getLogger(__name__)

AUTHORIZATION_TTL_SECONDS = 10 * 60
SWEEP_INTERVAL_SECONDS = 60


def generate_token(nbytes: int = 32) -> str:
    """Opaque, URL-safe random string for codes and client secrets."""
    return secrets.token_urlsafe(nbytes)


@dataclass
class PendingAuthorization:
    client_redirect_uri: str
    client_state: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    upstream_code: Optional[str] = None
    proxy_code: Optional[str] = None
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RegisteredClient:
    client_id: str
    client_secret: str
    redirect_uris: tuple
    client_name: Optional[str] = None
    created_at: float = field(default_factory=time.time)


class PendingAuthorizationStore:
    """Authorizations in flight, indexed by client state and by proxy code.

    Both indexes always point at the same record object.
    """

    def __init__(
        self,
        ttl: float = AUTHORIZATION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self._clock = clock
        self._by_state: dict[str, PendingAuthorization] = {}
        self._by_code: dict[str, PendingAuthorization] = {}
        self._lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._by_state)

    def _expired(self, auth: PendingAuthorization, now: float) -> bool:
        return now - auth.created_at > self.ttl

    def _drop(self, auth: PendingAuthorization) -> None:
        if self._by_state.get(auth.client_state) is auth:
            del self._by_state[auth.client_state]
        if auth.proxy_code and self._by_code.get(auth.proxy_code) is auth:
            del self._by_code[auth.proxy_code]

    async def start(
        self,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> PendingAuthorization:
        """Record a new authorization attempt keyed by its state."""
        auth = PendingAuthorization(
            client_redirect_uri=redirect_uri,
            client_state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            created_at=self._clock(),
        )
        async with self._lock:
            previous = self._by_state.get(state)
            if previous is not None:
                logger.info("[STORE] Replacing pending authorization for reused state")
                self._drop(previous)
            self._by_state[state] = auth
        return auth

    def get_by_state(self, state: str) -> Optional[PendingAuthorization]:
        auth = self._by_state.get(state)
        if auth is None or self._expired(auth, self._clock()):
            return None
        return auth

    async def attach_upstream_code(
        self, state: str, upstream_code: str
    ) -> Optional[PendingAuthorization]:
        """Attach the provider's code and mint a proxy code, atomically.

        Returns None when the state is unknown or expired; nothing is
        created or changed in that case. A replayed callback replaces the
        previous proxy code so each record is reachable by exactly one.
        """
        async with self._lock:
            auth = self._by_state.get(state)
            if auth is None:
                return None
            if self._expired(auth, self._clock()):
                self._drop(auth)
                return None
            if auth.proxy_code:
                self._by_code.pop(auth.proxy_code, None)
            auth.upstream_code = upstream_code
            auth.proxy_code = generate_token()
            self._by_code[auth.proxy_code] = auth
            return auth

    async def take_by_code(self, proxy_code: str) -> Optional[PendingAuthorization]:
        """Remove and return the authorization a proxy code points at.

        The record leaves both indexes, so a code can be redeemed once.
        """
        async with self._lock:
            auth = self._by_code.get(proxy_code)
            if auth is None:
                return None
            self._drop(auth)
            if self._expired(auth, self._clock()):
                return None
            return auth

    async def sweep(self) -> int:
        """Evict expired records one at a time; returns how many went."""
        removed = 0
        for state, auth in list(self._by_state.items()):
            async with self._lock:
                if self._by_state.get(state) is auth and self._expired(auth, self._clock()):
                    self._drop(auth)
                    removed += 1
        for code, auth in list(self._by_code.items()):
            async with self._lock:
                if self._by_code.get(code) is auth and self._expired(auth, self._clock()):
                    del self._by_code[code]
        if removed:
            logger.debug(f"[STORE] Swept {removed} expired pending authorizations")
        return removed


class RegisteredClientStore:
    """Dynamically registered clients. Never expired, never rotated."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._clients: dict[str, RegisteredClient] = {}
        self._lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def get(self, client_id: str) -> Optional[RegisteredClient]:
        return self._clients.get(client_id)

    async def register(
        self, redirect_uris: list, client_name: Optional[str] = None
    ) -> RegisteredClient:
        client = RegisteredClient(
            client_id=f"mcp_{generate_token(16)}",
            client_secret=generate_token(32),
            redirect_uris=tuple(redirect_uris),
            client_name=client_name,
            created_at=self._clock(),
        )
        async with self._lock:
            self._clients[client.client_id] = client
        return client


async def sweep_forever(*stores, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
    """Periodically sweep each store until the surrounding scope is cancelled."""
    while True:
        await anyio.sleep(interval)
        for store in stores:
            try:
                await store.sweep()
            except Exception:
                logger.exception(f"[STORE] Sweep failed for {type(store).__name__}")
