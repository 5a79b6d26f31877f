"""Durable store of upstream refresh material.

Maps the access token a client presents as its bearer token to the refresh
token that can mint the next one. Every mutation is written through to a
JSON file so a restart never costs a user their login; records are kept for
30 days after they were minted and then dropped.

File layout is a flat JSON object:

    {"<access token>": {"accessToken": ..., "refreshToken": ...,
                        "expiresAt": <epoch s>, "createdAt": <epoch s>}}

Unknown fields are ignored on read so older and newer files stay readable.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import anyio
import anyio.to_thread
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 30 * 24 * 60 * 60


class PersistenceError(Exception):
    """Reading or writing the token file failed."""


class StoredTokenData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    expires_at: float = Field(alias="expiresAt")
    created_at: float = Field(alias="createdAt")

    def is_expired(self, now: float, skew: float = 0) -> bool:
        return now >= self.expires_at - skew


class PersistentTokenStore:
    def __init__(
        self,
        path: Optional[Path] = None,
        retention: float = RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path) if path else None
        self.retention = retention
        self._clock = clock
        self._records: dict[str, StoredTokenData] = {}
        self._lock = anyio.Lock()
        self._write_lock = anyio.Lock()
        self._version = 0
        self._written_version = 0
        self.last_persist_error: Optional[Exception] = None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, access_token: str) -> bool:
        return access_token in self._records

    def get(self, access_token: str) -> Optional[StoredTokenData]:
        return self._records.get(access_token)

    def records(self) -> list[StoredTokenData]:
        return list(self._records.values())

    def _retained(self, record: StoredTokenData, now: float) -> bool:
        return now - record.created_at <= self.retention

    # ---- persistence ----

    def load(self) -> int:
        """Read the token file, skipping records past retention."""
        if not self.path or not self.path.exists():
            return 0

        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[STORE] Could not read token file {self.path}: {e}")
            self._quarantine()
            return 0

        if not isinstance(raw, dict):
            logger.error(f"[STORE] Token file {self.path} is not a JSON object")
            self._quarantine()
            return 0

        now = self._clock()
        loaded = skipped = 0
        for key, value in raw.items():
            try:
                record = StoredTokenData.model_validate(value)
            except ValidationError:
                logger.warning("[STORE] Skipping malformed token record")
                skipped += 1
                continue
            if not self._retained(record, now):
                skipped += 1
                continue
            self._records[key] = record
            loaded += 1

        logger.info(f"[STORE] Loaded {loaded} token records ({skipped} skipped)")
        return loaded

    def _quarantine(self) -> None:
        """Move an unreadable file aside so the next write does not clobber it."""
        target = self.path.with_name(self.path.name + ".corrupt")
        try:
            os.replace(self.path, target)
            logger.warning(f"[STORE] Moved unreadable token file to {target}")
        except OSError as e:
            logger.error(f"[STORE] Could not move unreadable token file: {e}")

    def _snapshot(self) -> tuple[int, dict]:
        self._version += 1
        data = {k: v.model_dump(by_alias=True) for k, v in self._records.items()}
        return self._version, data

    def _write_file(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(str(e)) from e

    async def _persist(self, version: int, data: dict) -> None:
        if not self.path:
            return
        async with self._write_lock:
            # a newer snapshot already reached disk
            if version <= self._written_version:
                return
            try:
                await anyio.to_thread.run_sync(self._write_file, data)
            except PersistenceError as e:
                self.last_persist_error = e
                logger.error(
                    f"[STORE] Failed to persist token store, records held in memory only: {e}"
                )
                return
            self._written_version = version
            self.last_persist_error = None

    # ---- mutations ----

    async def store(
        self, access_token: str, refresh_token: str, expires_in: float
    ) -> StoredTokenData:
        now = self._clock()
        record = StoredTokenData(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + expires_in,
            created_at=now,
        )
        async with self._lock:
            self._records[access_token] = record
            version, data = self._snapshot()
        await self._persist(version, data)
        return record

    async def rotate(
        self,
        old_access_token: str,
        new_access_token: str,
        expires_in: float,
        refresh_token: Optional[str] = None,
    ) -> Optional[StoredTokenData]:
        """Move a record to a freshly refreshed access token.

        Keeps the refresh token and creation time unless the provider issued
        a new refresh token. Returns None if the old token is unknown.
        """
        async with self._lock:
            old = self._records.pop(old_access_token, None)
            if old is None:
                return None
            record = old.model_copy(
                update={
                    "access_token": new_access_token,
                    "expires_at": self._clock() + expires_in,
                    "refresh_token": refresh_token or old.refresh_token,
                }
            )
            self._records[new_access_token] = record
            version, data = self._snapshot()
        await self._persist(version, data)
        return record

    async def remove(self, access_token: str) -> bool:
        async with self._lock:
            if self._records.pop(access_token, None) is None:
                return False
            version, data = self._snapshot()
        await self._persist(version, data)
        return True

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._records)
            self._records.clear()
            version, data = self._snapshot()
        await self._persist(version, data)
        return count

    async def sweep(self) -> int:
        """Drop records past retention; writes only if something went."""
        removed = 0
        for key, record in list(self._records.items()):
            async with self._lock:
                current = self._records.get(key)
                if current is not None and not self._retained(current, self._clock()):
                    del self._records[key]
                    removed += 1
        if removed:
            async with self._lock:
                version, data = self._snapshot()
            await self._persist(version, data)
            logger.info(f"[STORE] Evicted {removed} token records past retention")
        return removed
