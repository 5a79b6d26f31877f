import json
import os
import stat

import pytest

from oauth.token_store import RETENTION_SECONDS, PersistentTokenStore

pytestmark = pytest.mark.anyio


async def test_store_and_lookup(token_store, clock):
    record = await token_store.store("at-1", "rt-1", 3600)

    assert "at-1" in token_store
    assert token_store.get("at-1") == record
    assert record.created_at == clock.now
    assert record.expires_at == clock.now + 3600


async def test_store_overwrites_same_token(token_store):
    await token_store.store("at-1", "rt-1", 3600)
    await token_store.store("at-1", "rt-2", 3600)

    assert len(token_store) == 1
    assert token_store.get("at-1").refresh_token == "rt-2"


async def test_rotate_moves_record_and_keeps_refresh_material(token_store, clock):
    original = await token_store.store("old", "rt-1", 3600)
    clock.advance(1800)

    rotated = await token_store.rotate("old", "new", 3600)

    assert token_store.get("old") is None
    assert rotated.access_token == "new"
    assert rotated.refresh_token == original.refresh_token
    assert rotated.created_at == original.created_at
    assert rotated.expires_at == clock.now + 3600
    assert token_store.get("new") == rotated


async def test_rotate_adopts_new_refresh_token(token_store):
    await token_store.store("old", "rt-1", 3600)

    rotated = await token_store.rotate("old", "new", 3600, refresh_token="rt-2")

    assert rotated.refresh_token == "rt-2"


async def test_rotate_unknown_token(token_store):
    assert await token_store.rotate("missing", "new", 3600) is None
    assert len(token_store) == 0


async def test_sweep_retention_boundary(token_store, clock):
    await token_store.store("at-1", "rt-1", 3600)

    clock.advance(RETENTION_SECONDS - 1)
    assert await token_store.sweep() == 0
    assert "at-1" in token_store

    clock.advance(2)
    assert await token_store.sweep() == 1
    assert "at-1" not in token_store


async def test_sweep_does_not_write_when_nothing_evicted(token_store):
    assert await token_store.sweep() == 0
    assert not token_store.path.exists()


async def test_writes_through_to_file(token_store, clock):
    await token_store.store("at-1", "rt-1", 3600)

    data = json.loads(token_store.path.read_text())
    assert data == {
        "at-1": {
            "accessToken": "at-1",
            "refreshToken": "rt-1",
            "expiresAt": clock.now + 3600,
            "createdAt": clock.now,
        }
    }
    if os.name == "posix":
        assert stat.S_IMODE(token_store.path.stat().st_mode) == 0o600


async def test_reload_after_restart(token_store, clock):
    await token_store.store("at-1", "rt-1", 3600)
    await token_store.rotate("at-1", "at-2", 3600)

    restarted = PersistentTokenStore(token_store.path, clock=clock)
    assert restarted.load() == 1
    assert restarted.get("at-2").refresh_token == "rt-1"
    assert restarted.get("at-1") is None


def test_load_skips_expired_and_malformed(tmp_path, clock):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({
        "fresh": {"accessToken": "fresh", "refreshToken": "r", "expiresAt": clock.now, "createdAt": clock.now},
        "stale": {
            "accessToken": "stale", "refreshToken": "r",
            "expiresAt": 0, "createdAt": clock.now - RETENTION_SECONDS - 1,
        },
        "broken": {"accessToken": "broken"},
        "future": {
            "accessToken": "future", "refreshToken": "r", "expiresAt": clock.now,
            "createdAt": clock.now, "scope": "added later",
        },
    }))

    store = PersistentTokenStore(path, clock=clock)

    assert store.load() == 2
    assert "fresh" in store
    assert "future" in store
    assert "stale" not in store
    assert "broken" not in store


def test_load_quarantines_unreadable_file(tmp_path, clock):
    path = tmp_path / "tokens.json"
    path.write_text("{not json")

    store = PersistentTokenStore(path, clock=clock)

    assert store.load() == 0
    assert not path.exists()
    assert (tmp_path / "tokens.json.corrupt").read_text() == "{not json"


def test_load_missing_file(tmp_path):
    assert PersistentTokenStore(tmp_path / "absent.json").load() == 0


async def test_write_failure_keeps_memory_state(tmp_path, clock):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = PersistentTokenStore(blocker / "tokens.json", clock=clock)

    await store.store("at-1", "rt-1", 3600)

    assert "at-1" in store
    assert store.last_persist_error is not None


async def test_clear(token_store):
    await token_store.store("a", "r", 60)
    await token_store.store("b", "r", 60)

    assert await token_store.clear() == 2
    assert json.loads(token_store.path.read_text()) == {}


async def test_memory_only_store(clock):
    store = PersistentTokenStore(clock=clock)
    await store.store("at-1", "rt-1", 3600)
    assert store.get("at-1").refresh_token == "rt-1"
