import anyio
import pytest

from oauth.stores import AUTHORIZATION_TTL_SECONDS, generate_token, sweep_forever

pytestmark = pytest.mark.anyio


def test_generate_token_is_random_and_urlsafe():
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all("+" not in t and "/" not in t for t in tokens)


async def test_attach_and_take(pending):
    await pending.start("https://c/cb", "s1", "challenge", "S256")

    auth = await pending.attach_upstream_code("s1", "google-code")

    assert auth.upstream_code == "google-code"
    assert auth.proxy_code
    taken = await pending.take_by_code(auth.proxy_code)
    assert taken is auth
    assert pending.get_by_state("s1") is None
    assert await pending.take_by_code(auth.proxy_code) is None


async def test_attach_unknown_state(pending):
    assert await pending.attach_upstream_code("nope", "code") is None
    assert len(pending) == 0


async def test_replayed_callback_invalidates_previous_code(pending):
    await pending.start("https://c/cb", "s1")
    first = (await pending.attach_upstream_code("s1", "code-a")).proxy_code
    second = (await pending.attach_upstream_code("s1", "code-b")).proxy_code

    assert first != second
    assert await pending.take_by_code(first) is None
    assert (await pending.take_by_code(second)).upstream_code == "code-b"


async def test_restart_with_same_state_replaces_record(pending):
    await pending.start("https://c/one", "s1")
    old_code = (await pending.attach_upstream_code("s1", "code")).proxy_code

    await pending.start("https://c/two", "s1")

    assert len(pending) == 1
    assert pending.get_by_state("s1").client_redirect_uri == "https://c/two"
    assert await pending.take_by_code(old_code) is None


async def test_concurrent_callbacks_share_one_record(pending):
    await pending.start("https://c/cb", "s1")
    results = []

    async def callback(code):
        results.append(await pending.attach_upstream_code("s1", code))

    async with anyio.create_task_group() as tg:
        for i in range(10):
            tg.start_soon(callback, f"code-{i}")

    assert all(r is results[0] for r in results)
    live = results[0].proxy_code
    assert (await pending.take_by_code(live)) is results[0]


async def test_expired_code_cannot_be_redeemed(pending, clock):
    await pending.start("https://c/cb", "s1")
    code = (await pending.attach_upstream_code("s1", "code")).proxy_code
    clock.advance(AUTHORIZATION_TTL_SECONDS + 1)

    assert await pending.take_by_code(code) is None


async def test_sweep_evicts_only_expired(pending, clock):
    await pending.start("https://c/cb", "old")
    await pending.attach_upstream_code("old", "code")
    clock.advance(AUTHORIZATION_TTL_SECONDS - 10)
    await pending.start("https://c/cb", "new")
    clock.advance(20)

    assert await pending.sweep() == 1
    assert len(pending) == 1
    assert pending.get_by_state("new") is not None
    assert pending._by_code == {}


async def test_register_client(clients, clock):
    client = await clients.register(["https://x/cb"], "Claude")

    assert clients.get(client.client_id) is client
    assert client.client_id.startswith("mcp_")
    assert client.created_at == clock.now
    assert len(clients) == 1


async def test_sweep_forever_survives_failures():
    calls = []

    class Broken:
        async def sweep(self):
            calls.append("broken")
            raise RuntimeError("boom")

    class Working:
        async def sweep(self):
            calls.append("working")
            return 0

    with anyio.move_on_after(0.35):
        await sweep_forever(Broken(), Working(), interval=0.1)

    assert calls.count("working") >= 2
    assert calls.count("broken") == calls.count("working")
