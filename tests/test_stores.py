"""
Storage tests: client registry, both code store backends and the token store.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

import stores
from conftest import REDIRECT_URI, FakeClock
from errors import ValidationError
from stores import (
    AuthorizationRequestRecord,
    ClientRegistry,
    MemoryCodeStore,
    RedisCodeStore,
    TokenStore,
    hash_secret,
    secrets_match,
)


def make_record(**overrides):
    fields = {
        "client_id": "c0ffee00-0000-4000-8000-000000000000",
        "user_id": "user-1",
        "redirect_uri": REDIRECT_URI,
        "code_challenge": "challenge",
        "code_challenge_method": "S256",
    }
    fields.update(overrides)
    return AuthorizationRequestRecord(**fields)


class FakeRedis:
    """In-memory stand-in for the two Redis commands the code store uses"""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def getdel(self, key):
        return self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


class TestSecrets:
    def test_hash_is_sha256_hex(self):
        assert hash_secret("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_secrets_match(self):
        assert secrets_match(hash_secret("s3cret"), "s3cret")
        assert not secrets_match(hash_secret("s3cret"), "S3cret")


class TestClientRegistry:
    def test_register_and_get(self, database):
        registry = ClientRegistry(database)

        client, secret = registry.register("Agent", [REDIRECT_URI])
        stored = registry.get(client.id)

        assert stored.name == "Agent"
        assert stored.redirect_uris == [REDIRECT_URI]
        assert stored.is_confidential
        assert secrets_match(stored.secret_hash, secret)
        assert stored.redirect_uri_allowed(REDIRECT_URI)
        assert not stored.redirect_uri_allowed(REDIRECT_URI + "?x=1")

    def test_get_unknown_client(self, database):
        assert ClientRegistry(database).get("00000000-0000-4000-8000-000000000000") is None

    def test_register_reports_every_bad_field(self, database):
        registry = ClientRegistry(database)

        with pytest.raises(ValidationError) as exc_info:
            registry.register("", [REDIRECT_URI, "relative/path"])

        assert set(exc_info.value.errors) == {"client_name", "redirect_uris.1"}


class TestMemoryCodeStore:
    @pytest.mark.asyncio
    async def test_take_is_single_use(self):
        store = MemoryCodeStore(clock=FakeClock())
        code = await store.put(make_record(), 300)

        record = await store.take(code)

        assert record.code == code
        assert record.user_id == "user-1"
        assert await store.take(code) is None

    @pytest.mark.asyncio
    async def test_codes_are_unique(self):
        store = MemoryCodeStore(clock=FakeClock())

        codes = {await store.put(make_record(), 300) for _ in range(50)}

        assert len(codes) == 50

    @pytest.mark.asyncio
    async def test_expired_code_is_not_returned(self):
        clock = FakeClock()
        store = MemoryCodeStore(clock=clock)
        code = await store.put(make_record(), 300)
        clock.advance(300)

        assert await store.take(code) is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        clock = FakeClock()
        store = MemoryCodeStore(clock=clock)
        await store.put(make_record(), 60)
        live = await store.put(make_record(), 300)
        clock.advance(120)

        assert await store.purge_expired() == 1
        assert len(store) == 1
        assert (await store.take(live)) is not None

    def test_threads_race_for_one_code(self):
        store = MemoryCodeStore()
        code = asyncio.run(store.put(make_record(), 300))

        with ThreadPoolExecutor(max_workers=16) as executor:
            results = list(executor.map(lambda _: asyncio.run(store.take(code)), range(16)))

        assert sum(result is not None for result in results) == 1


class TestRedisCodeStore:
    @pytest.mark.asyncio
    async def test_put_and_take(self):
        redis_client = FakeRedis()
        store = RedisCodeStore(redis_client, "test-secret-key", clock=FakeClock())

        code = await store.put(make_record(), 300)

        key = f"{RedisCodeStore.key_prefix}{code}"
        assert redis_client.ttls[key] == 300
        record = await store.take(code)
        assert record.client_id == make_record().client_id
        assert record.code == code
        assert await store.take(code) is None

    @pytest.mark.asyncio
    async def test_tampered_payload_rejected(self):
        redis_client = FakeRedis()
        store = RedisCodeStore(redis_client, "test-secret-key", clock=FakeClock())
        code = await store.put(make_record(), 300)
        key = f"{RedisCodeStore.key_prefix}{code}"
        redis_client.data[key] = redis_client.data[key].replace("user-1", "admin")

        assert await store.take(code) is None

    @pytest.mark.asyncio
    async def test_other_secret_cannot_read(self):
        redis_client = FakeRedis()
        writer = RedisCodeStore(redis_client, "secret-a", clock=FakeClock())
        reader = RedisCodeStore(redis_client, "secret-b", clock=FakeClock())
        code = await writer.put(make_record(), 300)

        assert await reader.take(code) is None

    @pytest.mark.asyncio
    async def test_expired_payload_rejected(self):
        clock = FakeClock()
        store = RedisCodeStore(FakeRedis(), "test-secret-key", clock=clock)
        code = await store.put(make_record(), 300)
        clock.advance(301)

        assert await store.take(code) is None

    @pytest.mark.asyncio
    async def test_put_never_overwrites(self, monkeypatch):
        store = RedisCodeStore(FakeRedis(), "test-secret-key", clock=FakeClock())
        monkeypatch.setattr(stores, "generate_code", lambda: "same-code")
        await store.put(make_record(), 300)

        with pytest.raises(RuntimeError):
            await store.put(make_record(user_id="user-2"), 300)

        assert (await store.take("same-code")).user_id == "user-1"

    @pytest.mark.asyncio
    async def test_close(self):
        redis_client = FakeRedis()
        await RedisCodeStore(redis_client, "test-secret-key").close()

        assert redis_client.closed


class TestTokenStore:
    def _client_id(self, database):
        client, _ = ClientRegistry(database).register("Agent", [REDIRECT_URI])
        return client.id

    def test_mint_persists_hash_only(self, database):
        clock = FakeClock()
        tokens = TokenStore(database, clock=clock)
        client_id = self._client_id(database)

        plain, record = tokens.mint(client_id, "user-1", 3600)

        assert record.token_hash == hash_secret(plain)
        assert record.expires_at == clock.now + 3600
        found = tokens.lookup(hash_secret(plain))
        assert found.user_id == "user-1"
        assert tokens.lookup(plain) is None

    def test_purge_expired(self, database):
        clock = FakeClock()
        tokens = TokenStore(database, clock=clock)
        client_id = self._client_id(database)
        short, _ = tokens.mint(client_id, "user-1", 300)
        long, _ = tokens.mint(client_id, "user-1", 3600)
        clock.advance(600)

        assert tokens.purge_expired() == 1
        assert tokens.lookup(hash_secret(short)) is None
        assert tokens.lookup(hash_secret(long)) is not None
