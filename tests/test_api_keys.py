"""Tests for API key generation and validation."""

from __future__ import annotations

import datetime
import hashlib
from pathlib import Path

import anyio
import pytest
from structlog.testing import capture_logs

from thejury.api_keys import (
    ApiKeyRecord,
    InMemoryApiKeyStore,
    JsonApiKeyStore,
    generate_api_key,
    hash_api_key,
    issue_api_key,
    validate_api_key,
)

NOW = datetime.datetime(2026, 2, 24, 12, 0, tzinfo=datetime.timezone.utc)


class TestGenerate:
    def test_format(self):
        generated = generate_api_key()
        assert generated.key.startswith("jury_")
        assert len(generated.key) == 5 + 32
        int(generated.key[5:], 16)
        assert generated.prefix == generated.key[:12]
        assert generated.hash == hashlib.sha256(generated.key.encode()).hexdigest()

    def test_unique(self):
        assert generate_api_key().key != generate_api_key().key

    def test_hash_is_sha256_hex(self):
        assert hash_api_key("jury_abc") == hashlib.sha256(b"jury_abc").hexdigest()


class TestValidate:
    async def _store_with_key(self, **record_kwargs):
        key, record = issue_api_key("user-1", ["webhooks:read"], **record_kwargs)
        store = InMemoryApiKeyStore()
        await store.add(record)
        return key, record, store

    @pytest.mark.anyio
    async def test_valid_key(self):
        key, record, store = await self._store_with_key()
        principal = await validate_api_key(store, f"Bearer {key}", now=NOW)
        assert principal is not None
        assert principal.user_id == "user-1"
        assert principal.scopes == ("webhooks:read",)
        assert principal.has_scope("webhooks:read")
        assert not principal.has_scope("webhooks:dispatch")
        assert record.last_used_at == NOW

    @pytest.mark.anyio
    async def test_scheme_case_insensitive(self):
        key, _, store = await self._store_with_key()
        assert await validate_api_key(store, f"bearer {key}", now=NOW) is not None

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer ", "Basic dXNlcjpwYXNz", "Bearer sk_live_123", "Token jury_x"],
    )
    async def test_malformed_headers(self, header):
        _, _, store = await self._store_with_key()
        assert await validate_api_key(store, header, now=NOW) is None

    @pytest.mark.anyio
    async def test_unknown_key(self):
        _, _, store = await self._store_with_key()
        other = generate_api_key().key
        assert await validate_api_key(store, f"Bearer {other}", now=NOW) is None

    @pytest.mark.anyio
    async def test_expired_key(self):
        key, record, store = await self._store_with_key(
            expires_at=NOW - datetime.timedelta(seconds=1)
        )
        assert await validate_api_key(store, f"Bearer {key}", now=NOW) is None
        assert record.last_used_at is None

    @pytest.mark.anyio
    async def test_not_yet_expired_key(self):
        key, _, store = await self._store_with_key(
            expires_at=NOW + datetime.timedelta(days=1)
        )
        assert await validate_api_key(store, f"Bearer {key}", now=NOW) is not None

    @pytest.mark.anyio
    async def test_store_error_yields_none(self):
        class BrokenStore:
            async def find_by_hash(self, key_hash):
                raise RuntimeError("db down")

            async def touch_last_used(self, key_id, at):
                pass

        key = generate_api_key().key
        assert await validate_api_key(BrokenStore(), f"Bearer {key}", now=NOW) is None

    @pytest.mark.anyio
    async def test_background_touch_does_not_block(self):
        key, record, _ = await self._store_with_key()
        release = anyio.Event()

        class SlowStore(InMemoryApiKeyStore):
            async def touch_last_used(self, key_id, at):
                await release.wait()
                await super().touch_last_used(key_id, at)

        store = SlowStore([record])
        async with anyio.create_task_group() as tg:
            principal = await validate_api_key(
                store, f"Bearer {key}", now=NOW, background=tg
            )
            assert principal is not None
            assert record.last_used_at is None
            release.set()

        assert record.last_used_at == NOW

    @pytest.mark.anyio
    async def test_background_touch_failure_is_logged(self):
        key, record, _ = await self._store_with_key()

        class ReadOnlyStore(InMemoryApiKeyStore):
            async def touch_last_used(self, key_id, at):
                raise OSError("read-only file system")

        store = ReadOnlyStore([record])
        with capture_logs() as logs:
            async with anyio.create_task_group() as tg:
                principal = await validate_api_key(
                    store, f"Bearer {key}", now=NOW, background=tg
                )
        assert principal is not None
        assert record.last_used_at is None
        assert any(e["event"] == "api_keys.touch_failed" for e in logs)


@pytest.mark.anyio
async def test_json_store_round_trip(tmp_path: Path):
    path = tmp_path / "keys.json"
    key, record = issue_api_key("user-9", ["webhooks:dispatch"], name="ci")
    await JsonApiKeyStore(path).add(record)

    store = JsonApiKeyStore(path)
    principal = await validate_api_key(store, f"Bearer {key}", now=NOW)
    assert principal is not None
    assert principal.user_id == "user-9"

    reloaded = await JsonApiKeyStore(path).find_by_hash(record.key_hash)
    assert isinstance(reloaded, ApiKeyRecord)
    assert reloaded.name == "ci"
    assert reloaded.last_used_at == NOW
