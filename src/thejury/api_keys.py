"""API key issuance and validation for the public API."""

from __future__ import annotations

import datetime
import hashlib
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import msgspec
from anyio.abc import TaskGroup

from .logging import get_logger
from .state_store import JsonStateStore

logger = get_logger(__name__)

KEY_PREFIX = "jury_"
DISPLAY_PREFIX_LEN = 12  # "jury_" + 7 hex chars
STATE_VERSION = 1


class ApiKeyRecord(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    user_id: str
    key_hash: str
    prefix: str
    scopes: list[str] = msgspec.field(default_factory=list)
    name: str | None = None
    expires_at: datetime.datetime | None = None
    last_used_at: datetime.datetime | None = None
    created_at: datetime.datetime | None = None


@dataclass(frozen=True, slots=True)
class GeneratedKey:
    key: str
    prefix: str
    hash: str


@dataclass(frozen=True, slots=True)
class ApiKeyPrincipal:
    user_id: str
    scopes: tuple[str, ...]

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class ApiKeyStore(Protocol):
    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None: ...

    async def touch_last_used(self, key_id: str, at: datetime.datetime) -> None: ...


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def generate_api_key() -> GeneratedKey:
    """New random key; only the hash should be stored."""
    key = f"{KEY_PREFIX}{secrets.token_hex(16)}"
    return GeneratedKey(key=key, prefix=key[:DISPLAY_PREFIX_LEN], hash=hash_api_key(key))


def issue_api_key(
    user_id: str,
    scopes: list[str],
    *,
    name: str | None = None,
    expires_at: datetime.datetime | None = None,
) -> tuple[str, ApiKeyRecord]:
    """Return the raw key (shown once) and the record to persist."""
    generated = generate_api_key()
    record = ApiKeyRecord(
        id=secrets.token_hex(8),
        user_id=user_id,
        key_hash=generated.hash,
        prefix=generated.prefix,
        scopes=list(scopes),
        name=name,
        expires_at=expires_at,
        created_at=datetime.datetime.now(datetime.timezone.utc),
    )
    return generated.key, record


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or len(authorization) < 7:
        return None
    if authorization[:7].lower() != "bearer ":
        return None
    token = authorization[7:].strip()
    return token or None


async def validate_api_key(
    store: ApiKeyStore,
    authorization: str | None,
    *,
    now: datetime.datetime | None = None,
    background: TaskGroup | None = None,
) -> ApiKeyPrincipal | None:
    """Resolve an ``Authorization: Bearer jury_...`` header to its owner.

    Returns None for anything that is not a live key, including store errors.
    With *background*, the last-used timestamp is written on that task group
    instead of before returning.
    """
    key = _bearer_token(authorization)
    if key is None or not key.startswith(KEY_PREFIX):
        return None

    now = now or datetime.datetime.now(datetime.timezone.utc)
    try:
        record = await store.find_by_hash(hash_api_key(key))
    except Exception:
        logger.exception("api_keys.lookup_failed")
        return None
    if record is None:
        return None

    if record.expires_at is not None:
        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=datetime.timezone.utc)
        if expires_at < now:
            logger.info("api_keys.expired", key_id=record.id, prefix=record.prefix)
            return None

    if background is not None:
        background.start_soon(_touch_last_used, store, record.id, now)
    else:
        await _touch_last_used(store, record.id, now)

    return ApiKeyPrincipal(user_id=record.user_id, scopes=tuple(record.scopes))


async def _touch_last_used(
    store: ApiKeyStore, key_id: str, at: datetime.datetime
) -> None:
    try:
        await store.touch_last_used(key_id, at)
    except Exception:
        logger.warning("api_keys.touch_failed", key_id=key_id)


class InMemoryApiKeyStore:
    def __init__(self, records: list[ApiKeyRecord] | None = None) -> None:
        self._records: dict[str, ApiKeyRecord] = {r.id: r for r in records or []}

    async def add(self, record: ApiKeyRecord) -> None:
        self._records[record.id] = record

    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        for record in self._records.values():
            if record.key_hash == key_hash:
                return record
        return None

    async def touch_last_used(self, key_id: str, at: datetime.datetime) -> None:
        record = self._records.get(key_id)
        if record is not None:
            record.last_used_at = at


class _ApiKeysState(msgspec.Struct, forbid_unknown_fields=False):
    version: int
    keys: dict[str, ApiKeyRecord] = msgspec.field(default_factory=dict)


def _new_state() -> _ApiKeysState:
    return _ApiKeysState(version=STATE_VERSION, keys={})


class JsonApiKeyStore(JsonStateStore[_ApiKeysState]):
    def __init__(self, path: Path) -> None:
        super().__init__(
            path,
            version=STATE_VERSION,
            state_type=_ApiKeysState,
            state_factory=_new_state,
            log_prefix="api_keys.store",
            logger=logger,
        )

    async def add(self, record: ApiKeyRecord) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            self._state.keys[record.id] = record
            self._save_locked()
            logger.info(
                "api_keys.store.added",
                key_id=record.id,
                user_id=record.user_id,
                prefix=record.prefix,
            )

    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        async with self._lock:
            self._reload_locked_if_needed()
            for record in self._state.keys.values():
                if record.key_hash == key_hash:
                    return record
            return None

    async def touch_last_used(self, key_id: str, at: datetime.datetime) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            record = self._state.keys.get(key_id)
            if record is None:
                return
            record.last_used_at = at
            self._save_locked()
