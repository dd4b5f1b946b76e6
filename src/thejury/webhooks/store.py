"""Webhook subscriber stores."""

from __future__ import annotations

import datetime
from pathlib import Path
from typing import Protocol

import msgspec

from ..logging import get_logger
from ..state_store import JsonStateStore
from .events import Webhook

logger = get_logger(__name__)

STATE_VERSION = 1


class StoreError(RuntimeError):
    pass


class WebhookStore(Protocol):
    async def list_active(self, user_id: str) -> list[Webhook]: ...

    async def touch_last_triggered(
        self, webhook_id: str, at: datetime.datetime
    ) -> None: ...


class InMemoryWebhookStore:
    def __init__(self, webhooks: list[Webhook] | None = None) -> None:
        self._webhooks: dict[str, Webhook] = {wh.id: wh for wh in webhooks or []}

    async def add(self, webhook: Webhook) -> Webhook:
        if webhook.id in self._webhooks:
            raise StoreError(f"webhook {webhook.id} already exists")
        self._webhooks[webhook.id] = webhook
        return webhook

    async def get(self, webhook_id: str) -> Webhook | None:
        return self._webhooks.get(webhook_id)

    async def remove(self, webhook_id: str) -> bool:
        return self._webhooks.pop(webhook_id, None) is not None

    async def list_for_user(self, user_id: str) -> list[Webhook]:
        return [wh for wh in self._webhooks.values() if wh.user_id == user_id]

    async def list_active(self, user_id: str) -> list[Webhook]:
        return [
            wh
            for wh in self._webhooks.values()
            if wh.user_id == user_id and wh.is_active
        ]

    async def set_active(self, webhook_id: str, active: bool) -> None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            raise StoreError(f"unknown webhook {webhook_id}")
        webhook.is_active = active

    async def touch_last_triggered(
        self, webhook_id: str, at: datetime.datetime
    ) -> None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is not None:
            webhook.last_triggered_at = at


class _WebhooksState(msgspec.Struct, forbid_unknown_fields=False):
    version: int
    webhooks: dict[str, Webhook] = msgspec.field(default_factory=dict)


def _new_state() -> _WebhooksState:
    return _WebhooksState(version=STATE_VERSION, webhooks={})


class JsonWebhookStore(JsonStateStore[_WebhooksState]):
    def __init__(self, path: Path) -> None:
        super().__init__(
            path,
            version=STATE_VERSION,
            state_type=_WebhooksState,
            state_factory=_new_state,
            log_prefix="webhooks.store",
            logger=logger,
        )

    async def add(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            self._reload_locked_if_needed()
            if webhook.id in self._state.webhooks:
                raise StoreError(f"webhook {webhook.id} already exists")
            self._state.webhooks[webhook.id] = webhook
            self._save_or_raise_locked()
            logger.info(
                "webhooks.store.added",
                webhook_id=webhook.id,
                user_id=webhook.user_id,
                events=webhook.events,
            )
            return webhook

    async def get(self, webhook_id: str) -> Webhook | None:
        async with self._lock:
            self._reload_locked_if_needed()
            return self._state.webhooks.get(webhook_id)

    async def remove(self, webhook_id: str) -> bool:
        async with self._lock:
            self._reload_locked_if_needed()
            if self._state.webhooks.pop(webhook_id, None) is None:
                return False
            self._save_or_raise_locked()
            logger.info("webhooks.store.removed", webhook_id=webhook_id)
            return True

    async def list_for_user(self, user_id: str) -> list[Webhook]:
        async with self._lock:
            self._reload_locked_if_needed()
            return [
                wh for wh in self._state.webhooks.values() if wh.user_id == user_id
            ]

    async def list_active(self, user_id: str) -> list[Webhook]:
        async with self._lock:
            self._reload_locked_if_needed()
            return [
                wh
                for wh in self._state.webhooks.values()
                if wh.user_id == user_id and wh.is_active
            ]

    async def set_active(self, webhook_id: str, active: bool) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            webhook = self._state.webhooks.get(webhook_id)
            if webhook is None:
                raise StoreError(f"unknown webhook {webhook_id}")
            webhook.is_active = active
            self._save_or_raise_locked()

    async def touch_last_triggered(
        self, webhook_id: str, at: datetime.datetime
    ) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            webhook = self._state.webhooks.get(webhook_id)
            if webhook is None:
                return
            webhook.last_triggered_at = at
            self._save_or_raise_locked()

    def _save_or_raise_locked(self) -> None:
        try:
            self._save_locked()
        except OSError as exc:
            raise StoreError(f"failed to write {self.path}: {exc}") from exc
