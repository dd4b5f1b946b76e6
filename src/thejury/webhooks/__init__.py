"""Outbound webhook notifications for poll events."""

from __future__ import annotations

from .dispatcher import DRAIN_TIMEOUT_S, WebhookDispatcher
from .events import ALL_EVENTS, Webhook, WebhookEvent, new_webhook
from .signing import sign_body, verify_signature
from .store import InMemoryWebhookStore, JsonWebhookStore, StoreError, WebhookStore

__all__ = [
    "ALL_EVENTS",
    "DRAIN_TIMEOUT_S",
    "InMemoryWebhookStore",
    "JsonWebhookStore",
    "StoreError",
    "Webhook",
    "WebhookDispatcher",
    "WebhookEvent",
    "WebhookStore",
    "new_webhook",
    "sign_body",
    "verify_signature",
]
