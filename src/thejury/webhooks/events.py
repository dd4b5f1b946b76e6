"""Webhook records, event names and the delivery body format."""

from __future__ import annotations

import datetime
import uuid
from enum import StrEnum
from typing import Any
from urllib.parse import urlsplit

import msgspec


class WebhookEvent(StrEnum):
    VOTE_CREATED = "vote.created"
    POLL_CREATED = "poll.created"
    POLL_UPDATED = "poll.updated"
    POLL_DELETED = "poll.deleted"


ALL_EVENTS: tuple[str, ...] = tuple(event.value for event in WebhookEvent)


class Webhook(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    user_id: str
    url: str
    secret: str
    events: list[str] = msgspec.field(default_factory=list)
    is_active: bool = True
    last_triggered_at: datetime.datetime | None = None
    created_at: datetime.datetime | None = None

    def subscribes_to(self, event: str) -> bool:
        return event in self.events

    def public_view(self) -> dict[str, Any]:
        """Everything except the secret."""
        data = msgspec.to_builtins(self)
        data.pop("secret", None)
        return data


class WebhookBody(msgspec.Struct):
    event: str
    payload: dict[str, Any]
    timestamp: str


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def format_timestamp(moment: datetime.datetime) -> str:
    """ISO-8601 in UTC with millisecond precision, e.g. ``2026-02-24T10:30:00.000Z``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=datetime.timezone.utc)
    moment = moment.astimezone(datetime.timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def encode_body(event: str, payload: dict[str, Any], timestamp: str) -> bytes:
    return msgspec.json.encode(
        WebhookBody(event=event, payload=payload, timestamp=timestamp)
    )


def parse_event(value: str) -> WebhookEvent:
    try:
        return WebhookEvent(value)
    except ValueError:
        raise ValueError(
            f"unknown webhook event {value!r}; expected one of {', '.join(ALL_EVENTS)}"
        ) from None


def new_webhook(
    user_id: str,
    url: str,
    events: list[str],
    *,
    now: datetime.datetime | None = None,
) -> Webhook:
    """Build a validated webhook record with a fresh id and secret."""
    parts = urlsplit(url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"webhook url must be an absolute http(s) URL: {url!r}")
    if not events:
        raise ValueError("webhook must subscribe to at least one event")
    normalized = list(dict.fromkeys(parse_event(e).value for e in events))
    return Webhook(
        id=str(uuid.uuid4()),
        user_id=user_id,
        url=url.strip(),
        secret=str(uuid.uuid4()),
        events=normalized,
        is_active=True,
        created_at=now or utc_now(),
    )
