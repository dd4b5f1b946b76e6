"""Fan out domain events to subscriber webhooks."""

from __future__ import annotations

import datetime
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import anyio
import httpx
import msgspec
from anyio.abc import TaskGroup

from ..logging import get_logger
from .events import Webhook, WebhookEvent, encode_body, format_timestamp, utc_now
from .signing import EVENT_HEADER, SIGNATURE_HEADER, sign_body
from .store import WebhookStore

logger = get_logger(__name__)

DELIVERY_TIMEOUT_S: float = 10.0

# Upper bound on how long `serve` waits for in-flight deliveries after the
# dispatcher is closed. Each delivery is already capped by its own timeout.
DRAIN_TIMEOUT_S: float = 15.0

# Failures once the request has been handed to the transport, including a
# response whose body could not be decoded. The webhook is still marked as
# triggered for these.
_DELIVERY_ERRORS = (
    TimeoutError,
    httpx.TransportError,
    httpx.DecodingError,
)


@dataclass(slots=True)
class WebhookDispatcher:
    """Signs and posts event notifications without blocking the caller.

    Deliveries run on ``task_group``; ``dispatch`` returns as soon as they
    are scheduled. Whoever owns the task group decides how long in-flight
    deliveries may keep the process alive: leaving the ``async with`` block
    waits for them, each bounded by ``timeout_s``. After ``close()`` new
    events are dropped while scheduled deliveries finish.
    """

    store: WebhookStore
    client: httpx.AsyncClient
    task_group: TaskGroup
    timeout_s: float = DELIVERY_TIMEOUT_S
    clock: Callable[[], datetime.datetime] = field(default=utc_now)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("webhooks.dispatcher.closed")

    async def dispatch(
        self,
        user_id: str,
        event: WebhookEvent | str,
        payload: dict[str, Any],
    ) -> None:
        """Notify every active webhook of *user_id* subscribed to *event*.

        The body is encoded before this returns, so later changes to
        *payload* are not sent. Never raises; failures are logged.
        """
        event_name = str(event)
        try:
            if self._closed:
                logger.warning(
                    "webhooks.dispatch.closed",
                    user_id=user_id,
                    event=event_name,
                )
                return

            try:
                webhooks = await self.store.list_active(user_id)
            except Exception:
                logger.exception(
                    "webhooks.dispatch.fetch_failed",
                    user_id=user_id,
                    event=event_name,
                )
                return

            matching = [wh for wh in webhooks if wh.subscribes_to(event_name)]
            if not matching:
                return

            timestamp = format_timestamp(self.clock())
            try:
                body = encode_body(event_name, payload, timestamp)
            except (TypeError, ValueError, msgspec.EncodeError) as exc:
                logger.error(
                    "webhooks.dispatch.encode_failed",
                    user_id=user_id,
                    event=event_name,
                    error=str(exc),
                )
                return

            logger.info(
                "webhooks.dispatch.fanout",
                user_id=user_id,
                event=event_name,
                webhooks=len(matching),
            )
            for webhook in matching:
                self.task_group.start_soon(
                    self._deliver,
                    webhook,
                    event_name,
                    body,
                    name=f"webhook:{webhook.id}",
                )
        except Exception:
            logger.exception(
                "webhooks.dispatch.unexpected_error",
                user_id=user_id,
                event=event_name,
            )

    async def _deliver(self, webhook: Webhook, event: str, body: bytes) -> None:
        try:
            headers = {
                "Content-Type": "application/json",
                SIGNATURE_HEADER: sign_body(webhook.secret, body),
                EVENT_HEADER: event,
            }
            try:
                with anyio.fail_after(self.timeout_s):
                    response = await self.client.post(
                        webhook.url,
                        content=body,
                        headers=headers,
                        timeout=self.timeout_s,
                    )
            except httpx.UnsupportedProtocol:
                # Rejected before anything was sent.
                raise
            except _DELIVERY_ERRORS as exc:
                logger.warning(
                    "webhooks.delivery.failed",
                    webhook_id=webhook.id,
                    event=event,
                    error=type(exc).__name__,
                )
            else:
                if response.is_success:
                    logger.debug(
                        "webhooks.delivery.ok",
                        webhook_id=webhook.id,
                        event=event,
                        status=response.status_code,
                    )
                else:
                    logger.warning(
                        "webhooks.delivery.http_error",
                        webhook_id=webhook.id,
                        event=event,
                        status=response.status_code,
                        reason=response.reason_phrase,
                    )

            await self.store.touch_last_triggered(webhook.id, self.clock())
        except Exception:
            logger.exception(
                "webhooks.delivery.error",
                webhook_id=webhook.id,
                event=event,
            )
