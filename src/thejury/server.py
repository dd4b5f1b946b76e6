"""Public API HTTP server (aiohttp-based, runs as an anyio task)."""

from __future__ import annotations

import json
from typing import Any, Protocol

import anyio
from aiohttp import web
from anyio.abc import TaskGroup

from .api_keys import ApiKeyPrincipal, ApiKeyStore, validate_api_key
from .logging import get_logger
from .ratelimit import TokenBucketLimiter, client_ip, limit_key
from .settings import JurySettings
from .webhooks.events import ALL_EVENTS
from .webhooks.store import WebhookStore

logger = get_logger(__name__)

SCOPE_DISPATCH = "webhooks:dispatch"
SCOPE_READ = "webhooks:read"


class EventDispatcher(Protocol):
    async def dispatch(
        self, user_id: str, event: str, payload: dict[str, Any]
    ) -> None: ...


class ListableWebhookStore(WebhookStore, Protocol):
    async def list_for_user(self, user_id: str) -> list[Any]: ...


def _json(data: Any, *, status: int = 200, headers: dict[str, str] | None = None) -> web.Response:
    return web.Response(
        text=json.dumps(data),
        status=status,
        content_type="application/json",
        headers=headers,
    )


def build_app(
    settings: JurySettings,
    *,
    limiter: TokenBucketLimiter,
    dispatcher: EventDispatcher,
    webhook_store: ListableWebhookStore,
    api_key_store: ApiKeyStore,
    background: TaskGroup | None = None,
) -> web.Application:
    """Build the aiohttp application for the public API.

    Key last-used bookkeeping runs on *background* when given.
    """
    max_body = settings.server.max_body_bytes
    trust_forwarded = settings.server.trust_forwarded

    def _rate_limited(request: web.Request, route: str) -> web.Response | None:
        preset = settings.rate_limit.route(route)
        ip = client_ip(request.headers, request.remote, trust_forwarded=trust_forwarded)
        result = limiter.check(
            limit_key(route, ip),
            max_tokens=preset.max_tokens,
            interval=preset.interval,
        )
        if result.success:
            return None
        logger.info("api.rate_limited", route=route, client=ip)
        return _json(
            {"error": "Too many requests. Please try again later."},
            status=429,
            headers={"X-RateLimit-Remaining": str(result.remaining)},
        )

    async def _authorize(
        request: web.Request, scope: str
    ) -> ApiKeyPrincipal | web.Response:
        principal = await validate_api_key(
            api_key_store,
            request.headers.get("Authorization"),
            background=background,
        )
        if principal is None:
            return _json({"error": "Invalid or missing API key"}, status=401)
        if not principal.has_scope(scope):
            return _json(
                {"error": f"Insufficient scope. Required: {scope}"}, status=403
            )
        return principal

    async def handle_health(request: web.Request) -> web.Response:
        return _json({"status": "ok"})

    async def handle_events(request: web.Request) -> web.Response:
        try:
            return await _process_event(request)
        except Exception:
            logger.exception("api.events.internal_error")
            return _json({"error": "Internal server error"}, status=500)

    async def _process_event(request: web.Request) -> web.Response:
        limited = _rate_limited(request, "api-v1-events")
        if limited is not None:
            return limited

        auth = await _authorize(request, SCOPE_DISPATCH)
        if isinstance(auth, web.Response):
            return auth

        if request.content_length and request.content_length > max_body:
            return _json({"error": "Payload too large"}, status=413)
        raw_body = await request.read()
        if len(raw_body) > max_body:
            return _json({"error": "Payload too large"}, status=413)

        try:
            body = json.loads(raw_body) if raw_body else None
        except json.JSONDecodeError:
            return _json({"error": "Invalid JSON in request body"}, status=400)
        if not isinstance(body, dict):
            return _json({"error": "Request body must be a JSON object"}, status=400)

        event = body.get("event")
        if event not in ALL_EVENTS:
            return _json(
                {"error": f"event must be one of: {', '.join(ALL_EVENTS)}"},
                status=400,
            )
        payload = body.get("payload", {})
        if not isinstance(payload, dict):
            return _json({"error": "payload must be a JSON object"}, status=400)

        await dispatcher.dispatch(auth.user_id, event, payload)
        return _json({"accepted": True, "event": event}, status=202)

    async def handle_list_webhooks(request: web.Request) -> web.Response:
        try:
            limited = _rate_limited(request, "api-v1-webhooks")
            if limited is not None:
                return limited
            auth = await _authorize(request, SCOPE_READ)
            if isinstance(auth, web.Response):
                return auth
            webhooks = await webhook_store.list_for_user(auth.user_id)
            return _json({"data": [wh.public_view() for wh in webhooks]})
        except Exception:
            logger.exception("api.webhooks.internal_error")
            return _json({"error": "Internal server error"}, status=500)

    app = web.Application(client_max_size=max_body)
    app.router.add_get("/health", handle_health)
    app.router.add_post("/v1/events", handle_events)
    app.router.add_get("/v1/webhooks", handle_list_webhooks)
    return app


async def run_server(settings: JurySettings, app: web.Application) -> None:
    """Serve *app* until cancelled."""
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    try:
        site = web.TCPSite(runner, settings.server.host, settings.server.port)
        await site.start()
        logger.info(
            "api.server.started",
            host=settings.server.host,
            port=settings.server.port,
        )
        # Block until cancelled by structured concurrency.
        await anyio.sleep_forever()
    finally:
        await runner.cleanup()
