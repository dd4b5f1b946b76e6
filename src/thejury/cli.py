from __future__ import annotations

import signal
import sys
from functools import partial
from pathlib import Path

import anyio
import httpx
import typer
from anyio import CancelScope

from .api_keys import InMemoryApiKeyStore, JsonApiKeyStore, issue_api_key
from .config import ConfigError
from .logging import get_logger, setup_logging
from .ratelimit import RateLimitConfig, TokenBucketLimiter, run_sweeper
from .server import build_app, run_server
from .settings import JurySettings, load_settings_if_exists
from .webhooks import (
    ALL_EVENTS,
    DRAIN_TIMEOUT_S,
    InMemoryWebhookStore,
    JsonWebhookStore,
    WebhookDispatcher,
    new_webhook,
    sign_body,
)

logger = get_logger(__name__)

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="TheJury rate limiting and webhook notifications.",
)

ConfigOption = typer.Option(
    None, "--config", "-c", help="Path to thejury.toml (defaults to ~/.thejury/)."
)


def _load(config: Path | None) -> JurySettings:
    try:
        loaded = load_settings_if_exists(config)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if loaded is None:
        if config is not None:
            typer.echo(f"error: Missing config file {config}.", err=True)
            raise typer.Exit(code=1)
        return JurySettings()
    settings, _ = loaded
    return settings


def _webhook_store(settings: JurySettings) -> JsonWebhookStore | InMemoryWebhookStore:
    path = settings.webhooks.store_path
    return JsonWebhookStore(Path(path).expanduser()) if path else InMemoryWebhookStore()


def _api_key_store(settings: JurySettings) -> JsonApiKeyStore | InMemoryApiKeyStore:
    path = settings.api_keys.store_path
    return JsonApiKeyStore(Path(path).expanduser()) if path else InMemoryApiKeyStore()


async def _watch_signals(scope: CancelScope) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("serve.signal", signal=signal.Signals(signum).name)
            scope.cancel()
            return


async def _serve(settings: JurySettings) -> None:
    rl = settings.rate_limit
    limiter = TokenBucketLimiter(
        RateLimitConfig(max_tokens=rl.max_tokens, interval=rl.interval)
    )
    webhook_store = _webhook_store(settings)
    api_key_store = _api_key_store(settings)

    async with httpx.AsyncClient(
        timeout=settings.webhooks.timeout_s,
        headers={"User-Agent": "TheJury-Webhooks/1.0"},
    ) as client:
        async with anyio.create_task_group() as deliveries:
            dispatcher = WebhookDispatcher(
                store=webhook_store,
                client=client,
                task_group=deliveries,
                timeout_s=settings.webhooks.timeout_s,
            )
            web_app = build_app(
                settings,
                limiter=limiter,
                dispatcher=dispatcher,
                webhook_store=webhook_store,
                api_key_store=api_key_store,
                background=deliveries,
            )
            try:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(_watch_signals, tg.cancel_scope)
                    tg.start_soon(
                        partial(
                            run_sweeper,
                            limiter,
                            interval_s=rl.cleanup_interval_s,
                            max_age_s=rl.max_age_s,
                        )
                    )
                    tg.start_soon(run_server, settings, web_app)
            finally:
                dispatcher.close()
                logger.info("serve.draining", timeout_s=DRAIN_TIMEOUT_S)
                deliveries.cancel_scope.deadline = anyio.current_time() + DRAIN_TIMEOUT_S
    logger.info("serve.stopped")


@app.command()
def serve(config: Path | None = ConfigOption) -> None:
    """Run the API server, bucket sweeper and webhook deliveries."""
    settings = _load(config)
    setup_logging(level=settings.logging.level, json=settings.logging.json_output)
    anyio.run(_serve, settings)


@app.command()
def keygen(
    user: str | None = typer.Option(None, "--user", help="Owner; stores the key when set."),
    scope: list[str] = typer.Option(
        ["webhooks:dispatch", "webhooks:read"], "--scope", help="Granted scope."
    ),
    name: str | None = typer.Option(None, "--name"),
    config: Path | None = ConfigOption,
) -> None:
    """Generate an API key. The raw key is printed once."""
    settings = _load(config)
    key, record = issue_api_key(user or "", scope, name=name)
    if user is not None:
        store_path = settings.api_keys.store_path
        if not store_path:
            typer.echo("error: api_keys.store_path is not configured.", err=True)
            raise typer.Exit(code=1)
        anyio.run(JsonApiKeyStore(Path(store_path).expanduser()).add, record)
    typer.echo(f"key:    {key}")
    typer.echo(f"prefix: {record.prefix}")
    typer.echo(f"hash:   {record.key_hash}")


@app.command("add-webhook")
def add_webhook(
    user: str = typer.Option(..., "--user"),
    url: str = typer.Option(..., "--url"),
    event: list[str] = typer.Option(
        ..., "--event", help=f"One of: {', '.join(ALL_EVENTS)}."
    ),
    config: Path | None = ConfigOption,
) -> None:
    """Register a webhook and print its signing secret."""
    settings = _load(config)
    store_path = settings.webhooks.store_path
    if not store_path:
        typer.echo("error: webhooks.store_path is not configured.", err=True)
        raise typer.Exit(code=1)
    try:
        webhook = new_webhook(user, url, event)
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    anyio.run(JsonWebhookStore(Path(store_path).expanduser()).add, webhook)
    typer.echo(f"id:     {webhook.id}")
    typer.echo(f"secret: {webhook.secret}")


@app.command()
def sign(
    secret: str = typer.Option(..., "--secret", envvar="THEJURY_WEBHOOK_SECRET"),
    body: Path | None = typer.Argument(None, help="Body file; reads stdin when omitted."),
) -> None:
    """Print the X-Webhook-Signature value for a body."""
    data = body.read_bytes() if body is not None else sys.stdin.buffer.read()
    typer.echo(sign_body(secret, data))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
