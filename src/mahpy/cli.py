from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn, Optional, Union

import typer

from . import __version__
from .adapters.polling import PollingAdapter
from .adapters.webhook import WebhookAdapter
from .core.config import MahConfig, load_config
from .core.exceptions import ConfigError, MahError
from .core.logging_utils import log_event, setup_logging
from .dispatcher import Dispatcher
from .events import Event, MessageReceived
from .session import about, authenticate
from .transport import TransportClient

logger = logging.getLogger("mahpy.cli")

app = typer.Typer(add_completion=False)


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"mahpy {__version__}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def register_ping_handlers(dispatcher: Dispatcher, transport: TransportClient) -> None:
    """Log every event and answer a friend's `ping` with `pong`."""

    @dispatcher.on()
    def log_any(event: Event) -> None:
        log_event(
            logger,
            logging.INFO,
            "listen.event",
            kind=event.kind.value,
            event_id=event.event_id,
        )

    @dispatcher.on(MessageReceived)
    async def answer_ping(event: MessageReceived) -> None:
        if event.message_type != "FriendMessage" or event.text.lower() != "ping":
            return
        await transport.send_message(event.sender.id, ["pong"], kind="friend")


def build_adapter(
    config: MahConfig, transport: TransportClient
) -> Union[PollingAdapter, WebhookAdapter]:
    if config.adapter == "webhook":
        return WebhookAdapter(config.webhook)
    return PollingAdapter(transport, config.polling)


async def run_listener(config: MahConfig) -> Optional[BaseException]:
    """Authenticate, run the configured adapter until it stops, release."""

    server = config.server
    if server.account_id is None:
        raise ConfigError("server.account_id is required to listen")
    session = await authenticate(
        server.base_url,
        server.verify_key,
        server.account_id,
        timeout=server.timeout_seconds,
    )
    fatal: Optional[BaseException] = None
    async with session:
        transport = TransportClient(session, ack_action=server.ack_action)
        dispatcher = Dispatcher(
            queue_capacity=config.dispatcher.queue_capacity,
            dedupe_window=config.dispatcher.dedupe_window,
        )
        register_ping_handlers(dispatcher, transport)
        adapter = build_adapter(config, transport)
        handle = await adapter.start(dispatcher)
        typer.echo(f"Listening on {adapter.source} (Ctrl-C to stop)")
        try:
            fatal = await handle.wait()
        finally:
            await adapter.stop()
            await dispatcher.aclose(drain_timeout=0)
    return fatal


@app.command("about")
def about_command(
    base_url: str = typer.Argument(..., help="Base URL of the bot-control server"),
    timeout: float = typer.Option(10.0, "--timeout", help="Request timeout in seconds"),
) -> None:
    """Print the server's version."""

    try:
        info = asyncio.run(about(base_url, timeout=timeout))
    except MahError as exc:
        raise_exit(f"about failed: {exc}", cause=exc)
    typer.echo(f"version: {info.get('version', 'unknown')}")


@app.command("listen")
def listen_command(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to mahpy.yml (default: ./mahpy.yml)"
    ),
) -> None:
    """Authenticate, print events and answer `ping` with `pong`."""

    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise_exit(str(exc), cause=exc)
    setup_logging(config.log)
    try:
        fatal = asyncio.run(run_listener(config))
    except MahError as exc:
        raise_exit(f"listen failed: {exc}", cause=exc)
    except KeyboardInterrupt:
        typer.echo("Stopped.")
        return
    if fatal is not None:
        raise_exit(f"listener stopped: {fatal}", cause=fatal)


def main() -> None:
    """Entrypoint for CLI execution."""
    app()
