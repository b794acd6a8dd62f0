"""Command-line interface for IMCache.

Publishes invalidation messages to running caches:

Usage:
    imcache publish redis://localhost:6379/0#users user:1
    imcache publish redis://localhost:6379/0#users '^user:' --pattern
    imcache publish '#users' user:1  # server from REDIS_URL
    imcache decode '{"selectorKind": "plain", "selector": "user:1"}'
"""

from __future__ import annotations

import asyncio

import typer

from imcache.config import settings
from imcache.errors import MalformedMessageError, TransportUnavailableError
from imcache.invalidation import InvalidationMessage, InvalidationPublisher
from imcache.observability.logging import configure_logging

app = typer.Typer(
    name="imcache",
    help="IMCache: publish and inspect remote invalidation messages",
    no_args_is_help=True,
)


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """IMCache: publish and inspect remote invalidation messages."""
    configure_logging(
        json_format=settings.log_json,
        level="DEBUG" if verbose else settings.log_level,
    )


@app.command()
def publish(
    address: str = typer.Argument(
        ...,
        help="Channel address: redis://host:6379/0#channel, or #channel for REDIS_URL",
    ),
    selector: str = typer.Argument(..., help="Logical key, or regular expression with --pattern"),
    pattern: bool = typer.Option(
        False,
        "--pattern",
        "-p",
        help="Treat SELECTOR as a regular expression",
    ),
) -> None:
    """Publish an invalidation message to a remote channel."""
    from rich.console import Console

    console = Console()

    if pattern:
        message = InvalidationMessage.pattern(selector)
    else:
        message = InvalidationMessage.plain(selector)
    try:
        message.to_selector()
    except MalformedMessageError as e:
        console.print(f"[red]Invalid selector:[/red] {e}")
        raise typer.Exit(code=2) from e

    try:
        count = asyncio.run(_publish(address, message))
    except TransportUnavailableError as e:
        console.print(f"[red]Publish failed:[/red] {e}")
        raise typer.Exit(code=1) from e

    console.print(
        f"[green]Published[/green] {message.selector_kind.value} {selector!r} "
        f"to {count} subscriber(s)"
    )


@app.command()
def decode(
    payload: str = typer.Argument(..., help="Raw JSON message as received on a channel"),
) -> None:
    """Decode a raw invalidation message and show the selector it produces."""
    from rich.console import Console

    console = Console()

    try:
        message = InvalidationMessage.from_bytes(payload)
        message.to_selector()
    except MalformedMessageError as e:
        console.print(f"[red]Malformed message:[/red] {e}")
        raise typer.Exit(code=1) from e

    console.print(f"{message.selector_kind.value}: {message.selector}")


async def _publish(address: str, message: InvalidationMessage) -> int:
    publisher = InvalidationPublisher()
    try:
        return await publisher.publish(address, message)
    finally:
        await publisher.close()


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
