"""CLI for sparecompute - run the agent, its control API, or inspect local capability."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click

from sparecompute import __version__
from sparecompute.config import (
    DEFAULT_BASE_RATE,
    DEFAULT_BROKER_URL,
    DEFAULT_DB_PATH,
    DEFAULT_SOCKET_URL,
    LOG_FORMAT,
    AgentConfig,
)
from sparecompute.protocol import LEGACY_PREFIX


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


@click.group()
@click.version_option(version=__version__, prog_name="sparecompute")
@click.option(
    "--broker-url",
    envvar="SPARECOMPUTE_BROKER_URL",
    default=DEFAULT_BROKER_URL,
    show_default=True,
    help="HTTP base URL of the broker API",
)
@click.option(
    "--socket-url",
    envvar="SPARECOMPUTE_SOCKET_URL",
    default=DEFAULT_SOCKET_URL,
    show_default=True,
    help="Websocket URL of the broker",
)
@click.option(
    "--db",
    "db_path",
    envvar="SPARECOMPUTE_DB",
    default=str(DEFAULT_DB_PATH),
    type=click.Path(dir_okay=False),
    help="Path of the credential store",
)
@click.option(
    "--rate",
    "base_rate",
    envvar="SPARECOMPUTE_RATE",
    default=DEFAULT_BASE_RATE,
    type=click.FloatRange(min=0.0),
    show_default=True,
    help="Price per token; a price saved through the control API takes precedence",
)
@click.option(
    "--legacy-frames",
    envvar="SPARECOMPUTE_LEGACY_FRAMES",
    is_flag=True,
    help="Send 'plugin:'-prefixed frame types, for brokers that expect them",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    broker_url: str,
    socket_url: str,
    db_path: str,
    base_rate: float,
    legacy_frames: bool,
    verbose: bool,
) -> None:
    """sparecompute - lend your local inference server to a remote broker.

    The agent registers with the broker, keeps a websocket open, and answers
    inference requests with a local LM Studio or Ollama server when one is
    running.
    """
    _configure_logging(verbose)
    ctx.obj = AgentConfig(
        broker_url=broker_url,
        socket_url=socket_url,
        db_path=Path(db_path).expanduser(),
        base_rate=base_rate,
        frame_prefix=LEGACY_PREFIX if legacy_frames else "",
    )


@main.command()
@click.pass_obj
def run(config: AgentConfig) -> None:
    """Run the agent in the foreground until interrupted.

    Connects to the broker straight away, registering first when this machine
    has no stored identity.
    """
    from sparecompute.connection import TransportError
    from sparecompute.registration import RegistrationError
    from sparecompute.session import AgentSession
    from sparecompute.state import ConnectionState

    async def _run() -> None:
        session = AgentSession(config)
        await session.detect_capability()
        try:
            result = await session.connect()
            click.echo(result.message)
        except (RegistrationError, TransportError) as e:
            click.echo(f"Connect failed: {e}", err=True)
            if session.state is ConnectionState.IDLE:
                await session.close()
                return
        try:
            await asyncio.Event().wait()
        finally:
            await session.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped")


@main.command()
@click.option("--port", default=8765, help="Port to run the control API on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.pass_obj
def serve(config: AgentConfig, port: int, host: str) -> None:
    """Start the agent with its local HTTP control API."""
    import uvicorn

    from sparecompute.server import create_app
    from sparecompute.session import AgentSession

    click.echo(f"Starting sparecompute control API on {host}:{port}")
    app = create_app(AgentSession(config))
    uvicorn.run(app, host=host, port=port)


@main.command()
@click.option("--force", "-f", is_flag=True, help="Probe again instead of using the stored result")
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_obj
def detect(config: AgentConfig, force: bool, raw: bool) -> None:
    """Detect the local GPU and inference server."""
    from sparecompute.prober import CapabilityProber
    from sparecompute.store import CredentialStore

    prober = CapabilityProber(
        CredentialStore(config.db_path),
        candidates=config.local_candidates,
        timeout=config.probe_timeout,
    )
    capability = prober.detect(force=force)

    if raw:
        click.echo(json.dumps(capability.model_dump(by_alias=True), indent=2))
        return

    click.echo(f"GPU:            {capability.gpu_descriptor or 'Not detected'}")
    if capability.gpu_memory:
        click.echo(f"GPU memory:     {capability.gpu_memory}")
    click.echo(f"Local endpoint: {capability.local_endpoint or 'Not detected'}")


@main.command()
@click.confirmation_option(prompt="Forget this agent's broker identity?")
@click.pass_obj
def reset(config: AgentConfig) -> None:
    """Forget the stored plugin identity.

    The next connect registers this machine with the broker again.
    """
    from sparecompute.store import CredentialStore

    CredentialStore(config.db_path).delete_identity()
    click.echo("Stored identity removed")


if __name__ == "__main__":
    main()
