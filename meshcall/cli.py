"""Unified CLI for meshcall using Click."""

import logging
import sys

import click
import requests
from loguru import logger

from meshcall.rtc_relay import run_relay
from meshcall.rtc_session import run_session


@click.group()
def cli():
    pass


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option(
    "--host",
    type=str,
    required=False,
    help="Interface to listen on (default from config: 0.0.0.0).",
)
@click.option(
    "--port",
    "-p",
    type=int,
    required=False,
    help="Port serving the WebSocket endpoint and /health (default from config: 3001).",
)
def relay(host, port):
    """Run the signaling relay.

    The relay keeps room membership and forwards offers, answers and ICE
    candidates between members of the same room. Media never passes through it.

    Example:
        meshcall relay --port 3001
    """
    logging.basicConfig(level=logging.INFO)
    try:
        run_relay(host=host, port=port)
    except ValueError as e:
        logger.error(f"Invalid relay settings: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"Could not start relay: {e}")
        sys.exit(1)


# =============================================================================
# Participant
# =============================================================================


@cli.command()
@click.argument("room_id")
@click.option(
    "--name",
    "-n",
    type=str,
    required=True,
    help="Display name shown to the other members.",
)
@click.option(
    "--server",
    "-s",
    type=str,
    required=False,
    help="Signaling relay URL (ws:// or wss://). Overrides config and MESHCALL_SIGNALING_URL.",
)
@click.option(
    "--play-from",
    type=click.Path(),
    required=False,
    help="Media file or URL to send instead of the capture devices.",
)
def join(room_id, name, server, play_from):
    """Join ROOM_ID as a headless participant.

    Sends local media to every member of the room and discards what it
    receives. Useful for testing a relay or keeping a room populated.

    Examples:

        meshcall join ABC123 --name alice

        meshcall join ABC123 -n bot --play-from loop.mp4 -s ws://relay.local:3001
    """
    from meshcall.errors import MeshcallError

    logging.basicConfig(level=logging.INFO)
    try:
        run_session(room_id, name, signaling_url=server, play_from=play_from)
    except ValueError as e:
        logger.error(f"Invalid client settings: {e}")
        sys.exit(1)
    except MeshcallError as e:
        logger.error(f"Could not join room {room_id}: {e}")
        sys.exit(1)


# =============================================================================
# Diagnostics
# =============================================================================


@cli.command()
@click.option(
    "--url",
    type=str,
    required=False,
    help="Health URL to check (default derived from the configured signaling URL).",
)
@click.option("--timeout", default=5.0, help="Request timeout in seconds.")
def health(url, timeout):
    """Check that the signaling relay is up."""
    from meshcall.config import get_config

    url = url or get_config().get_health_url()
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        click.echo(f"Relay unreachable at {url}: {e}")
        sys.exit(1)

    if response.status_code != 200:
        click.echo(f"Relay unhealthy at {url}: HTTP {response.status_code}")
        sys.exit(1)
    click.echo(f"Relay healthy at {url}")


@cli.group()
def config():
    """Inspect meshcall configuration."""
    pass


@config.command(name="show")
def config_show():
    """Print the effective configuration after file and env overrides."""
    from meshcall.config import get_config

    cfg = get_config()
    source = cfg.config_file or "defaults (no config file found)"
    click.echo(f"Config source: {source}")
    click.echo(f"Environment:   {cfg.environment}")

    click.echo("\n[relay]")
    click.echo(f"  host               = {cfg.relay.host}")
    click.echo(f"  port               = {cfg.relay.port}")
    click.echo(f"  max_message_size   = {cfg.relay.max_message_size}")
    click.echo(f"  keepalive_interval = {cfg.relay.keepalive_interval}")
    click.echo(f"  keepalive_timeout  = {cfg.relay.keepalive_timeout}")

    click.echo("\n[client]")
    click.echo(f"  signaling_url          = {cfg.client.signaling_url}")
    click.echo(f"  reconnect_delay        = {cfg.client.reconnect_delay}")
    click.echo(f"  max_reconnect_attempts = {cfg.client.max_reconnect_attempts}")
    click.echo("  ice_servers:")
    for server in cfg.client.ice_servers:
        click.echo(f"    - {server}")

    click.echo("\n[media]")
    click.echo(f"  play_from    = {cfg.media.play_from}")
    click.echo(f"  video_device = {cfg.media.video_device} ({cfg.media.video_format})")
    click.echo(f"  audio_device = {cfg.media.audio_device} ({cfg.media.audio_format})")
    click.echo(f"  video_size   = {cfg.media.video_size}")


if __name__ == "__main__":
    cli()
