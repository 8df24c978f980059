"""Unified CLI for meshcall using Click."""

import json
import logging
import sys

import click
from loguru import logger

from meshcall.rtc_call import run_call

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _configure_logging(level: str) -> None:
    """Route loguru and stdlib logging to stderr at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level)
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--username",
    "-u",
    required=True,
    help="Name other participants see.",
)
@click.option(
    "--room",
    "-r",
    "room_id",
    required=True,
    help="Room ID to join.",
)
@click.option(
    "--server",
    "-s",
    "server_url",
    default=None,
    help="Server origin (http:// or https://) or signaling URL (ws:// or wss://). "
    "Defaults to the configured server.",
)
@click.option(
    "--no-media",
    is_flag=True,
    help="Join without camera or microphone.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    help="Logging verbosity.",
)
def join(username, room_id, server_url, no_media, log_level):
    """Join a room and start a video call.

    Lines typed on standard input are sent as chat. Controls:

    \b
      /mic    mute or unmute the microphone
      /cam    turn the camera on or off
      /share  start or stop sharing the screen
      /peers  list participants and connection states
      /leave  leave the call

    Example:
        meshcall join -u alice -r standup -s https://call.example.org
    """
    _configure_logging(log_level.upper())

    if not username.strip():
        logger.error("Username cannot be empty")
        sys.exit(1)
    if not room_id.strip():
        logger.error("Room ID cannot be empty")
        sys.exit(1)

    run_call(
        username=username.strip(),
        room_id=room_id.strip(),
        server_url=server_url,
        no_media=no_media,
    )


@cli.command(name="config")
def show_config():
    """Print the resolved configuration."""
    from meshcall.config import get_config

    click.echo(json.dumps(get_config().as_dict(), indent=2))


if __name__ == "__main__":
    cli()
