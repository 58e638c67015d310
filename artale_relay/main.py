"""
Command-line entry point for artale-relay.

Reads the YAML config, sets up structlog and runs RelayService until SIGINT
or SIGTERM. Config problems exit with status 1 before anything connects.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog
import yaml

from .app import RelayService
from .config import load_config


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def run() -> None:
    """Parse arguments, load the config and block until the relay shuts down."""
    parser = argparse.ArgumentParser(
        prog="artale-relay",
        description="Relay MapleStory Artale marketplace broadcasts to Discord "
        "channels of keyword subscribers",
    )
    parser.add_argument(
        "-c", "--config",
        default="artale-relay.yaml",
        help="YAML file with feed, discord, store and metrics sections "
        "(default: artale-relay.yaml)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"artale-relay: {exc}", file=sys.stderr)
        sys.exit(1)
    except (yaml.YAMLError, ValueError) as exc:
        print(f"artale-relay: invalid config {args.config}: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info(
        "relay.boot",
        config_path=args.config,
        feed_url=config.feed.url,
        db_path=config.store.db_path,
        guild_id=config.discord.guild_id,
    )

    service = RelayService(config)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
