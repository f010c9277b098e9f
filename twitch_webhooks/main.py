"""
Command-line entry point.

``twitch-webhooks run`` (the default) starts the service;
``twitch-webhooks check`` validates the configuration and prints the
callback URL of every declared subscription without contacting the hub.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

import structlog

from .config import ServiceConfig, load_config
from .service import WebhookService
from .topics import callback_url, webhook_id

REDACTED_KEYS = frozenset({"secret", "token", "hub.secret", "authorization"})


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking values under secret-bearing keys."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def describe_subscriptions(config: ServiceConfig) -> list[str]:
    """One ``<type> <callback url>`` line per declared subscription."""
    webhooks = config.webhooks
    return [
        f"{sub.type.value} {callback_url(webhooks.hostname, webhooks.base_path, webhook_id(sub.type, sub.params))}"
        for sub in config.subscriptions
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="twitch-webhooks",
        description="Twitch webhook subscription service",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "check"),
        default="run",
        help="run the service (default) or only validate the configuration",
    )
    parser.add_argument(
        "-c", "--config",
        default="twitch-webhooks.yaml",
        help="Path to configuration file (default: twitch-webhooks.yaml)",
    )
    parser.add_argument(
        "--log-level",
        help="Override logging.level from the configuration file",
    )
    return parser


def run(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.command == "check":
        for line in describe_subscriptions(config):
            print(line)
        return

    configure_logging(args.log_level or config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info(
        "service.config_loaded",
        config_path=args.config,
        subscriptions=len(config.subscriptions),
    )

    service = WebhookService(config)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
