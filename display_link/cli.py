"""Command-line interface for display-link."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from . import constants
from .app import DisplayApp, RelayApp
from .config import AppConfig, DisplayConfig, FileDisplayConfigStore, load_config
from .core import DisplayMessage, MessageDecodeError, MessageKind

LOGGER = logging.getLogger(__name__)

HTTP_TIMEOUT = aiohttp.ClientTimeout(total=10)


class RelayRequestError(RuntimeError):
    """Raised when the relay cannot be reached or rejects a request."""


async def post_message(relay_url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Submit one display message to the relay's ``/send`` endpoint."""

    url = relay_url.rstrip("/") + "/send"
    try:
        async with aiohttp.ClientSession(timeout=HTTP_TIMEOUT) as session:
            async with session.post(url, json=payload) as response:
                body = await response.json(content_type=None)
                if response.status != 200:
                    error = body.get("error") if isinstance(body, dict) else body
                    raise RelayRequestError(f"Relay rejected message ({response.status}): {error}")
                return body
    except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
        raise RelayRequestError(f"Unable to reach relay at {url}: {exc}") from exc


async def fetch_status(relay_url: str) -> Dict[str, Any]:
    url = relay_url.rstrip("/") + "/status"
    try:
        async with aiohttp.ClientSession(timeout=HTTP_TIMEOUT) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                return await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
        raise RelayRequestError(f"Unable to reach relay at {url}: {exc}") from exc


def build_message(args: argparse.Namespace) -> Dict[str, Any]:
    """Assemble a wire payload from ``send`` arguments and validate it."""

    if args.json:
        payload = json.loads(args.json)
    else:
        payload = {"type": args.kind}
        if args.text is not None:
            if args.kind == MessageKind.IMAGE.value:
                payload["imageUrl"] = args.text
            elif args.kind == MessageKind.ALERT.value:
                payload["body"] = args.text
            else:
                payload["content"] = args.text
        for key, value in (
            ("title", args.title),
            ("sound", args.sound),
            ("duration", args.duration),
            ("priority", args.priority),
        ):
            if value is not None:
                payload[key] = value

    DisplayMessage.from_dict(payload)
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="Resilient real-time display delivery"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    relay_parser = subparsers.add_parser("relay", help="Run the broadcast relay")
    relay_parser.add_argument("--host", help="Interface to bind")
    relay_parser.add_argument("--port", type=int, help="Port to listen on")

    client_parser = subparsers.add_parser(
        "client", help="Run a headless display that logs what it shows"
    )
    client_parser.add_argument("--ws-url", help="Websocket URL for display messages")
    client_parser.add_argument("--sse-url", help="Event-stream URL for power readings")

    send_parser = subparsers.add_parser("send", help="Send a message through the relay")
    send_parser.add_argument(
        "kind",
        nargs="?",
        default=MessageKind.TEXT.value,
        choices=[kind.value for kind in MessageKind],
        help="Message type (default: text)",
    )
    send_parser.add_argument("text", nargs="?", help="Content, alert body or image URL")
    send_parser.add_argument("--title")
    send_parser.add_argument("--sound")
    send_parser.add_argument("--duration", type=int, help="Display time in milliseconds")
    send_parser.add_argument("--priority")
    send_parser.add_argument("--json", help="Raw JSON payload, overrides other options")
    send_parser.add_argument(
        "--relay-url",
        default=constants.DEFAULT_RELAY_URL,
        help=f"Relay base URL (default: {constants.DEFAULT_RELAY_URL})",
    )

    status_parser = subparsers.add_parser("status", help="Show relay status")
    status_parser.add_argument(
        "--relay-url",
        default=constants.DEFAULT_RELAY_URL,
        help=f"Relay base URL (default: {constants.DEFAULT_RELAY_URL})",
    )

    configure_parser = subparsers.add_parser(
        "configure", help="Update the persisted display settings"
    )
    configure_parser.add_argument("--ws-url")
    configure_parser.add_argument("--sse-url")
    configure_parser.add_argument("--brightness-mode", choices=constants.BRIGHTNESS_MODES)
    configure_parser.add_argument("--alert-threshold", type=float)
    configure_parser.add_argument("--client-name")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _run_relay(config: AppConfig, args: argparse.Namespace) -> int:
    if args.host:
        config.relay.host = args.host
    if args.port is not None:
        config.relay.port = args.port
    RelayApp.start(config)
    return 0


def _run_client(config: AppConfig, args: argparse.Namespace) -> int:
    if args.ws_url is not None:
        config.display.ws_url = args.ws_url.strip()
    if args.sse_url is not None:
        config.display.sse_url = args.sse_url.strip()
    if not config.display.ws_url and not config.display.sse_url:
        LOGGER.error("No endpoints configured; use 'configure' or pass --ws-url/--sse-url")
        return 1
    DisplayApp.start(config)
    return 0


def _send(args: argparse.Namespace) -> int:
    try:
        payload = build_message(args)
    except json.JSONDecodeError as exc:
        LOGGER.error("Invalid JSON payload: %s", exc)
        return 1
    except MessageDecodeError as exc:
        LOGGER.error("Invalid message: %s", exc)
        return 1

    try:
        result = asyncio.run(post_message(args.relay_url, payload))
    except RelayRequestError as exc:
        LOGGER.error("%s", exc)
        return 1
    print(f"Delivered to relay ({result.get('clients', 0)} clients connected)")
    return 0


def _status(args: argparse.Namespace) -> int:
    try:
        status = asyncio.run(fetch_status(args.relay_url))
    except RelayRequestError as exc:
        LOGGER.error("%s", exc)
        return 1
    print(json.dumps(status, indent=2, sort_keys=True))
    return 0


def _configure(config: AppConfig, args: argparse.Namespace) -> int:
    store = FileDisplayConfigStore(config.path)
    record = store.load().as_dict()
    for key, value in (
        ("wsUrl", args.ws_url),
        ("sseUrl", args.sse_url),
        ("brightnessMode", args.brightness_mode),
        ("alertThresholdWatts", args.alert_threshold),
        ("clientName", args.client_name),
    ):
        if value is not None:
            record[key] = value

    updated = DisplayConfig.from_mapping(record)
    store.save(updated)
    print(f"Saved display settings to {config.path!s}")
    for key, value in updated.as_dict().items():
        print(f"{key} = {value}")
    return 0


def _show_config(config: AppConfig) -> int:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            print(f"{key} = {value}")
        print()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "send":
        return _send(args)
    if args.command == "status":
        return _status(args)

    config = load_config(args.config)

    if args.command == "relay":
        return _run_relay(config, args)
    if args.command == "client":
        return _run_client(config, args)
    if args.command == "configure":
        return _configure(config, args)
    if args.command == "show-config":
        return _show_config(config)

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
