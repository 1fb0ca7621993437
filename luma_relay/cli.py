"""Luma Relay CLI.

Usage:
    luma-relay serve --config production idle_timeout_s=15
    luma-relay health --url http://localhost:3000
    luma-relay chat --url http://localhost:3000 --message "hi"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import httpx
import uvicorn

from .client import RelayStreamError, stream_chat
from .core.config import CONFIG_NAME_ENV, DEFAULT_CONFIG_NAME, load_relay_config

DEFAULT_URL = "http://localhost:3000"


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the relay with uvicorn."""
    from .api import configure_web_app, web_app

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_relay_config(args.config, args.overrides)
    configure_web_app(cfg)
    host = args.host or cfg.host
    port = args.port or cfg.port
    logging.getLogger(__name__).info(
        "Streaming relay on http://%s:%d (health: /health, stream: /api/chat/stream)",
        host, port,
    )
    uvicorn.run(web_app, host=host, port=port, log_level=args.log_level.lower())
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    """Check health of a running relay."""
    try:
        resp = httpx.get(f"{args.url.rstrip('/')}/health", timeout=args.timeout)
    except httpx.HTTPError as e:
        print(f"Error: relay unreachable: {e}", file=sys.stderr)
        return 1
    print(json.dumps(resp.json(), indent=2))
    return 0 if resp.status_code == 200 else 1


async def _chat(args: argparse.Namespace) -> int:
    messages: list[dict[str, str]] = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": args.message})
    try:
        async for text in stream_chat(
            args.url,
            messages,
            max_tokens=args.max_tokens,
            temperature=args.temperature,
            timeout_s=args.timeout,
        ):
            print(text, end="", flush=True)
    except (RelayStreamError, httpx.HTTPError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    print()
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    """Send one message through the relay and print the streamed reply."""
    return asyncio.run(_chat(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="luma-relay",
        description="Luma Relay: streaming chat-completion relay",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the relay server")
    serve_parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_NAME,
        help=f"Config profile under luma_relay/core/configs (env: {CONFIG_NAME_ENV})",
    )
    serve_parser.add_argument("--host", default=None, help="Bind host (default from config)")
    serve_parser.add_argument(
        "--port", type=int, default=None, help="Bind port (default from config or PORT)",
    )
    serve_parser.add_argument("--log-level", default="info", help="Logging level")
    serve_parser.add_argument(
        "overrides",
        nargs="*",
        help="Hydra overrides, e.g. idle_timeout_s=15",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # health command
    health_parser = subparsers.add_parser("health", help="Check relay health")
    health_parser.add_argument("--url", default=DEFAULT_URL, help="Relay base URL")
    health_parser.add_argument("--timeout", type=float, default=5.0)
    health_parser.set_defaults(func=cmd_health)

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Stream one chat reply through the relay")
    chat_parser.add_argument("--url", default=DEFAULT_URL, help="Relay base URL")
    chat_parser.add_argument("--message", required=True, help="User message")
    chat_parser.add_argument("--system", default=None, help="Optional system prompt")
    chat_parser.add_argument("--max-tokens", type=int, default=None)
    chat_parser.add_argument("--temperature", type=float, default=None)
    chat_parser.add_argument("--timeout", type=float, default=60.0)
    chat_parser.set_defaults(func=cmd_chat)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
