"""
main.py — clawchat Entry Point

Usage:
    python -m clawchat                                  # chat with the local gateway
    python -m clawchat --host myhost.tailnet            # pick local/remote gateway for this host
    python -m clawchat --gateway-url wss://gw:18789     # explicit endpoint
    python -m clawchat --session work --log-level DEBUG
    python -m clawchat --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="clawchat",
        description="clawchat — terminal chat for an OpenClaw agent gateway",
    )
    parser.add_argument(
        "--gateway-url",
        default=None,
        help="WebSocket URL of the gateway (default: resolved from config and --host)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Hostname the UI is served from; loopback hosts use the local gateway",
    )
    parser.add_argument(
        "--session",
        default=None,
        help="Session key to chat in (default: gateway.session_key from config)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $CLAWCHAT_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if config.yaml has
    invalid values or validate_all() finds cross-field problems.
    """
    from clawchat.config.settings import ConfigError, load_settings
    from clawchat.observability.logger import get_logger, setup_logging
    from pydantic import ValidationError

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("clawchat.main")
    return settings, log


async def main(argv: list[str] | None = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = parse_args(argv)
    settings, log = bootstrap(args)

    from clawchat.gateway.gateway_client import GatewayClient
    from clawchat.interfaces.chat_cli import run_chat_cli
    from clawchat.observability.logger import bind_gateway, clear_gateway

    overrides = {"url": args.gateway_url} if args.gateway_url else {}
    client = GatewayClient.from_settings(settings, host=args.host, **overrides)
    session_key = args.session or settings.gateway.session_key

    bind_gateway(client.url, session_key)
    log.info("clawchat.start", url=client.url, session_key=session_key)
    try:
        return await run_chat_cli(
            client,
            session_key=session_key,
            history_limit=settings.gateway.history_limit,
        )
    finally:
        log.info("clawchat.stop")
        clear_gateway()


def cli() -> None:
    """Console-script entry point."""
    import asyncio

    sys.exit(asyncio.run(main()))
