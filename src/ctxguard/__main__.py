"""Entry point for the ctxguard engine: python -m ctxguard."""

import argparse
import asyncio
import logging
from typing import Optional

from .config import Config
from .engine import ContextEngine
from .logging import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ctxguard",
        description="Context usage monitoring and auto-compaction engine",
    )
    parser.add_argument("--config", "-c", help="Path to configuration file")
    parser.add_argument("--debug", action="store_true", help="Console logging at DEBUG")
    parser.add_argument("--socket", "-s", help="Status socket path (overrides config)")
    parser.add_argument(
        "--no-socket",
        action="store_true",
        help="Do not serve the status socket",
    )
    parser.add_argument(
        "--no-debug-log",
        action="store_true",
        help="Do not write the JSON debug log",
    )
    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Config file plus command-line overrides."""
    config = Config.load(args.config)
    if args.debug:
        config.logging.level = "DEBUG"
    if args.socket:
        config.ipc.socket_path = args.socket
    if args.no_socket:
        config.ipc.enabled = False
    if args.no_debug_log:
        config.logging.debug_to_file = False
    return config


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    config = load_config(build_parser().parse_args(argv))

    setup_logging(
        config,
        console_level=config.logging.level,
        debug_to_file=config.logging.debug_to_file,
        use_colors=config.logging.use_colors,
    )

    engine = ContextEngine(config)
    try:
        asyncio.run(engine.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
