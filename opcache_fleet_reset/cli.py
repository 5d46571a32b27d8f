"""Argument parsing, configuration loading, and service bootstrap."""

from __future__ import annotations

import argparse
import logging
import sys

from .cachetool.client import FastCGILocalCache, RemoteResetClient
from .config import load_config
from .daemon import Daemon
from .exceptions import ConfigError, ResetError
from .logging_config import configure_logging
from .reset.plugin import install, is_enabled

logger = logging.getLogger(__name__)

EXIT_INERT = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opcache-fleet-reset",
        description="Reset the PHP opcache on every instance behind an AWS load balancer",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Trigger a single fleet reset, wait for all staggered resets, and exit",
    )
    mode.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    mode.add_argument(
        "--check",
        action="store_true",
        help="Report whether the feature gate passes and exit (0 enabled, 2 inert)",
    )
    mode.add_argument(
        "--host",
        metavar="HOST",
        help="Reset the opcache on a single host immediately and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load config (minimal logging until config is loaded)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)

    if args.validate:
        logger.info("Configuration is valid")
        return 0

    if args.host:
        return 0 if RemoteResetClient(config.cachetool).reset(args.host) else 1

    if args.check:
        enabled = is_enabled(config, FastCGILocalCache(config.local, config.cachetool))
        print("enabled" if enabled else "inert")
        return 0 if enabled else EXIT_INERT

    daemon = Daemon(config)
    try:
        if install(config, daemon, daemon.queue) is None:
            logger.warning("Feature gate did not pass, nothing to run")
            return EXIT_INERT

        if args.once:
            logger.info("Running single fleet reset (--once)")
            daemon.trigger_now()
            daemon.drain()
        else:
            daemon.run()
    except ResetError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
