"""Shutdown agent - entrypoint."""

import argparse
import asyncio
import logging
from typing import List, Optional

from agent import __version__
from agent.config import load_settings
from agent.core.errors import AuthError, ConfigError
from agent.core.runner import run_forever

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_AUTH = 1
EXIT_CONFIG = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Registers this machine as a device and powers it off on a pending shutdown request",
    )
    parser.add_argument("--env-file", default=None, help="Settings file (default: .env in the working directory)")
    parser.add_argument("--device-name", default=None, help="Device name (default: DEVICE_NAME or the hostname)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: DEBUG if DEBUG=true, else INFO)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def configure_logging(level: int):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ConfigError as e:
        configure_logging(logging.INFO)
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    if args.log_level:
        level = getattr(logging, args.log_level)
    else:
        level = logging.DEBUG if settings.debug else logging.INFO
    configure_logging(level)

    try:
        asyncio.run(run_forever(settings, device_name=args.device_name))
    except AuthError as e:
        logger.error(f"Auth failed: {e}")
        return EXIT_AUTH
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
