import argparse
import logging
import signal
import sys
from typing import List, Optional

from rich.console import Console

from .Core.Config import DEFAULT_CONFIG_PATH, load_config
from .Core.header import ConfigError
from .Core.Logger import render_route_table, setup_logging
from .SshRouterServer import SshRouterServer

logger = logging.getLogger('ssh_router')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssh-router",
        description="Transparent TCP router: forwards each connection by the local IP it arrived on",
    )
    parser.add_argument("config", nargs="?", default=DEFAULT_CONFIG_PATH,
                        help=f"Path to the TOML or JSON config (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument(
        "-l", "--log-level", default=None, type=str.upper,
        choices=sorted(logging.getLevelNamesMapping()), help="Override the configured log level",
    )
    parser.add_argument("--log-file", default=None, help="Also log to this rotating file")
    parser.add_argument("--no-rich", action="store_true", help="Plain console logging without rich")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Load the config, bind the listener and route connections until stopped.

    Returns:
        int: Process exit status
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        route_table = config.route_table()
    except ConfigError as e:
        setup_logging(args.log_level or "INFO", args.log_file, use_rich=not args.no_rich)
        logger.critical(f"Invalid configuration: {e}")
        return 1

    setup_logging(args.log_level or config.log_level, args.log_file or config.log_file,
                  use_rich=not args.no_rich)

    server = SshRouterServer(
        route_table,
        listening_addr=config.listen_address,
        listening_port=config.listen_port,
        connect_timeout=config.connect_timeout,
        idle_timeout=config.idle_timeout,
        buffer_size=config.buffer_size,
    )

    try:
        server.bind()
    except OSError as e:
        logger.critical(f"Failed to bind {config.listen_address}:{config.listen_port}: {e}")
        return 1

    if not args.no_rich:
        Console(stderr=True).print(
            render_route_table(route_table, f"{config.listen_address}:{server.server_address[1]}")
        )
    logger.info(f"🚀 Routing {len(route_table)} route(s) on port {server.server_address[1]}")

    signal.signal(signal.SIGINT, server.signal_handler)
    signal.signal(signal.SIGTERM, server.signal_handler)

    server.serve_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
