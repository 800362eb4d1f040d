from __future__ import annotations

import argparse
import logging
import platform
from pathlib import Path
from typing import Optional, Sequence

from opfwd import __version__
from opfwd.client import run_client
from opfwd.engine.config import ConfigError, default_config_path, load_config
from opfwd.engine.engine import run_server


logger = logging.getLogger("opfwd")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="opfwd",
        description="Forward whitelisted 1Password CLI commands over a Unix socket",
    )
    ap.add_argument("--server", action="store_true", help="Run in server mode")
    ap.add_argument("--config", default=None, help="Path to the config file (server mode only)")
    ap.add_argument("--log-level", default=None, help="Override the configured log level (server mode only)")
    ap.add_argument("--socket", default=None, help="Socket to connect to (client mode only)")
    ap.add_argument("--version", action="store_true", help="Show version information")
    ap.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments to forward")
    return ap


def print_version() -> None:
    print(f"opfwd version {__version__}")
    print(f"Python Version: {platform.python_version()}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.version:
        print_version()
        return 0

    if not args.server:
        return run_client(args.command, socket_path=args.socket)

    config_path = Path(args.config).expanduser() if args.config else default_config_path()
    try:
        cfg = load_config(config_path)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error("Failed to load config %s: %s", config_path, e)
        return 1

    level_name = (args.log_level or cfg.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)

    return run_server(cfg)


if __name__ == "__main__":
    raise SystemExit(main())
