"""
Command line entry point.

Usage:
    pgbackup                 # Check connectivity, then back up on schedule
    pgbackup --once          # Run a single backup and exit
    pgbackup --check         # Only verify storage and database connectivity
"""

import argparse
import logging
import sys

from pgbackup import __version__, configure_logging
from pgbackup.config import ConfigError, load_config
from pgbackup.scheduler import run_service


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='pgbackup', description="PostgreSQL backup service")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single backup and exit")
    mode.add_argument("--check", action="store_true", help="Verify connectivity and exit")
    parser.add_argument("--env-file", default=".env", help="Optional .env file (default: .env)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(env_file=args.env_file)
    except ConfigError as e:
        configure_logging()
        logging.getLogger(__name__).error(f"Failed to load configuration: {e}")
        return 1

    configure_logging(config.log_level, config.log_file)

    return run_service(config, once=args.once, check_only=args.check)


if __name__ == '__main__':
    sys.exit(main())
