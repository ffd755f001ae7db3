"""
Command-line entry point.

    pg-partialcopy config.toml
    pg-partialcopy --init --source "dbname=prod" --destination "dbname=dev" config.toml
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

import psycopg2
from dotenv import load_dotenv

from pg_partialcopy.alerts import WEBHOOK_ENV, format_failure, send_discord_alert
from pg_partialcopy.config_loader import load_config
from pg_partialcopy.engine import PartialCopyEngine
from pg_partialcopy.errors import PartialCopyError
from pg_partialcopy.init_config import init_config_file

logger = logging.getLogger("pg_partialcopy")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pg-partialcopy",
        description="Copy a PostgreSQL database, or a filtered subset of it, from one consistent snapshot.",
    )
    parser.add_argument("config_file", help="Path to the TOML config file")
    parser.add_argument("--init", action="store_true", help="Initialize config file from the source schema")
    parser.add_argument("--source", default="",
                        help="Source database URL or key-value connection string. Required with --init.")
    parser.add_argument("--destination", default="",
                        help="Destination database URL or key-value connection string")
    parser.add_argument("--omit-select-sql", action="store_true", help="Omit select_sql from the config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run_init(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if not args.source:
        parser.error("--source is required when --init is set")
    try:
        init_config_file(args.config_file, args.source, args.destination, args.omit_select_sql)
    except (FileExistsError, PartialCopyError, psycopg2.Error) as e:
        logger.error("%s", e)
        return 1
    return 0


def run_copy(config_file: str) -> int:
    try:
        config = load_config(config_file)
    except (OSError, ValueError) as e:
        logger.error("%s", e)
        return 1

    engine = PartialCopyEngine(config, logger=logger)

    def _on_signal(signum, frame):
        logger.warning("Received signal %s, cancelling", signum)
        engine.cancel()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        engine.run()
    except PartialCopyError as e:
        logger.error("%s", e)
        if os.environ.get(WEBHOOK_ENV):
            send_discord_alert(format_failure(e, Path(config_file).name))
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.init:
        return run_init(args, parser)
    return run_copy(args.config_file)


if __name__ == "__main__":
    sys.exit(main())
