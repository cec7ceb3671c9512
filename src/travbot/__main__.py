"""Entry point for the travbot engine."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path


def main() -> None:
    parser = argparse.ArgumentParser(description="Travbot")
    parser.add_argument(
        "--profile",
        default="default",
        help="Profile name - isolates config, data, and logs (e.g. main, farm2)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: profiles/<profile>/config/config.toml)",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Directory holding the profiles/ tree (default: $TRAVBOT_ROOT or cwd)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Log in, run a single fetch cycle, log a summary and exit",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level; the log file always records DEBUG",
    )
    args = parser.parse_args()

    from travbot.app import Application

    app = Application(
        profile=args.profile,
        config_file=args.config,
        root=args.root,
        log_level=args.log_level,
    )
    sys.exit(asyncio.run(app.run(once=args.once)))


if __name__ == "__main__":
    main()
