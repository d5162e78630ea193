"""
Backend bootstrap helpers for LocalMind.
"""

from __future__ import annotations

import argparse
import os
from typing import Optional, Sequence

from core.api_server import create_app
from core.runtime import build_runtime
from core.settings_loader import SettingsLoader
from utils.logger_util import LEVEL_ENV, get_logger, set_log_level

logger = get_logger("backend.bootstrap")


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Simple CLI entry point to run the Flask API server or print backend status.
    """

    parser = argparse.ArgumentParser(description="Launch LocalMind services.")
    parser.add_argument("--server", action="store_true", help="Start Flask server")
    parser.add_argument("--status", action="store_true", help="Print backend and model status, then exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Logging level for every LocalMind logger (defaults to {LEVEL_ENV} or INFO)",
    )
    args = parser.parse_args(argv)
    if args.log_level:
        try:
            set_log_level(args.log_level)
        except ValueError as exc:
            parser.error(str(exc))

    if not args.server and not args.status:
        parser.print_help()
        return

    settings = SettingsLoader()
    runtime = build_runtime(settings, initialize=not args.status)

    if args.status:
        runtime.manager.initialize().result()
        runtime.channel.drain(timeout=5)
        print(runtime.manager.system_info())
        runtime.shutdown()
        return

    host = os.getenv("LOCALMIND_API_HOST") or settings.get("api", "host", default="127.0.0.1")
    port = settings.get_int("api", "port", env="LOCALMIND_API_PORT", default=8010)

    app = create_app(runtime)
    logger.info("Starting LocalMind Flask server on %s:%s", host, port)
    try:
        app.run(host=host, port=port, threaded=True)
    finally:
        runtime.shutdown()


if __name__ == "__main__":
    main()
