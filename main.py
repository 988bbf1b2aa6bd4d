"""Command-line entry point: ``python main.py --base-path /mnt/nas/media``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import config_manager
from app import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str) -> None:
    """Install one stdout handler on the root logger."""

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stdout,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediathumb", description="Serve thumbnails from NAS")
    parser.add_argument("--base-path", help="Base path to the NAS media directory")
    parser.add_argument("--bind", help="Address to listen on (default 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, help="Port to listen on (default 8080)")
    parser.add_argument("--config", type=Path, default=config_manager.CONFIG_FILE, help="Path to config.json")
    parser.add_argument("--log-level", help="Override logging.level from the config")
    return parser


def apply_cli_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    merged = dict(config)
    if args.base_path:
        merged["MEDIA_BASE_PATH"] = args.base_path
    if args.bind:
        merged["BIND"] = args.bind
    if args.port:
        merged["PORT"] = args.port
    if args.log_level:
        logging_section = dict(merged.get("logging") or {})
        logging_section["level"] = args.log_level
        merged["logging"] = logging_section
    return merged


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = apply_cli_overrides(config_manager.load_config(config_path=args.config), args)
    try:
        settings = config_manager.build_service_settings(config)
    except config_manager.ConfigError as exc:
        configure_logging("INFO")
        logger.error("Invalid configuration: %s", exc)
        return 2

    configure_logging(settings.log_level)
    for line in config_manager.describe(settings):
        logger.info(line)
    logger.info("Starting HTTP server at http://%s:%d", settings.bind, settings.port)

    app = create_app(settings)
    app.run(host=settings.bind, port=settings.port, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
