#!/usr/bin/env python3
"""
turntable main entry point.

Plays (or preloads) one URL through a supervised mpv engine:
python3 -m turntable URL [--loop] [--volume 0..1] [--speed F] [--preload]
"""

import argparse
import logging
import logging.handlers
import os
import sys
import threading
from typing import List, Optional

# Set default log level from environment, or INFO if not set
log_level = os.getenv("TURNTABLE_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)

from turntable.config import load_config
from turntable.engine.controller import EngineController
from turntable.errors import EngineConnectionError, EngineRecoveryError, EngineSpawnError
from turntable.notifications import (
    EngineFailed,
    Finished,
    Notification,
    ProgressUpdated,
    StateChanged,
)

logger = logging.getLogger("turntable")


def setup_file_logging(log_file: str) -> None:
    """Mirror all turntable logs into log_file (rotation tolerant)."""
    handler = logging.handlers.WatchedFileHandler(log_file, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="turntable - play a track through a supervised mpv engine")
    parser.add_argument("url", help="File path or URL to play")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Loop the track until interrupted",
    )
    parser.add_argument(
        "--volume",
        type=float,
        default=None,
        help="Playback volume between 0.0 and 1.0",
    )
    parser.add_argument(
        "--speed",
        type=float,
        default=None,
        help="Playback speed factor (1.0 = normal)",
    )
    parser.add_argument(
        "--preload",
        action="store_true",
        help="Load the track paused instead of playing it",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.volume is not None and not 0.0 <= args.volume <= 1.0:
        parser.error("--volume must be between 0.0 and 1.0")
    if args.speed is not None and args.speed <= 0:
        parser.error("--speed must be > 0")

    try:
        config = load_config()
    except ValueError:
        return 1
    if config.log_file:
        setup_file_logging(config.log_file)

    done = threading.Event()
    failed = threading.Event()
    controller = EngineController(config)

    def on_notification(notification: Notification) -> None:
        if isinstance(notification, StateChanged):
            logger.info(f"State: {notification.phase.value}")
        elif isinstance(notification, ProgressUpdated):
            logger.debug(f"Progress: {notification.current_time:.1f}s / {notification.duration:.1f}s")
        elif isinstance(notification, Finished):
            logger.info("Track finished")
            done.set()
        elif isinstance(notification, EngineFailed):
            error = notification.error
            logger.error(f"Engine error: {error}")
            if isinstance(error, EngineRecoveryError):
                fatal = error.exhausted
            else:
                fatal = isinstance(error, (EngineSpawnError, EngineConnectionError)) and not controller.health.recovering
            if fatal:
                failed.set()
                done.set()

    controller.subscribe(on_notification)
    try:
        controller.set_loop(args.loop)
        if args.preload:
            controller.load(args.url)
        else:
            controller.play(args.url)
        if args.volume is not None:
            controller.set_volume(args.volume)
        if args.speed is not None:
            controller.set_speed(args.speed)
        done.wait()
    except KeyboardInterrupt:
        logger.info("turntable shutdown requested")
    finally:
        controller.close()
    return 1 if failed.is_set() else 0


if __name__ == "__main__":
    sys.exit(main())
