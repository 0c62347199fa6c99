from __future__ import annotations

"""Shared plumbing for worker entry points (logging, run loop, CLI flags)."""

import argparse
import json
import logging
import os
import socket
import time
from typing import Any, Callable


def configure_logging() -> None:
    # Ensure logs are visible when run from cron / a process supervisor.
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )


def log_event(logger: logging.Logger, event: dict[str, Any]) -> None:
    # Structured summaries only; never log raw page content.
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def default_worker_id(role: str) -> str:
    return f"{role}-{socket.gethostname()}-{os.getpid()}"


def add_loop_arguments(parser: argparse.ArgumentParser, *, batch_size: int, interval: int) -> None:
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=interval,
        help=f"Seconds to sleep between batches when looping (default: {interval})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=batch_size,
        help=f"Items claimed per batch (default: {batch_size})",
    )
    parser.add_argument("--worker-id", default=None, help="Worker identity stamped on claims")


def run_loop(step: Callable[[], Any], *, once: bool, interval: int, logger: logging.Logger) -> int:
    """Run `step` once, or forever with `interval` seconds between runs. Ctrl-C exits cleanly."""
    try:
        while True:
            step()
            if once:
                return 0
            time.sleep(max(1, interval))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
