"""Logging helpers for the livecast service."""
from __future__ import annotations

import logging
import sys

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO, format: str | None = None) -> None:
    """Configure the root logger once, leaving any existing handlers alone."""

    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
