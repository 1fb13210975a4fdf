"""
Logging helpers for the Kamera relay and clients.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_level(name: Optional[str]) -> int:
    """Map a CLI level name such as ``"debug"`` to a logging constant."""

    if not name:
        return logging.INFO
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else logging.INFO
