"""Logging configuration for the CLI.

The library never configures handlers itself; the CLI maps ``-v`` counts
to levels and sends records to stderr so stdout stays scriptable.
"""

from __future__ import annotations

import logging
import sys

_VERBOSITY_LEVELS = {
    0: logging.CRITICAL,
    1: logging.ERROR,
    2: logging.INFO,
}


def level_for(verbosity: int) -> int:
    """Map a ``-v`` count to a logging level."""
    return _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)


def setup_logging(verbosity: int = 0) -> int:
    """Configure root logging for *verbosity* and return the chosen level."""
    level = level_for(verbosity)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
    return level
