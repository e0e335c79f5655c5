"""
Logging helpers.

Registers a TRACE level below DEBUG for low-visibility diagnostics
(background triggers log everything there) and offers a small
configuration entry point used by the CLI.
"""

from __future__ import annotations

import logging

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_FORMAT = "%(levelname)s %(name)s: %(message)s"

# -v -> INFO, -vv -> DEBUG, -vvv -> TRACE
_VERBOSITY_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG, TRACE]


def trace(logger: logging.Logger, msg: str, *args, **kwargs) -> None:
    """Log a message at TRACE level."""
    if logger.isEnabledFor(TRACE):
        logger.log(TRACE, msg, *args, **kwargs)


def configure_logging(verbosity: int = 0) -> None:
    """Attach a stderr handler to the package logger.

    Args:
        verbosity: Number of -v flags given on the command line
    """
    level = _VERBOSITY_LEVELS[min(max(verbosity, 0), len(_VERBOSITY_LEVELS) - 1)]
    logger = logging.getLogger("reflectgen")
    logger.setLevel(level)
    for handler in [h for h in logger.handlers if getattr(h, "_reflectgen", False)]:
        logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._reflectgen = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
