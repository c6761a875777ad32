"""
Logging setup for scripts and entry points.

Library modules only ever do `logger = logging.getLogger(__name__)` and emit
records. Handlers and levels are installed once, by whatever process is in
charge (an action script, main.py, a test), through configure_logging().
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = "INFO") -> None:
    """
    Install a single stream handler on the `factorlab` logger.

    Calling this more than once replaces the handler instead of stacking
    duplicates, so scripts can call it unconditionally.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric logging level.

    Raises:
        ValueError: If `level` is a string that is not a known level name.
    """
    if isinstance(level, str):
        numeric_level = logging.getLevelName(level.upper())
        if not isinstance(numeric_level, int):
            raise ValueError(f"Unknown log level: {level!r}")
    else:
        numeric_level = level

    package_logger = logging.getLogger("factorlab")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    package_logger.addHandler(handler)
    package_logger.setLevel(numeric_level)
