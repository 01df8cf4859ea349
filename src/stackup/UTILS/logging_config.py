"""
Logging configuration, set up once by the CLI entrypoint.

Every module does ``logger = logging.getLogger(__name__)`` and inherits
this config. Levels resolve as: --log-level flag > STACKUP_LOG_LEVEL > WARNING.
"""
import logging
import sys
from typing import Optional

# WARNING and above: message only
_FMT_MINIMAL = "%(levelname)s: %(message)s"

# INFO: timestamped with module context
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"

# DEBUG: full diagnostic with file:line
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d - %(message)s"

_DATEFMT = "%H:%M:%S"


def setup_logging(level: Optional[str] = "WARNING") -> None:
    """
    Configure logging for the whole process. Output goes to stderr so that
    stdout stays clean for ``status --json``.

    :param level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = _parse_level(level)

    if numeric_level <= logging.DEBUG:
        fmt = _FMT_DEBUG
    elif numeric_level <= logging.INFO:
        fmt = _FMT_VERBOSE
    else:
        fmt = _FMT_MINIMAL

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(numeric_level)


def _parse_level(level: Optional[str]) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
