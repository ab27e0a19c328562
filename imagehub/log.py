"""
Logging setup for the service.

All modules obtain their logger through ``get_logger`` so that level and
format are applied consistently and handlers are attached only once.
"""

import logging
import sys
from typing import Dict

FORMATTER = logging.Formatter(
    "%(asctime)s | %(levelname)-8s | %(name)-18s | %(message)s"
)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

ROOT_NAME = "imagehub"

_loggers: Dict[str, logging.Logger] = {}


def setup_logging(level: str = "info") -> logging.Logger:
    """Configure the package root logger. Safe to call more than once."""
    root = logging.getLogger(ROOT_NAME)
    root.setLevel(LOG_LEVELS.get(level.lower(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(FORMATTER)
        root.addHandler(handler)
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    if name not in _loggers:
        _loggers[name] = logging.getLogger(f"{ROOT_NAME}.{name}")
    return _loggers[name]
