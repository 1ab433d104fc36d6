from __future__ import annotations

import logging
import sys
from typing import Iterable


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _default_logger_name() -> logging.Logger:
    return logging.getLogger("ecoflow")


class ConsoleLog:
    """Configure console logging for the exporter."""

    def __init__(self, level: str = "INFO", quiet: bool = False, debug_modules: Iterable[str] | None = None):
        self.level = level.upper()
        self.quiet = quiet
        self.debug_modules = list(debug_modules or [])

    def setup(self) -> logging.Logger:
        # Root logger handles all levels; handlers control visibility.
        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(logging.DEBUG)

        if not self.quiet:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(getattr(logging, self.level, logging.INFO))
            handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
            root.addHandler(handler)

        # urllib3 logs every connection at DEBUG; keep it out unless asked for.
        if "urllib3" not in self.debug_modules:
            logging.getLogger("urllib3").setLevel(logging.INFO)

        for name in self.debug_modules:
            logging.getLogger(name).setLevel(logging.DEBUG)

        return _default_logger_name()
