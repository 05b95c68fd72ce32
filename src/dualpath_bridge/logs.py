from __future__ import annotations

import logging
import sys

from colorama import Fore, Style
from colorama import init as colorama_init

_LEVEL_TAGS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}

_TAG_COLORS = {
    "DEBUG": Fore.CYAN,
    "WARN": Fore.YELLOW,
    "ERROR": Fore.RED,
    "SEND": Fore.GREEN,
    "RECV": Fore.MAGENTA,
    "HEX": Fore.BLUE,
    "ASCII": Fore.BLUE,
}


class ConsoleFormatter(logging.Formatter):
    """``[TAG] message``, where TAG is the record's ``tag`` extra or its level."""

    def __init__(self, color: bool = False) -> None:
        super().__init__("%(message)s")
        self.color = color

    def tag_for(self, record: logging.LogRecord) -> str:
        return getattr(record, "tag", None) or _LEVEL_TAGS.get(record.levelno, record.levelname)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        tag = self.tag_for(record)
        prefix = f"[{tag}]"
        if self.color and tag in _TAG_COLORS:
            prefix = _TAG_COLORS[tag] + prefix + Style.RESET_ALL
        return f"{prefix} {message}"


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def setup_logging(verbose: bool = False, color: bool | None = None) -> None:
    """Send INFO/DEBUG to stdout and WARN/ERROR to stderr, both in console style."""
    if color is None:
        color = sys.stdout.isatty()
    if color:
        colorama_init()

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(_BelowWarning())
    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)
    for handler in (out, err):
        handler.setFormatter(ConsoleFormatter(color))

    root = logging.getLogger("dualpath_bridge")
    root.handlers[:] = [out, err]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
