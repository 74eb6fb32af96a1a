"""
Logging setup shared by the binding core and the proxy front-end.

Adds a ``TRACE`` level (5) below ``DEBUG``.  Cookie plaintexts, binding
values and raw header lines are only ever emitted at ``TRACE`` so that a
``DEBUG`` log can be shared without leaking session material.

Import this module before calling ``logging.getLogger`` anywhere in the
package: the logger class has to be installed before the first logger
for a given name is created.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    COLORS: dict[int, str] = {
        TRACE: "\033[0;37m",
        logging.DEBUG: "\033[0m",
        logging.INFO: "\033[34m",
        logging.WARNING: "\033[1;33m",
        logging.ERROR: "\033[1;31m",
        logging.CRITICAL: "\033[1;37;41m",
    }

    def format(self, record: logging.LogRecord) -> str:
        c = self.COLORS.get(record.levelno, "\033[0m")
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}\033[0m"
        record.levelname = f"{c}{record.levelname:<8}\033[0m"
        return super().format(record)


FORMAT = "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"


def get_logger(name: str) -> CustomLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def parse_level(level: str | int) -> int:
    """Turn ``"trace"``, ``"INFO"``, ``"10"`` or ``10`` into a level number."""
    if isinstance(level, int):
        return level
    text = level.strip().upper()
    if text.isdigit():
        return int(text)
    value = logging.getLevelName(text)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(level: str | int = logging.INFO, colored: bool | None = None) -> None:
    """Attach a single stream handler to the package loggers.

    Calling it again replaces the previous handler instead of stacking a
    second one, so the CLI can re-run it after reading the config file.
    """
    numeric = parse_level(level)
    if colored is None:
        colored = sys.stderr.isatty()

    handler = logging.StreamHandler()
    handler.setLevel(numeric)
    if colored:
        handler.setFormatter(ColoredFormatter(FORMAT))
    else:
        handler.setFormatter(_PlainFormatter(FORMAT))

    for name in ("session_binding", "binding_proxy"):
        lg = logging.getLogger(name)
        for old in [h for h in lg.handlers if getattr(h, "_session_binding", False)]:
            lg.removeHandler(old)
        handler._session_binding = True  # type: ignore[attr-defined]
        lg.addHandler(handler)
        lg.setLevel(numeric)
        lg.propagate = False


class _PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        return super().format(record)
