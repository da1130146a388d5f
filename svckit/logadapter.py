"""A web-framework logger interface backed by the standard logging module."""

from __future__ import annotations

import logging
import sys
from enum import IntEnum
from typing import Any, Mapping, Optional, TextIO

from .accesslog import LOG_FIELDS_ATTR, MiddlewareOption
from .accesslog import middleware as _access_middleware
from .context import Middleware


class Level(IntEnum):
    """Log levels exposed by the adapter."""

    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4
    OFF = 5


def _operand(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "<nil>"
    return str(value)


def _sprint(args: tuple) -> str:
    """Join operands, adding a space between two adjacent non-string operands."""
    parts = []
    previous_is_str = True
    for index, arg in enumerate(args):
        is_str = isinstance(arg, str)
        if index and not is_str and not previous_is_str:
            parts.append(" ")
        parts.append(arg if is_str else _operand(arg))
        previous_is_str = is_str
    return "".join(parts)


def _sprintf(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


def _flatten(values: Mapping[str, Any]) -> tuple:
    return tuple(item for pair in values.items() for item in pair)


class LogAdapter:
    """Logger with print/debug/info/warn/error/fatal/panic families.

    Format strings use ``%`` formatting. The ``*j`` variants log the mapping
    as structured fields on the record's ``fields`` attribute.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger
        self.requested_output: Optional[TextIO] = None
        self.requested_level: Optional[Level] = None
        self.header = ""

    def _emit(self, level: int, message: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        extra = None if fields is None else {LOG_FIELDS_ATTR: dict(fields)}
        self.logger.log(level, "%s", message, extra=extra)

    def output(self) -> TextIO:
        """Return standard error; the handlers' streams are not exposed."""
        return sys.stderr

    def set_output(self, stream: TextIO) -> None:
        """Record the requested stream; output stays with the logger's handlers."""
        self.requested_output = stream

    def prefix(self) -> str:
        """Return an empty prefix."""
        return ""

    def set_prefix(self, prefix: str) -> None:
        """Log through a child logger named ``prefix`` from now on."""
        self.logger = self.logger.getChild(prefix)

    def level(self) -> Level:
        """Return the adapter level matching the logger's effective level."""
        effective = self.logger.getEffectiveLevel()
        if effective == logging.DEBUG:
            return Level.DEBUG
        if effective == logging.INFO:
            return Level.INFO
        if effective == logging.WARNING:
            return Level.WARN
        return Level.ERROR

    def set_level(self, level: Level) -> None:
        """Record the requested level; the logger's own level is left unchanged."""
        self.requested_level = Level(level)

    def set_header(self, header: str) -> None:
        """Record the header; it does not affect how records are formatted."""
        self.header = header

    def print(self, *args: Any) -> None:
        self._emit(logging.INFO, _sprint(args))

    def printf(self, fmt: str, *args: Any) -> None:
        self._emit(logging.INFO, _sprintf(fmt, args))

    def printj(self, values: Mapping[str, Any]) -> None:
        self._emit(logging.INFO, _sprint(_flatten(values)))

    def debug(self, *args: Any) -> None:
        self._emit(logging.DEBUG, _sprint(args))

    def debugf(self, fmt: str, *args: Any) -> None:
        self._emit(logging.DEBUG, _sprintf(fmt, args))

    def debugj(self, values: Mapping[str, Any]) -> None:
        self._emit(logging.DEBUG, "json", values)

    def info(self, *args: Any) -> None:
        self._emit(logging.INFO, _sprint(args))

    def infof(self, fmt: str, *args: Any) -> None:
        self._emit(logging.INFO, _sprintf(fmt, args))

    def infoj(self, values: Mapping[str, Any]) -> None:
        self._emit(logging.INFO, "json", values)

    def warn(self, *args: Any) -> None:
        self._emit(logging.WARNING, _sprint(args))

    def warnf(self, fmt: str, *args: Any) -> None:
        self._emit(logging.WARNING, _sprintf(fmt, args))

    def warnj(self, values: Mapping[str, Any]) -> None:
        self._emit(logging.WARNING, "json", values)

    def error(self, *args: Any) -> None:
        self._emit(logging.ERROR, _sprint(args))

    def errorf(self, fmt: str, *args: Any) -> None:
        self._emit(logging.ERROR, _sprintf(fmt, args))

    def errorj(self, values: Mapping[str, Any]) -> None:
        self._emit(logging.ERROR, "json", values)

    def fatal(self, *args: Any) -> None:
        """Log at critical level, then exit with status 1."""
        self._emit(logging.CRITICAL, _sprint(args))
        raise SystemExit(1)

    def fatalf(self, fmt: str, *args: Any) -> None:
        """Log at critical level, then exit with status 1."""
        self._emit(logging.CRITICAL, _sprintf(fmt, args))
        raise SystemExit(1)

    def fatalj(self, values: Mapping[str, Any]) -> None:
        """Log at critical level, then exit with status 1."""
        self._emit(logging.CRITICAL, "json", values)
        raise SystemExit(1)

    def panic(self, *args: Any) -> None:
        """Log at critical level, then raise RuntimeError with the message."""
        message = _sprint(args)
        self._emit(logging.CRITICAL, message)
        raise RuntimeError(message)

    def panicf(self, fmt: str, *args: Any) -> None:
        """Log at critical level, then raise RuntimeError with the message."""
        message = _sprintf(fmt, args)
        self._emit(logging.CRITICAL, message)
        raise RuntimeError(message)

    def panicj(self, values: Mapping[str, Any]) -> None:
        """Log at critical level, then raise RuntimeError."""
        self._emit(logging.CRITICAL, "json", values)
        raise RuntimeError("json")

    def middleware(self, *options: MiddlewareOption) -> Middleware:
        """Return request logging middleware writing to this adapter's logger."""
        return _access_middleware(self.logger, *options)


def new_logger(logger: logging.Logger) -> LogAdapter:
    """Wrap ``logger`` in a LogAdapter."""
    return LogAdapter(logger)