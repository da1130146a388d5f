"""Request logging middleware."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .context import HEADER_X_REQUEST_ID, Context, Handler, HTTPError, Middleware, actor

LOG_FIELDS_ATTR = "fields"
"""Name of the log record attribute that holds structured fields."""

Skipper = Callable[[Context], bool]
FieldsHook = Callable[[Context], Mapping[str, Any]]


class LoggerRequiredError(ValueError):
    """Raised when the middleware is configured without a logger."""

    def __init__(self) -> None:
        super().__init__("logger required")


def _format_fraction(value: int, unit: int) -> str:
    whole, frac = divmod(value, unit)
    if not frac:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}." + f"{frac:0{digits}d}".rstrip("0")


def _format_duration(ns: int) -> str:
    """Render nanoseconds the way durations are conventionally printed, e.g. ``20.5ms``."""
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < 1_000:
        return f"{sign}{ns}ns"
    if ns < 1_000_000:
        return sign + _format_fraction(ns, 1_000) + "µs"
    if ns < 1_000_000_000:
        return sign + _format_fraction(ns, 1_000_000) + "ms"

    hours, rest = divmod(ns, 3_600_000_000_000)
    minutes, rest = divmod(rest, 60_000_000_000)
    text = sign
    if hours:
        text += f"{hours}h"
    if hours or minutes:
        text += f"{minutes}m"
    return text + _format_fraction(rest, 1_000_000_000) + "s"


@dataclass
class MiddlewareConfig:
    """Settings for the request logging middleware.

    ``custom_time_format`` is a ``strftime`` format applied to the UTC end
    time; when empty the time is logged as Unix seconds.
    """

    logger: Optional[logging.Logger] = None
    skipper: Optional[Skipper] = None
    custom_time_format: str = ""
    extra_fields: Dict[str, Any] = field(default_factory=dict)
    extra_fields_hook: Optional[FieldsHook] = None

    def to_middleware(self) -> Middleware:
        """Build the middleware; raises LoggerRequiredError without a logger."""
        if self.logger is None:
            raise LoggerRequiredError()

        logger = self.logger
        skipper = self.skipper
        extra_fields = dict(self.extra_fields)
        hook = self.extra_fields_hook
        time_format = self.custom_time_format

        def wrap(next_handler: Handler) -> Handler:
            def handle(c: Context) -> None:
                if skipper is not None and skipper(c):
                    next_handler(c)
                    return

                start = time.perf_counter_ns()
                error: Optional[Exception] = None
                try:
                    next_handler(c)
                except Exception as exc:
                    error = exc
                    c.error(exc)
                elapsed = time.perf_counter_ns() - start
                end = datetime.now(timezone.utc)

                fields: Dict[str, Any] = dict(extra_fields)
                if hook is not None:
                    fields.update(hook(c))

                request = c.request
                response = c.response
                fields.update(
                    status=response.status_code,
                    method=request.method,
                    path=request.path,
                    query=request.query_string.decode("latin-1"),
                    remote_addr=c.real_ip(),
                    user_agent=request.headers.get("User-Agent", ""),
                    content_length=request.content_length or 0,
                    duration=float(elapsed // 1_000_000),
                    latency=_format_duration(elapsed),
                    host=request.host,
                    response_bytes=len(response.get_data()) if c.committed else 0,
                )

                request_id = request.headers.get(HEADER_X_REQUEST_ID) or response.headers.get(
                    HEADER_X_REQUEST_ID, ""
                )
                fields["request_id"] = request_id
                fields["actor"] = actor(c)

                if error is not None:
                    fields["error"] = str(error)
                    if isinstance(error, HTTPError):
                        fields["error_code"] = error.code
                        fields["error_message"] = error.message
                        if error.internal is not None:
                            fields["error_internal"] = str(error.internal)

                if time_format:
                    fields["time"] = end.strftime(time_format)
                else:
                    fields["time"] = int(end.timestamp())

                extra = {LOG_FIELDS_ATTR: fields}
                if error is not None:
                    logger.error("%s", request.path, extra=extra)
                    raise error
                logger.info("%s", request.path, extra=extra)

            return handle

        return wrap


MiddlewareOption = Callable[[MiddlewareConfig], None]


def middleware_with_config(config: MiddlewareConfig) -> Middleware:
    """Build the middleware from ``config``, raising on an invalid config."""
    return config.to_middleware()


def middleware(logger: logging.Logger, *options: MiddlewareOption) -> Middleware:
    """Build the middleware for ``logger`` with the given options applied."""
    config = MiddlewareConfig(logger=logger)
    for option in options:
        option(config)
    return middleware_with_config(config)


def with_skipper(skipper: Skipper) -> MiddlewareOption:
    """Set the function deciding which requests are not logged."""

    def option(config: MiddlewareConfig) -> None:
        config.skipper = skipper

    return option


def with_custom_time_format(time_format: str) -> MiddlewareOption:
    """Set the ``strftime`` format for the logged time."""

    def option(config: MiddlewareConfig) -> None:
        config.custom_time_format = time_format

    return option


def with_extra_fields(fields: Mapping[str, Any]) -> MiddlewareOption:
    """Add static fields to every log entry."""

    def option(config: MiddlewareConfig) -> None:
        config.extra_fields.update(fields)

    return option


def with_extra_fields_hook(hook: FieldsHook) -> MiddlewareOption:
    """Set a function returning per-request fields."""

    def option(config: MiddlewareConfig) -> None:
        config.extra_fields_hook = hook

    return option