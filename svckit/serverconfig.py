"""Settings for the HTTP server and the command-line flags that fill them."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field, replace
from typing import List

from .auth import _duration
from .context import Middleware

DEFAULT_LISTEN = ":8080"
DEFAULT_SERVER_SHUTDOWN_TIMEOUT = 5.0
"""Seconds given to in-flight requests before the server is stopped."""


@dataclass(frozen=True)
class Config:
    """Server settings; the ``with_*`` methods return updated copies."""

    debug: bool = False
    listen: str = ""
    shutdown_grace_period: float = 0.0
    trusted_proxies: List[str] = field(default_factory=list)
    middleware: List[Middleware] = field(default_factory=list)

    def with_defaults(self) -> "Config":
        """Return a copy with the listen address and grace period defaulted."""
        cfg = self
        if not cfg.listen:
            cfg = replace(cfg, listen=DEFAULT_LISTEN)
        if cfg.shutdown_grace_period <= 0:
            cfg = replace(cfg, shutdown_grace_period=DEFAULT_SERVER_SHUTDOWN_TIMEOUT)
        return cfg

    def with_debug(self, debug: bool) -> "Config":
        return replace(self, debug=debug)

    def with_listen(self, listen: str) -> "Config":
        return replace(self, listen=listen)

    def with_shutdown_grace_period(self, period: float) -> "Config":
        return replace(self, shutdown_grace_period=period)

    def with_trusted_proxies(self, *trust: str) -> "Config":
        return replace(self, trusted_proxies=[*self.trusted_proxies, *trust])

    def with_middleware(self, *mdw: Middleware) -> "Config":
        return replace(self, middleware=[*self.middleware, *mdw])


def _string_slice(text: str) -> List[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def add_flags(parser: argparse.ArgumentParser, default_listen: str) -> None:
    """Add the server flags to ``parser``."""
    parser.add_argument(
        "--debug", dest="server_debug", action="store_true", default=False,
        help="enable server debug",
    )
    parser.add_argument(
        "--listen", dest="server_listen", default=default_listen, help="address to listen on"
    )
    parser.add_argument(
        "--shutdown-grace-period",
        dest="server_shutdown_grace_period",
        type=_duration,
        default=DEFAULT_SERVER_SHUTDOWN_TIMEOUT,
        help="server shutdown grace period",
    )
    parser.add_argument(
        "--trusted-proxies",
        dest="server_trusted_proxies",
        type=_string_slice,
        action="append",
        default=None,
        help="server trusted proxies",
    )


def config_from_args(args: argparse.Namespace) -> Config:
    """Build a Config from parsed flags."""
    proxies = [p for group in (args.server_trusted_proxies or []) for p in group]
    return Config(
        debug=bool(args.server_debug),
        listen=args.server_listen,
        shutdown_grace_period=float(args.server_shutdown_grace_period),
        trusted_proxies=proxies,
    )