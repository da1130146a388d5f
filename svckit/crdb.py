"""Connection settings for a CockroachDB (PostgreSQL wire) database."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional
from urllib.parse import quote

DEFAULT_HOST = "localhost:26257"
DEFAULT_MAX_OPEN_CONNS = 25
DEFAULT_MAX_IDLE_CONNS = 25
DEFAULT_MAX_CONN_LIFETIME = timedelta(minutes=5)

_ENV_PREFIX = "CRDB_"

_USERINFO_SAFE = "-_.~$&+,;="
_PATH_SAFE = "-_.~$&+,/:;=@"

_DURATION_RE = re.compile(r"[+-]?(?:(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|μs|ms|s|m|h))+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_MICROSECONDS = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}


@dataclass
class ConnectionsConfig:
    """Connection pool limits."""

    max_open: int = DEFAULT_MAX_OPEN_CONNS
    max_idle: int = DEFAULT_MAX_IDLE_CONNS
    max_lifetime: timedelta = DEFAULT_MAX_CONN_LIFETIME


@dataclass
class Config:
    """Settings used to open a database connection."""

    name: str = ""
    host: str = ""
    user: str = ""
    password: str = ""
    params: str = ""
    uri: str = ""
    connections: ConnectionsConfig = field(default_factory=ConnectionsConfig)

    def get_uri(self) -> str:
        """Return the explicit URI, or one built from the other settings."""
        if self.uri:
            return self.uri

        userinfo = (
            quote(self.user, safe=_USERINFO_SAFE)
            + ":"
            + quote(self.password, safe=_USERINFO_SAFE)
        )
        result = f"postgresql://{userinfo}@{self.host}"

        if self.name:
            if not self.name.startswith("/") and self.host:
                result += "/"
            result += quote(self.name, safe=_PATH_SAFE)

        if self.params:
            result += "?" + self.params

        return result


def _parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``5m`` or ``1h30m``; bare numbers are nanoseconds.

    Unparseable input yields a zero duration.
    """
    value = text.strip()
    if not any(ch in value for ch in "nsuµμmh"):
        value += "ns"
    if not _DURATION_RE.fullmatch(value):
        return timedelta(0)

    sign = -1.0 if value.startswith("-") else 1.0
    micros = sum(
        float(number) * _UNIT_MICROSECONDS[unit]
        for number, unit in _DURATION_PART_RE.findall(value)
    )
    return timedelta(microseconds=sign * micros)


def _parse_int(text: str) -> int:
    try:
        return int(text.strip(), 0)
    except ValueError:
        return 0


def config_from_env(db_name: str, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build a Config from ``CRDB_*`` environment variables, applying defaults."""
    env = os.environ if environ is None else environ

    def lookup(setting: str) -> Optional[str]:
        value = env.get(_ENV_PREFIX + setting.upper())
        return value if value else None

    def text(setting: str) -> str:
        return lookup(setting) or ""

    max_open = lookup("connections_max_open")
    max_idle = lookup("connections_max_idle")
    max_lifetime = lookup("connections_max_lifetime")
    password = text("password")

    return Config(
        name=db_name,
        host=lookup("host") or DEFAULT_HOST,
        user=text("user"),
        password=password,
        params=text("params"),
        uri=text("uri"),
        connections=ConnectionsConfig(
            max_open=DEFAULT_MAX_OPEN_CONNS if max_open is None else _parse_int(max_open),
            max_idle=DEFAULT_MAX_IDLE_CONNS if max_idle is None else _parse_int(max_idle),
            max_lifetime=(
                DEFAULT_MAX_CONN_LIFETIME
                if max_lifetime is None
                else _parse_duration(max_lifetime)
            ),
        ),
    )