"""Per-request handler context shared by middleware and handlers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from werkzeug.http import HTTP_STATUS_CODES
from werkzeug.wrappers import Request, Response

ACTOR_KEY = "actor"
"""Context key the authenticated actor is stored under."""

ACTOR_CTX_KEY = "svckit.actor"
"""WSGI environ key the authenticated actor is stored under."""

HEADER_X_REQUEST_ID = "X-Request-Id"
HEADER_X_FORWARDED_FOR = "X-Forwarded-For"
HEADER_X_REAL_IP = "X-Real-Ip"

Handler = Callable[["Context"], None]
Middleware = Callable[[Handler], Handler]


class HTTPError(Exception):
    """An error that carries an HTTP status code and a response message."""

    def __init__(
        self,
        code: int,
        message: Any = None,
        internal: Optional[BaseException] = None,
    ) -> None:
        if message is None:
            message = HTTP_STATUS_CODES.get(code, "")
        super().__init__(code, message)
        self.code = code
        self.message = message
        self.internal = internal

    def __str__(self) -> str:
        text = f"code={self.code}, message={self.message}"
        if self.internal is not None:
            text += f", internal={self.internal}"
        return text

    def with_internal(self, err: BaseException) -> "HTTPError":
        """Return a copy of this error carrying ``err`` as its cause."""
        return HTTPError(self.code, self.message, err)

    def set_internal(self, err: BaseException) -> "HTTPError":
        """Attach ``err`` as the cause and return this error."""
        self.internal = err
        return self


def _strip_brackets(value: str) -> str:
    value = value.strip()
    if value.startswith("["):
        value = value[1:]
    if value.endswith("]"):
        value = value[:-1]
    return value


def _encode_json(data: Any) -> bytes:
    text = json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)
    return (text + "\n").encode("utf-8")


@dataclass
class Context:
    """State of one request as it passes through middleware and a handler."""

    request: Request
    response: Response = field(default_factory=Response)
    ip_extractor: Optional[Callable[[Request], str]] = None
    debug: bool = False
    committed: bool = False
    _values: Dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def get(self, key: str) -> Any:
        """Return the value stored under ``key``, or None."""
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` for the rest of the request."""
        self._values[key] = value

    def real_ip(self) -> str:
        """Return the client address, honouring proxy headers."""
        if self.ip_extractor is not None:
            return self.ip_extractor(self.request)

        forwarded = self.request.headers.get(HEADER_X_FORWARDED_FOR)
        if forwarded:
            return _strip_brackets(forwarded.split(",", 1)[0])

        real = self.request.headers.get(HEADER_X_REAL_IP)
        if real:
            return _strip_brackets(real)

        return _strip_brackets(self.request.remote_addr or "")

    def _write(self, status: int, body: bytes, content_type: Optional[str]) -> None:
        self.response.status_code = status
        self.response.set_data(body)
        if content_type is not None:
            self.response.headers["Content-Type"] = content_type
        self.committed = True

    def string(self, status: int, text: str) -> None:
        """Send a plain-text response."""
        self._write(status, text.encode("utf-8"), "text/plain; charset=UTF-8")

    def json(self, status: int, data: Any) -> None:
        """Send a JSON response followed by a newline."""
        self._write(status, _encode_json(data), "application/json")

    def no_content(self, status: int) -> None:
        """Send a response with a status code and no body."""
        self._write(status, b"", None)

    def error(self, exc: BaseException) -> None:
        """Write an error response for ``exc`` unless a response was already sent."""
        if self.committed:
            return

        he = exc if isinstance(exc, HTTPError) else HTTPError(500)
        message = he.message
        if isinstance(message, str):
            body: Any = {"message": message}
            if self.debug:
                body["error"] = str(exc)
        elif isinstance(message, BaseException):
            body = {"message": str(message)}
        else:
            body = message

        if self.request.method == "HEAD":
            self.no_content(he.code)
        else:
            self.json(he.code, body)


def actor(c: Context) -> str:
    """Return the actor stored in the context, or an empty string."""
    value = c.get(ACTOR_KEY)
    return value if isinstance(value, str) else ""