"""An opinionated WSGI server with health, readiness, version and metrics endpoints."""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import secrets
import signal
import socket
import socketserver
import threading
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer

from werkzeug.wrappers import Request

from .accesslog import LOG_FIELDS_ATTR, MiddlewareOption
from .accesslog import middleware as access_middleware
from .accesslog import with_skipper
from .context import HEADER_X_FORWARDED_FOR, HEADER_X_REQUEST_ID, Context, Handler, HTTPError, Middleware
from .serverconfig import Config

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
CheckFunc = Callable[[], None]
Option = Callable[["Server"], None]

_DEFAULT_ENDPOINTS = frozenset({"/version", "/livez", "/readyz", "/metrics"})
_PRIVATE_NETS = [
    ipaddress.ip_network(n) for n in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7")
]
_POLL = 0.05


class InvalidTrustedProxyIPError(ValueError):
    """Raised when a trusted proxy entry is not an IP address."""

    def __init__(self) -> None:
        super().__init__("invalid trusted proxy ip")


class RouteHandler(Protocol):
    def routes(self, group: "_App") -> None: ...


def parse_ip_nets(entries) -> List[IPNetwork]:
    """Parse addresses and CIDR ranges; a bare address is a single-host network."""
    nets: List[IPNetwork] = []
    for entry in entries or []:
        if "/" in entry:
            try:
                nets.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                raise ValueError(f"invalid CIDR address: {entry}") from None
            continue
        try:
            ip = ipaddress.ip_address(entry)
        except ValueError:
            raise InvalidTrustedProxyIPError() from None
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        nets.append(ipaddress.ip_network(f"{ip}/{ip.max_prefixlen}"))
    return nets


def _strip(addr: str) -> str:
    return addr.strip().strip("[]")


def _direct_ip(request: Request) -> str:
    return _strip(request.remote_addr or "")


def _xff_extractor(nets: List[IPNetwork]) -> Callable[[Request], str]:
    def trusted(ip) -> bool:
        if ip.is_loopback or ip.is_link_local or any(ip in n for n in _PRIVATE_NETS):
            return True
        return any(ip in n for n in nets)

    def extract(request: Request) -> str:
        direct = _direct_ip(request)
        xffs = request.headers.getlist(HEADER_X_FORWARDED_FOR)
        if not xffs:
            return direct
        ips = ",".join(xffs).split(",") + [direct]
        for raw in reversed(ips):
            try:
                ip = ipaddress.ip_address(_strip(raw))
            except ValueError:
                return direct
            if not trusted(ip):
                return str(ip)
        return ips[0].strip()

    return extract


def skip_default_endpoints(c: Context) -> bool:
    """Return True for the built-in /version, /livez, /readyz and /metrics paths."""
    return c.request.path in _DEFAULT_ENDPOINTS


def _request_id(next_handler: Handler) -> Handler:
    def handle(c: Context) -> None:
        rid = c.request.headers.get(HEADER_X_REQUEST_ID) or secrets.token_hex(16)
        c.response.headers[HEADER_X_REQUEST_ID] = rid
        next_handler(c)

    return handle


class _App:
    """WSGI application: routes plus a middleware chain."""

    def __init__(self, middleware: List[Middleware], ip_extractor, debug: bool) -> None:
        self._middleware = middleware
        self._ip_extractor = ip_extractor
        self._debug = debug
        self._routes: Dict[Tuple[str, str], Handler] = {}

    def add(self, method: str, path: str, handler: Handler) -> None:
        self._routes[(method.upper(), "/" + path.lstrip("/"))] = handler

    def get(self, path: str, handler: Handler) -> None:
        self.add("GET", path, handler)

    def routes(self) -> List[Tuple[str, str]]:
        return list(self._routes)

    def _route(self, c: Context) -> None:
        handler = self._routes.get((c.request.method, c.request.path))
        if handler is None:
            if any(path == c.request.path for _, path in self._routes):
                raise HTTPError(405)
            raise HTTPError(404)
        handler(c)

    def __call__(self, environ, start_response):
        c = Context(Request(environ), ip_extractor=self._ip_extractor, debug=self._debug)
        chain: Handler = self._route
        for mdw in reversed(self._middleware):
            chain = mdw(chain)
        try:
            chain(c)
        except Exception as exc:
            c.error(exc)
        return c.response(environ, start_response)


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):  # noqa: A002
        pass


class _ThreadingServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


class Server:
    """HTTP server holding handlers, readiness checks and serving settings."""

    def __init__(self, logger: logging.Logger, cfg: Config, version: Any, trusted_proxies) -> None:
        self.debug = cfg.debug
        self.listen = cfg.listen
        self.logger = logger
        self.handlers: List[RouteHandler] = []
        self.middleware: List[Middleware] = list(cfg.middleware)
        self.log_options: List[MiddlewareOption] = []
        self.readiness_checks: Dict[str, CheckFunc] = {}
        self.shutdown_timeout = cfg.shutdown_grace_period
        self.trusted_proxies: List[IPNetwork] = trusted_proxies
        self.version = version
        self._metrics: Counter = Counter()
        self._metrics_lock = threading.Lock()

    def add_handler(self, handler: RouteHandler) -> "Server":
        """Add an object whose ``routes(group)`` registers request handlers."""
        self.handlers.append(handler)
        return self

    def add_readiness_check(self, name: str, check: CheckFunc) -> "Server":
        """Register a check run on /readyz; it signals failure by raising."""
        self.readiness_checks[name] = check
        return self

    def _recover(self, next_handler: Handler) -> Handler:
        def handle(c: Context) -> None:
            try:
                next_handler(c)
            except HTTPError:
                raise
            except Exception:
                self.logger.error("handler raised", exc_info=True)
                raise

        return handle

    def _count(self, next_handler: Handler) -> Handler:
        def handle(c: Context) -> None:
            try:
                next_handler(c)
            finally:
                with self._metrics_lock:
                    self._metrics[(c.request.method, c.response.status_code)] += 1

        return handle

    def _liveness(self, c: Context) -> None:
        c.json(200, {"status": "UP"})

    def _readiness(self, c: Context) -> None:
        failed = False
        status: Dict[str, str] = {}
        for name, check in self.readiness_checks.items():
            try:
                check()
            except Exception as exc:
                self.logger.error(
                    "readiness check failed",
                    extra={LOG_FIELDS_ATTR: {"name": name, "error": str(exc)}},
                )
                failed = True
                status[name] = str(exc)
            else:
                status[name] = "OK"
        c.json(503 if failed else 200, status)

    def _version(self, c: Context) -> None:
        data = self.version
        if dataclasses.is_dataclass(data) and not isinstance(data, type):
            data = dataclasses.asdict(data)
        c.json(200, data)

    def _metrics_handler(self, c: Context) -> None:
        with self._metrics_lock:
            items = sorted(self._metrics.items())
        lines = ["# TYPE requests_total counter"]
        lines += [f'requests_total{{code="{code}",method="{m}"}} {n}' for (m, code), n in items]
        c.string(200, "\n".join(lines) + "\n")

    def handler(self) -> _App:
        """Build the WSGI application."""
        extractor = _xff_extractor(self.trusted_proxies) if self.trusted_proxies else _direct_ip
        chain = [
            _request_id,
            access_middleware(self.logger, *self.log_options),
            self._recover,
            self._count,
            *self.middleware,
        ]
        app = _App(chain, extractor, self.debug)
        app.get("/metrics", self._metrics_handler)
        if self.version is not None:
            app.get("/version", self._version)
        app.get("/livez", self._liveness)
        app.get("/readyz", self._readiness)
        for h in self.handlers:
            h.routes(app)
        return app

    def serve(self, sock: socket.socket) -> None:
        """Serve on ``sock`` until SIGINT/SIGTERM; see serve_with_context."""
        self.serve_with_context(sock, None)

    def serve_with_context(self, sock: socket.socket, stop: Optional[threading.Event]) -> None:
        """Serve on ``sock`` until a signal, ``stop`` is set or serving fails.

        In-flight requests get the shutdown grace period; TimeoutError is
        raised when they do not finish in time.
        """
        host, port = sock.getsockname()[:2]
        self.logger.info("starting server", extra={LOG_FIELDS_ATTR: {"address": f"{host}:{port}"}})

        app = self.handler()
        active = 0
        idle = threading.Condition()

        def counted(environ, start_response):
            nonlocal active
            with idle:
                active += 1
            try:
                return app(environ, start_response)
            finally:
                with idle:
                    active -= 1
                    idle.notify_all()

        srv = _ThreadingServer((host, port), _QuietHandler, bind_and_activate=False)
        srv.socket = sock
        srv.server_address = sock.getsockname()
        srv.server_name = socket.getfqdn(host)
        srv.server_port = port
        srv.setup_environ()
        srv.set_app(counted)

        errors: List[BaseException] = []
        done = threading.Event()

        def run() -> None:
            try:
                srv.serve_forever(poll_interval=_POLL)
            except BaseException as exc:  # reported to the caller
                errors.append(exc)
            finally:
                done.set()

        quit_event = threading.Event()
        previous = {}
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, lambda signum, _f: quit_event.set())

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        try:
            while True:
                if done.is_set():
                    if errors:
                        raise errors[0]
                    return
                if quit_event.is_set():
                    self.logger.warning("signal received, server shutting down")
                    break
                if stop is not None and stop.is_set():
                    self.logger.warning("context done, server shutting down")
                    break
                done.wait(_POLL)

            srv.shutdown()
            thread.join()
            with idle:
                finished = idle.wait_for(lambda: active == 0, timeout=self.shutdown_timeout)
            if not finished:
                self.logger.error("server shutdown timed out")
                raise TimeoutError("server shutdown: context deadline exceeded")
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            srv.server_close()

    def run(self) -> None:
        """Listen on the configured address and serve."""
        self.run_with_context(None)

    def run_with_context(self, stop: Optional[threading.Event]) -> None:
        """Listen on the configured address and serve until stopped."""
        host, _, port = self.listen.rpartition(":")
        host = host.strip("[]")
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.create_server((host, int(port or 0)), family=family)
        with sock:
            self.serve_with_context(sock, stop)


def new_server(logger: logging.Logger, cfg: Config, version: Any, *options: Option) -> Server:
    """Create a Server from ``cfg`` with defaults applied and options run."""
    cfg = cfg.with_defaults()
    nets = parse_ip_nets(cfg.trusted_proxies)
    srv = Server(logger.getChild("server"), cfg, version, nets)
    for option in options:
        option(srv)
    return srv


def with_logging_skipper(skipper: Callable[[Context], bool]) -> Option:
    """Set which requests the request log skips."""

    def option(srv: Server) -> None:
        srv.log_options.append(with_skipper(skipper))

    return option