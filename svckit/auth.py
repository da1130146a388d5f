"""JWT authentication middleware that validates tokens against an issuer's JWKS."""

from __future__ import annotations

import argparse
import json
import logging
import re
import threading
import time
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import jwt
from jwt.exceptions import InvalidKeyError, PyJWKError

from .accesslog import LOG_FIELDS_ATTR
from .context import (
    ACTOR_CTX_KEY,
    ACTOR_KEY,
    Context,
    Handler,
    HTTPError,
    Middleware,
)

DEFAULT_REFRESH_INTERVAL = 3600.0
"""Seconds between refreshes of the key set."""

DEFAULT_HTTP_TIMEOUT = 10.0
"""Seconds allowed for one fetch of the key set."""

DEFAULT_RATE_LIMIT_WAIT_MAX = 60.0
"""Longest wait, in seconds, for a rate-limited refresh on an unknown key id."""

DEFAULT_OIDC_JWKS_REMOTE_TIMEOUT = 5.0
"""Default of the ``--oidc-jwks-remote-timeout`` flag, in seconds."""

_DISCOVERY_TIMEOUT = 5.0
_MISS_REFRESH_PERIOD = 300.0
_ALLOWED_KEY_USES = ("", "sig")

KeyFunc = Callable[[Mapping[str, Any]], Any]
Skipper = Callable[[Context], bool]
RefreshErrorHandler = Callable[[Exception], None]


class JWKSURIMissingError(LookupError):
    """Raised when the issuer's OIDC configuration has no ``jwks_uri``."""

    def __init__(self) -> None:
        super().__init__("jwks_uri missing from oidc provider")


class _ClaimError(ValueError):
    """A claim is missing the expected value or has the wrong type."""


class _KeyLookupError(LookupError):
    """No usable key was found for a token."""


@dataclass
class AuthConfig:
    """Issuer and audience expectations plus key fetching limits (seconds)."""

    issuer: str = ""
    audience: str = ""
    refresh_timeout: float = 0.0
    rate_limit_wait_max: float = 0.0


@dataclass
class JWTConfig:
    """How tokens are found and verified.

    ``key_func`` receives the token header and returns the verification key;
    when it is unset the key is looked up in the issuer's JWKS.
    """

    key_func: Optional[KeyFunc] = None
    skipper: Optional[Skipper] = None
    context_key: str = "user"
    header: str = "Authorization"
    auth_scheme: str = "Bearer"


@dataclass
class KeyStorageOptions:
    """Settings for fetching and refreshing the JWKS (durations in seconds)."""

    refresh_interval: float = 0.0
    http_timeout: float = 0.0
    refresh_error_handler: Optional[RefreshErrorHandler] = None


@dataclass
class _Token:
    raw: str
    header: Dict[str, Any]
    claims: Dict[str, Any]
    valid: bool = True


@dataclass
class _KeyEntry:
    key: Any
    alg: str = ""


def _nop_logger() -> logging.Logger:
    logger = logging.getLogger("svckit.auth.nop")
    logger.disabled = True
    logger.propagate = False
    return logger


def _fetch_json(url: str, timeout: float) -> Any:
    request = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(request, timeout=timeout) as response:
        return json.load(response)


class _JWKSKeyStore:
    """Keys of a remote JWKS, refreshed periodically and on unknown key ids."""

    def __init__(
        self,
        uri: str,
        options: KeyStorageOptions,
        rate_limit_wait_max: float,
    ) -> None:
        self._uri = uri
        self._options = options
        self._rate_limit_wait_max = rate_limit_wait_max
        self._lock = threading.Lock()
        self._keys: Dict[str, _KeyEntry] = {}
        self._fetched_at = 0.0
        self._next_miss_refresh = 0.0
        self._refresh()

    def _refresh(self) -> None:
        document = _fetch_json(self._uri, self._options.http_timeout)
        if not isinstance(document, dict):
            raise ValueError("jwks document is not a JSON object")

        keys: Dict[str, _KeyEntry] = {}
        for entry in document.get("keys") or []:
            if not isinstance(entry, dict):
                continue
            kid = entry.get("kid")
            if not isinstance(kid, str) or not kid:
                continue
            if entry.get("use", "") not in _ALLOWED_KEY_USES:
                continue
            try:
                parsed = jwt.PyJWK(entry)
            except (PyJWKError, InvalidKeyError, KeyError, ValueError, TypeError):
                continue
            alg = entry.get("alg")
            keys[kid] = _KeyEntry(parsed.key, alg if isinstance(alg, str) else "")

        self._keys = keys
        self._fetched_at = time.monotonic()

    def _refresh_if_stale(self) -> None:
        if time.monotonic() - self._fetched_at < self._options.refresh_interval:
            return
        try:
            self._refresh()
        except Exception as exc:  # keep serving the keys already known
            self._fetched_at = time.monotonic()
            if self._options.refresh_error_handler is not None:
                self._options.refresh_error_handler(exc)

    def _refresh_on_miss(self, kid: str) -> _KeyEntry:
        wait = self._next_miss_refresh - time.monotonic()
        if wait > self._rate_limit_wait_max:
            raise _KeyLookupError(f"key id {kid!r} not found and refresh is rate limited")
        if wait > 0:
            time.sleep(wait)
        self._next_miss_refresh = time.monotonic() + _MISS_REFRESH_PERIOD
        try:
            self._refresh()
        except Exception as exc:
            raise _KeyLookupError(f"failed refreshing jwks: {exc}") from exc

        entry = self._keys.get(kid)
        if entry is None:
            raise _KeyLookupError(f"key id {kid!r} not found in jwks")
        return entry

    def key_func(self, header: Mapping[str, Any]) -> Any:
        """Return the key for the token header's ``kid``."""
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise _KeyLookupError("could not find kid in JWT header")
        alg = header.get("alg")
        if not isinstance(alg, str) or not alg:
            raise _KeyLookupError("could not find alg in JWT header")

        with self._lock:
            self._refresh_if_stale()
            entry = self._keys.get(kid)
            if entry is None:
                entry = self._refresh_on_miss(kid)

        if entry.alg and entry.alg != alg:
            raise _KeyLookupError(
                f"JWT header alg {alg!r} does not match key alg {entry.alg!r}"
            )
        return entry.key


def _claim_audiences(claims: Mapping[str, Any]) -> List[str]:
    value = claims.get("aud")
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise _ClaimError("aud is invalid")


def _claim_issuer(claims: Mapping[str, Any]) -> str:
    value = claims.get("iss")
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    raise _ClaimError("iss is invalid")


def _extract_token(request: Any, config: JWTConfig) -> str:
    values = request.headers.getlist(config.header)
    if not values:
        raise HTTPError(
            400, "missing or malformed jwt", _ClaimError("missing value in request header")
        )
    prefix = config.auth_scheme + " " if config.auth_scheme else ""
    for value in values:
        if not prefix:
            if value:
                return value
            continue
        if len(value) > len(prefix) and value[: len(prefix)].lower() == prefix.lower():
            return value[len(prefix):]
    raise HTTPError(
        400, "missing or malformed jwt", _ClaimError("invalid value in request header")
    )


def _parse_token(raw: str, key_func: KeyFunc) -> _Token:
    header = jwt.get_unverified_header(raw)
    alg = header.get("alg")
    if not isinstance(alg, str) or not alg or alg.lower() == "none":
        raise jwt.InvalidAlgorithmError("token is unverifiable: signing method none")
    key = key_func(header)
    claims = jwt.decode(
        raw,
        key=key,
        algorithms=[alg],
        options={
            "verify_signature": True,
            "verify_aud": False,
            "verify_iss": False,
            "verify_iat": False,
        },
    )
    return _Token(raw=raw, header=dict(header), claims=claims)


class Auth:
    """JWT authentication as request middleware."""

    def __init__(self) -> None:
        self.logger: Optional[logging.Logger] = None
        self.jwt_config = JWTConfig()
        self.key_storage_options = KeyStorageOptions()
        self._issuer = ""
        self._audience = ""
        self._middleware: Optional[Middleware] = None

    def _setup(self, config: AuthConfig, options: Tuple["Option", ...]) -> None:
        for option in options:
            option(self)

        if self.logger is None:
            self.logger = _nop_logger()
        logger = self.logger

        if config.refresh_timeout > 0:
            self.key_storage_options.http_timeout = config.refresh_timeout

        rate_limit_wait_max = config.rate_limit_wait_max or DEFAULT_RATE_LIMIT_WAIT_MAX

        self._issuer = config.issuer
        self._audience = config.audience

        if self.jwt_config.key_func is None:
            uri = jwks_uri(self._issuer)
            storage_options = self.key_storage_options

            if storage_options.refresh_error_handler is None:

                def log_refresh_error(err: Exception) -> None:
                    logger.error(
                        "error refreshing jwks", extra={LOG_FIELDS_ATTR: {"error": str(err)}}
                    )

                storage_options.refresh_error_handler = log_refresh_error

            if storage_options.refresh_interval == 0:
                storage_options.refresh_interval = DEFAULT_REFRESH_INTERVAL
            if storage_options.http_timeout == 0:
                storage_options.http_timeout = DEFAULT_HTTP_TIMEOUT

            store = _JWKSKeyStore(uri, storage_options, rate_limit_wait_max)
            self.jwt_config.key_func = store.key_func

        self._middleware = self._build_middleware()

    def _build_middleware(self) -> Middleware:
        config = self.jwt_config
        key_func = config.key_func
        if key_func is None:
            raise ValueError("jwt middleware requires a key function")

        def wrap(next_handler: Handler) -> Handler:
            skipper = config.skipper

            def handle(c: Context) -> None:
                if skipper is not None and skipper(c):
                    next_handler(c)
                    return

                raw = _extract_token(c.request, config)
                try:
                    token = _parse_token(raw, key_func)
                except Exception as exc:
                    raise HTTPError(401, "invalid or expired jwt", exc) from exc

                c.set(config.context_key, token)
                self._jwt_handler(c)
                next_handler(c)

            return handle

        return wrap

    def _jwt_handler(self, c: Context) -> None:
        logger = self.logger or _nop_logger()
        token = c.get(self.jwt_config.context_key)
        if not isinstance(token, _Token):
            logger.warning("jwt user is not a token")
            return

        claims = token.claims
        if not isinstance(claims, Mapping):
            logger.warning("jwt user claims are not a mapping")
            return

        try:
            self._validate_claims(claims)
        except HTTPError as exc:
            logger.error(
                "jwt user claims are not valid", extra={LOG_FIELDS_ATTR: {"error": str(exc)}}
            )
            raise

        if "sub" in claims:
            subject = claims["sub"]
            c.request.environ[ACTOR_CTX_KEY] = subject
            c.set(ACTOR_KEY, subject)

    def _validate_claims(self, claims: Mapping[str, Any]) -> None:
        logger = self.logger or _nop_logger()

        if self._audience:
            try:
                audiences = _claim_audiences(claims)
            except _ClaimError as exc:
                logger.error(
                    "jwt user failed to get audience",
                    extra={LOG_FIELDS_ATTR: {"error": str(exc), "audience": claims.get("aud")}},
                )
            else:
                if self._audience not in audiences:
                    logger.error(
                        "jwt user claim invalid audience",
                        extra={LOG_FIELDS_ATTR: {"audience": claims.get("aud")}},
                    )
                    raise HTTPError(401, "invalid or expired jwt").set_internal(
                        _ClaimError("invalid audience")
                    )

        if self._issuer:
            try:
                issuer = _claim_issuer(claims)
            except _ClaimError as exc:
                logger.error(
                    "jwt user failed to get issuer",
                    extra={LOG_FIELDS_ATTR: {"error": str(exc), "issuer": claims.get("iss")}},
                )
            else:
                if issuer != self._issuer:
                    logger.error(
                        "jwt user claim invalid issuer",
                        extra={LOG_FIELDS_ATTR: {"issuer": claims.get("iss")}},
                    )
                    raise HTTPError(401, "invalid or expired jwt").set_internal(
                        _ClaimError("invalid issuer")
                    )

    def middleware(self) -> Middleware:
        """Return the middleware; without setup it passes requests straight through."""
        if self._middleware is None:
            return lambda next_handler: next_handler
        return self._middleware


Option = Callable[[Auth], None]


def with_logger(logger: logging.Logger) -> Option:
    """Set the logger used by the middleware."""

    def option(auth: Auth) -> None:
        auth.logger = logger

    return option


def with_jwt_config(jwt_config: JWTConfig) -> Option:
    """Set the token lookup and verification settings."""

    def option(auth: Auth) -> None:
        auth.jwt_config = jwt_config

    return option


def with_key_storage_options(options: KeyStorageOptions) -> Option:
    """Set the JWKS fetching settings."""

    def option(auth: Auth) -> None:
        auth.key_storage_options = options

    return option


def new_auth(config: AuthConfig, *options: Option) -> Auth:
    """Create JWT middleware, discovering the issuer's JWKS unless a key function is set."""
    auth = Auth()
    auth._setup(config, options)
    return auth


def jwks_uri(issuer: str) -> str:
    """Return the ``jwks_uri`` advertised by the issuer's OIDC configuration."""
    parts = urlsplit(issuer)
    path = parts.path.rstrip("/") + "/.well-known/openid-configuration"
    uri = urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))

    document = _fetch_json(uri, _DISCOVERY_TIMEOUT)
    if not isinstance(document, dict):
        raise ValueError("oidc configuration is not a JSON object")
    if "jwks_uri" not in document:
        raise JWKSURIMissingError()

    value = document["jwks_uri"]
    if not isinstance(value, str):
        raise TypeError("jwks_uri is not a string")
    return value


_DURATION_RE = re.compile(r"[+-]?(?:(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|μs|ms|s|m|h))+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _duration(text: str) -> float:
    value = text.strip()
    if value.lstrip("+-") == "0":
        return 0.0
    if not _DURATION_RE.fullmatch(value):
        raise argparse.ArgumentTypeError(f"invalid duration {text!r}")
    sign = -1.0 if value.startswith("-") else 1.0
    return sign * sum(
        float(number) * _UNIT_SECONDS[unit] for number, unit in _DURATION_PART_RE.findall(value)
    )


def add_flags(parser: argparse.ArgumentParser) -> None:
    """Add the OIDC flags to ``parser``."""
    parser.add_argument(
        "--oidc",
        dest="oidc_enabled",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="use oidc auth",
    )
    parser.add_argument(
        "--oidc-aud", dest="oidc_audience", default="", help="expected audience on OIDC JWT"
    )
    parser.add_argument(
        "--oidc-issuer", dest="oidc_issuer", default="", help="expected issuer of OIDC JWT"
    )
    parser.add_argument(
        "--oidc-jwks-remote-timeout",
        dest="oidc_jwks_remote_timeout",
        type=_duration,
        default=DEFAULT_OIDC_JWKS_REMOTE_TIMEOUT,
        help="timeout for remote JWKS fetching",
    )