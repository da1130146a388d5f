# svckit

Shared building blocks for small HTTP services built on WSGI.

## What is inside

| Module | Purpose |
| --- | --- |
| `svckit.server` | A WSGI server: request ids, access logging, error recovery, trusted-proxy client IPs, `/livez`, `/readyz`, `/version` and `/metrics` endpoints, graceful shutdown on SIGINT/SIGTERM or a stop event. |
| `svckit.serverconfig` | Server settings (`Config`) with defaults, plus `add_flags` and `config_from_args` for `argparse`. |
| `svckit.auth` | JWT bearer-token middleware. It finds the issuer's JWKS through OIDC discovery (`jwks_uri`), verifies signatures, and checks audience and issuer. The token subject becomes the request's actor. `add_flags` adds the `--oidc*` options to a parser. |
| `svckit.accesslog` | Access-log middleware writing one record per request, with structured fields on the record's `fields` attribute. |
| `svckit.logadapter` | `LogAdapter`, presenting a `logging.Logger` through print/debug/info/warn/error/fatal/panic methods. |
| `svckit.context` | The per-request `Context`, `HTTPError`, and `actor()` to read the authenticated subject. |
| `svckit.crdb` | Database connection settings (`Config`), URI building and `config_from_env` reading `CRDB_*` variables. |
| `svckit.rawjson` | Conversion of values to and from raw JSON bytes. |
| `svckit.gqlschema` | A small GraphQL schema model, schema hooks and an `Extension` that collects them. |
| `svckit.annotations` | Event-hook annotations for schema types and fields. |

## A server with a readiness check

```python
import logging

from svckit.server import new_server
from svckit.serverconfig import Config


def database_ready():
    # raise an exception to report the service as not ready
    return None


class Hello:
    def routes(self, group):
        group.get("/hello", lambda c: c.string(200, "hello"))


cfg = Config().with_listen("127.0.0.1:8080")
srv = new_server(logging.getLogger("app"), cfg, None)
srv.add_readiness_check("database", database_ready)
srv.add_handler(Hello())
srv.run()
```

`GET /readyz` answers `200` with `{"database":"OK"}` while every check
passes, and `503` with each failing check's message otherwise. `GET /livez`
always answers `{"status":"UP"}`. `/version` is served only when a version
object is passed to `new_server`; a dataclass is rendered as a JSON object.

`Server.handler()` returns the assembled WSGI application, so it can also be
mounted under any WSGI server. `Server.serve_with_context(sock, stop)` serves
on an existing socket until a signal arrives or the `threading.Event` is set;
requests still running after the shutdown grace period make it raise
`TimeoutError`.

Trusted proxies are single addresses or CIDR ranges. A malformed address
raises `InvalidTrustedProxyIPError`, a malformed range `ValueError`:

```python
from svckit.server import parse_ip_nets

nets = parse_ip_nets(["10.0.0.1", "192.168.0.0/24", "2001:db8::/112"])
```

## JWT authentication

```python
from svckit.auth import AuthConfig, new_auth

auth = new_auth(AuthConfig(issuer="https://issuer.example.com", audience="my-api"))
cfg = Config().with_middleware(auth.middleware())
```

`new_auth` fetches the issuer's OIDC configuration at once, unless a
`JWTConfig` with its own `key_func` is given through `with_jwt_config`.
Requests without a bearer token get `400`; invalid tokens, or tokens with the
wrong audience or issuer, get `401`.

## Raw JSON values

```python
from svckit.rawjson import unmarshal_raw_message

unmarshal_raw_message({"a": True})   # b'{"a":true}'
unmarshal_raw_message([1, 2])        # b'[1,2]'
unmarshal_raw_message("a")           # b'"a"'
```

## GraphQL schema hooks

```python
from svckit.gqlschema import (
    Definition, FieldDefinition, Schema, new_extension, with_federation, with_json_scalar,
)

schema = Schema(types={
    "Node": Definition(name="Node"),
    "Query": Definition(name="Query", fields=[FieldDefinition("node"), FieldDefinition("users")]),
})
new_extension(with_federation(), with_json_scalar()).apply(schema)
```

Federation removes the `node`/`nodes` queries and the `goModel` directive on
`Node`, and marks `PageInfo` as `@shareable` when it exists. A schema missing
`Node` or `Query` raises `SchemaError`.

## What it does not do

- `svckit.crdb` only builds connection settings and URIs; it does not open
  database connections.
- `svckit.gqlschema` records template names on an `Extension` but renders no
  code.
- There is no command-line program; the flag helpers are for your own
  `argparse` parser.