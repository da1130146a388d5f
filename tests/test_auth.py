import argparse
import json
import logging
import threading
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from werkzeug.serving import make_server
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request, Response

from svckit.auth import (
    Auth,
    AuthConfig,
    JWKSURIMissingError,
    JWTConfig,
    KeyStorageOptions,
    add_flags,
    jwks_uri,
    new_auth,
    with_jwt_config,
    with_key_storage_options,
    with_logger,
)
from svckit.context import ACTOR_CTX_KEY, Context, HTTPError, actor

KEY1_ID = "testKey1"
KEY2_ID = "testKey2"


@pytest.fixture(scope="module")
def rsa_keys():
    return {
        KEY1_ID: rsa.generate_private_key(public_exponent=65537, key_size=2048),
        KEY2_ID: rsa.generate_private_key(public_exponent=65537, key_size=2048),
    }


@pytest.fixture
def provider(rsa_keys):
    """Start an OIDC provider; yields a dict with the issuer and its documents."""
    state = {"config": None}

    jwks = {"keys": []}
    for kid, private_key in rsa_keys.items():
        entry = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
        entry["kid"] = kid
        jwks["keys"].append(entry)

    @Request.application
    def app(request):
        if request.path == "/.well-known/openid-configuration":
            return Response(json.dumps(state["config"]), mimetype="application/json")
        if request.path == "/.well-known/jwks.json":
            return Response(json.dumps(jwks), mimetype="application/json")
        return Response("not found", status=404)

    server = make_server("127.0.0.1", 0, app, threaded=True)
    issuer = f"http://127.0.0.1:{server.server_port}"
    state["issuer"] = issuer
    state["config"] = {"jwks_uri": issuer + "/.well-known/jwks.json"}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield state
    finally:
        server.shutdown()
        server.server_close()


def _sign(private_key, kid, claims):
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


def _claims(issuer, subject="urn:test:user", audience=""):
    claims = {
        "iss": issuer,
        "sub": subject,
        "nbf": int(time.time()) - 7200,
        "scope": "test",
    }
    if audience:
        claims["aud"] = [audience]
    return claims


def _run(auth, authorization=None, path="/test"):
    headers = {}
    if authorization is not None:
        headers["Authorization"] = authorization
    environ = EnvironBuilder(path=path, headers=headers).get_environ()
    c = Context(request=Request(environ))
    seen = {}

    def handler(ctx):
        seen["user"] = ctx.get("user")
        seen["actor"] = actor(ctx)
        seen["ctx_actor"] = ctx.request.environ.get(ACTOR_CTX_KEY, "")
        ctx.string(200, "ok")

    try:
        auth.middleware()(handler)(c)
    except HTTPError as exc:
        seen["error"] = exc
        c.error(exc)
    return c, seen


def test_no_auth(provider):
    auth = new_auth(AuthConfig(issuer=provider["issuer"], refresh_timeout=5.0))
    c, seen = _run(auth)
    assert c.response.status_code == 400
    assert "user" not in seen


@pytest.mark.parametrize(
    "client_audience, server_audience, expect_actor, expect_status",
    [
        ("", "", True, 200),
        ("skipaud", "", True, 200),
        ("", "missaud", False, 401),
        ("testaud", "audmismatch", False, 401),
        ("testaud", "testaud", True, 200),
    ],
    ids=[
        "no audience or issuer",
        "skip audience",
        "missing audience",
        "audience mismatch",
        "audience match",
    ],
)
def test_audience_validation(
    provider, rsa_keys, client_audience, server_audience, expect_actor, expect_status
):
    auth = new_auth(
        AuthConfig(audience=server_audience, issuer=provider["issuer"]),
        with_key_storage_options(KeyStorageOptions(http_timeout=5.0)),
    )
    signed = _sign(
        rsa_keys[KEY1_ID], KEY1_ID, _claims(provider["issuer"], audience=client_audience)
    )

    c, seen = _run(auth, f"Bearer {signed}")

    assert c.response.status_code == expect_status
    if expect_status == 200:
        assert seen["user"].claims["sub"] == "urn:test:user"
        if expect_actor:
            assert seen["actor"] == "urn:test:user"
            assert seen["ctx_actor"] == "urn:test:user"
        else:
            assert seen["actor"] == ""
    else:
        assert str(seen["error"].internal) == "invalid audience"
        assert "user" not in seen


def test_second_key_in_jwks_is_accepted(provider, rsa_keys):
    auth = new_auth(AuthConfig(issuer=provider["issuer"]))
    signed = _sign(rsa_keys[KEY2_ID], KEY2_ID, _claims(provider["issuer"]))
    c, seen = _run(auth, f"Bearer {signed}")
    assert c.response.status_code == 200
    assert seen["actor"] == "urn:test:user"


def test_issuer_mismatch_is_unauthorized(provider, rsa_keys):
    auth = new_auth(AuthConfig(issuer=provider["issuer"]))
    signed = _sign(rsa_keys[KEY1_ID], KEY1_ID, _claims("http://other.example.com"))
    c, seen = _run(auth, f"Bearer {signed}")
    assert c.response.status_code == 401
    assert str(seen["error"].internal) == "invalid issuer"


def test_wrong_signing_key_is_unauthorized(provider, rsa_keys):
    auth = new_auth(AuthConfig(issuer=provider["issuer"]))
    signed = _sign(rsa_keys[KEY2_ID], KEY1_ID, _claims(provider["issuer"]))
    c, seen = _run(auth, f"Bearer {signed}")
    assert c.response.status_code == 401
    assert seen["error"].message == "invalid or expired jwt"


def test_unknown_key_id_is_unauthorized(provider, rsa_keys):
    auth = new_auth(AuthConfig(issuer=provider["issuer"]))
    signed = _sign(rsa_keys[KEY1_ID], "testKey3", _claims(provider["issuer"]))
    c, _ = _run(auth, f"Bearer {signed}")
    assert c.response.status_code == 401


def test_garbage_token_is_unauthorized(provider):
    auth = new_auth(AuthConfig(issuer=provider["issuer"]))
    c, seen = _run(auth, "Bearer token")
    assert c.response.status_code == 401
    assert seen["error"].code == 401


def test_wrong_scheme_is_bad_request(provider):
    auth = new_auth(AuthConfig(issuer=provider["issuer"]))
    c, seen = _run(auth, "Basic placeholder")
    assert c.response.status_code == 400
    assert seen["error"].message == "missing or malformed jwt"


def test_jwks_uri_discovery(provider):
    assert jwks_uri(provider["issuer"]) == provider["issuer"] + "/.well-known/jwks.json"
    assert jwks_uri(provider["issuer"] + "/") == provider["issuer"] + "/.well-known/jwks.json"


def test_jwks_uri_missing(provider):
    provider["config"] = {}
    with pytest.raises(JWKSURIMissingError):
        jwks_uri(provider["issuer"])
    with pytest.raises(JWKSURIMissingError):
        new_auth(AuthConfig(issuer=provider["issuer"]))


def test_storage_options_defaults_and_refresh_timeout(provider):
    auth = new_auth(
        AuthConfig(issuer=provider["issuer"], refresh_timeout=7.0),
        with_key_storage_options(KeyStorageOptions(http_timeout=2.0)),
    )
    assert auth.key_storage_options.http_timeout == 7.0
    assert auth.key_storage_options.refresh_interval == 3600.0
    assert auth.key_storage_options.refresh_error_handler is not None


def test_custom_key_func_skips_discovery(rsa_keys):
    public_key = rsa_keys[KEY1_ID].public_key()
    auth = new_auth(
        AuthConfig(),
        with_jwt_config(JWTConfig(key_func=lambda header: public_key)),
    )
    signed = _sign(rsa_keys[KEY1_ID], KEY1_ID, _claims("http://issuer.example.com"))
    c, seen = _run(auth, f"Bearer {signed}")
    assert c.response.status_code == 200
    assert seen["actor"] == "urn:test:user"


def test_expired_token_is_unauthorized(rsa_keys):
    public_key = rsa_keys[KEY1_ID].public_key()
    auth = new_auth(AuthConfig(), with_jwt_config(JWTConfig(key_func=lambda header: public_key)))
    claims = _claims("http://issuer.example.com")
    claims["exp"] = int(time.time()) - 60
    c, _ = _run(auth, f"Bearer {_sign(rsa_keys[KEY1_ID], KEY1_ID, claims)}")
    assert c.response.status_code == 401


def test_invalid_audience_type_is_only_logged(rsa_keys):
    public_key = rsa_keys[KEY1_ID].public_key()
    auth = new_auth(
        AuthConfig(audience="testaud"),
        with_jwt_config(JWTConfig(key_func=lambda header: public_key)),
        with_logger(logging.getLogger("test.auth")),
    )
    claims = _claims("http://issuer.example.com")
    claims["aud"] = 5
    c, seen = _run(auth, f"Bearer {_sign(rsa_keys[KEY1_ID], KEY1_ID, claims)}")
    assert c.response.status_code == 200
    assert seen["actor"] == "urn:test:user"


def test_skipper_bypasses_authentication(rsa_keys):
    public_key = rsa_keys[KEY1_ID].public_key()
    config = JWTConfig(
        key_func=lambda header: public_key,
        skipper=lambda c: c.request.path == "/livez",
    )
    auth = new_auth(AuthConfig(), with_jwt_config(config))
    skipped, skipped_seen = _run(auth, path="/livez")
    checked, _ = _run(auth, path="/test")
    assert skipped.response.status_code == 200
    assert skipped_seen["actor"] == ""
    assert checked.response.status_code == 400


def test_unconfigured_auth_passes_through():
    def handler(c):
        return None

    assert Auth().middleware()(handler) is handler


def test_add_flags_defaults():
    parser = argparse.ArgumentParser()
    add_flags(parser)
    args = parser.parse_args([])
    assert args.oidc_enabled is True
    assert args.oidc_audience == ""
    assert args.oidc_issuer == ""
    assert args.oidc_jwks_remote_timeout == 5.0


def test_add_flags_parses_values():
    parser = argparse.ArgumentParser()
    add_flags(parser)
    args = parser.parse_args(
        [
            "--no-oidc",
            "--oidc-aud",
            "testaud",
            "--oidc-issuer",
            "http://issuer.example.com",
            "--oidc-jwks-remote-timeout",
            "1m30s",
        ]
    )
    assert args.oidc_enabled is False
    assert args.oidc_audience == "testaud"
    assert args.oidc_issuer == "http://issuer.example.com"
    assert args.oidc_jwks_remote_timeout == 90.0


def test_add_flags_rejects_bad_duration():
    parser = argparse.ArgumentParser()
    add_flags(parser)
    with pytest.raises(SystemExit):
        parser.parse_args(["--oidc-jwks-remote-timeout", "soon"])