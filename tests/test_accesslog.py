import itertools
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime

import pytest
from werkzeug.http import HTTP_STATUS_CODES
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from svckit.accesslog import (
    LoggerRequiredError,
    MiddlewareConfig,
    middleware,
    middleware_with_config,
    with_custom_time_format,
    with_extra_fields,
    with_extra_fields_hook,
    with_skipper,
)
from svckit.context import ACTOR_KEY, Context, HTTPError

_counter = itertools.count()


class Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def make_logger():
    logger = logging.getLogger(f"svckit-accesslog-test-{next(_counter)}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    capture = Capture()
    logger.handlers = [capture]
    return logger, capture


def make_context(set_request_id=False):
    headers = {"User-Agent": "test/agent"}
    if set_request_id:
        headers["X-Request-Id"] = "test-request-id"
    builder = EnvironBuilder(
        path="/test",
        method="GET",
        base_url="http://test-host.local",
        headers=headers,
        data=b"body content",
        environ_base={"REMOTE_ADDR": "127.0.0.5"},
    )
    return Context(Request(builder.get_environ()))


def request_id(next_handler):
    def handle(c):
        c.response.headers["X-Request-Id"] = (
            c.request.headers.get("X-Request-Id") or uuid.uuid4().hex
        )
        next_handler(c)

    return handle


def return_status(status):
    def handler(c):
        c.string(status, str(status))

    return handler


def return_error(err):
    def handler(_c):
        raise err

    return handler


def serve(mdw, handler, *, set_request_id=False, set_actor=False):
    def app(c):
        if set_actor:
            c.set(ACTOR_KEY, "urn:user:test")
        time.sleep(0.02)
        handler(c)

    chain = request_id(mdw(app))
    ctx = make_context(set_request_id)
    error = None
    try:
        chain(ctx)
    except Exception as exc:
        error = exc
    return ctx, error


CASES = [
    pytest.param(
        MiddlewareConfig(),
        False,
        False,
        return_status(200),
        {"status": 200, "method": "GET", "path": "/test", "query": "", "response_bytes": 3},
        id="success log",
    ),
    pytest.param(
        MiddlewareConfig(),
        True,
        False,
        return_status(200),
        {
            "status": 200,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 3,
            "request_id": "test-request-id",
        },
        id="with request id (from request)",
    ),
    pytest.param(
        MiddlewareConfig(),
        False,
        False,
        return_error(ValueError("test error")),
        {
            "status": 500,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 36,
            "error": "test error",
        },
        id="simple error log",
    ),
    pytest.param(
        MiddlewareConfig(custom_time_format="%Y-%m-%dT%H:%M:%SZ"),
        False,
        False,
        return_error(ValueError("test error")),
        {
            "status": 500,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 36,
            "error": "test error",
        },
        id="log with formatted time",
    ),
    pytest.param(
        MiddlewareConfig(),
        False,
        False,
        return_error(HTTPError(403, "http error")),
        {
            "status": 403,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 25,
            "error": "code=403, message=http error",
            "error_code": 403,
            "error_message": "http error",
        },
        id="simple http error",
    ),
    pytest.param(
        MiddlewareConfig(),
        False,
        False,
        return_error(HTTPError(403, "http error").with_internal(ValueError("internal error"))),
        {
            "status": 403,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 25,
            "error": "code=403, message=http error, internal=internal error",
            "error_code": 403,
            "error_message": "http error",
            "error_internal": "internal error",
        },
        id="extended http error",
    ),
    pytest.param(
        MiddlewareConfig(
            extra_fields={
                "static_field_1": "static_value_1",
                "static_field_2": "static_value_2",
            }
        ),
        False,
        False,
        return_status(200),
        {
            "status": 200,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 3,
            "static_field_1": "static_value_1",
            "static_field_2": "static_value_2",
        },
        id="extra static fields",
    ),
    pytest.param(
        MiddlewareConfig(
            extra_fields_hook=lambda c: {
                "status_text": HTTP_STATUS_CODES[c.response.status_code]
            }
        ),
        False,
        False,
        return_status(200),
        {
            "status": 200,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 3,
            "status_text": "OK",
        },
        id="extra dynamic fields",
    ),
    pytest.param(
        MiddlewareConfig(),
        False,
        True,
        return_status(200),
        {
            "status": 200,
            "method": "GET",
            "path": "/test",
            "query": "",
            "response_bytes": 3,
            "actor": "urn:user:test",
        },
        id="actor specified",
    ),
]


@pytest.mark.parametrize("config, set_request_id, set_actor, handler, expect_fields", CASES)
def test_to_middleware(config, set_request_id, set_actor, handler, expect_fields):
    logger, capture = make_logger()
    mdw = replace(config, logger=logger).to_middleware()

    _ctx, error = serve(mdw, handler, set_request_id=set_request_id, set_actor=set_actor)

    assert len(capture.records) == 1
    record = capture.records[0]
    fields = record.fields

    expected = dict(expect_fields)
    expected.update(
        host="test-host.local",
        remote_addr="127.0.0.5",
        path="/test",
        user_agent="test/agent",
        content_length=12,
    )

    for key, value in expected.items():
        assert key in fields, key
        assert fields[key] == value, key

    if isinstance(fields["time"], int):
        assert fields["time"] > 0
    else:
        assert fields["time"]

    if not set_request_id:
        assert fields["request_id"]
    if not set_actor:
        assert fields["actor"] == ""

    assert fields["duration"] >= 20.0
    assert fields["latency"].endswith("ms")
    assert float(fields["latency"][:-2]) >= 20

    expected_keys = set(expected) | {"request_id", "actor", "duration", "latency", "time"}
    assert set(fields) == expected_keys

    assert record.getMessage() == "/test"
    if "error" in expect_fields:
        assert error is not None
        assert str(error) == expect_fields["error"]
        assert record.levelno == logging.ERROR
    else:
        assert error is None
        assert record.levelno == logging.INFO


def test_empty_config_requires_logger():
    with pytest.raises(LoggerRequiredError):
        MiddlewareConfig().to_middleware()


def test_middleware_with_config_requires_logger():
    with pytest.raises(LoggerRequiredError):
        middleware_with_config(MiddlewareConfig())


def test_custom_time_format_is_applied():
    logger, capture = make_logger()
    fmt = "%Y-%m-%dT%H:%M:%SZ"
    ctx, error = serve(middleware(logger, with_custom_time_format(fmt)), return_status(200))
    assert error is None
    assert ctx.response.get_data() == b"200"
    stamp = capture.records[0].fields["time"]
    assert datetime.strptime(stamp, fmt).year >= 2000


def test_skipper_skips_logging():
    logger, capture = make_logger()
    ctx, error = serve(middleware(logger, with_skipper(lambda c: True)), return_status(200))
    assert capture.records == []
    assert error is None
    assert ctx.response.get_data() == b"200"


def test_skipped_error_is_raised_unhandled():
    logger, capture = make_logger()
    err = ValueError("test error")
    ctx, error = serve(middleware(logger, with_skipper(lambda c: True)), return_error(err))
    assert error is err
    assert not ctx.committed
    assert capture.records == []


def test_extra_fields_accumulate():
    logger, capture = make_logger()
    mdw = middleware(
        logger,
        with_extra_fields({"static_field_1": "static_value_1"}),
        with_extra_fields({"static_field_2": "static_value_2"}),
    )
    ctx, error = serve(mdw, return_status(200))
    assert error is None
    assert ctx.response.status_code == 200
    fields = capture.records[0].fields
    assert fields["static_field_1"] == "static_value_1"
    assert fields["static_field_2"] == "static_value_2"


def test_extra_fields_hook_option():
    logger, capture = make_logger()
    mdw = middleware(logger, with_extra_fields_hook(lambda c: {"seen_actor": c.get(ACTOR_KEY)}))
    ctx, error = serve(mdw, return_status(200), set_actor=True)
    assert error is None
    assert ctx.get(ACTOR_KEY) == "urn:user:test"
    assert capture.records[0].fields["seen_actor"] == "urn:user:test"