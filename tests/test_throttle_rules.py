"""Unit tests for throttle rule evaluation."""

from __future__ import annotations

import asyncio
import logging

import pytest
from starlette.requests import Request

from throttleguard.core.errors import ConfigurationAppError
from throttleguard.core.throttle import (
    Throttle,
    ThrottleRequest,
    dig,
    nest_params,
)

THROTTLE_LOGGER = "throttleguard.core.throttle"


def _asgi_request(body: bytes, headers: list[tuple[bytes, bytes]]) -> Request:
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/signin",
        "query_string": b"",
        "headers": headers,
        "client": ("203.0.113.5", 50000),
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope, receive)


def _request(path: str = "/signin", method: str = "POST", ip: str = "203.0.113.5", **kwargs):
    return ThrottleRequest(ip=ip, path=path, method=method, **kwargs)


@pytest.fixture
def throttle(make_config) -> Throttle:
    return Throttle.from_config(make_config())


class TestParams:
    def test_nest_params_brackets(self) -> None:
        params = nest_params([("session[email]", "a@b.c"), ("session[remember]", "1"), ("x", "y")])

        assert params == {"session": {"email": "a@b.c", "remember": "1"}, "x": "y"}

    def test_nest_params_arrays(self) -> None:
        assert nest_params([("ids[]", "1"), ("ids[]", "2")]) == {"ids": ["1", "2"]}

    def test_nest_params_unbalanced_key_kept_verbatim(self) -> None:
        assert nest_params([("odd[", "v")]) == {"odd[": "v"}

    def test_dig_missing_returns_none(self) -> None:
        assert dig({"a": {"b": 1}}, ["a", "c"]) is None
        assert dig({"a": "scalar"}, ["a", "b"]) is None
        assert dig({"a": ["x", "y"]}, ["a", "1"]) == "y"

    def test_body_params_read_within_limit(self) -> None:
        body = b"session%5Bemail%5D=a%40b.c"
        request = _asgi_request(
            body,
            [
                (b"content-type", b"application/x-www-form-urlencoded"),
                (b"content-length", str(len(body)).encode()),
            ],
        )

        view = asyncio.run(ThrottleRequest.from_request(request, include_body=True))

        assert view.params == {"session": {"email": "a@b.c"}}

    def test_body_over_limit_left_unread(self) -> None:
        body = b'{"session": {"email": "a@b.c"}}'
        request = _asgi_request(
            body,
            [(b"content-type", b"application/json"), (b"content-length", str(len(body)).encode())],
        )

        view = asyncio.run(
            ThrottleRequest.from_request(request, include_body=True, max_body_bytes=len(body) - 1)
        )

        assert view.params == {}

    def test_body_without_content_length_left_unread(self) -> None:
        request = _asgi_request(b'{"session": {"email": "a@b.c"}}', [(b"content-type", b"application/json")])

        view = asyncio.run(ThrottleRequest.from_request(request, include_body=True))

        assert view.params == {}


class TestRules:
    def test_rule_names_and_order(self, throttle: Throttle) -> None:
        assert [r.name for r in throttle.rules] == ["protected_paths/ip", "protected_paths/email"]
        assert [r.params for r in throttle.rules] == [False, True]

    def test_unknown_attribute_rejected(self, make_config) -> None:
        config = make_config(discriminators=[{"name": "bad", "property": [["__class__"]]}])

        with pytest.raises(ConfigurationAppError) as exc_info:
            Throttle.from_config(config)

        assert exc_info.value.code == "throttle_unknown_attribute"


class TestProtectedPath:
    def test_matches_path_and_method(self, throttle: Throttle) -> None:
        assert throttle.is_protected_path(_request("/signin", "POST")) is True
        assert throttle.is_protected_path(_request("/signup", "PUT")) is True

    def test_method_must_match(self, throttle: Throttle) -> None:
        assert throttle.is_protected_path(_request("/signin", "GET")) is False

    def test_other_paths_not_protected(self, throttle: Throttle) -> None:
        assert throttle.is_protected_path(_request("/health", "POST")) is False
        assert throttle.is_protected_path(_request("/signin/extra", "POST")) is False

    def test_url_root_applies(self, make_config) -> None:
        throttle = Throttle.from_config(make_config(), url_root="/b")

        assert throttle.is_protected_path(_request("/b/signin")) is True
        assert throttle.is_protected_path(_request("/signin")) is False


class TestPathDiscriminator:
    def test_attribute_discriminator(self, throttle: Throttle) -> None:
        assert throttle.path_discriminator(_request(), [["ip"]]) == "203.0.113.5"

    def test_callable_attribute_receives_arguments(self, throttle: Throttle) -> None:
        request = _request(headers={"X-Device": "kiosk-7"})

        assert throttle.path_discriminator(request, [["header", "x-device"]]) == "kiosk-7"

    def test_headers_lookup_ignores_case(self, throttle: Throttle) -> None:
        request = _request(headers={"X-Device-Id": "k7"})

        assert throttle.path_discriminator(request, [["headers", "X-Device-Id"]]) == "k7"
        assert throttle.path_discriminator(request, [["headers", "x-device-id"]]) == "k7"

    def test_headers_discriminator_counts_mixed_case_name(self, make_config) -> None:
        throttle = Throttle.from_config(
            make_config(
                limit=1,
                discriminators=[{"name": "device", "property": [["headers", "X-Device-Id"]]}],
            )
        )
        request = _request(ip="198.51.100.1", headers={"x-device-id": "k7"})

        throttle.check(request)
        decision = throttle.check(request)

        assert [m.rule for m in decision.matches] == ["protected_paths/device"]
        assert decision.matches[0].discriminator == "k7"

    def test_params_discriminator_by_path(self, throttle: Throttle) -> None:
        email = throttle.config.params_discriminators[0].property
        signin = _request("/signin", params={"session": {"email": "a@b.c"}, "user": {"email": "u@b.c"}})
        signup = _request("/signup", params={"session": {"email": "a@b.c"}, "user": {"email": "u@b.c"}})

        assert throttle.path_discriminator(signin, email, params=True) == "a@b.c"
        assert throttle.path_discriminator(signup, email, params=True) == "u@b.c"

    def test_no_matching_candidate_returns_none(self, throttle: Throttle) -> None:
        email = throttle.config.params_discriminators[0].property

        assert throttle.path_discriminator(_request("/other"), email, params=True) is None

    def test_missing_param_returns_none(self, throttle: Throttle) -> None:
        email = throttle.config.params_discriminators[0].property

        assert throttle.path_discriminator(_request("/signin"), email, params=True) is None

    def test_conditional_paths_use_url_root(self, make_config) -> None:
        throttle = Throttle.from_config(make_config(), url_root="/b")
        email = throttle.config.params_discriminators[0].property
        request = _request("/b/signin", params={"session": {"email": "a@b.c"}})

        assert throttle.path_discriminator(request, email, params=True) == "a@b.c"


class TestSafelist:
    def test_exact_ip(self, throttle: Throttle) -> None:
        assert throttle.is_safelisted(_request(ip="192.0.2.10")) is True

    def test_network(self, throttle: Throttle) -> None:
        assert throttle.is_safelisted(_request(ip="10.20.3.4")) is True

    def test_other_ip(self, throttle: Throttle) -> None:
        assert throttle.is_safelisted(_request(ip="10.21.0.1")) is False

    def test_non_ip_client(self, throttle: Throttle) -> None:
        assert throttle.is_safelisted(_request(ip="testclient")) is False
        assert throttle.is_safelisted(_request(ip=None)) is False


class TestCheck:
    def test_counts_until_limit_then_matches(self, throttle: Throttle) -> None:
        assert throttle.check(_request()).matches == []
        assert throttle.check(_request()).matches == []

        decision = throttle.check(_request())

        assert [m.rule for m in decision.matches] == ["protected_paths/ip"]
        assert decision.matches[0].discriminator == "203.0.113.5"
        assert decision.blocked is False

    def test_params_rule_counts_per_value(self, throttle: Throttle) -> None:
        for ip in ("198.51.100.1", "198.51.100.2"):
            throttle.check(_request(ip=ip, params={"session": {"email": "a@b.c"}}))

        decision = throttle.check(_request(ip="198.51.100.3", params={"session": {"email": "a@b.c"}}))

        assert [m.rule for m in decision.matches] == ["protected_paths/email"]
        assert decision.matches[0].discriminator == "a@b.c"

    def test_unprotected_requests_not_counted(self, throttle: Throttle) -> None:
        for _ in range(5):
            decision = throttle.check(_request("/signin", "GET"))
            assert decision.protected is False
            assert decision.matches == []

    def test_safelisted_requests_not_counted(self, throttle: Throttle) -> None:
        for _ in range(5):
            decision = throttle.check(_request(ip="192.0.2.10"))
            assert decision.safelisted is True
            assert decision.matches == []

    def test_block_mode(self, make_config) -> None:
        throttle = Throttle.from_config(make_config(block=True, limit=1))

        assert throttle.check(_request()).blocked is False
        decision = throttle.check(_request())

        assert decision.blocked is True
        assert decision.retry_after is not None

    def test_disabled_skips_everything(self, make_config) -> None:
        throttle = Throttle.from_config(make_config(enabled=False, limit=1))

        for _ in range(3):
            decision = throttle.check(_request())
            assert decision.protected is False
            assert decision.matches == []

    def test_reset(self, make_config) -> None:
        throttle = Throttle.from_config(make_config(limit=1))
        throttle.check(_request())
        assert throttle.check(_request()).matches

        throttle.reset()

        assert throttle.check(_request()).matches == []


class TestLogging:
    def test_track_event_logged_at_configured_level(self, make_config, caplog) -> None:
        caplog.set_level(logging.DEBUG, logger=THROTTLE_LOGGER)
        throttle = Throttle.from_config(make_config(limit=1, tracks_log_level="warn"))

        throttle.check(_request())
        throttle.check(_request())

        [record] = [r for r in caplog.records if r.getMessage() == "throttle.matched"]
        assert record.levelno == logging.WARNING
        assert record.rule == "protected_paths/ip"
        assert record.discriminator == "203.0.113.5"

    def test_track_event_not_logged_without_level(self, make_config, caplog) -> None:
        caplog.set_level(logging.DEBUG, logger=THROTTLE_LOGGER)
        throttle = Throttle.from_config(make_config(limit=1, tracks_log_level=None))

        throttle.check(_request())
        throttle.check(_request())

        assert not [r for r in caplog.records if r.getMessage() == "throttle.matched"]

    def test_safelist_event_logged_for_protected_path(self, throttle: Throttle, caplog) -> None:
        caplog.set_level(logging.DEBUG, logger=THROTTLE_LOGGER)

        throttle.check(_request(ip="192.0.2.10"))

        [record] = [r for r in caplog.records if r.getMessage() == "throttle.safelisted"]
        assert record.levelno == logging.DEBUG
        assert record.ip == "192.0.2.10"

    def test_safelist_event_skipped_for_unprotected_path(self, throttle: Throttle, caplog) -> None:
        caplog.set_level(logging.DEBUG, logger=THROTTLE_LOGGER)

        throttle.check(_request("/health", "GET", ip="192.0.2.10"))

        assert not [r for r in caplog.records if r.getMessage() == "throttle.safelisted"]

    def test_safelist_event_not_logged_without_level(self, make_config, caplog) -> None:
        caplog.set_level(logging.DEBUG, logger=THROTTLE_LOGGER)
        throttle = Throttle.from_config(make_config(safelist_log_level=None))

        throttle.check(_request(ip="192.0.2.10"))

        assert not [r for r in caplog.records if r.getMessage() == "throttle.safelisted"]
