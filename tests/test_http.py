"""Tests for e2b_client.http: async HTTP client with retry, backoff, error parsing."""

import json
from unittest.mock import patch

import httpx
import pytest

from e2b_client.errors import (
    ApiError,
    AuthenticationError,
    ConnectionError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    TimeoutError,
)
from e2b_client.http import HttpClient, connect_error, parse_error_response


def make_client(handler, **kwargs) -> HttpClient:
    defaults = {
        "base_url": "https://api.test.com",
        "headers": {"X-API-Key": "e2b_test"},
        "timeout": 5.0,
        "retries": 0,
        "transport": httpx.MockTransport(handler),
    }
    defaults.update(kwargs)
    return HttpClient(**defaults)


def json_response(status_code: int = 200, json_data=None, headers=None) -> httpx.Response:
    content = json.dumps(json_data).encode() if json_data is not None else b""
    return httpx.Response(status_code=status_code, content=content, headers=headers or {})


class Recorder:
    """MockTransport handler replaying canned responses and keeping requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class TestHeaders:
    @pytest.mark.asyncio
    async def test_client_headers_sent(self):
        recorder = Recorder(json_response(200, {"ok": True}))
        client = make_client(recorder)
        await client.request("GET", "/sandboxes")
        assert recorder.requests[0].headers["X-API-Key"] == "e2b_test"
        assert recorder.requests[0].headers["Accept"] == "application/json"
        await client.close()

    @pytest.mark.asyncio
    async def test_content_type_only_with_body(self):
        recorder = Recorder(json_response(200, {"ok": True}))
        client = make_client(recorder)
        await client.request("GET", "/sandboxes")
        await client.request("POST", "/sandboxes", body={"templateID": "base"})
        assert "Content-Type" not in recorder.requests[0].headers
        assert recorder.requests[1].headers["Content-Type"] == "application/json"
        assert json.loads(recorder.requests[1].content) == {"templateID": "base"}
        await client.close()


class TestJsonParsing:
    @pytest.mark.asyncio
    async def test_returns_json(self):
        client = make_client(Recorder(json_response(200, {"sandboxID": "sb_1"})))
        assert await client.request("GET", "/sandboxes/sb_1") == {"sandboxID": "sb_1"}
        await client.close()

    @pytest.mark.asyncio
    async def test_204_returns_none(self):
        client = make_client(Recorder(httpx.Response(204)))
        assert await client.request("DELETE", "/sandboxes/sb_1") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_body_returns_none(self):
        client = make_client(Recorder(httpx.Response(200)))
        assert await client.request("POST", "/sandboxes/sb_1/pause", body={}) is None
        await client.close()


class TestQueryParams:
    @pytest.mark.asyncio
    async def test_filters_none_values(self):
        recorder = Recorder(json_response(200, []))
        client = make_client(recorder)
        await client.request("GET", "/sandboxes", query={"metadata": "a=b", "state": None})
        assert dict(recorder.requests[0].url.params) == {"metadata": "a=b"}
        await client.close()


class TestErrorParsing:
    @pytest.mark.asyncio
    async def test_400_raises_api_error_verbatim(self):
        client = make_client(
            Recorder(json_response(400, {"code": 400, "message": "template not found"}))
        )
        with pytest.raises(ApiError) as exc_info:
            await client.request("POST", "/sandboxes", body={"templateID": "nope"})
        assert exc_info.value.status == 400
        assert exc_info.value.message == "template not found"
        await client.close()

    @pytest.mark.asyncio
    async def test_401_raises_authentication(self):
        client = make_client(Recorder(json_response(401, {"message": "Invalid API key"})))
        with pytest.raises(AuthenticationError):
            await client.request("GET", "/sandboxes")
        await client.close()

    @pytest.mark.asyncio
    async def test_404_raises_not_found(self):
        client = make_client(Recorder(json_response(404, {"message": "sandbox not found"})))
        with pytest.raises(NotFoundError, match="sandbox not found"):
            await client.request("GET", "/sandboxes/sb_x")
        await client.close()

    @pytest.mark.asyncio
    async def test_409_raises_invalid_state(self):
        client = make_client(Recorder(json_response(409, {"message": "not paused"})))
        with pytest.raises(InvalidStateError):
            await client.request("POST", "/sandboxes/sb_1/resume", body={})
        await client.close()

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit_with_header(self):
        client = make_client(
            Recorder(json_response(429, {"message": "slow down"}, {"retry-after": "7"}))
        )
        with pytest.raises(RateLimitError) as exc_info:
            await client.request("GET", "/sandboxes")
        assert exc_info.value.retry_after == 7.0
        await client.close()

    @pytest.mark.asyncio
    async def test_plain_text_body_used_as_message(self):
        client = make_client(Recorder(httpx.Response(502, text="bad gateway")))
        with pytest.raises(ApiError) as exc_info:
            await client.request("GET", "/sandboxes")
        assert exc_info.value.status == 502
        assert exc_info.value.message == "bad gateway"
        await client.close()

    @pytest.mark.asyncio
    async def test_connect_error_body_mapped_by_code(self):
        client = make_client(
            Recorder(json_response(404, {"code": "not_found", "message": "path not found"}))
        )
        with pytest.raises(NotFoundError, match="path not found"):
            await client.request("POST", "/filesystem.Filesystem/Stat", body={"path": "/x"})
        await client.close()


class TestParseErrorResponse:
    def test_status_fallback(self):
        err = parse_error_response(418, None, "teapot")
        assert isinstance(err, ApiError)
        assert err.status == 418
        assert err.message == "teapot"

    def test_empty_message_falls_back_to_status(self):
        assert parse_error_response(500, {}, "").message == "HTTP 500"

    def test_connect_code_wins_over_status(self):
        err = parse_error_response(400, {"code": "already_exists", "message": "exists"})
        assert isinstance(err, InvalidStateError)
        assert err.status == 409


class TestConnectError:
    def test_failed_precondition(self):
        err = connect_error("failed_precondition", "not empty")
        assert isinstance(err, InvalidStateError)
        assert err.status == 412

    def test_deadline_exceeded(self):
        assert isinstance(connect_error("deadline_exceeded", "slow"), TimeoutError)

    def test_unauthenticated(self):
        assert isinstance(connect_error("unauthenticated", "no token"), AuthenticationError)

    def test_invalid_argument(self):
        err = connect_error("invalid_argument", "bad path")
        assert type(err) is ApiError
        assert err.status == 400

    def test_unknown_code(self):
        assert connect_error("something_new", "?").status == 500


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_5xx_then_succeeds(self):
        recorder = Recorder(
            json_response(503, {"message": "unavailable"}),
            json_response(502, {"message": "bad gateway"}),
            json_response(200, {"ok": True}),
        )
        client = make_client(recorder, retries=2)
        with patch("e2b_client.http._backoff_delay", return_value=0.0):
            assert await client.request("GET", "/sandboxes") == {"ok": True}
        assert len(recorder.requests) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self):
        recorder = Recorder(json_response(500, {"message": "boom"}))
        client = make_client(recorder, retries=2)
        with patch("e2b_client.http._backoff_delay", return_value=0.0):
            with pytest.raises(ApiError) as exc_info:
                await client.request("GET", "/sandboxes")
        assert exc_info.value.status == 500
        assert len(recorder.requests) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self):
        recorder = Recorder(json_response(400, {"message": "bad"}))
        client = make_client(recorder, retries=3)
        with pytest.raises(ApiError):
            await client.request("GET", "/sandboxes")
        assert len(recorder.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_reset_retried(self):
        recorder = Recorder(
            httpx.ConnectError("connection reset"), json_response(200, {"ok": True})
        )
        client = make_client(recorder, retries=1)
        with patch("e2b_client.http._backoff_delay", return_value=0.0):
            assert await client.request("GET", "/sandboxes") == {"ok": True}
        assert len(recorder.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limit_waits_retry_after(self):
        recorder = Recorder(
            json_response(429, {"message": "slow"}, {"retry-after": "0"}),
            json_response(200, {"ok": True}),
        )
        client = make_client(recorder, retries=1)
        assert await client.request("GET", "/sandboxes") == {"ok": True}
        assert len(recorder.requests) == 2
        await client.close()


class TestNoRetry:
    @pytest.mark.asyncio
    async def test_read_timeout_not_repeated(self):
        recorder = Recorder(httpx.ReadTimeout("read timed out"), json_response(201, {}))
        client = make_client(recorder, retries=2)
        with pytest.raises(TimeoutError):
            await client.request("POST", "/sandboxes", body={}, retry=False)
        assert len(recorder.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_5xx_not_repeated(self):
        recorder = Recorder(json_response(502, {"message": "bad gateway"}))
        client = make_client(recorder, retries=2)
        with pytest.raises(ApiError) as exc_info:
            await client.request("POST", "/sandboxes", body={}, retry=False)
        assert exc_info.value.status == 502
        assert len(recorder.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_connect_failure_still_retried(self):
        recorder = Recorder(
            httpx.ConnectError("connection refused"), json_response(201, {"ok": True})
        )
        client = make_client(recorder, retries=1)
        with patch("e2b_client.http._backoff_delay", return_value=0.0):
            result = await client.request("POST", "/sandboxes", body={}, retry=False)
        assert result == {"ok": True}
        assert len(recorder.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limit_still_retried(self):
        recorder = Recorder(
            json_response(429, {"message": "slow"}, {"retry-after": "0"}),
            json_response(201, {"ok": True}),
        )
        client = make_client(recorder, retries=1)
        assert await client.request("POST", "/sandboxes", body={}, retry=False) == {"ok": True}
        assert len(recorder.requests) == 2
        await client.close()


class TestTransportErrors:
    @pytest.mark.asyncio
    async def test_timeout(self):
        client = make_client(Recorder(httpx.ReadTimeout("read timed out")))
        with pytest.raises(TimeoutError) as exc_info:
            await client.request("GET", "/sandboxes")
        assert exc_info.value.timeout == 5.0
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_error_keeps_cause(self):
        client = make_client(Recorder(httpx.ConnectError("name resolution failed")))
        with pytest.raises(ConnectionError) as exc_info:
            await client.request("GET", "/sandboxes")
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        await client.close()


class TestStream:
    @pytest.mark.asyncio
    async def test_yields_response(self):
        client = make_client(Recorder(httpx.Response(200, content=b"line1\nline2\n")))
        async with client.stream("POST", "/execute", json_body={"code": "1"}) as response:
            lines = [line async for line in response.aiter_lines()]
        assert lines == ["line1", "line2"]
        await client.close()

    @pytest.mark.asyncio
    async def test_error_status_raises_mapped_error(self):
        recorder = Recorder(json_response(404, {"message": "no such sandbox"}))
        client = make_client(recorder, retries=3)
        with pytest.raises(NotFoundError, match="no such sandbox"):
            async with client.stream("POST", "/execute", json_body={}):
                pass
        assert len(recorder.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        client = make_client(Recorder(httpx.ConnectError("refused")))
        with pytest.raises(ConnectionError):
            async with client.stream("POST", "/execute", json_body={}):
                pass
        await client.close()
