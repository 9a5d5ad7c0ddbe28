"""
Tests for backend error classification and cooperative cancellation
"""
import asyncio

import httpx
import pytest

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.errors import (ErrorKind, ModelGatewayError,
                                        PipelineCancelled, classify_error,
                                        classify_status, is_transient)


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://ollama.test/api/chat")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"status {code}", request=request, response=response)


class TestErrorClassification:
    """Tests for classify_error"""

    @pytest.mark.parametrize("error", [
        httpx.ConnectError("boom"),
        httpx.ReadTimeout("slow"),
        httpx.RemoteProtocolError("peer closed connection"),
        ConnectionResetError("reset"),
        TimeoutError(),
        RuntimeError("socket hang up"),
        RuntimeError("getaddrinfo failed for host"),
        RuntimeError("ECONNRESET while reading"),
    ])
    def test_transient_signatures(self, error):
        """Test detection of transient network error messages"""
        assert classify_error(error) == ErrorKind.TRANSIENT_NETWORK
        assert is_transient(error)

    def test_status_codes(self):
        """Test mapping of HTTP status codes to error kinds"""
        assert classify_error(status_error(401)) == ErrorKind.AUTHENTICATION
        assert classify_error(status_error(403)) == ErrorKind.AUTHENTICATION
        assert classify_error(status_error(400)) == ErrorKind.MALFORMED_REQUEST
        assert classify_error(status_error(429)) == ErrorKind.TRANSIENT_NETWORK
        assert classify_error(status_error(503)) == ErrorKind.TRANSIENT_NETWORK
        assert classify_status(418) == ErrorKind.UNKNOWN

    def test_unknown_errors_are_not_transient(self):
        """Test that unrecognized errors are not retried"""
        assert classify_error(ValueError("bad value")) == ErrorKind.UNKNOWN
        assert not is_transient(KeyError("missing"))

    def test_gateway_error_keeps_its_kind(self):
        """Test that gateway errors keep their own kind"""
        error = ModelGatewayError("nope", kind=ErrorKind.MALFORMED_REQUEST, status_code=422)

        assert classify_error(error) == ErrorKind.MALFORMED_REQUEST
        assert error.to_dict() == {
            "message": "nope",
            "kind": "malformed_request",
            "status_code": 422,
            "attempts": 1,
        }


class TestCancellationToken:
    """Tests for CancellationToken"""

    def test_not_cancelled_by_default(self):
        """Test a fresh token is not cancelled"""
        token = CancellationToken()

        assert token.cancelled is False
        token.raise_if_cancelled()
        check_cancelled(None)

    def test_cancel_keeps_first_reason(self):
        """Test that the first cancel reason wins"""
        token = CancellationToken()
        token.cancel("user stopped journey")
        token.cancel("second call")

        assert token.cancelled is True
        with pytest.raises(PipelineCancelled) as exc_info:
            check_cancelled(token)
        assert exc_info.value.reason == "user stopped journey"

    @pytest.mark.asyncio
    async def test_sleep_wakes_early_on_cancel(self):
        """Test that cancel interrupts a backoff sleep"""
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel, "stop")

        started = loop.time()
        with pytest.raises(PipelineCancelled):
            await token.sleep(5)
        assert loop.time() - started < 1

    @pytest.mark.asyncio
    async def test_sleep_completes_without_cancel(self):
        """Test that an uncancelled sleep returns normally"""
        token = CancellationToken()
        await token.sleep(0.01)
        assert token.cancelled is False

    def test_token_is_usable_across_event_loops(self):
        """Test that a token built outside any loop can sleep and cancel in later loops"""
        token = CancellationToken()

        asyncio.run(token.sleep(0.01))

        async def cancel_while_sleeping():
            asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
            await token.sleep(5)

        with pytest.raises(PipelineCancelled):
            asyncio.run(cancel_while_sleeping())
        assert token.reason == "stop"
