"""Tests for umbrella_mailbox.errors."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from umbrella_mailbox.errors import (
    FatalError,
    InvalidArgument,
    LeaseUnavailable,
    NotFound,
    PayloadTooLarge,
    TransientError,
    classify,
    provider_call,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://graph.test/v1.0/me")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestTaxonomy:
    def test_kinds(self):
        assert InvalidArgument().kind == "InvalidArgument"
        assert NotFound().kind == "NotFound"
        assert TransientError().kind == "TransientError"
        assert PayloadTooLarge().kind == "PayloadTooLarge"
        assert FatalError().kind == "Fatal"
        assert LeaseUnavailable().kind == "LeaseUnavailable"

    def test_only_transient_is_retryable(self):
        assert TransientError().retryable is True
        assert LeaseUnavailable().retryable is True
        assert FatalError().retryable is False
        assert NotFound().retryable is False

    def test_message_defaults_to_kind(self):
        assert str(NotFound()) == "NotFound"

    def test_cause_kept(self):
        cause = ValueError("inner")
        assert FatalError("outer", cause=cause).cause is cause


class TestClassify:
    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [
            (400, InvalidArgument),
            (401, FatalError),
            (403, FatalError),
            (404, NotFound),
            (410, NotFound),
            (408, TransientError),
            (413, PayloadTooLarge),
            (429, TransientError),
            (500, TransientError),
            (503, TransientError),
        ],
    )
    def test_http_status(self, status_code: int, expected: type):
        assert type(classify(_status_error(status_code))) is expected

    def test_timeouts_are_transient(self):
        assert isinstance(classify(TimeoutError()), TransientError)
        assert isinstance(classify(httpx.ReadTimeout("slow")), TransientError)

    def test_network_errors_are_transient(self):
        assert isinstance(classify(httpx.ConnectError("refused")), TransientError)
        assert isinstance(classify(ConnectionResetError()), TransientError)

    def test_unknown_is_fatal(self):
        exc = KeyError("surprise")
        classified = classify(exc)
        assert isinstance(classified, FatalError)
        assert classified.cause is exc

    def test_classified_pass_through(self):
        exc = NotFound("gone")
        assert classify(exc) is exc


class TestProviderCall:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def ok():
            return 42

        assert await provider_call(ok(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_deadline_is_transient(self):
        with pytest.raises(TransientError):
            await provider_call(asyncio.sleep(10), 0.01)

    @pytest.mark.asyncio
    async def test_mailbox_errors_pass_through(self):
        async def gone():
            raise NotFound("gone")

        with pytest.raises(NotFound):
            await provider_call(gone(), 1.0)

    @pytest.mark.asyncio
    async def test_other_errors_classified(self):
        async def broken():
            raise httpx.ConnectError("refused")

        with pytest.raises(TransientError) as exc_info:
            await provider_call(broken(), 1.0)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
