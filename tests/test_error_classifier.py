"""Tests for transient/permanent error classification."""

from __future__ import annotations

import errno
import socket
from types import SimpleNamespace

import pytest

from inbound_queue.domain.exceptions import (
    DependencyUnavailableError,
    NonRetryableError,
    ProcessorError,
    RateLimitError,
    ValidationError,
)
from inbound_queue.services.error_classifier import (
    ErrorKind,
    classify_error,
    extract_status_code,
    is_transient_error,
    short_error,
    summarize_error,
)


class _HttpError(Exception):
    def __init__(self, message: str, response: object) -> None:
        super().__init__(message)
        self.response = response


class _CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("peer closed"),
        TimeoutError(),
        socket.gaierror("lookup failed"),
        OSError(errno.ECONNREFUSED, "refused"),
        _CodedError("getaddrinfo failed", code="ENOTFOUND"),
        RuntimeError("request timed out after 30s"),
    ],
)
def test_network_failures_are_transient(error: Exception) -> None:
    assert classify_error(error) is ErrorKind.TRANSIENT


@pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
def test_rate_limit_and_server_errors_are_transient(status: int) -> None:
    assert is_transient_error(ProcessorError("upstream failed", status_code=status))


@pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
def test_client_errors_are_permanent(status: int) -> None:
    assert classify_error(ProcessorError("rejected", status_code=status)) is ErrorKind.PERMANENT


def test_status_is_read_from_attached_response() -> None:
    error = _HttpError("bad gateway", SimpleNamespace(status_code=502))

    assert extract_status_code(error) == 502
    assert is_transient_error(error)


def test_status_attribute_as_string_is_understood() -> None:
    error = _HttpError("unavailable", SimpleNamespace(status="503"))

    assert extract_status_code(error) == 503


@pytest.mark.parametrize(
    "message",
    [
        "could not open database connection",
        "Chatbot backend not available",
        "resource temporarily unavailable",
    ],
)
def test_dependency_unavailable_markers_are_transient(message: str) -> None:
    assert is_transient_error(RuntimeError(message))


def test_unknown_errors_are_permanent() -> None:
    assert classify_error(KeyError("content")) is ErrorKind.PERMANENT
    assert classify_error(ValueError("malformed payload")) is ErrorKind.PERMANENT


def test_explicit_declarations_take_precedence() -> None:
    assert classify_error(ValidationError("timeout field missing")) is ErrorKind.PERMANENT
    assert classify_error(NonRetryableError("503 from config")) is ErrorKind.PERMANENT
    assert classify_error(DependencyUnavailableError("x")) is ErrorKind.TRANSIENT
    assert classify_error(RateLimitError(retry_after=5)) is ErrorKind.TRANSIENT


def test_short_error_collapses_and_truncates() -> None:
    text = short_error(RuntimeError("line one\n   line two " + "x" * 1000))

    assert "\n" not in text
    assert text.startswith("line one line two")
    assert len(text) == 500
    assert text.endswith("...")


def test_short_error_falls_back_to_type_name() -> None:
    assert short_error(KeyError()) == "KeyError"


def test_summarize_error_is_json_friendly() -> None:
    summary = summarize_error(
        ProcessorError("Send API returned 503", status_code=503),
        {"message_id": "abc"},
    )

    assert summary["message"] == "Send API returned 503"
    assert summary["type"] == "ProcessorError"
    assert summary["status"] == 503
    assert summary["code"] == "503"
    assert summary["kind"] == "transient"
    assert summary["context"] == {"message_id": "abc"}
    assert summary["timestamp"]


def test_summarize_error_uses_unknown_code_when_missing() -> None:
    summary = summarize_error(ValueError("bad"))

    assert summary["code"] == "UNKNOWN_ERROR"
    assert summary["kind"] == "permanent"
    assert summary["context"] == {}
