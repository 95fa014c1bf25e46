"""Unit tests for embedding error classification and backoff."""
from __future__ import annotations

import json
from unittest.mock import Mock

import pytest

from vaultindex.embeddings.ollama import OllamaHTTPError
from vaultindex.embeddings.resilience import ErrorCategory, backoff_seconds, classify_error


class TestErrorClassification:
    """Tests for error classification logic."""

    def test_classify_429_is_rate_limited(self):
        error = Mock()
        error.code = 429
        assert classify_error(error) == ErrorCategory.RATE_LIMITED

    @pytest.mark.parametrize("code", [401, 403])
    def test_classify_auth_failures(self, code):
        error = Mock()
        error.code = code
        assert classify_error(error) == ErrorCategory.AUTH_FAILURE

    @pytest.mark.parametrize("code", [400, 404, 422])
    def test_classify_client_errors_are_permanent(self, code):
        error = Mock()
        error.code = code
        assert classify_error(error) == ErrorCategory.PERMANENT

    @pytest.mark.parametrize("code", [500, 502, 503])
    def test_classify_server_errors_are_transient(self, code):
        error = Mock()
        error.code = code
        assert classify_error(error) == ErrorCategory.TRANSIENT

    def test_status_code_attribute(self):
        assert classify_error(OllamaHTTPError(503, "busy")) == ErrorCategory.TRANSIENT
        assert classify_error(OllamaHTTPError(404, "model not found")) == ErrorCategory.PERMANENT

    def test_status_on_response_object(self):
        error = Exception("failed")
        error.response = Mock(status_code=429, headers={})
        assert classify_error(error) == ErrorCategory.RATE_LIMITED

    def test_classify_connection_error_is_transient(self):
        assert classify_error(ConnectionError("Connection refused")) == ErrorCategory.TRANSIENT

    def test_classify_timeout_error_is_transient(self):
        assert classify_error(TimeoutError("Request timed out")) == ErrorCategory.TRANSIENT

    def test_classify_json_decode_error_is_permanent(self):
        error = json.JSONDecodeError("Invalid JSON", "", 0)
        assert classify_error(error) == ErrorCategory.PERMANENT

    def test_rate_limit_message(self):
        assert classify_error(RuntimeError("Rate limit exceeded")) == ErrorCategory.RATE_LIMITED

    def test_unknown_error_is_transient(self):
        assert classify_error(RuntimeError("something odd")) == ErrorCategory.TRANSIENT

    def test_retryable(self):
        assert ErrorCategory.TRANSIENT.retryable
        assert ErrorCategory.RATE_LIMITED.retryable
        assert not ErrorCategory.PERMANENT.retryable
        assert not ErrorCategory.AUTH_FAILURE.retryable


class TestBackoff:

    def test_exponential(self):
        err = RuntimeError("x")
        assert backoff_seconds(err, ErrorCategory.TRANSIENT, 0, 500) == 0.5
        assert backoff_seconds(err, ErrorCategory.TRANSIENT, 1, 500) == 1.0
        assert backoff_seconds(err, ErrorCategory.TRANSIENT, 3, 500) == 4.0

    def test_retry_after_header_wins_for_rate_limits(self):
        err = OllamaHTTPError(429, "slow down", headers={"Retry-After": "7"})
        assert backoff_seconds(err, ErrorCategory.RATE_LIMITED, 0, 500) == 7.0

    def test_retry_after_ignored_for_other_categories(self):
        err = OllamaHTTPError(503, "busy", headers={"Retry-After": "7"})
        assert backoff_seconds(err, ErrorCategory.TRANSIENT, 1, 100) == 0.2
