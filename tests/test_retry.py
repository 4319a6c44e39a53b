"""Tests for the retry policy and provider error classification."""

import threading

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from terrapin.utils.errors import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    FatalProviderError,
    IndeterminateProviderError,
    ParseError,
    TransientProviderError,
)
from terrapin.utils.retry import RetryPolicy


def client_error(code, message="error", operation="CreateVpc"):
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"RequestId": "req-1"}},
        operation
    )


class Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetryPolicy:
    """Tests for RetryPolicy.call."""

    def test_transient_error_retried(self):
        """Test that transient errors are retried with backoff."""
        slept = []
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=False, sleep=slept.append)
        func = Flaky(2, TransientProviderError("throttled"))

        assert policy.call(func) == "ok"
        assert func.calls == 3
        assert slept == [1.0, 2.0]

    def test_fatal_error_not_retried(self):
        """Test that fatal errors propagate on the first attempt."""
        policy = RetryPolicy(max_attempts=5, sleep=lambda delay: None)
        func = Flaky(1, FatalProviderError("denied"))

        with pytest.raises(FatalProviderError):
            policy.call(func)
        assert func.calls == 1

    def test_attempts_exhausted(self):
        """Test that the last transient error is raised after max_attempts."""
        policy = RetryPolicy(max_attempts=2, backoff=lambda attempt: 0.0, sleep=lambda delay: None)
        func = Flaky(5, TransientProviderError("throttled"))

        with pytest.raises(TransientProviderError, match="throttled"):
            policy.call(func)
        assert func.calls == 2

    def test_raw_exceptions_classified(self):
        """Test that botocore errors are classified before deciding to retry."""
        policy = RetryPolicy(max_attempts=3, backoff=lambda attempt: 0.0, sleep=lambda delay: None)
        func = Flaky(1, client_error("RequestLimitExceeded"))

        assert policy.call(func) == "ok"
        assert func.calls == 2

    def test_cancel_event_abandons_retries(self):
        """Test that a set cancel event stops retrying."""
        cancel = threading.Event()
        cancel.set()
        policy = RetryPolicy(max_attempts=5, base_delay=10.0)
        func = Flaky(3, TransientProviderError("throttled"))

        with pytest.raises(TransientProviderError):
            policy.call(func, cancel_event=cancel)
        assert func.calls == 1

    def test_context_attached(self):
        """Test that the error context reaches the classified error."""
        policy = RetryPolicy.no_retry()
        context = ErrorContext(resource_id="network.main", operation="create")

        with pytest.raises(FatalProviderError) as exc_info:
            policy.call(Flaky(1, client_error("AuthFailure")), context=context)

        assert exc_info.value.context.resource_id == "network.main"
        assert exc_info.value.context.request_id == "req-1"

    def test_get_delay(self):
        """Test exponential delays capped at max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [policy.get_delay(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounded(self):
        """Test that jitter adds at most ten percent."""
        policy = RetryPolicy(base_delay=2.0, jitter=True)

        for _ in range(20):
            assert 2.0 <= policy.get_delay(0) <= 2.2

    def test_backoff_function(self):
        """Test that a backoff function replaces the exponential calculation."""
        policy = RetryPolicy(backoff=lambda attempt: attempt * 0.5)

        assert policy.get_delay(3) == 1.5

    def test_invalid_max_attempts(self):
        """Test that at least one attempt is required."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_injected_sleep_used_with_cancel_event(self):
        """Test that an injected sleep replaces the cancellable wait."""
        slept = []
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=False, sleep=slept.append)
        func = Flaky(2, TransientProviderError("throttled"))

        assert policy.call(func, cancel_event=threading.Event()) == "ok"
        assert slept == [1.0, 2.0]

    def test_cancel_during_injected_sleep(self):
        """Test that a cancel raised while sleeping stops further attempts."""
        cancel = threading.Event()
        policy = RetryPolicy(max_attempts=5, sleep=lambda delay: cancel.set())
        func = Flaky(3, TransientProviderError("throttled"))

        with pytest.raises(TransientProviderError):
            policy.call(func, cancel_event=cancel)
        assert func.calls == 1


class TestErrorClassification:
    """Tests for ErrorHandler.classify."""

    @pytest.fixture
    def handler(self):
        """Error handler instance."""
        return ErrorHandler()

    @pytest.mark.parametrize("code", ["Throttling", "RequestLimitExceeded", "ServiceUnavailable"])
    def test_transient_codes(self, handler, code):
        """Test that throttling and availability codes are transient."""
        assert isinstance(handler.classify(client_error(code)), TransientProviderError)

    def test_auth_failure(self, handler):
        """Test that credential failures are fatal with suggestions."""
        error = handler.classify(client_error("AuthFailure", "expired"))

        assert isinstance(error, FatalProviderError)
        assert error.category == ErrorCategory.CREDENTIAL
        assert error.suggestions
        assert error.context.provider_operation == "CreateVpc"

    def test_unknown_code_is_fatal(self, handler):
        """Test that unrecognized codes are fatal."""
        error = handler.classify(client_error("SomethingOdd", "strange"))

        assert isinstance(error, FatalProviderError)
        assert "SomethingOdd" in error.message

    def test_read_timeout_is_indeterminate(self, handler):
        """Test that a timeout after sending leaves the outcome unknown."""
        error = handler.classify(ReadTimeoutError(endpoint_url="https://ec2.us-east-1.amazonaws.com"))

        assert isinstance(error, IndeterminateProviderError)
        assert error.kind == "Unknown"

    def test_connection_error_is_transient(self, handler):
        """Test that failing to connect is safe to retry."""
        error = handler.classify(EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"))

        assert isinstance(error, TransientProviderError)

    def test_provider_errors_pass_through(self, handler):
        """Test that already classified errors are returned unchanged."""
        original = TransientProviderError("busy")

        assert handler.classify(original) is original

    def test_other_exceptions_are_fatal(self, handler):
        """Test that arbitrary exceptions become fatal errors."""
        error = handler.classify(KeyError("missing"))

        assert isinstance(error, FatalProviderError)
        assert error.category == ErrorCategory.UNKNOWN


class TestErrorFormatting:
    """Tests for user messages and serialization."""

    def test_to_user_message(self):
        """Test that the message includes kind, context and suggestions."""
        error = ParseError(
            "unexpected token",
            context=ErrorContext(source="infra/main.yaml:3"),
            suggestions=["Check the YAML indentation"]
        )

        message = error.to_user_message()

        assert message.startswith("ParseError: unexpected token")
        assert "Source: infra/main.yaml:3" in message
        assert "1. Check the YAML indentation" in message
        assert error.exit_code == 2

    def test_to_dict(self):
        """Test the serializable form."""
        error = FatalProviderError("denied", context=ErrorContext(resource_id="vm.app"))

        data = error.to_dict()

        assert data["kind"] == "FatalProviderError"
        assert data["category"] == "provider"
        assert data["context"]["resource_id"] == "vm.app"
        assert str(error) == "denied (resource: vm.app)"
