"""Tests for e2b_client.errors."""

from e2b_client.errors import (
    ApiError,
    AuthenticationError,
    ConnectionError,
    E2BError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    TimeoutError,
    UnsupportedTemplateError,
    ValidationError,
)


class TestE2BError:
    def test_base_error_fields(self):
        err = E2BError(code="api_error", message="Something broke", status=500)
        assert str(err) == "Something broke"
        assert err.code == "api_error"
        assert err.message == "Something broke"
        assert err.status == 500

    def test_is_exception(self):
        assert isinstance(E2BError(code="api_error", message="fail"), Exception)


class TestApiError:
    def test_keeps_status_and_message_verbatim(self):
        err = ApiError(status=400, message="template 'nope' not found")
        assert err.status == 400
        assert err.message == "template 'nope' not found"
        assert str(err) == "API error (400): template 'nope' not found"
        assert err.code == "api_error"


class TestNotFoundError:
    def test_fields(self):
        err = NotFoundError(message="Sandbox sb_1 not found", resource="sandbox sb_1")
        assert err.code == "not_found"
        assert err.status == 404
        assert err.resource == "sandbox sb_1"
        assert isinstance(err, ApiError)

    def test_resource_defaults_empty(self):
        assert NotFoundError(message="gone").resource == ""


class TestAuthenticationError:
    def test_fields(self):
        err = AuthenticationError(message="Invalid API key")
        assert err.code == "unauthorized"
        assert err.status == 401
        assert isinstance(err, ApiError)


class TestRateLimitError:
    def test_retry_after(self):
        err = RateLimitError(message="slow down", retry_after=5.0)
        assert err.retry_after == 5.0
        assert err.status == 429
        assert err.code == "rate_limited"

    def test_default_retry_after(self):
        assert RateLimitError(message="slow down").retry_after == 1.0


class TestInvalidStateError:
    def test_fields(self):
        err = InvalidStateError(message="Sandbox is not paused")
        assert err.code == "invalid_state"
        assert err.status == 409
        assert isinstance(err, ApiError)

    def test_custom_status(self):
        assert InvalidStateError(message="precondition", status=412).status == 412


class TestTimeoutError:
    def test_fields(self):
        err = TimeoutError(message="Timed out", timeout=1.5)
        assert err.code == "timeout"
        assert err.timeout == 1.5
        assert err.status == 0
        assert isinstance(err, E2BError)
        assert not isinstance(err, ApiError)


class TestConnectionError:
    def test_cause(self):
        cause = OSError("connection reset")
        err = ConnectionError(message="Network failed", cause=cause)
        assert err.code == "connection_error"
        assert err.__cause__ is cause

    def test_no_cause(self):
        assert ConnectionError(message="Network failed").__cause__ is None


class TestValidationError:
    def test_is_client_side(self):
        err = ValidationError(message="timeout must be positive")
        assert err.code == "validation_error"
        assert err.status == 0
        assert not isinstance(err, ApiError)


class TestUnsupportedTemplateError:
    def test_fields(self):
        err = UnsupportedTemplateError(message="no interpreter", template_id="base")
        assert err.code == "unsupported_template"
        assert err.template_id == "base"
        assert not isinstance(err, ApiError)
