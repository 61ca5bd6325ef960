"""Tests for the error hierarchy."""

import pytest

from hilprobe_core.errors import (
    AuthError,
    AuthFailure,
    ConfigError,
    ExecutionTimeoutError,
    HilprobeError,
    InternalError,
    InvalidBinaryError,
    NotFoundError,
    ProbeCommunicationError,
    StateTransitionError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_type",
        [
            ConfigError,
            NotFoundError,
            InvalidBinaryError,
            ProbeCommunicationError,
            ExecutionTimeoutError,
            StateTransitionError,
            InternalError,
        ],
    )
    def test_subclass_of_base(self, exc_type: type[Exception]) -> None:
        assert issubclass(exc_type, HilprobeError)

    def test_auth_error_reason(self) -> None:
        err = AuthError(AuthFailure.EXPIRED)
        assert isinstance(err, HilprobeError)
        assert err.reason is AuthFailure.EXPIRED
        assert "expired" in str(err)

    def test_auth_error_custom_message(self) -> None:
        err = AuthError(AuthFailure.INVALID, "bad signature")
        assert str(err) == "bad signature"
