"""Exception types for hilprobe-core.

This module defines the exception hierarchy used throughout hilprobe.
All hilprobe exceptions inherit from HilprobeError, allowing consumers to catch
all framework-specific errors with a single except clause.

Exception hierarchy:
    HilprobeError (base)
    +-- ConfigError: Invalid server configuration
    +-- AuthError: Credential rejected
    +-- NotFoundError: Unknown target name
    +-- InvalidBinaryError: Image cannot be executed
    +-- ProbeCommunicationError: Transient debug adapter failure
    +-- ExecutionTimeoutError: Job exceeded its deadline
    +-- StateTransitionError: Illegal job state transition
    +-- InternalError: Unexpected failure (opaque message)
"""

from __future__ import annotations

from enum import Enum


class HilprobeError(Exception):
    """Base exception for all hilprobe errors.

    This is the root of the hilprobe exception hierarchy. Catch this to handle
    any framework-specific error.
    """


class ConfigError(HilprobeError):
    """Raised when the server configuration is invalid.

    Raised at load or build time, never while serving requests.
    """


class AuthFailure(str, Enum):
    """Reason a credential was rejected.

    Attributes:
        INVALID: Malformed token, bad signature, or unusable issuer key.
        EXPIRED: Token temporal claims no longer hold.
        NO_MATCH: Well-formed credential, but no rule admitted it.
    """

    INVALID = "invalid"
    EXPIRED = "expired"
    NO_MATCH = "no_match"


class AuthError(HilprobeError):
    """Raised when a credential is rejected.

    The reason is kept for logging only. Callers facing the network must not
    reveal it, to avoid disclosing the authorization policy.

    Attributes:
        reason: Why the credential was rejected.
    """

    def __init__(self, reason: AuthFailure, message: str = "") -> None:
        """Initialize the error.

        Args:
            reason: Why the credential was rejected.
            message: Optional detail for server-side logs.
        """
        self.reason = reason
        super().__init__(message or f"Credential rejected ({reason.value})")


class NotFoundError(HilprobeError):
    """Raised when a target name is not present in the registry."""


class InvalidBinaryError(HilprobeError):
    """Raised when an image cannot be parsed well enough to attempt execution.

    Also raised by probe drivers that reject an image outright. Never retried.
    """


class ProbeCommunicationError(HilprobeError):
    """Raised on transient debug adapter failures.

    For example, a lost USB connection to the probe. The orchestrator retries
    these a bounded number of times before failing the job.
    """


class ExecutionTimeoutError(HilprobeError):
    """Raised when a job exceeds its effective deadline.

    Fatal to that job only; the probe is reset and freed for the next job.
    """


class StateTransitionError(HilprobeError):
    """Raised when a job would move backwards or skip to an illegal state."""


class InternalError(HilprobeError):
    """Raised for unexpected failures.

    The message is deliberately opaque: captured device output and auth
    secrets are never included.
    """
