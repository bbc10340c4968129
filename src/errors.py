"""
Error taxonomy for the reconciliation core.

Every error carries a human-readable ``message`` naming the step and the
resource involved, so operators can diagnose a failure from the log line
alone. Underlying causes are chained with ``raise ... from``.
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for all errors raised by the reconciliation core."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(OperatorError):
    """The requested object does not exist in the store."""


class ConfigurationError(OperatorError):
    """Missing or invalid configuration (region, endpoints, credentials)."""


class CredentialError(ConfigurationError):
    """No usable credential source could be found."""


class InvalidInputError(OperatorError):
    """A caller supplied a missing or malformed argument."""


class SessionCreationError(OperatorError):
    """A cloud session could not be created for a scope."""


class DecodeError(OperatorError):
    """A provider configuration payload could not be decoded."""


class SchemaError(DecodeError):
    """The payload's apiVersion/kind marker is not a registered schema."""

    def __init__(
        self,
        message: str,
        api_version: Optional[str] = None,
        kind: Optional[str] = None,
    ):
        self.api_version = api_version
        self.kind = kind
        super().__init__(message)


class MalformedPayloadError(DecodeError):
    """The payload could not be parsed under the matched schema."""


class EncodeError(OperatorError):
    """A provider configuration value could not be serialized."""


class ConflictError(OperatorError):
    """An optimistic-concurrency precondition did not hold."""

    def __init__(
        self,
        message: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class StoreError(OperatorError):
    """The object store failed for a reason other than not-found or conflict."""


def is_retryable_immediately(error: Optional[BaseException]) -> bool:
    """Return True if the reconcile should be re-run without backoff."""
    return isinstance(error, ConflictError)
