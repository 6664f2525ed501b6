"""Error taxonomy for pulling and cataloguing model artifacts.

Retry policy:
- NetworkError, TransferTimeoutError: retryable, handled by the backoff driver
- IntegrityError, SchemaMismatchError: fatal on first occurrence
- StoreError: rolls back one transaction; the owning pipeline marks its run Failed
"""

from __future__ import annotations


class ModelPullError(Exception):
    """Base exception for all modelpull failures."""


class NetworkError(ModelPullError):
    """Transport or connection failure talking to a remote endpoint."""

    def __init__(self, message: str, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class TransferFailedError(NetworkError):
    """A transfer ended with a Failed outcome (e.g. non-success HTTP status)."""


class TransferTimeoutError(ModelPullError, TimeoutError):
    """A single chunk read or a probe exceeded its time bound."""

    def __init__(self, message: str, url: str | None = None, bytes_flushed: int = 0) -> None:
        super().__init__(message)
        self.url = url
        self.bytes_flushed = bytes_flushed


class LocalIOError(ModelPullError):
    """Filesystem operation failed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class DigestDecodeError(ModelPullError, ValueError):
    """Digest string is malformed (odd length, non-hex, unknown algorithm)."""


class IntegrityError(ModelPullError):
    """Downloaded content does not match its recorded digest."""

    def __init__(self, message: str, digest: str | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.digest = digest
        self.path = path


class SchemaMismatchError(ModelPullError):
    """Remote manifest dialect differs from the locally recorded one."""


class StoreError(ModelPullError):
    """Metadata store write or read failed."""


class VariantNotFoundError(ModelPullError):
    """Requested name/category is not present in the local catalog."""


class ConfigError(ModelPullError, ValueError):
    """Invalid configuration value."""


RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (NetworkError, TransferTimeoutError)


def is_retryable(exc: BaseException) -> bool:
    """Return True if the error class is handled by the backoff driver."""
    return isinstance(exc, RETRYABLE_ERRORS)
