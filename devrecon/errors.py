"""Exception taxonomy for the device reconciliation workflow."""
from __future__ import annotations


class ReconError(RuntimeError):
    """Base class for every error raised by devrecon."""


class ConfigurationError(ReconError):
    """Raised when settings cannot be parsed from the environment."""


class NormalizationError(ReconError):
    """Raised when an upstream payload cannot be turned into a record."""


class AuthError(ReconError):
    """Raised when an access token cannot be obtained."""


class SourceFetchError(ReconError):
    """A device inventory could not be fetched completely."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message


class StoreError(ReconError):
    """A call against the document store failed as a whole."""


class StoreThrottledError(StoreError):
    """The document store rejected a whole call with a throttling status."""

    def __init__(self, message: str, retry_after_ms: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class ThrottlingError(ReconError):
    """An item write stayed throttled after all retry attempts."""

    def __init__(self, key: str, attempts: int, retry_after_ms: float | None = None) -> None:
        super().__init__(f"{key}: throttled after {attempts} attempt(s)")
        self.key = key
        self.attempts = attempts
        self.retry_after_ms = retry_after_ms


class ConflictError(ReconError):
    """An item write was rejected with a conflict status."""


class PartialBatchFailure(ReconError):
    """Some items of a bulk batch failed for reasons other than throttling."""


class BulkOperationFailure(ReconError):
    """A bulk batch call failed outright; every item in it is counted failed."""


class ReconciliationInProgressError(ReconError):
    """Another reconciliation run holds the in-flight guard."""

    def __init__(self, holder: str | None = None) -> None:
        message = "A reconciliation run is already in progress"
        if holder:
            message = f"{message} (run {holder})"
        super().__init__(message)
        self.holder = holder


class RunCancelled(ReconError):
    """The caller cancelled the run or its deadline passed."""
