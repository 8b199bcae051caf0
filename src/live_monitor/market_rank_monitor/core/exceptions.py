"""
Exceptions for the market rank monitor.

Upstream errors are split by what the ingestion worker does with them:
abort the run, dead-letter the symbol, cool down, or dead-letter as retryable.
"""


class MarketRankError(Exception):
    """Base exception for all market rank monitor errors."""

    pass


class ConfigurationError(MarketRankError):
    """Raised when required configuration (e.g. the API credential) is missing."""

    pass


class StoreUnavailableError(MarketRankError):
    """Raised when the backing store cannot be reached or times out."""

    pass


class DLQJobNotFoundError(MarketRankError):
    """Raised when a dead-letter job id does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"DLQ job not found: {job_id}")


class UpstreamError(MarketRankError):
    """Base class for quote provider failures."""

    status_code = None

    def __init__(self, message: str, status_code: int = None, symbols=None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.symbols = list(symbols or [])


class UpstreamAuthError(UpstreamError):
    """401/403 from the provider. Retrying will not help, the run is aborted."""

    pass


class SymbolNotFoundError(UpstreamError):
    """The provider has no quote for a symbol."""

    status_code = 404


class RateLimitedError(UpstreamError):
    """429 from the provider."""

    status_code = 429

    def __init__(self, message: str, retry_after: float = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UpstreamTransientError(UpstreamError):
    """Timeouts, 5xx and network failures."""

    pass


class LockHeldError(MarketRankError):
    """The static data lock is held by another owner."""

    def __init__(self, holder: str = None):
        self.holder = holder
        super().__init__(f"Static data lock held by {holder or 'another owner'}")
