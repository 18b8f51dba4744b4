"""
Exception hierarchy for market data acquisition.

Fatal vs. absorbed is decided by the caller: provider clients swallow
ParseFailure / NetworkFailure per attempt inside their retry loops, and
only the service turns what escapes into a user-facing outcome.
"""


class MarketDataError(Exception):
    """Base exception for acquisition failures."""

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class PriceUnavailable(MarketDataError):
    """Every price source was exhausted without a usable underlying price."""


class KeyInvalid(MarketDataError):
    """The provider rejected the API key (HTTP 401/403 on an auth-checked call)."""


class EntitlementRestricted(MarketDataError):
    """The key is valid but its plan does not include the requested endpoint."""


class NoChainFound(MarketDataError):
    """A price was found but no option contracts were returned."""


class ParseFailure(MarketDataError):
    """A response could not be parsed into the expected payload."""


class NetworkFailure(MarketDataError):
    """Transport error or unexpected non-2xx response."""

    def __init__(self, message: str = "", status_code=None):
        self.status_code = status_code
        super().__init__(message)
