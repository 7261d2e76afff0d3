"""Status provider abstraction - every upstream data source implements this."""
from abc import ABC, abstractmethod
from typing import Any, Optional


class StatusProviderBase(ABC):
    """Abstract base class for upstream status providers (Steam, Bilibili, QWeather)."""

    def is_configured(self) -> bool:
        """Return False when required credentials or IDs are missing."""
        return True

    @abstractmethod
    def get_current(self) -> Any:
        """
        Fetch the current normalized record from the upstream API.

        Returns:
            The provider's normalized record

        Raises:
            StatusProviderError: If the provider fails to fetch data
        """
        pass


class StatusProviderError(Exception):
    """Exception raised when a status provider fails."""

    kind = "upstream-error"
    default_error_code = "FETCH_ERROR"
    # Worth another attempt right away (network, timeout, 5xx)
    retryable = False
    # May be answered from a stale cached value instead of surfacing
    degradable = True

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code

    def to_response(self) -> dict:
        return {
            "success": False,
            "error": self.message,
            "errorCode": self.error_code,
            "kind": self.kind,
        }


class NotConfiguredError(StatusProviderError):
    """Required credential or ID is missing; permanent until redeploy."""

    kind = "not-configured"
    default_error_code = "NOT_CONFIGURED"
    degradable = False


class InvalidInputError(StatusProviderError):
    """Malformed ID, coordinates or upstream parameters."""

    kind = "invalid-parameters"
    default_error_code = "INVALID_INPUT"
    degradable = False


class UnauthorizedError(StatusProviderError):
    """Upstream rejected our credentials."""

    kind = "invalid-credentials"
    default_error_code = "CONFIG_ERROR"


class SignatureInvalidError(UnauthorizedError):
    """Signed request rejected; signing keys must be fetched again."""

    kind = "signature-invalid"


class RateLimitedError(StatusProviderError):
    """Upstream throttling signal."""

    kind = "rate-limited"


class UpstreamUnavailableError(StatusProviderError):
    """Network error, timeout or 5xx from a third party."""

    kind = "upstream-error"
    retryable = True
