"""Cache-with-stale-fallback policy shared by every upstream fetcher."""
import logging
import time
from enum import Enum
from typing import Any, Callable, Hashable, Optional

from status_provider import NotConfiguredError, StatusProviderBase, StatusProviderError
from ttl_cache import TTLCache

DEFAULT_KEY = "latest"


class FetchState(Enum):
    UNCONFIGURED = "unconfigured"
    READY = "ready"
    FETCHING = "fetching"
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


class CachedStatusService:
    """
    Service that wraps a status provider with caching and stale fallback.

    Prevents hammering the upstream API by caching results and only fetching
    new data when no fresh entry exists. When a refresh fails and a stale
    value is still held, the stale value is returned and the failure is only
    logged (DEGRADED). Without a stale value the error propagates (FAILED).
    """

    def __init__(
        self,
        provider: Optional[StatusProviderBase],
        cache: TTLCache,
        name: str = "status",
        max_retries: int = 1,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize service.

        Args:
            provider: Provider used by ``get_latest``; may be None when only ``fetch`` is used
            cache: Cache instance owned by this service
            name: Label used in log lines
            max_retries: Attempts per refresh for retryable errors
            retry_delay_seconds: Base delay between attempts (grows linearly)
            sleep: Sleep function (injectable for tests)
        """
        self.provider = provider
        self.cache = cache
        self.name = name
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

        self.last_error: Optional[StatusProviderError] = None
        self.state = FetchState.READY
        if provider is not None and not provider.is_configured():
            self.state = FetchState.UNCONFIGURED

    def get_latest(self, key: Hashable = DEFAULT_KEY, force_refresh: bool = False) -> Any:
        """
        Get the latest record from the provider, using cache if still fresh.

        Raises:
            StatusProviderError: If the refresh fails and no stale value exists
        """
        if self.provider is None:
            raise ValueError(f"{self.name} service has no provider")
        if not self.provider.is_configured():
            self.state = FetchState.UNCONFIGURED
            raise NotConfiguredError(f"{self.name} is not configured")
        return self.fetch(key, self.provider.get_current, force_refresh=force_refresh)

    def fetch(self, key: Hashable, loader: Callable[[], Any], force_refresh: bool = False) -> Any:
        """
        Read-through ``key`` using ``loader`` on a cache miss.

        Args:
            key: Cache key
            loader: Zero-argument callable performing the upstream call
            force_refresh: Skip the freshness check (background pollers)

        Returns:
            Fresh, newly fetched or stale value

        Raises:
            StatusProviderError: If all attempts fail and no stale value exists
        """
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                logging.debug(f"Using cached {self.name} data for {key!r}")
                return cached

        self.state = FetchState.FETCHING
        last_error: Optional[StatusProviderError] = None
        for attempt in range(self.max_retries):
            try:
                logging.debug(f"{self.name} fetch attempt {attempt + 1}/{self.max_retries}")
                value = loader()
                self.cache.set(key, value)
                self.last_error = None
                self.state = FetchState.SUCCESS
                return value
            except StatusProviderError as e:
                last_error = e
                logging.warning(f"{self.name} fetch attempt {attempt + 1} failed: {e}")
                if not e.retryable:
                    break
                if attempt < self.max_retries - 1:
                    retry_delay = self.retry_delay_seconds * (attempt + 1)
                    logging.info(f"Retrying {self.name} in {retry_delay}s...")
                    self._sleep(retry_delay)

        self.last_error = last_error
        stale = self.cache.get_stale(key) if last_error.degradable else None
        if stale is not None:
            age = self.cache.age(key) or 0.0
            logging.warning(
                f"{self.name} refresh failed ({last_error.kind}), using stale cache (age: {age:.1f}s)"
            )
            self.state = FetchState.DEGRADED
            return stale

        self.state = FetchState.UNCONFIGURED if isinstance(last_error, NotConfiguredError) else FetchState.FAILED
        logging.error(f"{self.name} fetch failed, no cache available: {last_error}")
        raise last_error
