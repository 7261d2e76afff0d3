"""Tests for the cached status service."""
import pytest
from unittest.mock import Mock
from cached_service import DEFAULT_KEY, CachedStatusService, FetchState
from status_provider import (
    InvalidInputError,
    NotConfiguredError,
    RateLimitedError,
    StatusProviderBase,
    UpstreamUnavailableError,
)
from test_ttl_cache import FakeClock
from ttl_cache import TTLCache


class MockProvider(StatusProviderBase):
    """Mock status provider for testing."""

    def __init__(self, return_data=None, raise_error=None, configured=True):
        self.return_data = return_data
        self.raise_error = raise_error
        self.configured = configured
        self.call_count = 0

    def is_configured(self):
        return self.configured

    def get_current(self):
        self.call_count += 1
        if self.raise_error:
            raise self.raise_error
        return self.return_data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_payload():
    return {"profile": {"name": "tester", "status": "online"}}


def make_service(provider, clock, ttl=60, **kwargs):
    kwargs.setdefault("sleep", Mock())
    return CachedStatusService(provider, TTLCache(1, ttl, clock=clock), name="test", **kwargs)


def test_service_caching(sample_payload, clock):
    """Test that service caches results."""
    provider = MockProvider(return_data=sample_payload)
    service = make_service(provider, clock)

    # First call should hit provider
    assert service.get_latest() == sample_payload
    assert provider.call_count == 1

    # Second call within TTL should use cache
    assert service.get_latest() == sample_payload
    assert provider.call_count == 1
    assert service.state == FetchState.SUCCESS


def test_service_cache_expiry(sample_payload, clock):
    """Test that cache expires after TTL."""
    provider = MockProvider(return_data=sample_payload)
    service = make_service(provider, clock, ttl=1)

    service.get_latest()
    clock.advance(1.1)
    service.get_latest()
    assert provider.call_count == 2


def test_force_refresh_skips_fresh_cache(sample_payload, clock):
    provider = MockProvider(return_data=sample_payload)
    service = make_service(provider, clock)

    service.get_latest()
    service.get_latest(force_refresh=True)
    assert provider.call_count == 2


def test_service_retry_on_transient_error(sample_payload, clock):
    """Test that service retries on transient errors."""
    provider = MockProvider()
    sleep = Mock()
    service = make_service(provider, clock, max_retries=3, retry_delay_seconds=0.5, sleep=sleep)

    def side_effect():
        provider.call_count += 1
        if provider.call_count < 2:
            raise UpstreamUnavailableError("Network error")
        return sample_payload

    provider.get_current = side_effect

    assert service.get_latest() == sample_payload
    assert provider.call_count == 2
    sleep.assert_called_once_with(0.5)


def test_service_no_retry_on_rate_limit(clock):
    """Rate limiting is not retried immediately."""
    provider = MockProvider(raise_error=RateLimitedError("429"))
    service = make_service(provider, clock, max_retries=3)

    with pytest.raises(RateLimitedError):
        service.get_latest()
    assert provider.call_count == 1
    assert service.state == FetchState.FAILED


def test_service_degrades_to_stale_cache(sample_payload, clock):
    """A failed refresh returns the stale value and records DEGRADED."""
    provider = MockProvider(return_data=sample_payload)
    service = make_service(provider, clock, ttl=1)
    service.get_latest()

    provider.raise_error = UpstreamUnavailableError("Network error")
    clock.advance(5)

    assert service.get_latest() == sample_payload
    assert service.state == FetchState.DEGRADED
    assert isinstance(service.last_error, UpstreamUnavailableError)


def test_service_recovers_after_degraded(sample_payload, clock):
    provider = MockProvider(return_data=sample_payload)
    service = make_service(provider, clock, ttl=1)
    service.get_latest()
    provider.raise_error = UpstreamUnavailableError("Network error")
    clock.advance(5)
    service.get_latest()

    provider.raise_error = None
    provider.return_data = {"profile": {"name": "tester", "status": "offline"}}
    assert service.get_latest()["profile"]["status"] == "offline"
    assert service.state == FetchState.SUCCESS
    assert service.last_error is None


def test_service_fails_without_cache(clock):
    """Test that service raises error if no cache exists."""
    provider = MockProvider(raise_error=UpstreamUnavailableError("Network error"))
    service = make_service(provider, clock)

    with pytest.raises(UpstreamUnavailableError):
        service.get_latest()
    assert service.state == FetchState.FAILED


def test_invalid_input_is_never_masked_by_stale_value(sample_payload, clock):
    provider = MockProvider(return_data=sample_payload)
    service = make_service(provider, clock, ttl=1)
    service.get_latest()

    provider.raise_error = InvalidInputError("bad id", "INVALID_STEAM_ID")
    clock.advance(5)
    with pytest.raises(InvalidInputError) as exc_info:
        service.get_latest()
    assert exc_info.value.error_code == "INVALID_STEAM_ID"


def test_unconfigured_provider(clock):
    provider = MockProvider(configured=False)
    service = make_service(provider, clock)

    assert service.state == FetchState.UNCONFIGURED
    with pytest.raises(NotConfiguredError):
        service.get_latest()
    assert provider.call_count == 0


def test_fetch_with_loader_and_keys(clock):
    service = CachedStatusService(None, TTLCache(10, 60, clock=clock), name="visitor")
    loader = Mock(return_value="sunny")

    assert service.fetch("visitor_1.2.3.4", loader) == "sunny"
    assert service.fetch("visitor_1.2.3.4", loader) == "sunny"
    assert service.fetch(DEFAULT_KEY, loader) == "sunny"
    assert loader.call_count == 2


def test_error_response_shape():
    error = NotConfiguredError("Steam ID is not configured")
    assert error.to_response() == {
        "success": False,
        "error": "Steam ID is not configured",
        "errorCode": "NOT_CONFIGURED",
        "kind": "not-configured",
    }
