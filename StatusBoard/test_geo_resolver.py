"""Tests for geo resolution."""
import pytest
import requests
from unittest.mock import Mock, patch
from geo_resolver import GeoResolver, IpSbProvider, client_ip, format_city_name, is_private_ip
from status_provider import UpstreamUnavailableError


@pytest.mark.parametrize("ip", [
    "10.0.0.5",
    "10.1.2.3",
    "172.20.5.5",
    "192.168.1.1",
    "169.254.1.1",
    "172.16.0.1",
    "172.31.255.255",
    "192.168.1.10",
    "127.0.0.1",
    "169.254.10.10",
    "::1",
    "fe80::1",
    "fd12:3456::1",
    "::ffff:192.168.1.1",
    "",
    None,
    "not-an-ip",
])
def test_private_addresses(ip):
    assert is_private_ip(ip) is True


@pytest.mark.parametrize("ip", [
    "172.32.0.1",
    "172.15.255.255",
    "8.8.8.8",
    "2001:4860:4860::8888",
    "2400:cb00::1",
    "::ffff:8.8.8.8",
])
def test_public_addresses(ip):
    assert is_private_ip(ip) is False


def test_client_ip_header_precedence():
    headers = {
        "x-forwarded-for": "5.5.5.5, 10.0.0.1",
        "x-real-ip": "4.4.4.4",
        "cf-connecting-ip": "1.1.1.1",
    }
    assert client_ip(headers, "9.9.9.9") == "1.1.1.1"
    assert client_ip({"x-forwarded-for": "5.5.5.5, 10.0.0.1"}, "9.9.9.9") == "5.5.5.5"
    assert client_ip({}, "9.9.9.9") == "9.9.9.9"
    assert client_ip({}, None) == "127.0.0.1"


def test_client_ip_strips_port_and_mapped_prefix():
    assert client_ip({"x-real-ip": "8.8.8.8:4431"}, None) == "8.8.8.8"
    assert client_ip({}, "::ffff:8.8.4.4") == "8.8.4.4"
    assert client_ip({}, "2001:db8::1") == "2001:db8::1"


def test_format_city_name_preference():
    assert format_city_name({"adm2": "Hangzhou", "adm1": "Zhejiang", "name": "Xihu"}) == "Hangzhou"
    assert format_city_name({"adm1": "Zhejiang", "name": "Xihu"}) == "Zhejiang"
    assert format_city_name({"name": "Xihu", "country": "China"}) == "Xihu"
    assert format_city_name({"country": "China"}) == "China"
    assert format_city_name({}) == "unknown"


@pytest.fixture
def qweather():
    client = Mock()
    client.is_configured.return_value = True
    client.city_lookup.return_value = {
        "id": "101210101", "name": "杭州", "adm2": "杭州", "adm1": "浙江省", "country": "中国",
    }
    return client


def test_private_ip_is_never_looked_up(qweather):
    resolver = GeoResolver(qweather)

    assert resolver.resolve_by_ip("192.168.1.5") is None
    qweather.city_lookup.assert_not_called()


def test_resolve_by_ip_caches_success(qweather):
    resolver = GeoResolver(qweather)

    first = resolver.resolve_by_ip("8.8.8.8")
    second = resolver.resolve_by_ip("8.8.8.8")

    assert first.location_id == "101210101"
    assert first.city == "杭州"
    assert first.admin1 == "浙江省"
    assert second is first
    qweather.city_lookup.assert_called_once_with("8.8.8.8")
    assert resolver.cache.get("ip_8.8.8.8") is first


def test_failures_are_not_cached(qweather):
    qweather.city_lookup.side_effect = UpstreamUnavailableError("down")
    resolver = GeoResolver(qweather)

    assert resolver.resolve_by_ip("8.8.8.8") is None
    assert resolver.cache.size() == 0


def test_ip_fallback_reresolves_coordinates(qweather):
    match = qweather.city_lookup.return_value
    qweather.city_lookup.side_effect = [UpstreamUnavailableError("no match"), match]
    fallback = Mock()
    fallback.locate.return_value = (30.2741, 120.1551)
    resolver = GeoResolver(qweather, fallback=fallback)

    location = resolver.resolve_by_ip("2001:4860:4860::8888")

    assert location.location_id == "101210101"
    fallback.locate.assert_called_once_with("2001:4860:4860::8888")
    assert qweather.city_lookup.call_args_list[1][0][0] == "120.16,30.27"


def test_resolve_by_coords(qweather):
    resolver = GeoResolver(qweather)

    location = resolver.resolve_by_coords(30.2741, 120.1551)

    assert location.city == "杭州"
    qweather.city_lookup.assert_called_once_with("120.16,30.27")
    assert resolver.cache.get("coord_30.27_120.16") is location


@pytest.mark.parametrize("lat,lon", [(91, 0), (0, 181), (None, 10), (float("nan"), 1), ("abc", 1)])
def test_invalid_coordinates(qweather, lat, lon):
    resolver = GeoResolver(qweather)
    assert resolver.resolve_by_coords(lat, lon) is None
    qweather.city_lookup.assert_not_called()


def test_unconfigured_client_resolves_nothing(qweather):
    qweather.is_configured.return_value = False
    assert GeoResolver(qweather).resolve_by_ip("8.8.8.8") is None


def test_ip_sb_provider_success():
    with patch('geo_resolver.requests.get') as mock_get:
        response = Mock()
        response.ok = True
        response.json.return_value = {"latitude": 35.0, "longitude": 139.0}
        mock_get.return_value = response

        assert IpSbProvider().locate("1.1.1.1") == (35.0, 139.0)
        assert mock_get.call_args[0][0] == "https://api.ip.sb/geoip/1.1.1.1"


def test_ip_sb_provider_failures_return_none():
    with patch('geo_resolver.requests.get') as mock_get:
        mock_get.side_effect = requests.exceptions.ConnectionError("down")
        assert IpSbProvider().locate("1.1.1.1") is None

    with patch('geo_resolver.requests.get') as mock_get:
        response = Mock()
        response.ok = True
        response.json.return_value = {"ip": "1.1.1.1"}
        mock_get.return_value = response
        assert IpSbProvider().locate("1.1.1.1") is None
