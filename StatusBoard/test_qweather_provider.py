"""Tests for QWeather client."""
import pytest
import requests
from unittest.mock import Mock, patch
from qweather_provider import QWeatherClient
from status_provider import InvalidInputError, RateLimitedError, UnauthorizedError, UpstreamUnavailableError
from weather_data import WeatherRecord


@pytest.fixture
def sample_now_response():
    """Sample /v7/weather/now response."""
    return {
        "code": "200",
        "updateTime": "2024-05-01T12:05+08:00",
        "now": {
            "obsTime": "2024-05-01T12:00+08:00",
            "temp": "24",
            "feelsLike": "25",
            "icon": "101",
            "text": "多云",
            "windScale": "3-4",
            "humidity": "58",
            "pressure": "1008",
            "vis": "16",
            "cloud": "91",
        },
    }


@pytest.fixture
def client():
    return QWeatherClient("test_key", api_host="api.example.com", geo_host="geo.example.com")


def ok_response(body):
    response = Mock()
    response.ok = True
    response.status_code = 200
    response.json.return_value = body
    return response


def test_weather_now_success(client, sample_now_response):
    with patch('qweather_provider.requests.get') as mock_get:
        mock_get.return_value = ok_response(sample_now_response)

        weather = client.weather_now("101010100")

        assert isinstance(weather, WeatherRecord)
        assert weather.temp_c == 24
        assert weather.feels_like_c == 25
        assert weather.condition_code == "101"
        assert weather.condition_text == "多云"
        assert weather.wind_scale == 3
        assert weather.humidity_pct == 58
        assert weather.pressure == 1008
        assert weather.observed_at == "2024-05-01T12:00+08:00"
        assert weather.city == ""

        args, kwargs = mock_get.call_args
        assert args[0] == "https://api.example.com/v7/weather/now"
        assert kwargs["params"]["location"] == "101010100"
        assert kwargs["params"]["key"] == "test_key"
        assert kwargs["timeout"] == 10


def test_city_lookup_returns_first_match(client):
    body = {"code": "200", "location": [{"id": "101020100", "name": "上海", "adm1": "上海市"}, {"id": "x"}]}
    with patch('qweather_provider.requests.get') as mock_get:
        mock_get.return_value = ok_response(body)

        match = client.city_lookup("121.47,31.23")

        assert match["id"] == "101020100"
        assert mock_get.call_args[0][0] == "https://geo.example.com/v2/city/lookup"


def test_city_lookup_no_match(client):
    with patch('qweather_provider.requests.get') as mock_get:
        mock_get.return_value = ok_response({"code": "200", "location": []})

        with pytest.raises(UpstreamUnavailableError):
            client.city_lookup("nowhere")


@pytest.mark.parametrize("code,error_type", [
    ("401", UnauthorizedError),
    ("404", InvalidInputError),
    ("429", RateLimitedError),
    ("500", UpstreamUnavailableError),
])
def test_body_code_mapping(client, code, error_type):
    with patch('qweather_provider.requests.get') as mock_get:
        mock_get.return_value = ok_response({"code": code})

        with pytest.raises(error_type):
            client.weather_now("101010100")


def test_http_401_is_config_error(client):
    with patch('qweather_provider.requests.get') as mock_get:
        response = Mock()
        response.ok = False
        response.status_code = 401
        response.json.return_value = {"error": {"type": "https://dev.qweather.com/docs/resource/error-code/#invalid-host"}}
        mock_get.return_value = response

        with pytest.raises(UnauthorizedError) as exc_info:
            client.weather_now("101010100")
        assert exc_info.value.error_code == "CONFIG_ERROR"


def test_network_error_is_retryable(client):
    with patch('qweather_provider.requests.get') as mock_get:
        mock_get.side_effect = requests.exceptions.Timeout("timed out")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            client.weather_now("101010100")
        assert exc_info.value.retryable is True
        assert exc_info.value.error_code == "FETCH_ERROR"


def test_malformed_json(client):
    with patch('qweather_provider.requests.get') as mock_get:
        response = ok_response(None)
        response.json.side_effect = ValueError("Expecting value")
        mock_get.return_value = response

        with pytest.raises(UpstreamUnavailableError):
            client.weather_now("101010100")


def test_missing_now_block(client):
    with patch('qweather_provider.requests.get') as mock_get:
        mock_get.return_value = ok_response({"code": "200"})

        with pytest.raises(UpstreamUnavailableError):
            client.weather_now("101010100")


def test_is_configured():
    assert QWeatherClient("key").is_configured() is True
    assert QWeatherClient(None).is_configured() is False
