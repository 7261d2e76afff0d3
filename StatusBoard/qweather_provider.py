"""QWeather (和风天气) Weather API and GeoAPI client."""
import logging
import re
from typing import Any, Dict, Optional

import requests

from status_provider import (
    InvalidInputError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from weather_data import WeatherRecord


def _to_int(value: Any, default: int = 0) -> int:
    """Parse QWeather's stringly-typed numbers ("23", "3-4", "1013.0")."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return int(value)
    match = re.match(r"\s*(-?\d+(?:\.\d+)?)", str(value))
    if not match:
        return default
    return int(float(match.group(1)))


class QWeatherClient:
    """
    Thin client for the two QWeather endpoints the service needs.

    Uses the real-time weather API (``/v7/weather/now``) and the city lookup
    GeoAPI (``/v2/city/lookup``), which accepts a location ID, a city name,
    an IP address or a ``"lon,lat"`` string.
    """

    def __init__(
        self,
        api_key: Optional[str],
        api_host: str = "devapi.qweather.com",
        geo_host: str = "geoapi.qweather.com",
        lang: str = "zh",
        timeout: int = 10,
    ):
        """
        Initialize QWeather client.

        Args:
            api_key: QWeather API key
            api_host: Host serving the weather API (dedicated hosts are supported)
            geo_host: Host serving the GeoAPI
            lang: Language code for condition text
            timeout: HTTP request timeout in seconds
        """
        self.api_key = api_key
        self.weather_url = f"https://{api_host}/v7/weather/now"
        self.lookup_url = f"https://{geo_host}/v2/city/lookup"
        self.lang = lang
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def weather_now(self, location_id: str) -> WeatherRecord:
        """
        Fetch current conditions for a QWeather location ID.

        Returns:
            WeatherRecord with ``city`` left empty (callers attach the place name)

        Raises:
            StatusProviderError: If the API request fails
        """
        data = self._get(self.weather_url, {"location": location_id}, f"weather locationId={location_id}")
        now = data.get("now")
        if not isinstance(now, dict) or not now:
            raise UpstreamUnavailableError("Response missing 'now' block", "FETCH_ERROR")

        try:
            record = WeatherRecord(
                temp_c=_to_int(now["temp"]),
                condition_code=str(now.get("icon", "")),
                humidity_pct=_to_int(now.get("humidity")),
                wind_scale=_to_int(now.get("windScale")),
                feels_like_c=_to_int(now.get("feelsLike", now["temp"])),
                city="",
                location_id=str(location_id),
                observed_at=now.get("obsTime") or data.get("updateTime", ""),
                condition_text=now.get("text", ""),
                pressure=_to_int(now["pressure"]) if now.get("pressure") else None,
                visibility_km=_to_int(now["vis"]) if now.get("vis") else None,
                cloud_pct=_to_int(now["cloud"]) if now.get("cloud") else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            logging.error(f"Failed to parse QWeather response: {e}", exc_info=True)
            raise UpstreamUnavailableError(f"Failed to parse response: {str(e)}", "FETCH_ERROR")

        logging.info(f"QWeather now for {location_id}: {record.temp_c}°C, {record.condition_text}")
        return record

    def city_lookup(self, location: str) -> Dict[str, Any]:
        """
        Resolve ``location`` through the GeoAPI and return the best match.

        Raises:
            StatusProviderError: If the lookup fails or returns no match
        """
        data = self._get(self.lookup_url, {"location": location}, f"city lookup {location}")
        matches = data.get("location")
        if not isinstance(matches, list) or not matches or not isinstance(matches[0], dict):
            raise UpstreamUnavailableError(f"City lookup returned no match for {location}", "FETCH_ERROR")
        return matches[0]

    def _get(self, url: str, params: Dict[str, str], context: str) -> Dict[str, Any]:
        query = dict(params, key=self.api_key, lang=self.lang)
        try:
            logging.debug(f"Making QWeather request: {url} ({context})")
            response = requests.get(url, params=query, timeout=self.timeout)
            logging.debug(f"QWeather response status: {response.status_code}")

            if not response.ok:
                self._handle_error_response(response, context)

            data = response.json()
        except requests.exceptions.RequestException as e:
            logging.error(f"Network error during QWeather request ({context}): {e}")
            raise UpstreamUnavailableError(f"Network error: {str(e)}", "FETCH_ERROR")
        except ValueError as e:
            logging.error(f"Malformed QWeather response ({context}): {e}")
            raise UpstreamUnavailableError(f"Failed to parse response: {str(e)}", "FETCH_ERROR")

        if not isinstance(data, dict):
            raise UpstreamUnavailableError("Malformed response body", "FETCH_ERROR")
        self._raise_for_code(str(data.get("code", "")), data.get("message"), context)
        return data

    @staticmethod
    def _raise_for_code(code: str, message: Optional[str], context: str) -> None:
        """Map QWeather's in-body status code onto the error taxonomy."""
        if code == "200":
            return
        detail = message or f"code {code}"
        logging.warning(f"QWeather {context} failed: code={code}, message={detail}")
        if code in ("401", "403"):
            raise UnauthorizedError("QWeather API key is invalid or expired", "CONFIG_ERROR")
        if code in ("204", "400", "404"):
            raise InvalidInputError(f"Location not found or invalid ({detail})", "CONFIG_ERROR")
        if code in ("402", "429"):
            raise RateLimitedError(f"QWeather quota exceeded ({detail})", "FETCH_ERROR")
        raise UpstreamUnavailableError(f"QWeather error {code}: {detail}", "FETCH_ERROR")

    def _handle_error_response(self, response: requests.Response, context: str) -> None:
        """Parse and raise error from a non-2xx QWeather response."""
        status = response.status_code
        try:
            error_data = response.json()
        except ValueError:
            logging.error(f"Non-JSON error response: HTTP {status}, body: {response.text[:500]}")
            error_data = {}

        if not isinstance(error_data, dict):
            error_data = {}
        error_block = error_data.get("error")
        if not isinstance(error_block, dict):
            error_block = {}
        error_type = str(error_block.get("type") or "")
        detail = error_block.get("detail") or error_data.get("message")
        logging.error(f"QWeather {context} HTTP {status}: type={error_type or '-'} detail={detail or '-'}")
        if "invalid-host" in error_type:
            logging.error("Requesting host is not authorized; add it to the QWeather console allow-list")

        if status in (401, 403):
            raise UnauthorizedError("QWeather API key is invalid or expired", "CONFIG_ERROR")
        if status == 429:
            raise RateLimitedError(f"HTTP {status}: rate limited", "FETCH_ERROR")
        if status in (400, 404):
            raise InvalidInputError(f"HTTP {status}: {detail or 'bad request'}", "CONFIG_ERROR")
        raise UpstreamUnavailableError(f"HTTP {status}: {detail or response.reason}", "FETCH_ERROR")

