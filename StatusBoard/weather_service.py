"""Weather service with owner/visitor lookups, caching and stale fallback."""
import logging
from typing import Any, Dict, Optional

from cached_service import DEFAULT_KEY, CachedStatusService
from geo_resolver import GeoResolver
from qweather_provider import QWeatherClient
from status_provider import NotConfiguredError, StatusProviderError
from ttl_cache import TTLCache
from weather_data import UNKNOWN_CITY, GeoLocation, WeatherRecord

OWNER_CACHE_TTL_SECONDS = 30 * 60
VISITOR_CACHE_TTL_SECONDS = 60 * 60
VISITOR_CACHE_MAX_ENTRIES = 100
SITE_CACHE_TTL_SECONDS = 30 * 60


class WeatherService:
    """
    Serves current conditions for the dashboard weather card.

    Two deployment models exist and exactly one is active:

    * Owner/visitor: enabled when an owner location id is configured. The
      owner's weather comes from that fixed id (never geo-resolved); the
      visitor's from their browser coordinates, falling back to their IP.
    * Legacy: a single site-wide location taken from the configured city,
      else from the first visitor that can be located.

    Every lookup goes through a CachedStatusService, so an upstream failure
    serves the last good record while one exists.
    """

    def __init__(
        self,
        client: QWeatherClient,
        geo: GeoResolver,
        owner_location_id: Optional[str] = None,
        owner_location_name: Optional[str] = None,
        default_city: Optional[str] = None,
    ):
        """
        Initialize weather service.

        Args:
            client: QWeather client used for lookups and current conditions
            geo: Resolver for visitor IPs and coordinates
            owner_location_id: QWeather location id of the site owner; enables owner/visitor mode
            owner_location_name: Display name for the owner's location
            default_city: Legacy-mode city (location id or name)
        """
        self.client = client
        self.geo = geo
        self.owner_location_id = owner_location_id
        self.owner_location_name = owner_location_name
        self.default_city = default_city

        self.owner = CachedStatusService(None, TTLCache(1, OWNER_CACHE_TTL_SECONDS), name="owner weather")
        self.visitor = CachedStatusService(
            None, TTLCache(VISITOR_CACHE_MAX_ENTRIES, VISITOR_CACHE_TTL_SECONDS), name="visitor weather"
        )
        self.site = CachedStatusService(None, TTLCache(1, SITE_CACHE_TTL_SECONDS), name="weather")

    @property
    def owner_mode(self) -> bool:
        return bool(self.owner_location_id)

    def get_weather(self, ip: Optional[str], lat: Optional[float] = None, lon: Optional[float] = None) -> Dict[str, Any]:
        """
        Return the dashboard weather payload for one request.

        Raises:
            StatusProviderError: With error code API_NOT_CONFIGURED, CITY_NOT_CONFIGURED,
                CONFIG_ERROR or FETCH_ERROR when nothing can be served
        """
        if not self.client.is_configured():
            raise NotConfiguredError("QWeather API key is not configured", "API_NOT_CONFIGURED")
        if self.owner_mode:
            return self._owner_and_visitor(ip, lat, lon)
        return self._legacy(ip, lat, lon).to_dict()

    def clear(self) -> None:
        for service in (self.owner, self.visitor, self.site):
            service.cache.clear()

    def owner_weather(self) -> WeatherRecord:
        location_id = self.owner_location_id

        def load() -> WeatherRecord:
            logging.info(f"Fetching owner weather: location id {location_id}")
            return self.client.weather_now(location_id).with_location(self.owner_location_name or "", location_id)

        return self.owner.fetch(DEFAULT_KEY, load)

    def visitor_weather(self, ip: Optional[str], lat: Optional[float], lon: Optional[float]) -> Optional[WeatherRecord]:
        """Weather at the visitor's location, or None when they cannot be located."""
        has_coords = lat is not None and lon is not None
        source = f"{lat:.2f}_{lon:.2f}" if has_coords else f"{ip}"
        key = f"visitor_{source}"
        cached = self.visitor.cache.get(key)
        if cached is not None:
            logging.debug(f"Visitor weather cache hit: {key}")
            return cached

        location = self._locate(ip, lat, lon)
        if location is None:
            logging.warning(f"Visitor location unavailable ({source})")
            return None

        def load() -> WeatherRecord:
            return self.client.weather_now(location.location_id).with_location(
                location.city,
                location.location_id,
                admin1=location.admin1,
                admin2=location.admin2,
                country=location.country,
            )

        record = self.visitor.fetch(key, load)
        logging.info(f"Visitor weather: {source} -> {record.city} {record.temp_c}°C {record.condition_text}")
        return record

    def _locate(self, ip: Optional[str], lat: Optional[float], lon: Optional[float]) -> Optional[GeoLocation]:
        if lat is not None and lon is not None:
            location = self.geo.resolve_by_coords(lat, lon)
            if location is not None:
                return location
            logging.warning(f"Coordinate lookup failed, falling back to IP: lat={lat}, lon={lon}")
        return self.geo.resolve_by_ip(ip)

    def _owner_and_visitor(self, ip: Optional[str], lat: Optional[float], lon: Optional[float]) -> Dict[str, Any]:
        owner: Optional[WeatherRecord] = None
        owner_error: Optional[StatusProviderError] = None
        try:
            owner = self.owner_weather()
        except StatusProviderError as e:
            owner_error = e
            logging.error(f"Owner weather unavailable: {e}")

        visitor: Optional[WeatherRecord] = None
        try:
            visitor = self.visitor_weather(ip, lat, lon)
        except StatusProviderError as e:
            logging.error(f"Visitor weather unavailable: {e}")

        primary = visitor or owner
        if primary is None:
            if owner_error is not None:
                raise owner_error
            raise NotConfiguredError("No weather location available", "CITY_NOT_CONFIGURED")

        payload: Dict[str, Any] = {
            "owner": owner.to_dict() if owner else None,
            "visitor": visitor.to_dict() if visitor else None,
        }
        payload.update(primary.to_dict())
        payload["city"] = primary.city or UNKNOWN_CITY
        return payload

    def _legacy(self, ip: Optional[str], lat: Optional[float], lon: Optional[float]) -> WeatherRecord:
        def load() -> WeatherRecord:
            location = self._legacy_location(ip, lat, lon)
            if location is None:
                raise NotConfiguredError("No city configured and visitor location unavailable", "CITY_NOT_CONFIGURED")
            record = self.client.weather_now(location.location_id).with_location(
                location.city,
                location.location_id,
                admin1=location.admin1,
                admin2=location.admin2,
                country=location.country,
            )
            logging.info(f"Weather fetched: {record.city} {record.temp_c}°C {record.condition_text}")
            return record

        return self.site.fetch(DEFAULT_KEY, load)

    def _legacy_location(self, ip: Optional[str], lat: Optional[float], lon: Optional[float]) -> Optional[GeoLocation]:
        city = (self.default_city or "").strip()
        if city.isdigit():
            return GeoLocation(location_id=city, city=self.owner_location_name or "")
        if city:
            match = self.client.city_lookup(city)
            return GeoLocation(
                location_id=str(match.get("id", "")),
                city=match.get("name") or city,
                admin1=match.get("adm1") or "",
                admin2=match.get("adm2") or "",
                country=match.get("country") or "",
            )
        return self._locate(ip, lat, lon)
