"""Coarse location resolution from visitor IPs and browser coordinates."""
import ipaddress
import logging
import math
from typing import Any, Dict, Mapping, Optional, Tuple

import requests

from qweather_provider import QWeatherClient
from status_provider import StatusProviderError
from ttl_cache import TTLCache
from weather_data import UNKNOWN_CITY, GeoLocation

IP_CACHE_TTL_SECONDS = 24 * 60 * 60
IP_CACHE_MAX_ENTRIES = 500

# Never sent upstream. 172.16.0.0/12 stops at 172.31.255.255; 172.32+ is public.
PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
    )
)


def is_private_ip(ip: Optional[str]) -> bool:
    """True for loopback, link-local, private and unparseable addresses."""
    if not ip:
        return True
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(address in network for network in PRIVATE_NETWORKS)


CLIENT_IP_HEADERS = ("cf-connecting-ip", "true-client-ip", "x-real-ip")


def client_ip(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """
    Best guess at the visitor's address behind CDNs and reverse proxies.

    Header lookups are case-insensitive when ``headers`` is (Starlette's are).
    """
    candidate = None
    for header in CLIENT_IP_HEADERS:
        value = headers.get(header)
        if value and value.strip():
            candidate = value.strip()
            break
    if candidate is None:
        forwarded = headers.get("x-forwarded-for")
        if forwarded and forwarded.split(",")[0].strip():
            candidate = forwarded.split(",")[0].strip()
    if candidate is None:
        candidate = peer or "127.0.0.1"

    # "1.2.3.4:5678" -> "1.2.3.4"; bare IPv6 has more than one colon
    if candidate.count(":") == 1:
        candidate = candidate.split(":", 1)[0]
    if candidate.startswith("::ffff:") and "." in candidate:
        candidate = candidate[len("::ffff:"):]
    return candidate


def format_city_name(match: Dict[str, Any]) -> str:
    """Display name preference: city-level admin, province, place name, country."""
    for field in ("adm2", "adm1", "name", "country"):
        value = match.get(field)
        if value:
            return value
    return UNKNOWN_CITY


class IpSbProvider:
    """Secondary IP geolocation via ip.sb; returns raw coordinates (IPv6 capable)."""

    BASE_URL = "https://api.ip.sb/geoip/"

    def __init__(self, timeout: int = 8):
        self.timeout = timeout

    def locate(self, ip: str) -> Optional[Tuple[float, float]]:
        """Return ``(lat, lon)`` or None; never raises."""
        try:
            response = requests.get(
                f"{self.BASE_URL}{requests.utils.quote(ip, safe='')}",
                headers={"User-Agent": "StatusBoard/1.0"},
                timeout=self.timeout,
            )
            if not response.ok:
                logging.warning(f"ip.sb lookup failed for {ip}: HTTP {response.status_code}")
                return None
            data = response.json()
            lat = float(data["latitude"])
            lon = float(data["longitude"])
        except requests.exceptions.RequestException as e:
            logging.warning(f"ip.sb lookup failed for {ip}: {e}")
            return None
        except (KeyError, ValueError, TypeError) as e:
            logging.warning(f"ip.sb returned no coordinates for {ip}: {e}")
            return None
        return lat, lon


class GeoResolver:
    """
    Resolves an IP address or a lat/lon pair to a GeoLocation.

    Successful results are cached for 24 hours; failures are not cached so a
    later request can retry. Nothing here raises: an unresolvable location is
    ``None`` and callers degrade.
    """

    def __init__(
        self,
        client: QWeatherClient,
        fallback: Optional[IpSbProvider] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.client = client
        self.fallback = fallback
        self.cache = cache or TTLCache(IP_CACHE_MAX_ENTRIES, IP_CACHE_TTL_SECONDS)

    def resolve_by_ip(self, ip: Optional[str]) -> Optional[GeoLocation]:
        if is_private_ip(ip):
            logging.info(f"Skipping geolocation for private/local IP: {ip}")
            return None
        ip = ip.strip()

        cache_key = f"ip_{ip}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            logging.debug(f"IP location cache hit: {ip}")
            return cached

        location = self._lookup(ip)
        if location is None and self.fallback is not None:
            coords = self.fallback.locate(ip)
            if coords is not None:
                lat, lon = coords
                logging.info(f"Primary IP lookup failed for {ip}, re-resolving fallback coordinates {lat},{lon}")
                location = self._lookup(f"{lon:.2f},{lat:.2f}")

        if location is None:
            logging.warning(f"IP geolocation failed: {ip}")
            return None
        self.cache.set(cache_key, location)
        logging.info(f"IP located: {ip} -> {location.city} ({location.location_id})")
        return location

    def resolve_by_coords(self, lat: Optional[float], lon: Optional[float]) -> Optional[GeoLocation]:
        if not _valid_coords(lat, lon):
            logging.warning(f"Invalid coordinates: lat={lat}, lon={lon}")
            return None
        lat, lon = float(lat), float(lon)

        cache_key = f"coord_{lat:.2f}_{lon:.2f}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            logging.debug(f"Coordinate location cache hit: {lat}, {lon}")
            return cached

        location = self._lookup(f"{lon:.2f},{lat:.2f}")
        if location is None:
            logging.warning(f"Coordinate geolocation failed: {lat}, {lon}")
            return None
        self.cache.set(cache_key, location)
        logging.info(f"Coordinates located: {lat}, {lon} -> {location.city} ({location.location_id})")
        return location

    def _lookup(self, query: str) -> Optional[GeoLocation]:
        if not self.client.is_configured():
            return None
        try:
            match = self.client.city_lookup(query)
        except StatusProviderError as e:
            logging.warning(f"City lookup failed for {query}: {e}")
            return None
        location_id = match.get("id")
        if not location_id:
            logging.warning(f"City lookup for {query} returned a match without an id")
            return None
        return GeoLocation(
            location_id=str(location_id),
            city=format_city_name(match),
            admin1=match.get("adm1") or "",
            admin2=match.get("adm2") or "",
            country=match.get("country") or "",
        )


def _valid_coords(lat: Optional[float], lon: Optional[float]) -> bool:
    if lat is None or lon is None:
        return False
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
