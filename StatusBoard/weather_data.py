"""Weather and location domain models - pure data structures independent of any API."""
from dataclasses import asdict, dataclass
from typing import Optional

UNKNOWN_CITY = "unknown"


@dataclass(frozen=True)
class GeoLocation:
    """Coarse location resolved from an IP address or a coordinate pair."""
    location_id: str
    city: str
    admin1: str = ""  # province / state
    admin2: str = ""  # prefecture-level city
    country: str = ""


@dataclass(frozen=True)
class WeatherRecord:
    """Domain model for current conditions, independent of any specific API."""
    temp_c: int
    condition_code: str  # provider icon code, e.g. "101"
    humidity_pct: int
    wind_scale: int  # Beaufort scale
    feels_like_c: int
    city: str
    location_id: str
    observed_at: str  # provider observation time, ISO 8601

    # Optional fields that the dashboard shows when present
    condition_text: str = ""
    pressure: Optional[int] = None
    visibility_km: Optional[int] = None
    cloud_pct: Optional[int] = None
    admin1: str = ""
    admin2: str = ""
    country: str = ""

    def with_location(self, city: str, location_id: str, **extra: str) -> "WeatherRecord":
        data = asdict(self)
        data.update(city=city, location_id=location_id, **extra)
        return WeatherRecord(**data)

    def to_dict(self) -> dict:
        return {
            "temp": self.temp_c,
            "condition": self.condition_text,
            "conditionCode": self.condition_code,
            "humidity": f"{self.humidity_pct}%",
            "humidityPct": self.humidity_pct,
            "wind": f"{self.wind_scale}",
            "windScale": self.wind_scale,
            "feelsLike": self.feels_like_c,
            "city": self.city or UNKNOWN_CITY,
            "locationId": self.location_id,
            "observedAt": self.observed_at,
            "pressure": self.pressure,
            "vis": self.visibility_km,
            "cloud": self.cloud_pct,
            "adm1": self.admin1,
            "adm2": self.admin2,
            "country": self.country,
        }
