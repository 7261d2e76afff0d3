"""Environment-driven configuration."""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")


@dataclass
class AppConfig:
    """Everything the server reads from the environment."""
    api_key: Optional[str] = None
    require_api_key: bool = True
    host: str = "0.0.0.0"
    port: int = 3000
    data_dir: str = DEFAULT_DATA_DIR
    http_timeout: int = 10

    steam_id: Optional[str] = None
    steam_api_key: Optional[str] = None
    steam_poll_interval: float = 60.0

    bilibili_uid: Optional[str] = None
    bilibili_sessdata: str = ""
    bilibili_collect_interval: float = 3600.0
    bilibili_min_delay_ms: int = 500
    bilibili_max_delay_ms: int = 2000

    qweather_key: Optional[str] = None
    qweather_city: Optional[str] = None
    qweather_api_host: str = "devapi.qweather.com"
    qweather_geo_host: str = "geoapi.qweather.com"
    qweather_lang: str = "zh"
    owner_location_id: Optional[str] = None
    owner_location_name: Optional[str] = None

    retention_days: int = 7
    max_records: int = 1000

    def path(self, filename: str) -> str:
        return os.path.join(self.data_dir, filename)


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid {name}: {exc}") from exc
    if parsed < minimum:
        raise SystemExit(f"Invalid {name}: must be at least {minimum}")
    return parsed


def _bool_env(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() not in ("0", "false", "no", "off")


def load_config(data_dir: Optional[str] = None) -> AppConfig:
    """
    Build the configuration from the process environment and ``.env``.

    Raises:
        SystemExit: If a numeric setting cannot be parsed or the Bilibili delay range is inverted
    """
    load_dotenv()
    config = AppConfig(
        api_key=_env("API_KEY"),
        require_api_key=_bool_env("REQUIRE_API_KEY", True),
        host=_env("HOST") or AppConfig.host,
        port=_int_env("PORT", AppConfig.port, minimum=1),
        data_dir=data_dir or _env("DATA_DIR") or DEFAULT_DATA_DIR,
        http_timeout=_int_env("HTTP_TIMEOUT", AppConfig.http_timeout, minimum=1),
        steam_id=_env("STEAM_ID64") or _env("STEAM_ID"),
        steam_api_key=_env("STEAM_API_KEY"),
        steam_poll_interval=_int_env("STEAM_POLL_INTERVAL", 60, minimum=5),
        bilibili_uid=_env("BILIBILI_UID"),
        bilibili_sessdata=_env("BILIBILI_SESSDATA") or "",
        bilibili_collect_interval=_int_env("BILIBILI_COLLECT_INTERVAL", 3600, minimum=60),
        bilibili_min_delay_ms=_int_env("BILIBILI_MIN_DELAY_MS", AppConfig.bilibili_min_delay_ms),
        bilibili_max_delay_ms=_int_env("BILIBILI_MAX_DELAY_MS", AppConfig.bilibili_max_delay_ms),
        qweather_key=_env("QWEATHER_KEY"),
        qweather_city=_env("QWEATHER_CITY"),
        qweather_api_host=_env("QWEATHER_API_HOST") or AppConfig.qweather_api_host,
        qweather_geo_host=_env("QWEATHER_GEO_HOST") or AppConfig.qweather_geo_host,
        qweather_lang=_env("QWEATHER_LANG") or AppConfig.qweather_lang,
        owner_location_id=_env("OWNER_LOCATION_ID"),
        owner_location_name=_env("OWNER_LOCATION_NAME"),
        retention_days=_int_env("DATA_RETENTION_DAYS", AppConfig.retention_days, minimum=1),
        max_records=_int_env("MAX_RECORDS", AppConfig.max_records, minimum=1),
    )
    if config.bilibili_max_delay_ms < config.bilibili_min_delay_ms:
        raise SystemExit("Invalid BILIBILI_MAX_DELAY_MS: must not be below BILIBILI_MIN_DELAY_MS")

    logging.info(
        "Configuration loaded: port=%s data_dir=%s steam=%s bilibili=%s qweather=%s owner_location=%s",
        config.port,
        config.data_dir,
        bool(config.steam_id),
        bool(config.bilibili_uid),
        bool(config.qweather_key),
        config.owner_location_id or "-",
    )
    if not config.api_key and config.require_api_key:
        logging.warning("API_KEY not set; device reports will be rejected with 503")
    return config
