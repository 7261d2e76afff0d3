"""HTTP and WebSocket surface of the status service."""
import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from bilibili_provider import BilibiliClient, BilibiliCollector, RequestPacer, check_proxy_url, fetch_image, proxied_snapshot
from broadcaster import DeviceStatusBroadcaster
from config import AppConfig
from device_data import utc_timestamp
from device_presence import DevicePresenceEngine
from geo_resolver import GeoResolver, IpSbProvider, client_ip
from json_store import JsonDocument, reset_documents
from qweather_provider import QWeatherClient
from status_provider import InvalidInputError, StatusProviderError
from steam_provider import SteamProvider, SteamStatusService
from usage_ledger import DailyRolloverScheduler, TodayStatsStore, UsageLedger
from weather_service import WeatherService

DEVICE_STATE_FILE = "device-status.json"
TODAY_STATS_FILE = "today-stats.json"
USAGE_RECORDS_FILE = "usage-records.json"
BILIBILI_SNAPSHOT_FILE = "bilibili-data.json"


@dataclass
class Services:
    """Long-lived service objects shared by every request."""
    presence: DevicePresenceEngine
    ledger: UsageLedger
    today_stats: TodayStatsStore
    rollover: DailyRolloverScheduler
    steam: SteamStatusService
    bilibili: BilibiliCollector
    weather: WeatherService
    broadcaster: DeviceStatusBroadcaster
    documents: List[JsonDocument]

    def reset(self) -> None:
        """Forget persisted and in-memory state; called once at startup."""
        reset_documents(*self.documents)
        self.presence.reset()
        self.ledger.clear()
        self.today_stats.reset()
        self.steam.service.cache.clear()
        self.weather.clear()
        self.weather.geo.cache.clear()

    def start(self) -> None:
        self.steam.start()
        self.bilibili.start()
        self.rollover.start()

    def stop(self) -> None:
        self.steam.stop()
        self.bilibili.stop()
        self.rollover.stop()


def build_services(config: AppConfig) -> Services:
    device_doc = JsonDocument(config.path(DEVICE_STATE_FILE))
    today_doc = JsonDocument(config.path(TODAY_STATS_FILE))
    usage_doc = JsonDocument(config.path(USAGE_RECORDS_FILE))
    bilibili_doc = JsonDocument(config.path(BILIBILI_SNAPSHOT_FILE))

    ledger = UsageLedger(usage_doc, retention_days=config.retention_days, max_records=config.max_records)
    today_stats = TodayStatsStore(today_doc)
    presence = DevicePresenceEngine(device_doc, ledger, today_stats)

    qweather = QWeatherClient(
        config.qweather_key,
        api_host=config.qweather_api_host,
        geo_host=config.qweather_geo_host,
        lang=config.qweather_lang,
        timeout=config.http_timeout,
    )
    geo = GeoResolver(qweather, fallback=IpSbProvider())
    weather = WeatherService(
        qweather,
        geo,
        owner_location_id=config.owner_location_id,
        owner_location_name=config.owner_location_name,
        default_city=config.qweather_city,
    )

    steam = SteamStatusService(
        SteamProvider(config.steam_id, api_key=config.steam_api_key, timeout=config.http_timeout),
        poll_interval=config.steam_poll_interval,
    )
    bilibili = BilibiliCollector(
        BilibiliClient(
            config.bilibili_uid,
            sessdata=config.bilibili_sessdata,
            pacer=RequestPacer(config.bilibili_min_delay_ms, config.bilibili_max_delay_ms),
            timeout=config.http_timeout,
        ),
        bilibili_doc,
        interval=config.bilibili_collect_interval,
    )

    broadcaster = DeviceStatusBroadcaster()
    presence.add_listener(broadcaster.publish)

    return Services(
        presence=presence,
        ledger=ledger,
        today_stats=today_stats,
        rollover=DailyRolloverScheduler(ledger, today_stats),
        steam=steam,
        bilibili=bilibili,
        weather=weather,
        broadcaster=broadcaster,
        documents=[device_doc, today_doc, usage_doc, bilibili_doc],
    )


def require_api_key(request: Request, config: AppConfig) -> None:
    """
    Authenticate a device agent.

    Raises:
        HTTPException: 503 when the server has no key, 401 when the request has none, 403 on mismatch
    """
    if not config.require_api_key:
        return
    if not config.api_key:
        raise HTTPException(status_code=503, detail="Server API key is not configured")
    key = request.headers.get("X-API-Key")
    auth = request.headers.get("Authorization", "")
    if not key and auth.startswith("Bearer "):
        key = auth.split(" ", 1)[1].strip()
    if not key:
        raise HTTPException(status_code=401, detail="Missing API key")
    if not hmac.compare_digest(key.encode("utf-8"), config.api_key.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid API key")


def _coordinate(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _ok(data: Any, **extra: Any) -> Dict[str, Any]:
    payload = {"success": True, "data": data}
    payload.update(extra)
    payload["timestamp"] = utc_timestamp()
    return payload


def create_app(config: AppConfig, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Loaded configuration
        services: Pre-built services (tests inject fakes); built from ``config`` when omitted
    """
    services = services or build_services(config)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.reset()
        services.broadcaster.bind_loop(asyncio.get_running_loop())
        services.start()
        logging.info(f"StatusBoard ready on {config.host}:{config.port}")
        yield
        services.stop()
        logging.info("StatusBoard stopped")

    app = FastAPI(title="StatusBoard", lifespan=lifespan)
    app.state.config = config
    app.state.services = services

    @app.exception_handler(HTTPException)
    async def http_error(_: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail, "timestamp": utc_timestamp()},
        )

    @app.exception_handler(StatusProviderError)
    async def provider_error(_: Request, exc: StatusProviderError):
        # Dashboard cards render errors from the body; the status stays 200
        status_code = 400 if isinstance(exc, InvalidInputError) and exc.error_code == "INVALID_PAYLOAD" else 200
        content = exc.to_response()
        content["timestamp"] = utc_timestamp()
        return JSONResponse(status_code=status_code, content=content)

    @app.post("/api/report/device")
    async def report_device(request: Request):
        require_api_key(request, config)
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidInputError("Report body must be valid JSON", "INVALID_PAYLOAD")
        kind = await asyncio.to_thread(services.presence.report_device, payload)
        return {"success": True, "type": kind}

    @app.get("/api/status/device")
    def device_status():
        return _ok(services.presence.snapshot(), lastUpdate=services.presence.latest_update())

    @app.get("/api/status/steam")
    def steam_status():
        return _ok(services.steam.read())

    @app.get("/api/status/bilibili")
    def bilibili_status(request: Request):
        base_url = str(request.base_url).rstrip("/")
        return _ok(proxied_snapshot(services.bilibili.read(), base_url))

    @app.get("/api/status/weather")
    def weather_status(request: Request, lat: Optional[str] = None, lon: Optional[str] = None):
        ip = client_ip(request.headers, request.client.host if request.client else None)
        return _ok(services.weather.get_weather(ip, _coordinate(lat), _coordinate(lon)))

    @app.get("/api/usage/today")
    def usage_today(deviceType: str = "pc", deviceId: Optional[str] = None):
        summary = services.ledger.today_summary(device_type=deviceType, device_id=deviceId)
        return _ok(summary.pop("data"), **summary)

    @app.get("/api/stats/today")
    def stats_today():
        ranking = services.today_stats.ranking()
        return _ok(ranking.pop("data"), **ranking)

    @app.get("/api/health")
    def health():
        return {"status": "ok", "timestamp": utc_timestamp(), "uptime": round(time.monotonic() - started_at, 3)}

    @app.get("/api/proxy/image")
    def proxy_image(url: Optional[str] = None):
        try:
            target = check_proxy_url(url)
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=e.message)
        except PermissionError as e:
            raise HTTPException(status_code=403, detail=str(e))
        try:
            content, content_type = fetch_image(target, timeout=config.http_timeout)
        except StatusProviderError as e:
            logging.warning(f"Image proxy failed for {target}: {e}")
            raise HTTPException(status_code=502, detail="Failed to fetch image")
        return Response(
            content=content,
            media_type=content_type,
            headers={"Cache-Control": "public, max-age=86400", "Access-Control-Allow-Origin": "*"},
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        broadcaster = services.broadcaster
        await broadcaster.connect(websocket, services.presence.snapshot)
        try:
            while True:
                # Inbound messages carry nothing; reading detects the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            broadcaster.disconnect(websocket)
        except Exception as e:
            logging.error(f"WS Error: {e}")
            broadcaster.disconnect(websocket)

    return app
