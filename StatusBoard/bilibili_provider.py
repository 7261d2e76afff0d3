"""Bilibili profile, videos and favourites with an hourly on-disk snapshot."""
import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import requests

from background import PeriodicTask
from cached_service import CachedStatusService
from json_store import JsonDocument
from status_provider import (
    InvalidInputError,
    NotConfiguredError,
    RateLimitedError,
    SignatureInvalidError,
    StatusProviderError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from ttl_cache import TTLCache
from wbi_signer import WbiSigner

API_BASE = "https://api.bilibili.com"
FIXED_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SECTION_CACHE_TTL_SECONDS = 30 * 60
PROXY_HOSTS = ("i0.hdslb.com", "i1.hdslb.com", "i2.hdslb.com")
PLACEHOLDER_VIDEO = {
    "title": "No videos yet",
    "thumbnail": "https://images.unsplash.com/photo-1544197150-b99a580bbc7c?q=80&w=600&auto=format&fit=crop",
    "date": "-",
}

CODE_OK = 0
CODE_SIGNATURE_INVALID = -352
CODE_UNAUTHORIZED = (-401, -403)
CODE_RATE_LIMITED = -799


class RequestPacer:
    """Random pause between consecutive upstream calls, to look less like a bot."""

    def __init__(
        self,
        min_delay_ms: int = 500,
        max_delay_ms: int = 2000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_delay_ms < 0 or max_delay_ms < min_delay_ms:
            raise ValueError(f"Invalid delay range: {min_delay_ms}-{max_delay_ms}ms")
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

    def next_delay(self) -> float:
        return random.randint(self.min_delay_ms, self.max_delay_ms) / 1000.0

    def pause(self) -> float:
        delay = self.next_delay()
        logging.debug(f"Pacing Bilibili requests: sleeping {delay:.3f}s")
        self._sleep(delay)
        return delay


def https_url(url: Optional[str]) -> str:
    """Bilibili returns protocol-relative image URLs (``//i0.hdslb.com/...``)."""
    if not url:
        return ""
    if url.startswith("//"):
        return f"https:{url}"
    if not url.startswith("http"):
        return f"https:{url}"
    return url


def relative_date(created: Optional[int], now: Optional[float] = None) -> str:
    if not created:
        return "-"
    now = time.time() if now is None else now
    days = int((now - created) // 86400)
    if days <= 0:
        return "today"
    if days == 1:
        return "1 day ago"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{days // 7} weeks ago"
    if days < 365:
        return f"{days // 30} months ago"
    return f"{days // 365} years ago"


def proxy_image_url(url: Optional[str], base_url: str = "") -> Optional[str]:
    if url and "hdslb.com" in url:
        return f"{base_url}/api/proxy/image?url={quote(url, safe='')}"
    return url


def proxied_snapshot(snapshot: Dict[str, Any], base_url: str = "") -> Dict[str, Any]:
    """Copy of ``snapshot`` with every hdslb image routed through the local proxy."""
    profile = dict(snapshot.get("profile") or {})
    profile["avatar"] = proxy_image_url(profile.get("avatar"), base_url) or None
    videos = [
        dict(video, thumbnail=proxy_image_url(video.get("thumbnail"), base_url))
        for video in snapshot.get("latestVideos") or []
    ]
    favorites = [
        dict(
            folder,
            items=[
                dict(item, cover=proxy_image_url(item.get("cover"), base_url))
                for item in folder.get("items") or []
            ],
        )
        for folder in snapshot.get("favorites") or []
    ]
    return {
        "profile": profile,
        "latestVideos": videos,
        "favorites": favorites,
        "collectedAt": snapshot.get("collectedAt"),
    }


def check_proxy_url(url: Optional[str]) -> str:
    """
    Validate an image URL for the local proxy.

    Raises:
        InvalidInputError: If the URL is missing or unparseable (``INVALID_URL``)
        PermissionError: If the host is not a Bilibili image host
    """
    if not url:
        raise InvalidInputError("Missing url parameter", "INVALID_URL")
    try:
        parsed = urlparse(https_url(url))
    except ValueError as e:
        raise InvalidInputError(f"Invalid url: {e}", "INVALID_URL") from e
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidInputError("Invalid url", "INVALID_URL")
    if parsed.hostname not in PROXY_HOSTS:
        raise PermissionError(f"Host not allowed: {parsed.hostname}")
    return parsed.geturl()


def fetch_image(url: str, timeout: int = 10) -> Tuple[bytes, str]:
    """
    Download an image from a Bilibili host, which requires a bilibili.com Referer.

    Returns:
        Tuple of (body, content type)

    Raises:
        UpstreamUnavailableError: On network failure or a non-2xx response
    """
    try:
        response = requests.get(
            url,
            headers={"User-Agent": FIXED_USER_AGENT, "Referer": "https://www.bilibili.com/"},
            timeout=timeout,
        )
    except requests.exceptions.RequestException as e:
        raise UpstreamUnavailableError(f"Image fetch failed: {e}", "PROXY_FAILED") from e
    if not response.ok:
        raise UpstreamUnavailableError(f"Image fetch failed: HTTP {response.status_code}", "PROXY_FAILED")
    return response.content, response.headers.get("Content-Type", "image/jpeg")


class BilibiliClient:
    """
    Bilibili web API client.

    Space endpoints are called through the WBI-signed path first. A signature
    or auth rejection (or a transport failure) gets exactly one retry against
    the older unsigned endpoint. Error codes map onto the provider taxonomy:
    -352 signature invalid (cached WBI keys are dropped), -401/-403
    unauthorized, -799 rate limited.
    """

    def __init__(
        self,
        uid: Optional[str],
        sessdata: str = "",
        signer: Optional[WbiSigner] = None,
        pacer: Optional[RequestPacer] = None,
        timeout: int = 10,
    ):
        """
        Initialize Bilibili client.

        Args:
            uid: Bilibili user id (mid)
            sessdata: SESSDATA cookie value; optional but reduces risk-control rejections
            signer: WBI signer sharing this client's headers
            pacer: Delay policy between consecutive calls
            timeout: HTTP request timeout in seconds
        """
        self.uid = uid
        self.sessdata = sessdata
        self.timeout = timeout
        self.pacer = pacer or RequestPacer()
        self.signer = signer or WbiSigner(self.headers, timeout=timeout, pacer=self.pacer)

    def is_configured(self) -> bool:
        return bool(self.uid)

    def headers(self) -> Dict[str, str]:
        headers = {
            "User-Agent": FIXED_USER_AGENT,
            "Referer": "https://www.bilibili.com/",
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
        }
        if self.sessdata:
            headers["Cookie"] = f"SESSDATA={self.sessdata}"
        return headers

    def user_info(self) -> Dict[str, Any]:
        data = self._signed_then_legacy(
            "x/space/wbi/acc/info", "x/space/acc/info", {"mid": self.uid}, {"mid": self.uid}, "user info"
        )
        info = {
            "username": data.get("name") or "Unknown",
            "avatar": https_url(data.get("face")),
            "bio": data.get("sign") or "",
            "level": data.get("level") or 0,
        }
        logging.info(f"Bilibili user info: {info['username']}, level {info['level']}")
        return info

    def user_stats(self) -> Dict[str, int]:
        data = self._check(self._get("x/relation/stat", {"vmid": self.uid}), "relation stats")
        stats = {"followers": data.get("follower") or 0, "following": data.get("following") or 0}
        logging.info(f"Bilibili stats: {stats['followers']} followers, {stats['following']} following")
        return stats

    def videos(self) -> List[Dict[str, Any]]:
        params = {"mid": self.uid, "ps": 5, "pn": 1}
        data = self._signed_then_legacy(
            "x/space/wbi/arc/search", "x/space/arc/search", params, dict(params, order="pubdate"), "videos"
        )
        vlist = ((data.get("list") or {}).get("vlist")) or []
        now = time.time()
        videos = [
            {
                "title": video.get("title") or "Untitled",
                "thumbnail": https_url(video.get("pic")),
                "date": relative_date(video.get("created"), now),
                "bvid": video.get("bvid") or "",
                "aid": video.get("aid") or "",
            }
            for video in vlist
        ]
        logging.info(f"Fetched {len(videos)} Bilibili videos")
        return videos

    def favorites(self) -> List[Dict[str, Any]]:
        """First favourites folder with up to 10 items, as a one-element list."""
        folders = self._check(
            self._get("x/v3/fav/folder/created/list", {"up_mid": self.uid, "pn": 1, "ps": 5}), "favourite folders"
        ).get("list") or []
        if not folders:
            logging.info("Bilibili user has no favourite folders")
            return []

        folder = folders[0]
        self.pacer.pause()
        medias = self._check(
            self._get("x/v3/fav/resource/list", {"media_id": folder.get("id"), "pn": 1, "ps": 10}), "favourite items"
        ).get("medias") or []
        items = [
            {
                "title": media.get("title") or "Untitled",
                "cover": https_url(media.get("cover")),
                "bvid": media.get("bvid") or "",
                "author": (media.get("upper") or {}).get("name") or "Unknown",
                "duration": media.get("duration") or 0,
                "play": (media.get("cnt_info") or {}).get("play") or 0,
                "favorite": (media.get("cnt_info") or {}).get("collect") or 0,
            }
            for media in medias
        ]
        logging.info(f"Bilibili favourites: {folder.get('title')} ({len(items)} items)")
        return [
            {
                "folderName": folder.get("title") or "Default folder",
                "folderId": folder.get("id"),
                "total": folder.get("media_count") or 0,
                "items": items,
            }
        ]

    def _signed_then_legacy(
        self,
        signed_path: str,
        legacy_path: str,
        params: Dict[str, Any],
        legacy_params: Dict[str, Any],
        context: str,
    ) -> Dict[str, Any]:
        try:
            body = self._get(signed_path, self.signer.sign(params))
        except UpstreamUnavailableError as e:
            logging.warning(f"Signed {context} request failed ({e}), retrying legacy endpoint")
            return self._check(self._get(legacy_path, legacy_params), context)

        try:
            return self._check(body, context)
        except UnauthorizedError as e:
            logging.warning(f"Signed {context} request rejected ({e.kind}), retrying legacy endpoint")
            return self._check(self._get(legacy_path, legacy_params), context)

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{API_BASE}/{path}"
        try:
            logging.debug(f"Making Bilibili request: {path}")
            response = requests.get(url, params=params, headers=self.headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logging.error(f"Network error during Bilibili request {path}: {e}")
            raise UpstreamUnavailableError(f"Network error: {str(e)}", "API_REQUEST_FAILED")
        # Error codes arrive in the JSON body, often alongside a non-2xx status.
        try:
            body = response.json()
        except ValueError as e:
            logging.error(f"Bilibili {path} returned HTTP {response.status_code} without JSON: {e}")
            raise UpstreamUnavailableError(f"HTTP {response.status_code}: invalid JSON", "API_REQUEST_FAILED")
        if not isinstance(body, dict):
            raise UpstreamUnavailableError("Malformed response body", "API_REQUEST_FAILED")
        return body

    def _check(self, body: Dict[str, Any], context: str) -> Dict[str, Any]:
        code = body.get("code")
        message = body.get("message") or "unknown error"
        if code == CODE_OK:
            data = body.get("data")
            return data if isinstance(data, dict) else {}

        logging.error(f"Bilibili {context} failed: code={code}, message={message}")
        if code == CODE_SIGNATURE_INVALID:
            self.signer.invalidate()
            raise SignatureInvalidError(f"WBI signature rejected ({message})", "API_REQUEST_FAILED")
        if code in CODE_UNAUTHORIZED:
            logging.error("Check whether BILIBILI_SESSDATA has expired")
            raise UnauthorizedError(f"Bilibili rejected credentials ({message})", "API_REQUEST_FAILED")
        if code == CODE_RATE_LIMITED:
            raise RateLimitedError(f"Bilibili rate limit hit ({message})", "API_REQUEST_FAILED")
        raise UpstreamUnavailableError(f"Bilibili error {code}: {message}", "API_REQUEST_FAILED")


class BilibiliCollector:
    """
    Hourly job that gathers the profile sections and writes one snapshot file.

    Each section sits behind its own cache so a failed section falls back to
    its last good value. If the profile itself cannot be fetched the previous
    snapshot is left untouched.
    """

    SECTIONS = ("userInfo", "userStats", "videos", "favorites")

    def __init__(
        self,
        client: BilibiliClient,
        document: JsonDocument,
        interval: float = 3600.0,
    ):
        self.client = client
        self.document = document
        self.interval = interval
        self.sections = {
            name: CachedStatusService(None, TTLCache(1, SECTION_CACHE_TTL_SECONDS), name=f"bilibili {name}")
            for name in self.SECTIONS
        }
        self.task = PeriodicTask("bilibili-collector", self.collect, interval, run_immediately=True)

    def is_configured(self) -> bool:
        return self.client.is_configured()

    def start(self) -> None:
        if not self.is_configured():
            logging.info("Bilibili UID not configured; collector not started")
            return
        self.task.start()

    def stop(self) -> None:
        self.task.stop()

    def _section(self, name: str, loader: Callable[[], Any], default: Any) -> Any:
        try:
            return self.sections[name].fetch(name, loader, force_refresh=True)
        except StatusProviderError as e:
            logging.warning(f"Bilibili {name} unavailable: {e}")
            return default

    def collect(self) -> Optional[Dict[str, Any]]:
        """Fetch every section in sequence and persist the snapshot."""
        if not self.is_configured():
            logging.info("Bilibili UID not configured, skipping collection")
            return None

        logging.info("Collecting Bilibili data...")
        pacer = self.client.pacer
        pacer.pause()
        user_info = self._section("userInfo", self.client.user_info, None)
        pacer.pause()
        user_stats = self._section("userStats", self.client.user_stats, None) or {}
        pacer.pause()
        videos = self._section("videos", self.client.videos, [])
        pacer.pause()
        favorites = self._section("favorites", self.client.favorites, [])

        if not user_info:
            logging.warning(f"Could not fetch Bilibili user info (UID: {self.client.uid}); keeping previous snapshot")
            return None

        snapshot = {
            "profile": {
                "uid": self.client.uid,
                "username": user_info["username"],
                "avatar": user_info.get("avatar") or None,
                "bio": user_info.get("bio") or "",
                "level": user_info.get("level") or 0,
                "followers": str(user_stats.get("followers") or 0),
                "following": str(user_stats.get("following") or 0),
            },
            "latestVideos": videos or [dict(PLACEHOLDER_VIDEO)],
            "favorites": favorites or [],
            "collectedAt": datetime.now().astimezone().isoformat(),
        }
        self.document.save(snapshot)
        logging.info("Bilibili collection complete, snapshot saved")
        return snapshot

    def read(self) -> Dict[str, Any]:
        """
        Return the last on-disk snapshot.

        Raises:
            NotConfiguredError: If no UID is configured
            UpstreamUnavailableError: If the first collection has not finished yet
        """
        if not self.is_configured():
            raise NotConfiguredError("Bilibili UID is not configured", "NOT_CONFIGURED")
        snapshot = self.document.load()
        if not isinstance(snapshot, dict):
            raise UpstreamUnavailableError("Bilibili data is initializing", "DATA_INITIALIZING")
        return snapshot
