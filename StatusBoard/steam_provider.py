"""Steam presence provider with a public community-profile fallback."""
import html
import logging
import re
from typing import Any, Dict, List, Optional

import requests

from background import PeriodicTask
from cached_service import DEFAULT_KEY, CachedStatusService
from status_provider import (
    InvalidInputError,
    NotConfiguredError,
    StatusProviderBase,
    StatusProviderError,
    UpstreamUnavailableError,
)
from ttl_cache import TTLCache

STEAM_API_BASE = "https://api.steampowered.com"
COMMUNITY_BASE = "https://steamcommunity.com/profiles"
STEAMID64_BASE = 76561197960265728
COVER_URL = "https://steamcdn-a.akamaihd.net/steam/apps/{appid}/library_600x900_2x.jpg"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

PERSONA_STATES = {
    0: "Offline",
    1: "Online",
    2: "Busy",
    3: "Away",
    4: "Snooze",
    5: "Looking to trade",
    6: "Looking to play",
}

_STEAM2_ID = re.compile(r"^STEAM_(\d):(\d):(\d+)$")


def to_steam_id64(steam_id: Optional[str]) -> Optional[str]:
    """Accept a SteamID64 or a ``STEAM_X:Y:Z`` id; return SteamID64 or None."""
    if not steam_id:
        return None
    steam_id = steam_id.strip()
    if steam_id.isdigit():
        return steam_id
    match = _STEAM2_ID.match(steam_id)
    if not match:
        logging.warning(f"Invalid Steam ID format: {steam_id}")
        return None
    y, z = int(match.group(2)), int(match.group(3))
    return str(z * 2 + y + STEAMID64_BASE)


def format_playtime(minutes: Optional[int]) -> str:
    if not minutes:
        return "0h"
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes / 60:.1f}h"


def cover_url(appid: Any) -> Optional[str]:
    return COVER_URL.format(appid=appid) if appid else None


def status_for(personastate: int, game: Optional[str]) -> Dict[str, str]:
    if game:
        return {"status": "in-game", "statusText": f"Playing {game}"}
    if not personastate:
        return {"status": "offline", "statusText": PERSONA_STATES[0]}
    return {"status": "online", "statusText": PERSONA_STATES.get(personastate, PERSONA_STATES[1])}


def _cdata(xml_text: str, tag: str) -> Optional[str]:
    match = re.search(rf"<{tag}><!\[CDATA\[(.*?)\]\]></{tag}>", xml_text, re.S)
    return match.group(1) if match else None


def _plain(xml_text: str, tag: str) -> Optional[str]:
    match = re.search(rf"<{tag}>(.*?)</{tag}>", xml_text, re.S)
    return match.group(1).strip() if match else None


def parse_community_xml(xml_text: str) -> Optional[Dict[str, Any]]:
    """Parse ``/profiles/<id>/?xml=1``; None when the persona name is absent."""
    name = _cdata(xml_text, "steamID")
    if not name:
        return None
    avatar_full = _cdata(xml_text, "avatarFull")
    avatar_medium = _cdata(xml_text, "avatarMedium")
    avatar = _cdata(xml_text, "avatarIcon") or _cdata(xml_text, "avatar")
    game = _cdata(xml_text, "gameExtraInfo")
    online_state = (_plain(xml_text, "onlineState") or "").lower()

    if online_state:
        personastate = 1 if online_state in ("online", "in-game") else 0
    else:
        personastate = 1 if game else 0

    return {
        "personaname": name,
        "avatarfull": avatar_full or (avatar_medium.replace("_medium", "_full") if avatar_medium else None),
        "avatarmedium": avatar_medium,
        "avatar": avatar,
        "personastate": personastate,
        "gameextrainfo": game,
        "gameid": _plain(xml_text, "gameID"),
    }


def parse_community_html(html_text: str) -> Dict[str, Any]:
    """Pull level and current game out of the profile page. Missing fields stay None."""
    result: Dict[str, Any] = {"level": None, "game": None, "gameId": None}

    level = re.search(r'<span class="friendPlayerLevelNum">(\d+)</span>', html_text)
    if level:
        result["level"] = int(level.group(1))

    in_game = re.search(r'<div class="profile_in_game_name"[^>]*>(.*?)</div>', html_text, re.S)
    if in_game:
        name = html.unescape(re.sub(r"<[^>]+>", "", in_game.group(1))).strip()
        result["game"] = name or None

    store_link = re.search(r'<a[^>]*href="https://store\.steampowered\.com/app/(\d+)/?"[^>]*>([^<]+)</a>', html_text)
    if store_link:
        result["gameId"] = store_link.group(1)
        if not result["game"]:
            result["game"] = html.unescape(store_link.group(2)).strip() or None

    if not result["gameId"]:
        run_game = re.search(r"steam://rungameid/(\d+)", html_text)
        if run_game:
            result["gameId"] = run_game.group(1)
    return result


class SteamProvider(StatusProviderBase):
    """
    Steam presence via the Web API, or the public community profile.

    With an API key the player summary, recently played games and level come
    from the Web API; when the summary call fails (or no key is configured)
    the community profile XML and HTML are scraped instead. Scraping is
    best-effort: unmatched fields are left empty rather than raising.
    """

    def __init__(self, steam_id: Optional[str], api_key: Optional[str] = None, timeout: int = 10):
        """
        Initialize Steam provider.

        Args:
            steam_id: SteamID64 or ``STEAM_X:Y:Z`` identifier
            api_key: Steam Web API key (optional)
            timeout: HTTP request timeout in seconds
        """
        self.steam_id = steam_id
        self.api_key = api_key
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.steam_id)

    def get_current(self) -> Dict[str, Any]:
        """
        Fetch the dashboard payload (``profile`` + ``recentGames``).

        Raises:
            NotConfiguredError: If no Steam ID is configured
            InvalidInputError: If the Steam ID cannot be parsed
            UpstreamUnavailableError: If neither the API nor the community page answers
        """
        if not self.steam_id:
            raise NotConfiguredError("Steam ID is not configured", "NOT_CONFIGURED")
        steam_id64 = to_steam_id64(self.steam_id)
        if not steam_id64:
            raise InvalidInputError(f"Invalid Steam ID: {self.steam_id}", "INVALID_STEAM_ID")

        summary = None
        if self.api_key:
            try:
                summary = self._player_summary(steam_id64)
            except StatusProviderError as e:
                logging.warning(f"Steam API summary failed, trying community profile: {e}")

        scraped: Dict[str, Any] = {}
        if summary is None:
            summary = self._community_summary(steam_id64)
            if summary is None:
                raise UpstreamUnavailableError("Could not fetch Steam player summary", "API_REQUEST_FAILED")
            scraped = self._community_page(steam_id64)

        recent_games = self._recent_games(steam_id64) if self.api_key else []
        level = (self._level(steam_id64) if self.api_key else 0) or scraped.get("level") or 0
        return self._build_payload(steam_id64, summary, scraped, recent_games, level)

    def _build_payload(
        self,
        steam_id64: str,
        summary: Dict[str, Any],
        scraped: Dict[str, Any],
        recent_games: List[Dict[str, Any]],
        level: int,
    ) -> Dict[str, Any]:
        game = scraped.get("game") or summary.get("gameextrainfo")
        game_id = scraped.get("gameId") or summary.get("gameid")
        personastate = int(summary.get("personastate") or 0)
        status = status_for(personastate, game)

        logging.info(f"Steam status for {steam_id64}: {status['statusText']}")
        return {
            "profile": {
                "name": summary.get("personaname") or "Unknown",
                "avatar": summary.get("avatarfull") or summary.get("avatarmedium") or summary.get("avatar") or "",
                "level": level,
                "status": status["status"],
                "statusText": status["statusText"],
                "personastate": personastate,
                "game": game,
                "gameCover": cover_url(game_id) if game else None,
                "gameIcon": cover_url(game_id) if game else None,
                "gameId": game_id if game else None,
                "playtimeTwoWeeks": "0h",
                "steamId64": steam_id64,
            },
            "recentGames": [
                {
                    "name": entry.get("name") or "Unknown Game",
                    "time": format_playtime(entry.get("playtime_2weeks")),
                    "icon": "🎮",
                    "cover": cover_url(entry.get("appid")),
                    "appid": entry.get("appid"),
                }
                for entry in recent_games
            ],
        }

    def _api_get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{STEAM_API_BASE}/{path}"
        try:
            logging.debug(f"Making Steam API request: {path}")
            response = requests.get(url, params=dict(params, key=self.api_key), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailableError(f"Steam API request failed: {str(e)}", "API_REQUEST_FAILED")
        except ValueError as e:
            raise UpstreamUnavailableError(f"Steam API returned invalid JSON: {str(e)}", "API_REQUEST_FAILED")
        body = data.get("response") if isinstance(data, dict) else None
        return body if isinstance(body, dict) else {}

    def _player_summary(self, steam_id64: str) -> Dict[str, Any]:
        body = self._api_get("ISteamUser/GetPlayerSummaries/v2/", {"steamids": steam_id64})
        players = body.get("players") or []
        if not players:
            raise UpstreamUnavailableError("Steam API returned no player", "API_REQUEST_FAILED")
        return players[0]

    def _recent_games(self, steam_id64: str) -> List[Dict[str, Any]]:
        try:
            body = self._api_get("IPlayerService/GetRecentlyPlayedGames/v1/", {"steamid": steam_id64, "count": 10})
        except StatusProviderError as e:
            logging.error(f"Failed to fetch recently played games: {e}")
            return []
        games = body.get("games")
        return games if isinstance(games, list) else []

    def _level(self, steam_id64: str) -> int:
        try:
            body = self._api_get("IPlayerService/GetSteamLevel/v1/", {"steamid": steam_id64})
        except StatusProviderError as e:
            logging.warning(f"Failed to fetch Steam level: {e}")
            return 0
        return int(body.get("player_level") or 0)

    def _fetch_text(self, url: str) -> Optional[str]:
        try:
            response = requests.get(url, headers={"User-Agent": BROWSER_USER_AGENT}, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logging.warning(f"Steam community request failed ({url}): {e}")
            return None
        return response.text

    def _community_summary(self, steam_id64: str) -> Optional[Dict[str, Any]]:
        xml_text = self._fetch_text(f"{COMMUNITY_BASE}/{steam_id64}/?xml=1")
        if xml_text is None:
            return None
        summary = parse_community_xml(xml_text)
        if summary is None:
            logging.warning(f"Steam community profile for {steam_id64} had no persona name")
        return summary

    def _community_page(self, steam_id64: str) -> Dict[str, Any]:
        html_text = self._fetch_text(f"{COMMUNITY_BASE}/{steam_id64}")
        if html_text is None:
            return {}
        return parse_community_html(html_text)


class SteamStatusService:
    """
    Keeps the latest Steam payload fresh from a background poll loop.

    Reads never touch the network while a poll result exists; only the very
    first read before any poll has completed refreshes synchronously.
    """

    def __init__(self, provider: SteamProvider, poll_interval: float = 60.0):
        self.provider = provider
        self.poll_interval = poll_interval
        self.service = CachedStatusService(provider, TTLCache(1, poll_interval), name="steam")
        self.task = PeriodicTask("steam-poller", lambda: self.refresh("scheduled"), poll_interval, run_immediately=True)

    @property
    def last_error(self) -> Optional[StatusProviderError]:
        return self.service.last_error

    def start(self) -> None:
        if not self.provider.is_configured():
            logging.info("Steam ID not configured; poller not started")
            return
        self.task.start()
        logging.info(f"Steam poller started, interval {self.poll_interval}s")

    def stop(self) -> None:
        self.task.stop()

    def refresh(self, reason: str = "polling") -> Optional[Dict[str, Any]]:
        logging.debug(f"Refreshing Steam cache ({reason})")
        try:
            return self.service.get_latest(force_refresh=True)
        except StatusProviderError as e:
            logging.error(f"Steam refresh ({reason}) failed: {e}")
            return None

    def read(self) -> Dict[str, Any]:
        """
        Return the last poll result.

        Raises:
            StatusProviderError: When no result has ever been produced
        """
        if not self.provider.is_configured():
            raise NotConfiguredError("Steam ID is not configured", "NOT_CONFIGURED")
        payload = self.service.cache.get_stale(DEFAULT_KEY)
        if payload is not None:
            return payload
        if self.service.last_error is None:
            payload = self.refresh("first-request")
            if payload is not None:
                return payload
        if self.service.last_error is not None:
            raise self.service.last_error
        raise UpstreamUnavailableError("Steam data is not available yet", "NO_DATA")
