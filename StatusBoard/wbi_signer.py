"""Bilibili WBI request signing."""
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import requests

from status_provider import UpstreamUnavailableError
from ttl_cache import TTLCache

NAV_URL = "https://api.bilibili.com/x/web-interface/nav"
KEYS_CACHE_TTL_SECONDS = 24 * 60 * 60
KEYS_CACHE_KEY = "wbi_keys"

MIXIN_KEY_ENC_TAB = [
    46, 47, 18, 2, 53, 8, 23, 32, 15, 50, 10, 31, 58, 3, 45, 35, 27, 43, 5, 49,
    33, 9, 42, 19, 29, 28, 14, 39, 12, 38, 41, 13, 37, 48, 7, 16, 24, 55, 40,
    61, 26, 17, 0, 1, 60, 51, 30, 4, 22, 25, 54, 21, 56, 59, 6, 63, 57, 62, 11,
    36, 20, 34, 44, 52,
]

# Characters JavaScript's encodeURIComponent leaves alone; upstream hashes that form.
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class WbiKeys:
    img_key: str
    sub_key: str


def mixin_key(img_key: str, sub_key: str) -> str:
    """Permute ``img_key + sub_key`` through the mixin table, keeping 32 chars."""
    raw = img_key + sub_key
    return "".join(raw[i] for i in MIXIN_KEY_ENC_TAB[:32] if i < len(raw))


def encode_query(params: Mapping[str, Any]) -> str:
    """Sorted ``k=v`` pairs joined with ``&``, values URI-component encoded."""
    return "&".join(
        f"{key}={quote(str(params[key]), safe=_URI_COMPONENT_SAFE)}" for key in sorted(params)
    )


def compute_signature(params: Mapping[str, Any], keys: WbiKeys) -> str:
    query = encode_query(params) + mixin_key(keys.img_key, keys.sub_key)
    return hashlib.md5(query.encode("utf-8")).hexdigest()


def _key_from_url(url: str) -> str:
    """``https://i0.hdslb.com/bfs/wbi/7cd0...77c.png`` -> ``7cd0...77c``."""
    if not url:
        return ""
    filename = url.rstrip("/").rsplit("/", 1)[-1]
    return filename.split(".", 1)[0]


def _urls_from(img_block: Any, sub_block: Any) -> Optional[Tuple[str, str]]:
    if not isinstance(img_block, dict):
        return None
    img_url = img_block.get("img_url") or img_block.get("url") or ""
    sub_url = img_block.get("sub_url") or ""
    if not sub_url and isinstance(sub_block, dict):
        sub_url = sub_block.get("sub_url") or sub_block.get("url") or ""
    if not img_url or not sub_url:
        return None
    return img_url, sub_url


def _from_nested_data(body: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    # Logged-out callers get code -101 but the key URLs are still present.
    if body.get("code") not in (0, -101):
        return None
    data = body.get("data")
    if not isinstance(data, dict):
        return None
    return _urls_from(data.get("wbi_img"), data.get("wbi_sub"))


def _from_top_level(body: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    return _urls_from(body.get("wbi_img"), body.get("wbi_sub"))


# Tried in order; the first strategy that yields both URLs wins.
EXTRACTION_STRATEGIES: List[Callable[[Dict[str, Any]], Optional[Tuple[str, str]]]] = [
    _from_nested_data,
    _from_top_level,
]


def extract_keys(body: Any) -> Optional[WbiKeys]:
    if not isinstance(body, dict):
        return None
    for strategy in EXTRACTION_STRATEGIES:
        urls = strategy(body)
        if urls is None:
            continue
        img_key, sub_key = _key_from_url(urls[0]), _key_from_url(urls[1])
        if img_key and sub_key:
            return WbiKeys(img_key=img_key, sub_key=sub_key)
    return None


class WbiSigner:
    """
    Fetches and caches the rotating WBI key pair and signs query parameters.

    The key pair is cached for 24 hours. If discovery fails, the last pair
    that was ever fetched is used; ``invalidate`` drops both copies so the
    next signature triggers a fresh discovery.
    """

    def __init__(
        self,
        headers: Callable[[], Dict[str, str]],
        timeout: int = 10,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], float] = time.time,
        pacer: Optional[Any] = None,
    ):
        """
        Initialize signer.

        Args:
            headers: Returns the request headers (User-Agent, Referer, cookie) to send
            timeout: HTTP request timeout in seconds
            cache: Key cache (single entry, 24h TTL by default)
            clock: Time source for ``wts``
            pacer: Object with a ``pause()`` method, called before the nav request
        """
        self._headers = headers
        self.timeout = timeout
        self.cache = cache or TTLCache(1, KEYS_CACHE_TTL_SECONDS)
        self._clock = clock
        self.pacer = pacer

    def get_keys(self) -> WbiKeys:
        """
        Return the current key pair.

        Raises:
            UpstreamUnavailableError: If discovery fails and no key pair was ever cached
        """
        cached = self.cache.get(KEYS_CACHE_KEY)
        if cached is not None:
            logging.debug("Using cached WBI keys")
            return cached

        try:
            keys = self._discover()
        except UpstreamUnavailableError as e:
            stale = self.cache.get_stale(KEYS_CACHE_KEY)
            if stale is not None:
                logging.warning(f"WBI key discovery failed ({e}), using stale keys")
                return stale
            raise

        self.cache.set(KEYS_CACHE_KEY, keys)
        logging.info(f"Fetched WBI keys: img_key={keys.img_key} sub_key={keys.sub_key}")
        return keys

    def sign(self, params: Mapping[str, Any], keys: Optional[WbiKeys] = None) -> Dict[str, Any]:
        """
        Return ``params`` plus ``wts`` and ``w_rid``.

        Raises:
            UpstreamUnavailableError: If no key pair can be obtained
        """
        keys = keys or self.get_keys()
        signed = dict(params)
        signed["wts"] = int(self._clock())
        signed["w_rid"] = compute_signature(signed, keys)
        return signed

    def invalidate(self) -> None:
        logging.warning("Invalidating cached WBI keys")
        self.cache.clear()

    def _discover(self) -> WbiKeys:
        if self.pacer is not None:
            self.pacer.pause()
        try:
            response = requests.get(NAV_URL, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logging.error(f"WBI key discovery request failed: {e}")
            raise UpstreamUnavailableError(f"WBI key discovery failed: {str(e)}", "API_REQUEST_FAILED")
        except ValueError as e:
            logging.error(f"WBI key discovery returned invalid JSON: {e}")
            raise UpstreamUnavailableError("WBI key discovery returned invalid JSON", "API_REQUEST_FAILED")

        keys = extract_keys(body)
        if keys is None:
            logging.warning(f"Could not extract WBI keys from nav response (code={body.get('code') if isinstance(body, dict) else None})")
            raise UpstreamUnavailableError("WBI keys missing from nav response", "API_REQUEST_FAILED")
        return keys
