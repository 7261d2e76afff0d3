"""Tests for WBI request signing."""
import hashlib
import pytest
import requests
from unittest.mock import Mock, patch
from status_provider import UpstreamUnavailableError
from test_ttl_cache import FakeClock
from ttl_cache import TTLCache
from wbi_signer import (
    WbiKeys,
    WbiSigner,
    compute_signature,
    encode_query,
    extract_keys,
    mixin_key,
)

IMG_URL = "https://i0.hdslb.com/bfs/wbi/7cd084941338484aae1ad9425b84077c.png"
SUB_URL = "https://i0.hdslb.com/bfs/wbi/4932caff0ff746eab6f01bf08b70ac45.png"
KEYS = WbiKeys(img_key="7cd084941338484aae1ad9425b84077c", sub_key="4932caff0ff746eab6f01bf08b70ac45")


@pytest.fixture
def nav_body():
    """Current nav layout: keys nested under data."""
    return {"code": -101, "message": "账号未登录", "data": {"wbi_img": {"img_url": IMG_URL, "sub_url": SUB_URL}}}


def nav_response(body):
    response = Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = body
    return response


def test_mixin_key_permutation():
    assert mixin_key(KEYS.img_key, KEYS.sub_key) == "ea1db124af3c7062474693fa704f4ff8"


def test_encode_query_sorts_and_escapes():
    params = {"zab": 1919810, "foo": "114", "bar": "a b!中"}
    assert encode_query(params) == "bar=a%20b!%E4%B8%AD&foo=114&zab=1919810"


def test_signature_is_deterministic():
    params = {"foo": "114", "bar": "514", "zab": 1919810, "wts": 1702204169}
    expected = hashlib.md5(
        b"bar=514&foo=114&wts=1702204169&zab=1919810ea1db124af3c7062474693fa704f4ff8"
    ).hexdigest()

    assert compute_signature(params, KEYS) == expected
    assert compute_signature(dict(reversed(list(params.items()))), KEYS) == expected
    assert compute_signature(dict(params, foo="115"), KEYS) != expected
    assert compute_signature(dict(params, wts=1702204170), KEYS) != expected


def test_sign_adds_wts_and_w_rid():
    signer = WbiSigner(lambda: {}, clock=lambda: 1702204169.7)

    signed = signer.sign({"mid": "2"}, keys=KEYS)

    assert signed["mid"] == "2"
    assert signed["wts"] == 1702204169
    assert signed["w_rid"] == compute_signature({"mid": "2", "wts": 1702204169}, KEYS)


def test_extract_keys_nested_layout(nav_body):
    assert extract_keys(nav_body) == KEYS


def test_extract_keys_top_level_layout():
    body = {"wbi_img": {"url": IMG_URL}, "wbi_sub": {"url": SUB_URL}}
    assert extract_keys(body) == KEYS


def test_extract_keys_rejects_unusable_bodies():
    assert extract_keys(None) is None
    assert extract_keys({"code": -400, "data": {"wbi_img": {"img_url": IMG_URL, "sub_url": SUB_URL}}}) is None
    assert extract_keys({"code": 0, "data": {"wbi_img": {"img_url": IMG_URL}}}) is None


def test_get_keys_caches_for_a_day(nav_body):
    clock = FakeClock()
    signer = WbiSigner(lambda: {"User-Agent": "test"}, cache=TTLCache(1, 24 * 60 * 60, clock=clock))
    with patch('wbi_signer.requests.get') as mock_get:
        mock_get.return_value = nav_response(nav_body)

        assert signer.get_keys() == KEYS
        clock.advance(23 * 60 * 60)
        assert signer.get_keys() == KEYS
        assert mock_get.call_count == 1
        assert mock_get.call_args[1]["headers"] == {"User-Agent": "test"}

        clock.advance(2 * 60 * 60)
        signer.get_keys()
        assert mock_get.call_count == 2


def test_get_keys_uses_stale_pair_when_discovery_fails(nav_body):
    clock = FakeClock()
    signer = WbiSigner(lambda: {}, cache=TTLCache(1, 60, clock=clock))
    with patch('wbi_signer.requests.get') as mock_get:
        mock_get.return_value = nav_response(nav_body)
        signer.get_keys()

        clock.advance(120)
        mock_get.side_effect = requests.exceptions.ConnectionError("down")
        assert signer.get_keys() == KEYS


def test_get_keys_without_any_pair_raises():
    signer = WbiSigner(lambda: {})
    with patch('wbi_signer.requests.get') as mock_get:
        mock_get.return_value = nav_response({"code": 0, "data": {}})

        with pytest.raises(UpstreamUnavailableError):
            signer.get_keys()


def test_invalidate_forces_rediscovery(nav_body):
    signer = WbiSigner(lambda: {})
    with patch('wbi_signer.requests.get') as mock_get:
        mock_get.return_value = nav_response(nav_body)
        signer.get_keys()
        signer.invalidate()
        signer.get_keys()

        assert mock_get.call_count == 2


def test_discovery_pauses_before_nav_request(nav_body):
    events = []
    pacer = Mock()
    pacer.pause.side_effect = lambda: events.append("pause")
    signer = WbiSigner(lambda: {}, pacer=pacer)

    with patch('wbi_signer.requests.get') as mock_get:
        mock_get.side_effect = lambda url, **kwargs: events.append("nav") or nav_response(nav_body)
        signer.get_keys()
        signer.get_keys()

    assert events == ["pause", "nav"]
