"""Tests for the filesystem media cache."""

import stat

import httpx
import pytest

from adsync.services.media_cache import MediaCache, MediaCacheError, extension_for_content_type


def _cache(tmp_path, handler, **kwargs):
    return MediaCache(
        tmp_path,
        "https://media.example.com/",
        transport=httpx.MockTransport(handler),
        clock=lambda: 1700000000.0,
        **kwargs,
    )


def test_cache_stores_file_and_returns_public_url(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(200, content=b"\x89PNGdata", headers={"content-type": "image/png"}))

    cached = cache.cache("ws-1", "ad-1", "image", "https://cdn.example.com/a.png")

    assert cached.size_bytes == 8
    assert cached.url.startswith("https://media.example.com/workspaces/ws-1/images/ad-1/1700000000000_")
    assert cached.url.endswith(".png")
    relative = cached.url[len("https://media.example.com/"):]
    assert (tmp_path / relative).read_bytes() == b"\x89PNGdata"


def test_cached_file_is_world_readable(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(200, content=b"GIF89a", headers={"content-type": "image/gif"}))

    cached = cache.cache("ws-1", "ad-1", "thumbnail", "https://cdn.example.com/t.gif")

    path = tmp_path / cached.url[len("https://media.example.com/"):]
    assert stat.S_IMODE(path.stat().st_mode) == 0o644


def test_oversized_download_leaves_nothing_behind(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(200, content=b"x" * 100), max_bytes=10)

    with pytest.raises(MediaCacheError):
        cache.cache("ws-1", "ad-1", "video", "https://cdn.example.com/v.mp4")

    assert [p for p in tmp_path.rglob("*") if p.is_file()] == []


def test_http_error_raises_cache_error(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(403, content=b"URL signature expired"))

    with pytest.raises(MediaCacheError, match="HTTP 403"):
        cache.cache("ws-1", "ad-1", "image", "https://cdn.example.com/a.jpg")


def test_empty_body_rejected(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(200, content=b""))

    with pytest.raises(MediaCacheError):
        cache.cache("ws-1", "ad-1", "thumbnail", "https://cdn.example.com/a.jpg")


def test_unknown_media_type_rejected(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(200, content=b"x"))

    with pytest.raises(ValueError):
        cache.cache("ws-1", "ad-1", "audio", "https://cdn.example.com/a.mp3")


def test_unsafe_path_segments_rejected(tmp_path):
    cache = _cache(tmp_path, lambda r: httpx.Response(200, content=b"x"))

    with pytest.raises(MediaCacheError):
        cache.cache("../etc", "ad-1", "image", "https://cdn.example.com/a.jpg")


@pytest.mark.parametrize(
    "content_type,expected",
    [
        ("image/jpeg", "jpg"),
        ("image/png; charset=binary", "png"),
        ("video/mp4", "mp4"),
        ("video/quicktime", "mov"),
        ("application/octet-stream", "bin"),
        (None, "bin"),
    ],
)
def test_extension_for_content_type(content_type, expected):
    assert extension_for_content_type(content_type) == expected
