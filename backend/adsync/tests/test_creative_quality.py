"""Unit tests for creative quality tiers and thumbnail upgrades."""

import pytest

from adsync.models import ImageQualityEnum
from adsync.services.creative_quality import (
    classify_quality,
    dimensions_from_url,
    is_low_quality_url,
    upgrade_low_res_url,
)


@pytest.mark.parametrize(
    "width,height,expected",
    [
        (1280, 720, ImageQualityEnum.hd),
        (720, 1280, ImageQualityEnum.hd),
        (1920, 1080, ImageQualityEnum.hd),
        (1080, 1080, ImageQualityEnum.sd),
        (640, 480, ImageQualityEnum.sd),
        (480, 640, ImageQualityEnum.sd),
        (600, 600, ImageQualityEnum.low),
        (128, 128, ImageQualityEnum.low),
        (None, 720, ImageQualityEnum.unknown),
        (0, 0, ImageQualityEnum.unknown),
        (-5, 100, ImageQualityEnum.unknown),
    ],
)
def test_classify_quality(width, height, expected):
    assert classify_quality(width, height) is expected


def test_dimensions_read_from_query_parameters():
    assert dimensions_from_url("https://cdn.example.com/a.jpg?width=1080&height=1350") == (1080, 1350)
    assert dimensions_from_url("https://cdn.example.com/a.jpg?w=600&h=400") == (600, 400)
    assert dimensions_from_url("https://cdn.example.com/a.jpg?w=abc") == (None, None)
    assert dimensions_from_url(None) == (None, None)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://scontent.xx.fbcdn.net/v/t45.1600-4/p64x64/img.jpg", True),
        ("https://scontent.xx.fbcdn.net/v/t45.1600-4/s128x128/img.jpg", True),
        ("https://scontent.xx.fbcdn.net/v/img.jpg?stp=dst-jpg_p64x64_tt6", True),
        ("https://scontent.xx.fbcdn.net/v/t45.1600-4/p720x720/img.jpg", False),
        ("https://scontent.xx.fbcdn.net/v/img.jpg", False),
        (None, False),
    ],
)
def test_is_low_quality_url(url, expected):
    assert is_low_quality_url(url) is expected


def test_upgrade_low_res_url_requests_720_variant():
    assert (
        upgrade_low_res_url("https://scontent.xx.fbcdn.net/v/t45.1600-4/p64x64/img.jpg")
        == "https://scontent.xx.fbcdn.net/v/t45.1600-4/p720x720/img.jpg"
    )
    assert (
        upgrade_low_res_url("https://scontent.xx.fbcdn.net/v/img.jpg?stp=dst-jpg_s128x128_tt6")
        == "https://scontent.xx.fbcdn.net/v/img.jpg?stp=dst-jpg_s720x720_tt6"
    )


def test_upgrade_leaves_other_urls_untouched():
    url = "https://scontent.xx.fbcdn.net/v/full.jpg?width=1200&height=628"
    assert upgrade_low_res_url(url) == url
    assert upgrade_low_res_url(None) is None
