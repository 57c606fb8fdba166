"""Creative media quality helpers.

WHAT:
    Dimension parsing from CDN URLs, quality tier classification and
    low-resolution thumbnail detection/upgrade.

WHY:
    Meta hands out the same image at several sizes. The resolver needs a
    deterministic tier per candidate and a way to recognize (and upgrade)
    the 64px/128px thumbnails Meta returns by default.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlparse

from adsync.models import ImageQualityEnum

HD_MIN = (1280, 720)
SD_MIN = (640, 480)

# Path segments such as /p64x64/ or /s128x128/ and stp tokens such as "_p64x64_" / "_s128x128"
_LOW_RES_PATTERN = re.compile(r"(?<![0-9])[ps](64|128)x(64|128)(?![0-9])")
_LOW_RES_REPLACEMENTS = (
    (re.compile(r"([/_])p(64|128)x(64|128)(?![0-9])"), r"\1p720x720"),
    (re.compile(r"([/_])s(64|128)x(64|128)(?![0-9])"), r"\1s720x720"),
)


def classify_quality(width: Optional[int], height: Optional[int]) -> ImageQualityEnum:
    """Map pixel dimensions to a quality tier (orientation independent)."""
    if not width or not height or width <= 0 or height <= 0:
        return ImageQualityEnum.unknown

    long_side, short_side = max(width, height), min(width, height)
    if long_side >= HD_MIN[0] and short_side >= HD_MIN[1]:
        return ImageQualityEnum.hd
    if long_side >= SD_MIN[0] and short_side >= SD_MIN[1]:
        return ImageQualityEnum.sd
    return ImageQualityEnum.low


def dimensions_from_url(url: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Read width/height from `width`/`w` and `height`/`h` query parameters."""
    if not url:
        return None, None
    query = parse_qs(urlparse(url).query)

    def _first_int(*names: str) -> Optional[int]:
        for name in names:
            for value in query.get(name, []):
                try:
                    number = int(value)
                except ValueError:
                    continue
                if number > 0:
                    return number
        return None

    return _first_int("width", "w"), _first_int("height", "h")


def is_low_quality_url(url: Optional[str]) -> bool:
    """True for Meta's default 64px/128px thumbnail URLs."""
    if not url:
        return False
    return bool(_LOW_RES_PATTERN.search(url))


def upgrade_low_res_url(url: Optional[str]) -> Optional[str]:
    """Rewrite a 64/128px thumbnail URL to request the 720px variant.

    Returns the URL unchanged when it is not a recognized thumbnail.
    """
    if not url or not is_low_quality_url(url):
        return url
    upgraded = url
    for pattern, replacement in _LOW_RES_REPLACEMENTS:
        upgraded = pattern.sub(replacement, upgraded)
    return upgraded
