"""Creative resolution for Meta ads.

WHAT:
    Turns an ad payload (ad + creative as returned by the Graph API) into one
    normalized creative record: type, best media URL with dimensions and
    quality tier, texts, and a completeness status.

WHY:
    Meta exposes the picture of an ad in a dozen places depending on the ad
    format (direct fields, story spec, video thumbnails, the originating post,
    image hashes, carousel children, asset feeds). Each source is a small
    function in an ordered list; the first one that yields a candidate wins.

MEDIA WATERFALL (first hit wins):
    a. the originating post (full_picture, attachment media, picture)
    b. direct, non-thumbnail URL fields on the creative
    c. image hashes resolved through /adimages (cached per run)
    d. 64/128px thumbnails upgraded to the 720px variant

    Video creatives try the direct fields, then the video thumbnails (largest
    first, HD preferred), then the post, hashes and upgraded thumbnails.

TEXT WATERFALLS:
    title/body/description/call_to_action/link_url each walk the creative's
    own fields, its story spec and asset feed, then the originating post.

REFERENCES:
    - adsync/services/creative_service.py (batching + persistence)
    - adsync/services/creative_quality.py (quality tiers, thumbnail upgrade)
    - https://developers.facebook.com/docs/marketing-api/reference/ad-creative
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from adsync.models import CreativeTypeEnum, FetchStatusEnum, ImageQualityEnum
from adsync.services.creative_quality import (
    classify_quality,
    dimensions_from_url,
    is_low_quality_url,
    upgrade_low_res_url,
)
from adsync.services.meta_graph_client import MetaAuthError, MetaGraphClient, MetaGraphError

logger = logging.getLogger(__name__)

AD_FIELDS = (
    "id,name,status,effective_status,preview_shareable_link,"
    "creative{id,name,title,body,image_url,thumbnail_url,video_id,image_hash,call_to_action_type,"
    "object_story_spec,effective_object_story_id,object_story_id,effective_instagram_media_id,"
    "object_id,asset_feed_spec}"
)
POST_FIELDS = (
    "message,story,description,name,caption,full_picture,picture,call_to_action,"
    "attachments{title,description,url,media,subattachments}"
)
VIDEO_FIELDS = "thumbnails{uri,width,height},picture,source"
ADIMAGE_FIELDS = "hash,url,url_128,url_256,permalink_url,width,height"
ADIMAGE_CHUNK = 50

VIDEO_URL_TEMPLATE = "https://www.facebook.com/ads/videos/{video_id}"
TEXT_FIELDS = ("title", "body", "description")


# =============================================================================
# TYPES
# =============================================================================

@dataclass
class MediaCandidate:
    """A media URL produced by one waterfall step."""

    url: str
    source: str
    width: Optional[int] = None
    height: Optional[int] = None
    url_hd: Optional[str] = None
    thumbnail_url: Optional[str] = None
    quality_override: Optional[ImageQualityEnum] = None

    def __post_init__(self):
        if not (self.width and self.height):
            url_width, url_height = dimensions_from_url(self.url)
            self.width = self.width or url_width
            self.height = self.height or url_height

    @property
    def quality(self) -> ImageQualityEnum:
        if self.quality_override is not None:
            return self.quality_override
        return classify_quality(self.width, self.height)


@dataclass
class ResolvedCreative:
    """Resolution outcome for one ad: column values plus the winning candidate."""

    ad_id: str
    values: Dict[str, Any]
    media: Optional[MediaCandidate] = None

    @property
    def fetch_status(self) -> FetchStatusEnum:
        return self.values["fetch_status"]


class CreativeView:
    """Read-only accessors over a raw creative dict."""

    def __init__(self, creative: Optional[Dict[str, Any]]):
        self.raw: Dict[str, Any] = creative or {}
        spec = self.raw.get("object_story_spec") or {}
        self.link_data: Dict[str, Any] = spec.get("link_data") or {}
        self.video_data: Dict[str, Any] = spec.get("video_data") or {}
        self.photo_data: Dict[str, Any] = spec.get("photo_data") or {}
        self.template_data: Dict[str, Any] = spec.get("template_data") or {}
        self.asset_feed: Dict[str, Any] = self.raw.get("asset_feed_spec") or {}

    @property
    def children(self) -> List[Dict[str, Any]]:
        return list(self.link_data.get("child_attachments") or self.template_data.get("child_attachments") or [])

    @property
    def first_child(self) -> Dict[str, Any]:
        children = self.children
        return children[0] if children else {}

    @property
    def feed_images(self) -> List[Dict[str, Any]]:
        return list(self.asset_feed.get("images") or [])

    @property
    def feed_videos(self) -> List[Dict[str, Any]]:
        return list(self.asset_feed.get("videos") or [])

    @property
    def video_id(self) -> Optional[str]:
        feed_video = self.feed_videos[0] if self.feed_videos else {}
        return self.raw.get("video_id") or self.video_data.get("video_id") or feed_video.get("video_id")

    @property
    def post_id(self) -> Optional[str]:
        return self.raw.get("effective_object_story_id") or self.raw.get("object_story_id")

    def image_hashes(self) -> List[str]:
        """Every image hash on the creative, in lookup priority order."""
        hashes = [
            self.raw.get("image_hash"),
            self.link_data.get("image_hash"),
            self.photo_data.get("image_hash"),
            self.video_data.get("image_hash"),
            self.first_child.get("image_hash"),
        ]
        hashes.extend(image.get("hash") for image in self.feed_images)
        seen: List[str] = []
        for image_hash in hashes:
            if image_hash and image_hash not in seen:
                seen.append(image_hash)
        return seen


def _dig(value: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None on any missing step."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, list) or len(value) <= step:
                return None
            value = value[step]
        else:
            if not isinstance(value, dict):
                return None
            value = value.get(step)
        if value is None:
            return None
    return value


def _as_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


# =============================================================================
# RUN CONTEXT (per-run lookup caches)
# =============================================================================

class ResolutionContext:
    """Lookup caches owned by one resolution run.

    Hash, post and video lookups are cached here (including misses), so each
    unique key hits the API at most once per run. A new context is created per
    run; nothing is shared across tenants or runs.
    """

    def __init__(self, client: MetaGraphClient, account_external_id: str):
        self.client = client
        self.account_node = (
            account_external_id if str(account_external_id).startswith("act_") else f"act_{account_external_id}"
        )
        self.image_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self.post_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self.video_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self.remote_calls: Counter = Counter()
        self.lookup_errors: List[str] = []

    def _guarded(self, kind: str, key: str, call: Callable[[], Any]) -> Any:
        self.remote_calls[kind] += 1
        try:
            return call()
        except MetaAuthError:
            raise
        except MetaGraphError as exc:
            logger.warning("[CREATIVE] %s lookup failed for %s: %s", kind, key, exc)
            self.lookup_errors.append(f"{kind} {key}: {exc}")
            return None

    def prefetch_image_hashes(self, hashes: Iterable[str]) -> None:
        """Resolve uncached hashes in chunks with one /adimages call per chunk."""
        pending = [h for h in dict.fromkeys(hashes) if h and h not in self.image_cache]
        for start in range(0, len(pending), ADIMAGE_CHUNK):
            chunk = pending[start:start + ADIMAGE_CHUNK]
            rows = self._guarded(
                "adimages",
                ",".join(chunk),
                lambda: self.client.fetch_all(
                    f"{self.account_node}/adimages",
                    params={"hashes": json.dumps(chunk), "fields": ADIMAGE_FIELDS},
                ),
            )
            found = {row.get("hash"): row for row in (rows or []) if row.get("hash")}
            for image_hash in chunk:
                self.image_cache[image_hash] = found.get(image_hash)

    def image_for_hash(self, image_hash: str) -> Optional[Dict[str, Any]]:
        if image_hash not in self.image_cache:
            self.prefetch_image_hashes([image_hash])
        return self.image_cache.get(image_hash)

    def post(self, post_id: str) -> Optional[Dict[str, Any]]:
        if post_id not in self.post_cache:
            self.post_cache[post_id] = self._guarded(
                "post", post_id, lambda: self.client.get(post_id, {"fields": POST_FIELDS})
            )
        return self.post_cache[post_id]

    def video(self, video_id: str) -> Optional[Dict[str, Any]]:
        if video_id not in self.video_cache:
            self.video_cache[video_id] = self._guarded(
                "video", video_id, lambda: self.client.get(video_id, {"fields": VIDEO_FIELDS})
            )
        return self.video_cache[video_id]


# =============================================================================
# CREATIVE TYPE
# =============================================================================

def detect_creative_type(creative: Optional[Dict[str, Any]]) -> CreativeTypeEnum:
    """Classify the creative: video > carousel > dynamic > image > unknown."""
    if not creative:
        return CreativeTypeEnum.unknown
    view = creative if isinstance(creative, CreativeView) else CreativeView(creative)

    if view.video_id:
        return CreativeTypeEnum.video
    if len(view.children) > 1:
        return CreativeTypeEnum.carousel
    if view.feed_images or view.feed_videos or view.asset_feed.get("bodies") or view.asset_feed.get("titles"):
        return CreativeTypeEnum.dynamic
    if (
        view.raw.get("image_url")
        or view.raw.get("image_hash")
        or view.raw.get("thumbnail_url")
        or view.link_data.get("picture")
        or view.link_data.get("image_hash")
        or view.photo_data
        or view.children
        or view.post_id
    ):
        return CreativeTypeEnum.image
    return CreativeTypeEnum.unknown


# =============================================================================
# MEDIA WATERFALL
# =============================================================================

def _direct_media(view: CreativeView, ctx: Optional[ResolutionContext] = None) -> Optional[MediaCandidate]:
    fields = [
        (view.raw.get("image_url"), "creative_image_url"),
        (view.link_data.get("picture"), "link_data_picture"),
        (view.photo_data.get("url"), "photo_data_url"),
        (view.video_data.get("image_url"), "video_data_image_url"),
    ]
    fields.extend((image.get("url"), "asset_feed_image_url") for image in view.feed_images)
    fields.append((view.first_child.get("picture"), "carousel_child_picture"))
    fields.extend((video.get("thumbnail_url"), "asset_feed_video_thumbnail") for video in view.feed_videos[:1])

    for url, source in fields:
        if url and not is_low_quality_url(url):
            return MediaCandidate(url=url, source=source, thumbnail_url=view.raw.get("thumbnail_url"))
    return None


def _video_thumbnail(view: CreativeView, ctx: ResolutionContext) -> Optional[MediaCandidate]:
    video_id = view.video_id
    if not video_id:
        return None
    video = ctx.video(video_id)
    if not video:
        return None

    thumbnails = [
        thumb for thumb in (_dig(video, "thumbnails", "data") or [])
        if thumb.get("uri")
    ]
    thumbnails.sort(key=lambda t: (_as_int(t.get("width")) or 0) * (_as_int(t.get("height")) or 0), reverse=True)
    original_thumb = view.raw.get("thumbnail_url") or video.get("picture")

    hd = next(
        (t for t in thumbnails if (_as_int(t.get("width")) or 0) >= 1280 and (_as_int(t.get("height")) or 0) >= 720),
        None,
    )
    if hd:
        return MediaCandidate(
            url=hd["uri"], source="video_thumbnail_hd", url_hd=hd["uri"],
            width=_as_int(hd.get("width")), height=_as_int(hd.get("height")),
            thumbnail_url=original_thumb,
        )
    if thumbnails:
        best = thumbnails[0]
        return MediaCandidate(
            url=best["uri"], source="video_thumbnail_best",
            width=_as_int(best.get("width")), height=_as_int(best.get("height")),
            thumbnail_url=original_thumb,
        )
    if video.get("picture"):
        return MediaCandidate(url=video["picture"], source="video_picture", thumbnail_url=original_thumb)
    return None


def _post_picture(view: CreativeView, ctx: ResolutionContext) -> Optional[MediaCandidate]:
    post_id = view.post_id
    if not post_id:
        return None
    post = ctx.post(post_id)
    if not post:
        return None

    thumb = view.raw.get("thumbnail_url")
    if post.get("full_picture"):
        return MediaCandidate(url=post["full_picture"], source="post_full_picture", thumbnail_url=thumb)

    for path, source in (
        (("attachments", "data", 0, "media", "image"), "post_attachment_media"),
        (("attachments", "data", 0, "subattachments", "data", 0, "media", "image"), "post_subattachment_media"),
    ):
        image = _dig(post, *path)
        if image and image.get("src"):
            return MediaCandidate(
                url=image["src"], source=source,
                width=_as_int(image.get("width")), height=_as_int(image.get("height")),
                thumbnail_url=thumb,
            )

    if post.get("picture") and not is_low_quality_url(post["picture"]):
        return MediaCandidate(url=post["picture"], source="post_picture", thumbnail_url=thumb)
    return None


def _image_hash(view: CreativeView, ctx: ResolutionContext) -> Optional[MediaCandidate]:
    for image_hash in view.image_hashes():
        image = ctx.image_for_hash(image_hash)
        if not image:
            continue
        url = image.get("url") or image.get("permalink_url") or image.get("url_256") or image.get("url_128")
        if url:
            return MediaCandidate(
                url=url, source="image_hash",
                width=_as_int(image.get("width")), height=_as_int(image.get("height")),
                thumbnail_url=image.get("url_128") or view.raw.get("thumbnail_url"),
            )
    return None


def _low_res_fallback(view: CreativeView, ctx: Optional[ResolutionContext] = None) -> Optional[MediaCandidate]:
    for url, source in (
        (view.raw.get("image_url"), "creative_image_url_upgraded"),
        (view.link_data.get("picture"), "link_data_picture_upgraded"),
        (view.raw.get("thumbnail_url"), "thumbnail_url_upgraded"),
    ):
        if url:
            return MediaCandidate(
                url=upgrade_low_res_url(url), source=source,
                thumbnail_url=url, quality_override=ImageQualityEnum.low,
            )
    return None


_MediaStep = Callable[[CreativeView, ResolutionContext], Optional[MediaCandidate]]

# Post media outranks the creative's own link/photo fields.
MEDIA_WATERFALL: Sequence[_MediaStep] = (
    _post_picture,
    _direct_media,
    _image_hash,
    _low_res_fallback,
)

VIDEO_MEDIA_WATERFALL: Sequence[_MediaStep] = (
    _direct_media,
    _video_thumbnail,
    _post_picture,
    _image_hash,
    _low_res_fallback,
)


def resolve_media(view: CreativeView, ctx: ResolutionContext) -> Optional[MediaCandidate]:
    steps = VIDEO_MEDIA_WATERFALL if view.video_id else MEDIA_WATERFALL
    for step in steps:
        candidate = step(view, ctx)
        if candidate is not None:
            logger.debug("[CREATIVE] Media resolved via %s", candidate.source)
            return candidate
    return None


# =============================================================================
# TEXT WATERFALLS
# =============================================================================

_Extractor = Callable[[CreativeView], Any]
_PostExtractor = Callable[[Dict[str, Any]], Any]

TEXT_WATERFALLS: Dict[str, Tuple[Sequence[_Extractor], Sequence[_PostExtractor]]] = {
    "title": (
        (
            lambda v: v.raw.get("title"),
            lambda v: v.link_data.get("name"),
            lambda v: v.video_data.get("title"),
            lambda v: _dig(v.asset_feed, "titles", 0, "text"),
            lambda v: v.first_child.get("name"),
        ),
        (
            lambda p: p.get("name"),
            lambda p: _dig(p, "attachments", "data", 0, "title"),
        ),
    ),
    "body": (
        (
            lambda v: v.raw.get("body"),
            lambda v: v.link_data.get("message"),
            lambda v: v.video_data.get("message"),
            lambda v: v.photo_data.get("caption"),
            lambda v: v.template_data.get("message"),
            lambda v: _dig(v.asset_feed, "bodies", 0, "text"),
        ),
        (
            lambda p: p.get("message"),
            lambda p: p.get("story"),
        ),
    ),
    "description": (
        (
            lambda v: v.link_data.get("description"),
            lambda v: v.video_data.get("link_description"),
            lambda v: _dig(v.asset_feed, "descriptions", 0, "text"),
            lambda v: v.first_child.get("description"),
        ),
        (
            lambda p: p.get("description"),
            lambda p: p.get("caption"),
            lambda p: _dig(p, "attachments", "data", 0, "description"),
        ),
    ),
    "call_to_action": (
        (
            lambda v: v.raw.get("call_to_action_type"),
            lambda v: _dig(v.link_data, "call_to_action", "type"),
            lambda v: _dig(v.video_data, "call_to_action", "type"),
            lambda v: _dig(v.asset_feed, "call_to_action_types", 0),
            lambda v: _dig(v.first_child, "call_to_action", "type"),
        ),
        (
            lambda p: _dig(p, "call_to_action", "type"),
        ),
    ),
    "link_url": (
        (
            lambda v: v.link_data.get("link"),
            lambda v: _dig(v.link_data, "call_to_action", "value", "link"),
            lambda v: _dig(v.video_data, "call_to_action", "value", "link"),
            lambda v: _dig(v.asset_feed, "link_urls", 0, "website_url"),
            lambda v: v.first_child.get("link"),
        ),
        (
            lambda p: _dig(p, "call_to_action", "value", "link"),
            lambda p: _dig(p, "attachments", "data", 0, "url"),
        ),
    ),
}


def _first_text(values: Iterable[Any]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_texts(view: CreativeView, ctx: Optional[ResolutionContext]) -> Dict[str, Optional[str]]:
    """Resolve every text field; the post is fetched only if a field is still empty."""
    texts: Dict[str, Optional[str]] = {}
    for name, (creative_sources, post_sources) in TEXT_WATERFALLS.items():
        value = _first_text(source(view) for source in creative_sources)
        if value is None and ctx is not None and view.post_id:
            post = ctx.post(view.post_id)
            if post:
                value = _first_text(source(post) for source in post_sources)
        texts[name] = value
    return texts


def classify_completeness(has_media: bool, has_text: bool) -> FetchStatusEnum:
    if has_media and has_text:
        return FetchStatusEnum.success
    if has_media or has_text:
        return FetchStatusEnum.partial
    return FetchStatusEnum.failed


# =============================================================================
# RESOLVER
# =============================================================================

def extract_creative(ad: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """The ad's creative, from `creative` or the first `adcreatives` entry."""
    creative = ad.get("creative")
    if not creative:
        creative = _dig(ad, "adcreatives", "data", 0)
    return creative or None


class CreativeResolver:
    """Resolve creatives for one ad account within one run.

    Usage:
        resolver = CreativeResolver(client, "123456789")
        resolved = resolver.resolve_ad_id("2385...")
    """

    def __init__(self, client: MetaGraphClient, account_external_id: str):
        self.client = client
        self.context = ResolutionContext(client, account_external_id)

    def fetch_ad(self, ad_id: str) -> Dict[str, Any]:
        return self.client.get(ad_id, {"fields": AD_FIELDS})

    def resolve_ad_id(self, ad_id: str) -> ResolvedCreative:
        return self.resolve(self.fetch_ad(ad_id))

    def prefetch(self, ads: Iterable[Dict[str, Any]]) -> None:
        """Batch the hash lookups that a set of ads will need.

        Only creatives without a usable direct URL or video need a hash, so
        only their hashes are requested.
        """
        hashes: List[str] = []
        for ad in ads:
            view = CreativeView(extract_creative(ad))
            if view.raw and not view.video_id and _direct_media(view) is None:
                hashes.extend(view.image_hashes())
        if hashes:
            self.context.prefetch_image_hashes(hashes)

    def resolve(self, ad: Dict[str, Any]) -> ResolvedCreative:
        ad_id = str(ad.get("id"))
        now = datetime.utcnow()
        creative = extract_creative(ad)
        view = CreativeView(creative)

        creative_type = detect_creative_type(view) if creative else CreativeTypeEnum.unknown
        media = resolve_media(view, self.context) if creative else None
        texts = resolve_texts(view, self.context) if creative else {name: None for name in TEXT_WATERFALLS}

        has_media = media is not None
        has_text = any(texts.get(name) for name in TEXT_FIELDS)
        status = classify_completeness(has_media, has_text)
        video_id = view.video_id

        post = self.context.post_cache.get(view.post_id) if view.post_id else None
        values: Dict[str, Any] = {
            "ad_id": ad_id,
            "meta_creative_id": view.raw.get("id"),
            "creative_type": creative_type,
            "image_url": media.url if media else None,
            "image_url_hd": (media.url_hd or media.url) if media else None,
            "thumbnail_url": (media.thumbnail_url or media.url) if media else None,
            "image_width": media.width if media else None,
            "image_height": media.height if media else None,
            "image_quality": media.quality if media else ImageQualityEnum.unknown,
            "media_source": media.source if media else None,
            "video_id": video_id,
            "video_url": VIDEO_URL_TEMPLATE.format(video_id=video_id) if video_id else None,
            "preview_url": ad.get("preview_shareable_link"),
            "title": texts.get("title"),
            "body": texts.get("body"),
            "description": texts.get("description"),
            "call_to_action": texts.get("call_to_action"),
            "link_url": texts.get("link_url"),
            "fetch_status": status,
            "is_complete": has_media or has_text,
            "error_message": None,
            "last_validated_at": now,
            "fetched_at": now,
            "extra_data": {
                "ad_name": ad.get("name"),
                "ad_status": ad.get("effective_status") or ad.get("status"),
                "raw_creative": creative,
                "post_data": post,
                "carousel_count": len(view.children),
                "image_source": media.source if media else None,
            },
        }

        logger.debug(
            "[CREATIVE] Ad %s resolved: type=%s status=%s source=%s",
            ad_id, creative_type.value, status.value, values["media_source"],
        )
        return ResolvedCreative(ad_id=ad_id, values=values, media=media)
