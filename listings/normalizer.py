"""
Media extraction and classification for raw upstream posts.

Upstream posts come in many shapes (galleries, hosted video, link posts,
embeds, crossposts). ``extract_media`` runs an ordered chain of small
extractors over the loose payload and stops at the first one that yields a
URL; ``normalize`` turns the outcome into a ``NormalizedPost`` or drops the
post when nothing usable was found.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from listings.models import NormalizedPost

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
EMBED_THUMBNAIL_MARKERS = (".jpg", ".jpeg", ".png")
MANIFEST_MARKERS = ("dashplaylist.mpd", ".mpd", ".m3u8")
ALLOWED_MEDIA_HOSTS = (
    "i.redd.it",
    "preview.redd.it",
    "external-preview.redd.it",
    "i.imgur.com",
    "imgur.com",
    "v.redd.it",
)

STEP_GALLERY = "gallery"
STEP_NATIVE_VIDEO = "native_video"
STEP_VIDEO_PREVIEW = "video_preview"
STEP_DIRECT_LINK = "direct_link"
STEP_EMBED_THUMBNAIL = "embed_thumbnail"
STEP_PREVIEW_IMAGE = "preview_image"


@dataclass
class MediaExtraction:
    urls: List[str] = field(default_factory=list)
    step: Optional[str] = None
    source: Optional[Dict[str, Any]] = None
    via_crosspost: bool = False


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _media_blocks(post: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [_dict(post.get("media")), _dict(post.get("secure_media"))]


def _path_lower(url: str) -> str:
    try:
        return urlsplit(url).path.lower()
    except ValueError:
        return url.lower()


def is_playable_video_url(url: str) -> bool:
    """True for a direct MP4 reference; streaming manifests are rejected."""
    lowered = url.lower()
    if any(marker in lowered for marker in MANIFEST_MARKERS):
        return False
    return ".mp4" in lowered


def is_image_url(url: str) -> bool:
    return _path_lower(url).endswith(IMAGE_EXTENSIONS)


def is_allowed_media_host(url: str) -> bool:
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in ALLOWED_MEDIA_HOSTS)


def _extract_gallery(post: Dict[str, Any]) -> List[str]:
    if not post.get("is_gallery"):
        return []
    items = _list(_dict(post.get("gallery_data")).get("items"))
    metadata = _dict(post.get("media_metadata"))
    if not items or not metadata:
        return []

    urls: List[str] = []
    for item in items:
        meta = _dict(metadata.get(_dict(item).get("media_id")))
        if not meta:
            continue
        previews = _list(meta.get("p"))
        best = _str(_dict(previews[-1]).get("u")) if previews else ""
        if not best:
            best = _str(_dict(meta.get("s")).get("u"))
        if best:
            urls.append(best)
    return urls


def _extract_native_video(post: Dict[str, Any]) -> List[str]:
    for block in _media_blocks(post):
        fallback = _str(_dict(block.get("reddit_video")).get("fallback_url"))
        if fallback:
            return [fallback] if is_playable_video_url(fallback) else []
    return []


def _extract_video_preview(post: Dict[str, Any]) -> List[str]:
    preview = _dict(post.get("preview"))
    fallback = _str(_dict(preview.get("reddit_video_preview")).get("fallback_url"))
    return [fallback] if fallback else []


def _extract_direct_link(post: Dict[str, Any]) -> List[str]:
    destination = _str(post.get("url_overridden_by_dest")) or _str(post.get("url"))
    if destination and is_image_url(destination):
        return [destination]
    return []


def _extract_embed_thumbnail(post: Dict[str, Any]) -> List[str]:
    for block in _media_blocks(post):
        thumbnail = _str(_dict(block.get("oembed")).get("thumbnail_url"))
        if not thumbnail:
            continue
        if any(marker in thumbnail.lower() for marker in EMBED_THUMBNAIL_MARKERS):
            return [thumbnail]
        return []
    return []


def _extract_preview_image(post: Dict[str, Any]) -> List[str]:
    images = _list(_dict(post.get("preview")).get("images"))
    if not images:
        return []
    source_url = _str(_dict(_dict(images[0]).get("source")).get("url"))
    return [source_url] if source_url else []


EXTRACTION_CHAIN: Sequence[Tuple[str, Callable[[Dict[str, Any]], List[str]]]] = (
    (STEP_GALLERY, _extract_gallery),
    (STEP_NATIVE_VIDEO, _extract_native_video),
    (STEP_VIDEO_PREVIEW, _extract_video_preview),
    (STEP_DIRECT_LINK, _extract_direct_link),
    (STEP_EMBED_THUMBNAIL, _extract_embed_thumbnail),
    (STEP_PREVIEW_IMAGE, _extract_preview_image),
)


def _run_chain(post: Dict[str, Any]) -> MediaExtraction:
    for name, extractor in EXTRACTION_CHAIN:
        urls = extractor(post)
        if urls:
            return MediaExtraction(urls=urls, step=name, source=post)
    return MediaExtraction()


def extract_media(raw_post: Any) -> MediaExtraction:
    """
    Run the extraction chain on a post, then on its crosspost parent if the
    post itself produced nothing.
    """
    post = _dict(raw_post)
    if not post:
        return MediaExtraction()

    extraction = _run_chain(post)
    if extraction.urls:
        return extraction

    parents = _list(post.get("crosspost_parent_list"))
    parent = _dict(parents[0]) if parents else {}
    if parent and parent.get("id") != post.get("id"):
        extraction = _run_chain(parent)
        if extraction.urls:
            extraction.via_crosspost = True
            return extraction
    return MediaExtraction()


def normalize(raw_post: Any, channel: Optional[str] = None) -> Optional[NormalizedPost]:
    post = _dict(raw_post)
    extraction = extract_media(post)
    if not extraction.urls:
        if post.get("is_video"):
            logger.warning(
                "Post %s in %s (is_video) has no usable media url; dropping",
                post.get("id"),
                post.get("subreddit") or channel,
            )
        else:
            logger.debug("Post %s has no usable media url; dropping", post.get("id"))
        return None

    urls, is_unplayable = classify(extraction)
    return NormalizedPost(
        title=_str(post.get("title")),
        post_id=str(post.get("id") or ""),
        channel=_str(post.get("subreddit")) or channel or "",
        media_urls=urls,
        is_unplayable_video=is_unplayable,
    )


def classify(extraction: MediaExtraction) -> Tuple[List[str], bool]:
    """
    Decide whether a video-flagged item resolved to something playable.

    A video item whose URL came from any step other than the native video
    step is unplayable, unless that URL is itself a direct MP4 (the video
    preview step). Unplayable items keep a single static entry.
    """
    source = extraction.source or {}
    urls = list(extraction.urls)
    if not source.get("is_video") or extraction.step == STEP_NATIVE_VIDEO:
        return urls, False
    if len(urls) == 1 and is_playable_video_url(urls[0]):
        return urls, False
    return urls[:1], True


def normalize_listing(payload: Any, channel: str) -> Tuple[List[NormalizedPost], Optional[str]]:
    """Normalize a listing response body into posts plus the next-page cursor."""
    data = _dict(_dict(payload).get("data"))
    children = data.get("children")
    if not isinstance(children, list):
        logger.warning("Unexpected listing structure for %s; treating as empty", channel)
        return [], None

    posts: List[NormalizedPost] = []
    for child in children:
        post = normalize(_dict(child).get("data"), channel=channel)
        if post is not None:
            posts.append(post)

    after = data.get("after")
    next_cursor = after if isinstance(after, str) and after else None
    logger.debug("Normalized %d/%d posts for %s", len(posts), len(children), channel)
    return posts, next_cursor
