"""
Media URL discovery in HTML pages.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Optional
from urllib.parse import urljoin, urlparse

import structlog
from bs4 import BeautifulSoup

from hybridcrawl.engine.extract import PARSER
from hybridcrawl.protocols import MediaType

logger = structlog.get_logger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp", ".ico", ".tiff", ".tif")
VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".avi", ".mkv", ".flv", ".m3u8", ".ts", ".wmv")
AUDIO_EXTENSIONS = (".mp3", ".wav", ".ogg", ".aac", ".flac", ".m4a", ".wma")

QUERY_FORMAT_HINTS = ("format=jpg", "format=png", "type=image", "type=video")
JSON_VIDEO_KEYS = ("video", "playback", "download")

VIDEO_URL_PATTERN = re.compile(r"""https?://[^\s"'<>]+\.(?:mp4|m3u8|webm|mov)(?:\?[^\s"'<>]*)?""")
INITIAL_STATE_PATTERN = re.compile(r"window\.__INITIAL_STATE__\s*=\s*({.*?});", re.DOTALL)


def detect_media_type(url: str, content_type: str = "") -> MediaType:
    """
    Classify a media URL, trusting ``content_type`` over the path extension.

    Returns ``MediaType.ALL`` when the type cannot be determined.

    Examples:
        >>> detect_media_type("https://example.com/clip.MP4")
        <MediaType.VIDEO: 'video'>
        >>> detect_media_type("https://example.com/x", "audio/mpeg")
        <MediaType.AUDIO: 'audio'>
    """
    if content_type:
        for prefix, media_type in (("image/", MediaType.IMAGE), ("video/", MediaType.VIDEO), ("audio/", MediaType.AUDIO)):
            if content_type.startswith(prefix):
                return media_type

    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return MediaType.ALL

    if path.endswith(IMAGE_EXTENSIONS):
        return MediaType.IMAGE
    if path.endswith(VIDEO_EXTENSIONS):
        return MediaType.VIDEO
    if path.endswith(AUDIO_EXTENSIONS):
        return MediaType.AUDIO
    return MediaType.ALL


def is_valid_media_url(url: str) -> bool:
    """http(s) URL with a media extension, a format hint in the query, or media in the path."""
    if not url.startswith(("http://", "https://")):
        return False
    if detect_media_type(url) is not MediaType.ALL:
        return True

    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    query = parsed.query.lower()
    if query and any(hint in query for hint in QUERY_FORMAT_HINTS):
        return True

    lowered = url.lower()
    return "video" in lowered or "image" in lowered


def resolve_url(base_url: str, href: Optional[str]) -> str:
    """Absolute form of ``href``; empty for missing, ``data:`` or unparsable values."""
    if not href:
        return ""
    href = href.strip()
    if not href or href.startswith("data:"):
        return ""
    if href.startswith(("http://", "https://")):
        return href
    try:
        return urljoin(base_url, href)
    except ValueError:
        return ""


def parse_srcset(srcset: str, base_url: str) -> List[str]:
    """URLs named in a ``srcset`` attribute (``"a.jpg 1x, b.jpg 2x"``)."""
    urls = []
    for candidate in srcset.split(","):
        tokens = candidate.split()
        if tokens:
            resolved = resolve_url(base_url, tokens[0])
            if resolved:
                urls.append(resolved)
    return urls


def _json_blobs(doc: BeautifulSoup, html: str) -> List[str]:
    blobs = []
    for script in doc.find_all("script", id="__NEXT_DATA__"):
        blobs.append(script.string or script.get_text())
    for script in doc.find_all("script", attrs={"type": "application/ld+json"}):
        blobs.append(script.string or script.get_text())
    blobs.extend(INITIAL_STATE_PATTERN.findall(html))
    return [blob for blob in blobs if blob]


def _find_video_urls(data: Any, urls: List[str]) -> None:
    if isinstance(data, dict):
        for key, value in data.items():
            lowered = str(key).lower()
            if any(word in lowered for word in JSON_VIDEO_KEYS):
                if isinstance(value, str) and is_valid_media_url(value):
                    urls.append(value)
            _find_video_urls(value, urls)
    elif isinstance(data, list):
        for item in data:
            _find_video_urls(item, urls)


def extract_videos_from_json(doc: BeautifulSoup, html: str) -> List[str]:
    """Video URLs embedded in framework state blobs and JSON-LD."""
    urls: List[str] = []
    for blob in _json_blobs(doc, html):
        urls.extend(VIDEO_URL_PATTERN.findall(blob))
        try:
            data = json.loads(blob)
        except ValueError:
            continue
        _find_video_urls(data, urls)
    return urls


def _attr_urls(doc: BeautifulSoup, selector: str, attr: str, base_url: str) -> Iterable[str]:
    for node in doc.select(selector):
        resolved = resolve_url(base_url, node.get(attr))
        if resolved:
            yield resolved


def extract_media(html: str, base_url: str, media_type: MediaType = MediaType.ALL) -> List[str]:
    """
    Collect downloadable media URLs from a page.

    Relative URLs are resolved against ``base_url``; ``data:`` URLs are
    dropped; the result is de-duplicated in discovery order and filtered to
    URLs that plausibly point at media.
    """
    doc = BeautifulSoup(html, PARSER)
    wants_all = media_type is MediaType.ALL
    urls: List[str] = []

    if wants_all or media_type is MediaType.IMAGE:
        for img in doc.find_all("img"):
            resolved = resolve_url(base_url, img.get("src"))
            if resolved:
                urls.append(resolved)
            srcset = img.get("srcset")
            if srcset:
                urls.extend(parse_srcset(srcset, base_url))
        urls.extend(_attr_urls(doc, 'meta[property="og:image"]', "content", base_url))

    if wants_all or media_type is MediaType.VIDEO:
        urls.extend(_attr_urls(doc, "video source", "src", base_url))
        urls.extend(_attr_urls(doc, "video", "src", base_url))
        urls.extend(_attr_urls(doc, 'meta[property="og:video"], meta[property="og:video:url"]', "content", base_url))
        urls.extend(extract_videos_from_json(doc, html))

    if wants_all or media_type is MediaType.AUDIO:
        urls.extend(_attr_urls(doc, "audio source", "src", base_url))
        urls.extend(_attr_urls(doc, "audio", "src", base_url))

    unique: List[str] = []
    seen = set()
    for url in urls:
        if url not in seen and is_valid_media_url(url):
            seen.add(url)
            unique.append(url)

    logger.debug("Media extracted", base_url=base_url, media_type=media_type.value, found=len(unique))
    return unique
