"""Media discovery and concurrent file downloads."""

from .downloader import Downloader
from .media import detect_media_type, extract_media, is_valid_media_url
from .pool import DownloadPool

__all__ = ["DownloadPool", "Downloader", "detect_media_type", "extract_media", "is_valid_media_url"]
