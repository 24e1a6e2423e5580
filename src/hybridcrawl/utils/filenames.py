"""
Filesystem-safe names for downloaded assets.

Turns an asset URL into a flat filename that cannot escape the output
directory, keeping the extension readable and folding the query string into a
short hash so ``img.jpg?w=100`` and ``img.jpg?w=200`` land in different files.
"""

import re
import time
from typing import Optional
from urllib.parse import urlparse

# Path separators, parent references and characters Windows refuses
UNSAFE_CHARS_PATTERN = re.compile(r'\.\.|[/\\:*?"<>|\x00-\x1f]')

WINDOWS_RESERVED_NAMES = {
    "CON",
    "PRN",
    "AUX",
    "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}

MAX_FILENAME_LENGTH = 200


def query_hash(query: str) -> str:
    """
    Short, stable hex digest of a query string.

    Uses the 31-multiplier string hash folded to 32 bits and rendered as
    eight hex digits.

    Examples:
        >>> query_hash("w=100")
        '06a9658b'
    """
    value = 0
    for ch in query:
        value = (value * 31 + ord(ch)) & 0xFFFFFFFF
    return f"{value:08x}"


def safe_filename_from_url(source: str, fallback_stem: Optional[str] = None) -> str:
    """
    Derive a safe filename from a URL or a caller-provided name.

    Args:
        source: Absolute URL or plain filename
        fallback_stem: Name to use when nothing usable is left

    Returns:
        A filename without directory components, at most 200 characters

    Examples:
        >>> safe_filename_from_url("https://cdn.example.com/a/b/photo.jpg")
        'photo.jpg'

        >>> safe_filename_from_url("../../etc/passwd")
        '____etc_passwd'
    """
    name = source
    suffix = ""

    parsed = urlparse(source)
    if parsed.netloc:
        name = parsed.path.rsplit("/", 1)[-1]
        if parsed.query:
            suffix = "_" + query_hash(parsed.query)

    name = UNSAFE_CHARS_PATTERN.sub("_", name).strip().strip(".")

    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    if suffix:
        name = f"{stem}{suffix}.{ext}" if ext else f"{stem}{suffix}"

    if stem.upper() in WINDOWS_RESERVED_NAMES:
        name = f"{stem}-reserved.{ext}" if ext else f"{stem}-reserved"

    if not name:
        name = fallback_stem or f"download_{int(time.time())}"

    return name[:MAX_FILENAME_LENGTH]


def is_safe_filename(filename: str) -> bool:
    """Check if a filename can be joined onto an output directory as-is."""
    if not filename or filename in (".", ".."):
        return False
    if UNSAFE_CHARS_PATTERN.search(filename):
        return False
    if filename.split(".")[0].upper() in WINDOWS_RESERVED_NAMES:
        return False
    if filename.endswith(" ") or filename.endswith("."):
        return False
    return True
