from __future__ import annotations

import hashlib

from peforge.model import ContentHashes

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


def content_hashes(data: bytes) -> ContentHashes:
    return ContentHashes(
        md5=hashlib.md5(data).hexdigest(),
        sha1=hashlib.sha1(data).hexdigest(),
        sha256=hashlib.sha256(data).hexdigest(),
    )


def format_size(n: int) -> str:
    """
    Human-readable size, at most two decimals, trailing zeros dropped.
    Example: 1536 -> "1.5 KB"
    """
    if n <= 0:
        return "0 Bytes"
    i = 0
    while i + 1 < len(_SIZE_UNITS) and n >= 1024 ** (i + 1):
        i += 1
    value = round(n / 1024**i, 2)
    return f"{value:g} {_SIZE_UNITS[i]}"
