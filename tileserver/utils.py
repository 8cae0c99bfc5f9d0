"""Utility functions for locators, hashing, compression sniffing and media types."""

import gzip
import re
from pathlib import Path
from typing import Optional, Tuple

# ---- Constants ----
HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
GZIP_MAGIC = b"\x1f\x8b"
SPRITE_EXTS: Tuple[str, ...] = (".json", ".png")

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def is_http_url(value: str) -> bool:
    """Return True for absolute http/https URLs."""
    return bool(HTTP_URL.match(value or ""))


def fnv1a(value: str) -> int:
    """
    32-bit FNV-1a hash of the UTF-8 encoding of a string.

    Used to prefix ids derived from remote archive URLs so that two hosts
    serving ``planet.pmtiles`` do not collide.
    """
    h = _FNV32_OFFSET
    for byte in value.encode("utf-8"):
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def is_gzipped(data: bytes) -> bool:
    return data[:2] == GZIP_MAGIC


def ensure_gzipped(data: bytes) -> bytes:
    """Gzip data exactly once."""
    if is_gzipped(data):
        return data
    return gzip.compress(data)


def ensure_gunzipped(data: bytes) -> bytes:
    if is_gzipped(data):
        return gzip.decompress(data)
    return data


def basename_id(locator: str) -> str:
    """
    Candidate data-source id from a locator: the basename without extension.

    Args:
        locator: Local path or URL of an archive.

    Returns:
        "planet" for "https://host/tiles/planet.pmtiles", "base" for "dir/base.pmtiles".
    """
    name = locator.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    stem = name.rsplit(".", 1)[0] if "." in name else name
    return stem or name


def safe_path_component(name: str) -> bool:
    """True if name can be used as a single file/directory name."""
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name


def media_type_for_suffix(suffix: str) -> Optional[str]:
    """
    Get the MIME type for a file extension.

    Args:
        suffix: File extension including the dot (e.g., ".png").

    Returns:
        MIME type string (e.g., "image/png") or None if unsupported.
    """
    suffix = suffix.lower()
    if suffix == ".png":
        return "image/png"
    if suffix == ".json":
        return "application/json"
    if suffix == ".pbf":
        return "application/x-protobuf"
    return None


def sprite_file(sprite_base: Path, scale: str, fmt: str) -> Path:
    """Sprite file path for a base path, e.g. ``sprites/basic`` + ``@2x`` + ``png``."""
    return sprite_base.with_name(f"{sprite_base.name}{scale}.{fmt}")
