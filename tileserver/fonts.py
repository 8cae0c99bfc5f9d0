"""Font stack resolution with fallback for glyph range requests."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Set

from tileserver.exceptions import FontNotAllowedError, FontNotFoundError
from tileserver.glyphs import combine
from tileserver.utils import safe_path_component

logger = logging.getLogger("tileserver")

FONT_STYLES = ("Regular", "Bold", "Italic")
FALLBACK_FAMILIES = ("Noto Sans", "Open Sans")
PROBE_RANGE = "0-255"


def list_available_fonts(fonts_path: Path) -> Set[str]:
    """Names of font directories that hold at least the ``0-255`` glyph range."""
    if not fonts_path.is_dir():
        return set()
    return {
        entry.name
        for entry in fonts_path.iterdir()
        if entry.is_dir() and (entry / f"{PROBE_RANGE}.pbf").is_file()
    }


def fallback_candidate(requested: str, fallbacks: Set[str]) -> str:
    """
    Pick the next font to try for a missing font.

    Prefers a well-known family in the requested font's style (the last word
    when it is Regular, Bold or Italic, else Regular), then the first remaining
    name in sorted order.
    """
    style = requested.split(" ")[-1]
    if style not in FONT_STYLES:
        style = "Regular"
    for family in FALLBACK_FAMILIES:
        candidate = f"{family} {style}"
        if candidate in fallbacks:
            return candidate
    return sorted(fallbacks)[0]


class FontCompositor:
    """
    Serves composed glyph PBFs for comma-separated font stacks.

    Attributes:
        fonts_path: Directory holding one sub-directory of range PBFs per font.
        allowed: Fonts that may be requested, or None when all fonts are served.
            Shared by reference with the style resolver, which fills it.
        available: Fonts found on disk; the fallback pool in unrestricted mode.
    """

    def __init__(self, fonts_path: Path, allowed: Optional[Set[str]], available: Set[str]) -> None:
        self.fonts_path = fonts_path
        self.allowed = allowed
        self.available = available

    def font_names(self) -> List[str]:
        """Sorted names for ``/fonts.json``."""
        return sorted(self.available if self.allowed is None else self.allowed)

    async def _read(self, name: str, glyph_range: str) -> Optional[bytes]:
        if not safe_path_component(name):
            return None
        path = self.fonts_path / name / f"{glyph_range}.pbf"
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError:
            return None

    async def resolve_font(self, name: str, glyph_range: str) -> bytes:
        """
        Glyph PBF for one font, falling back to other fonts when it is missing.

        Raises:
            FontNotAllowedError: If fonts are restricted and name is not allowed.
            FontNotFoundError: If name and every fallback candidate are missing.
        """
        if self.allowed is not None and name not in self.allowed:
            raise FontNotAllowedError(name)

        fallbacks = set(self.available if self.allowed is None else self.allowed)
        visited: Set[str] = set()
        candidate = name
        while True:
            visited.add(candidate)
            fallbacks -= visited
            data = await self._read(candidate, glyph_range)
            if data is not None:
                return data
            logger.warning("Font not found: %s (range %s)", candidate, glyph_range)
            if not fallbacks:
                raise FontNotFoundError(name)
            candidate = fallback_candidate(name, fallbacks)
            logger.warning("Trying %s as a fallback for %s", candidate, name)

    async def resolve_glyphs(self, fontstack: str, glyph_range: str) -> bytes:
        """
        Composed glyph PBF for a comma-separated font stack.

        Every requested font must resolve (directly or by fallback); codepoints
        present in several fonts are taken from the first one listed.
        """
        names = [name.strip() for name in fontstack.split(",") if name.strip()]
        if not names:
            raise FontNotFoundError(fontstack)
        buffers = await asyncio.gather(
            *(self.resolve_font(name, glyph_range) for name in names)
        )
        return combine(buffers)
