"""Custom exceptions for the tile server with HTTP status codes."""

from typing import Any, Dict, List, Optional


class TileServerError(Exception):
    """
    Base exception for tile server errors.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code to return.
        error_code: Machine-readable error code for API responses.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


# ---- Archive adapter ----


class ArchiveOpenError(TileServerError):
    """Raised when an archive locator cannot be opened."""

    def __init__(self, locator: str, reason: str) -> None:
        message = f"Cannot open archive '{locator}': {reason}"
        super().__init__(message, status_code=500, error_code="ARCHIVE_OPEN_ERROR")
        self.locator = locator


class ArchiveFormatError(TileServerError):
    """Raised when an archive header or directory cannot be parsed."""

    def __init__(self, locator: str, reason: str) -> None:
        message = f"Invalid archive '{locator}': {reason}"
        super().__init__(message, status_code=500, error_code="ARCHIVE_FORMAT_ERROR")
        self.locator = locator


class ArchiveRangeError(TileServerError):
    """Raised when a read would go past the archive's declared size."""

    def __init__(self, locator: str, offset: int, length: int, size: int) -> None:
        message = (
            f"Byte range {offset}+{length} is outside archive '{locator}' "
            f"({size} bytes)"
        )
        super().__init__(message, status_code=500, error_code="ARCHIVE_RANGE_ERROR")
        self.offset = offset
        self.length = length
        self.size = size


class ArchiveReadError(TileServerError):
    """Raised when the underlying file or HTTP endpoint fails during a read."""

    def __init__(self, locator: str, reason: str) -> None:
        message = f"Read failed for archive '{locator}': {reason}"
        super().__init__(message, status_code=502, error_code="ARCHIVE_READ_ERROR")
        self.locator = locator


# ---- Style resolver ----


class StyleValidationError(TileServerError):
    """Raised when a style document fails validation. The whole style is rejected."""

    def __init__(self, style_id: str, errors: List[Dict[str, Any]]) -> None:
        details = "; ".join(
            f"line {e['line']}: {e['message']}" if e.get("line") else e["message"]
            for e in errors
        )
        message = f"Style '{style_id}' is invalid: {details}"
        super().__init__(message, status_code=400, error_code="STYLE_INVALID")
        self.style_id = style_id
        self.errors = errors


class UnknownSourceError(TileServerError):
    """Raised when a style references an archive that is not configured."""

    def __init__(self, style_id: str, locator: str) -> None:
        message = f"Style '{style_id}' uses unknown archive '{locator}'"
        super().__init__(message, status_code=400, error_code="UNKNOWN_SOURCE")
        self.style_id = style_id
        self.locator = locator


class StyleNotFoundError(TileServerError):
    """Raised when a requested style is not being served."""

    def __init__(self, style_id: str) -> None:
        message = f"Style '{style_id}' not found"
        super().__init__(message, status_code=404, error_code="STYLE_NOT_FOUND")
        self.style_id = style_id


class SpriteNotFoundError(TileServerError):
    """Raised when a style has no local sprite or the sprite file is missing."""

    def __init__(self, style_id: str, name: str) -> None:
        message = f"Sprite '{name}' not found for style '{style_id}'"
        super().__init__(message, status_code=404, error_code="SPRITE_NOT_FOUND")


# ---- Font compositor ----


class FontNotFoundError(TileServerError):
    """Raised when a font and every fallback candidate are unavailable."""

    def __init__(self, font_name: str) -> None:
        message = f"Font load error: {font_name}"
        super().__init__(message, status_code=400, error_code="FONT_NOT_FOUND")
        self.font_name = font_name


class FontNotAllowedError(TileServerError):
    """Raised when font restriction is on and the font is not in the allowed set."""

    def __init__(self, font_name: str) -> None:
        message = f"Font not allowed: {font_name}"
        super().__init__(message, status_code=400, error_code="FONT_NOT_ALLOWED")
        self.font_name = font_name


# ---- Tile delivery ----


class SourceNotFoundError(TileServerError):
    """Raised when a requested data source does not exist in the registry."""

    def __init__(self, source_id: str, available_sources: List[str]) -> None:
        message = (
            f"Data source '{source_id}' not found. "
            f"Available sources: {', '.join(available_sources)}"
        )
        super().__init__(message, status_code=404, error_code="SOURCE_NOT_FOUND")
        self.source_id = source_id
        self.available_sources = available_sources


class InvalidFormatError(TileServerError):
    """Raised when the requested tile format cannot be produced from the source."""

    def __init__(self, source_id: str, requested: str, native: str) -> None:
        message = (
            f"Invalid format '{requested}' for data source '{source_id}'. "
            f"Native format: {native}"
        )
        super().__init__(message, status_code=404, error_code="INVALID_FORMAT")
        self.requested = requested
        self.native = native


class TileOutOfBoundsError(TileServerError):
    """Raised when z/x/y falls outside the tile grid or the source's zoom range."""

    def __init__(self, source_id: str, z: int, x: int, y: int, min_z: int, max_z: int) -> None:
        max_coord = (1 << z) - 1 if z >= 0 else 0
        message = (
            f"Out of bounds: /{source_id}/{z}/{x}/{y}. "
            f"Zoom range: {min_z}-{max_z}, coordinate range at zoom {z}: 0-{max_coord}"
        )
        super().__init__(message, status_code=404, error_code="OUT_OF_BOUNDS")
        self.z = z
        self.x = x
        self.y = y


class TileNotFoundError(TileServerError):
    """Raised when a tile is absent from the archive or could not be read."""

    def __init__(self, source_id: str, z: int, x: int, y: int, reason: Optional[str] = None) -> None:
        message = f"Tile not found: /{source_id}/{z}/{x}/{y}"
        if reason:
            message += f" ({reason})"
        super().__init__(message, status_code=404, error_code="TILE_NOT_FOUND")
