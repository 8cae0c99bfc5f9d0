"""Mapping from PMTiles tile type codes to HTTP and style metadata."""

from typing import Dict, NamedTuple, Union

from pmtiles.tile import TileType

# Style source kinds
VECTOR = "vector"
RASTER = "raster"
UNKNOWN = "unknown"


class TileTypeInfo(NamedTuple):
    """Content type, file extension and style source kind for one tile type."""

    content_type: str
    file_extension: str
    style_source_kind: str


UNKNOWN_TILE_TYPE = TileTypeInfo("application/octet-stream", "", UNKNOWN)

TILE_TYPES: Dict[int, TileTypeInfo] = {
    TileType.UNKNOWN.value: UNKNOWN_TILE_TYPE,
    TileType.MVT.value: TileTypeInfo("application/x-protobuf", "mvt", VECTOR),
    TileType.PNG.value: TileTypeInfo("image/png", "png", RASTER),
    TileType.JPEG.value: TileTypeInfo("image/jpeg", "jpg", RASTER),
    TileType.WEBP.value: TileTypeInfo("image/webp", "webp", RASTER),
    TileType.AVIF.value: TileTypeInfo("image/avif", "avif", RASTER),
}


def classify(code: Union[int, TileType]) -> TileTypeInfo:
    """
    Look up the tile type info for an archive tile type code.

    Never fails: unrecognized codes get the unknown sentinel so the archive can
    still be served as opaque bytes.
    """
    if isinstance(code, TileType):
        code = code.value
    return TILE_TYPES.get(code, UNKNOWN_TILE_TYPE)


def tilejson_format(info: TileTypeInfo) -> str:
    """TileJSON ``format`` for a tile type: ``pbf`` for vector, else the extension."""
    if info.style_source_kind == VECTOR:
        return "pbf"
    return info.file_extension
