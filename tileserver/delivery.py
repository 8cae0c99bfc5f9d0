"""
Tile delivery: request validation, fetch, optional GeoJSON transcoding and
response compression for data source tiles.
"""

import json
import logging
import math
import zlib
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import mapbox_vector_tile
from google.protobuf.message import DecodeError

from tileserver.data_sources import DataSourceRegistry
from tileserver.exceptions import (
    InvalidFormatError,
    SourceNotFoundError,
    TileNotFoundError,
    TileOutOfBoundsError,
    TileServerError,
)
from tileserver.utils import ensure_gunzipped, ensure_gzipped

logger = logging.getLogger("tileserver")

VECTOR_FORMAT = "pbf"
GEOJSON_FORMAT = "geojson"
VECTOR_CONTENT_TYPE = "application/x-protobuf"
GEOJSON_CONTENT_TYPE = "application/json"
DEFAULT_EXTENT = 4096

# decorator(source_id, stage, payload, *zxy) -> payload
DataDecorator = Callable[..., Any]


class TileResponse(NamedTuple):
    data: bytes
    headers: Dict[str, str]


def _project(coords: Any, x0: int, y0: int, size: int) -> Any:
    # Leaf positions are [px, py] pairs in tile extent units
    if coords and isinstance(coords[0], (int, float)):
        px, py = coords[0], coords[1]
        lon = (px + x0) * 360 / size - 180
        y2 = 180 - (py + y0) * 360 / size
        lat = 360 / math.pi * math.atan(math.exp(y2 * math.pi / 180)) - 90
        return [lon, lat]
    return [_project(c, x0, y0, size) for c in coords]


def tile_to_geojson(data: bytes, z: int, x: int, y: int) -> Dict[str, Any]:
    """
    Decode a vector tile into one GeoJSON FeatureCollection in lon/lat.

    Each feature's ``properties.layer`` names the tile layer it came from.
    """
    layers = mapbox_vector_tile.decode(data, default_options={"y_coord_down": True})

    features: List[Dict[str, Any]] = []
    for layer_name, layer in layers.items():
        extent = layer.get("extent") or DEFAULT_EXTENT
        size = extent * (1 << z)
        x0 = extent * x
        y0 = extent * y
        for feature in layer.get("features", []):
            geometry = feature["geometry"]
            properties = dict(feature.get("properties") or {})
            properties["layer"] = layer_name
            out: Dict[str, Any] = {
                "type": "Feature",
                "geometry": {
                    "type": geometry["type"],
                    "coordinates": _project(geometry["coordinates"], x0, y0, size),
                },
                "properties": properties,
            }
            if feature.get("id") is not None:
                out["id"] = feature["id"]
            features.append(out)

    return {"type": "FeatureCollection", "features": features}


def normalize_format(requested: str, pbf_alias: Optional[str]) -> str:
    """Map the configured alias (e.g. ``mvt``) back to ``pbf``."""
    if pbf_alias and requested == pbf_alias:
        return VECTOR_FORMAT
    return requested


async def deliver(
    registry: DataSourceRegistry,
    source_id: str,
    z: int,
    x: int,
    y: int,
    requested_format: str,
    pbf_alias: Optional[str] = None,
    decorator: Optional[DataDecorator] = None,
    cache_control: Optional[str] = None,
) -> TileResponse:
    """
    Produce one tile response.

    Checks run in order and stop at the first failure: source, format, bounds.

    Raises:
        SourceNotFoundError: Unknown source id.
        InvalidFormatError: Format is neither native nor geojson-from-pbf.
        TileOutOfBoundsError: Coordinates outside the grid or the zoom range.
        TileNotFoundError: No tile stored at z/x/y, the archive read failed, or the tile is corrupt.
    """
    entry = registry.get(source_id)
    if entry is None:
        raise SourceNotFoundError(source_id, registry.ids())

    tile_format = normalize_format(requested_format, pbf_alias)
    native = entry.tilejson["format"]
    transcode = tile_format == GEOJSON_FORMAT and native == VECTOR_FORMAT
    if tile_format != native and not transcode:
        raise InvalidFormatError(source_id, requested_format, native)

    min_zoom = entry.tilejson["minzoom"]
    max_zoom = entry.tilejson["maxzoom"]
    if (
        z < min_zoom
        or z > max_zoom
        or x < 0
        or y < 0
        or x >= (1 << z)
        or y >= (1 << z)
    ):
        raise TileOutOfBoundsError(source_id, z, x, y, min_zoom, max_zoom)

    try:
        data = await entry.archive.get_tile(z, x, y)
    except TileServerError as e:
        logger.warning("Tile read failed for %s/%d/%d/%d: %s", source_id, z, x, y, e.message)
        raise TileNotFoundError(source_id, z, x, y, reason="archive read failed")
    if data is None:
        raise TileNotFoundError(source_id, z, x, y)

    if native == VECTOR_FORMAT:
        content_type = VECTOR_CONTENT_TYPE
        try:
            data = ensure_gunzipped(data)
        except (OSError, EOFError, zlib.error) as e:
            logger.warning("Corrupt tile in %s/%d/%d/%d: %s", source_id, z, x, y, e)
            raise TileNotFoundError(source_id, z, x, y, reason="corrupt tile")
        if decorator is not None:
            data = decorator(source_id, "data", data, z, x, y)
        if transcode:
            try:
                collection = tile_to_geojson(data, z, x, y)
            except (DecodeError, ValueError, KeyError, IndexError) as e:
                logger.warning("Undecodable tile in %s/%d/%d/%d: %s", source_id, z, x, y, e)
                raise TileNotFoundError(source_id, z, x, y, reason="corrupt tile")
            data = json.dumps(collection, separators=(",", ":")).encode("utf-8")
            content_type = GEOJSON_CONTENT_TYPE
    else:
        content_type = entry.archive.tile_info.content_type

    # Archive caching headers (ETag) are never passed through
    headers = {
        "Content-Type": content_type,
        "Content-Encoding": "gzip",
    }
    if cache_control:
        headers["Cache-Control"] = cache_control
    return TileResponse(data=ensure_gzipped(data), headers=headers)
