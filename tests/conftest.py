"""
Pytest configuration and shared fixtures for tile server tests.

Test data (PMTiles archives, glyph PBFs, sprites, styles and the server config)
is generated into a temporary directory once per session, so no binary
fixtures are kept in the repository.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import mapbox_vector_tile
import pytest
from fastapi.testclient import TestClient
from pmtiles.tile import Compression, TileType, zxy_to_tileid
from pmtiles.writer import write

from tileserver.glyphs import Glyphs
from tileserver.main import create_app
from tileserver.utils import ensure_gzipped

BASE_BOUNDS = (-10.0, -5.0, 10.0, 5.0)
FAKE_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def fake_png(fill: int) -> bytes:
    """PNG-signed bytes; distinct fills keep the writer from merging tiles into one run."""
    return b"\x89PNG\r\n\x1a\n" + bytes([fill]) * 32


def _e7(value: float) -> int:
    return int(round(value * 1e7))


def write_archive(
    path: Path,
    tiles: Dict[Tuple[int, int, int], bytes],
    tile_type: TileType,
    tile_compression: Compression,
    min_zoom: int,
    max_zoom: int,
    bounds: Sequence[float] = BASE_BOUNDS,
    center: Tuple[float, float, int] = (0.0, 0.0, 0),
    metadata: Optional[Dict[str, Any]] = None,
) -> Path:
    """Write a PMTiles v3 archive with the reference writer."""
    with write(str(path)) as writer:
        for (z, x, y), data in sorted(tiles.items(), key=lambda item: zxy_to_tileid(*item[0])):
            writer.write_tile(zxy_to_tileid(z, x, y), data)
        header = {
            "clustered": False,
            "internal_compression": Compression.GZIP,
            "tile_type": tile_type,
            "tile_compression": tile_compression,
            "min_zoom": min_zoom,
            "max_zoom": max_zoom,
            "min_lon_e7": _e7(bounds[0]),
            "min_lat_e7": _e7(bounds[1]),
            "max_lon_e7": _e7(bounds[2]),
            "max_lat_e7": _e7(bounds[3]),
            "center_lon_e7": _e7(center[0]),
            "center_lat_e7": _e7(center[1]),
            "center_zoom": center[2],
        }
        writer.finalize(header, metadata or {})
    return path


def vector_tile(layer: str = "water", properties: Optional[Dict[str, Any]] = None) -> bytes:
    """A gzipped vector tile with one point in the middle of the tile."""
    data = mapbox_vector_tile.encode(
        [
            {
                "name": layer,
                "features": [
                    {"geometry": "POINT(2048 2048)", "properties": properties or {"kind": "lake"}},
                ],
            }
        ],
        default_options={"y_coord_down": True},
    )
    return ensure_gzipped(data)


def glyph_pbf(name: str, glyphs: Iterable[Tuple[int, int]], glyph_range: str = "0-255") -> bytes:
    """Glyph range PBF holding (codepoint, advance) glyphs."""
    message = Glyphs()
    stack = message.stacks.add()
    stack.name = name
    stack.range = glyph_range
    for codepoint, advance in glyphs:
        glyph = stack.glyphs.add()
        glyph.id = codepoint
        glyph.width = 10
        glyph.height = 12
        glyph.left = 1
        glyph.top = -2
        glyph.advance = advance
        glyph.bitmap = b"\x00" * 4
    return message.SerializeToString()


def write_glyphs(fonts_dir: Path, name: str, glyphs: Iterable[Tuple[int, int]]) -> None:
    font_dir = fonts_dir / name
    font_dir.mkdir(parents=True, exist_ok=True)
    (font_dir / "0-255.pbf").write_bytes(glyph_pbf(name, glyphs))


DEMO_STYLE: Dict[str, Any] = {
    "version": 8,
    "name": "Demo",
    "sprite": "basic",
    "glyphs": "{fontstack}/{range}.pbf",
    "sources": {
        "openmaptiles": {"type": "vector", "url": "pmtiles://{base}"},
        "satellite": {"type": "raster", "url": "pmtiles://raster.pmtiles", "tileSize": 256},
        "plain": {"type": "vector", "url": "pmtiles://base"},
        "remote_geojson": {"type": "geojson", "data": "https://example.com/points.geojson"},
    },
    "layers": [
        {"id": "background", "type": "background", "paint": {"background-color": "#fff"}},
        {"id": "imagery", "type": "raster", "source": "satellite"},
        {"id": "water", "type": "fill", "source": "openmaptiles", "source-layer": "water"},
        {
            "id": "labels",
            "type": "symbol",
            "source": "openmaptiles",
            "source-layer": "water",
            "layout": {"text-font": ["Open Sans Regular", "Noto Sans Bold"]},
        },
        {
            "id": "labels-bold",
            "type": "symbol",
            "source": "openmaptiles",
            "source-layer": "water",
            "layout": {"text-font": ["literal", ["Foo Bold"]]},
        },
        {
            "id": "labels-default",
            "type": "symbol",
            "source": "openmaptiles",
            "source-layer": "water",
        },
    ],
}


def build_server_root(root: Path) -> Path:
    """
    Create styles, fonts, sprites, archives and config.json under root.

    Returns:
        Path to the generated config file.
    """
    pmtiles_dir = root / "pmtiles"
    styles_dir = root / "styles"
    fonts_dir = root / "fonts"
    sprites_dir = root / "sprites"
    for directory in (pmtiles_dir, styles_dir, fonts_dir, sprites_dir):
        directory.mkdir(parents=True, exist_ok=True)

    write_archive(
        pmtiles_dir / "base.pmtiles",
        {(0, 0, 0): vector_tile(), (1, 1, 0): vector_tile(), (2, 2, 1): vector_tile("roads")},
        TileType.MVT,
        Compression.GZIP,
        0,
        2,
        metadata={
            "name": "Base",
            "attribution": "Archive attribution",
            "vector_layers": [{"id": "water", "fields": {"kind": "String"}}],
            "scheme": "xyz",
        },
    )
    write_archive(
        pmtiles_dir / "raster.pmtiles",
        {(0, 0, 0): fake_png(0), (1, 0, 0): fake_png(1)},
        TileType.PNG,
        Compression.NONE,
        0,
        1,
        bounds=(-180.0, -85.0, 180.0, 85.0),
        center=(0.0, 0.0, 1),
    )
    write_archive(
        pmtiles_dir / "high.pmtiles",
        {
            (10, 512, 512): vector_tile(),
            (11, 1024, 1024): vector_tile(properties={"kind": "pond"}),
            (12, 2048, 2048): vector_tile(properties={"kind": "puddle"}),
        },
        TileType.MVT,
        Compression.GZIP,
        10,
        12,
    )

    write_glyphs(fonts_dir, "Open Sans Regular", [(65, 10), (66, 11)])
    write_glyphs(fonts_dir, "Noto Sans Bold", [(66, 20), (67, 21)])
    write_glyphs(fonts_dir, "Noto Sans Regular", [(70, 30)])

    (sprites_dir / "basic.json").write_text(json.dumps({"marker": {"x": 0, "y": 0, "width": 8, "height": 8, "pixelRatio": 1}}))
    (sprites_dir / "basic.png").write_bytes(FAKE_PNG)
    (sprites_dir / "basic@2x.png").write_bytes(FAKE_PNG)

    (styles_dir / "demo.json").write_text(json.dumps(DEMO_STYLE))
    # Discovered styles (serveAllStyles): one usable, one invalid, one with an unknown archive
    (styles_dir / "extra.json").write_text(
        json.dumps(
            {
                "version": 8,
                "sources": {"base": {"type": "vector", "url": "pmtiles://{base}"}},
                "layers": [{"id": "water", "type": "fill", "source": "base", "source-layer": "water"}],
            }
        )
    )
    (styles_dir / "broken.json").write_text('{"version": 8, "sources": {}, ')
    (styles_dir / "unknown.json").write_text(
        json.dumps(
            {
                "version": 8,
                "sources": {"other": {"type": "vector", "url": "pmtiles://missing.pmtiles"}},
                "layers": [],
            }
        )
    )

    config = {
        "options": {
            "paths": {
                "root": "",
                "styles": "styles",
                "fonts": "fonts",
                "sprites": "sprites",
                "pmtiles": "pmtiles",
            },
            "pbfAlias": "mvt",
            "serveAllStyles": True,
            "serveAllFonts": False,
        },
        "styles": {"demo": {"style": "demo.json"}},
        "data": {
            "base": {"pmtiles": "base.pmtiles", "tilejson": {"attribution": "Test data"}},
            "high": {"pmtiles": "high.pmtiles"},
            "missing": {"pmtiles": "missing.pmtiles"},
        },
    }
    config_path = root / "config.json"
    config_path.write_text(json.dumps(config, indent=2))
    return config_path


@pytest.fixture(scope="session")
def server_root(tmp_path_factory) -> Path:
    """Session-scoped directory holding generated test data."""
    root = tmp_path_factory.mktemp("server")
    build_server_root(root)
    return root


@pytest.fixture(scope="session")
def config_path(server_root) -> Path:
    return server_root / "config.json"


@pytest.fixture(scope="module")
def client(config_path):
    """
    Create a TestClient instance for the FastAPI app.

    This fixture is shared across all tests in a module.
    """
    app = create_app(config_path=str(config_path))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="module")
def public_client(config_path):
    """TestClient for an app with a configured public URL."""
    app = create_app(config_path=str(config_path), public_url="https://tiles.example.com")
    with TestClient(app) as test_client:
        yield test_client
