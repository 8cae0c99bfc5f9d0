"""
PMTiles tile server.

A FastAPI-based server for MapLibre/Mapbox styles, TileJSON, vector and raster
tiles stored in PMTiles archives (local files or remote URLs), sprites and
composed glyph PBFs.

Usage:
    # As a module
    python -m tileserver config.json -p 8080

    # With uvicorn directly
    uvicorn tileserver.main:get_app --factory --host 0.0.0.0 --port 8080

    # Programmatically
    from tileserver import create_app
    app = create_app("config.json")
"""

from tileserver.main import create_app, get_app

__all__ = ["create_app", "get_app"]
