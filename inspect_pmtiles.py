#!/usr/bin/env python3
"""
PMTiles Archive Inspector for Tile Server

Quick utility to inspect a PMTiles archive (local file or http(s) URL) and
suggest the matching ``data`` entry for the server configuration.

Usage:
    python3 inspect_pmtiles.py <path_or_url>
    python3 inspect_pmtiles.py https://example.com/planet.pmtiles --id planet

Shows:
- Header: tile type, compression, zoom range, bounds and center
- Metadata summary (name, attribution, vector layers)
- Suggested configuration block
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict

from tileserver.archive import PMTilesArchive, open_archive
from tileserver.data_sources import build_tilejson
from tileserver.exceptions import TileServerError
from tileserver.utils import basename_id, is_http_url


def format_size(size_bytes: int) -> str:
    """Format byte size to human-readable string."""
    size: float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


async def inspect_archive(locator: str, source_id: str) -> Dict[str, Any]:
    """Open an archive and collect its header, metadata and derived TileJSON."""
    archive: PMTilesArchive = await open_archive(locator)
    try:
        metadata = await archive.get_metadata()
        tilejson = await build_tilejson(source_id, archive)
        return {
            "header": archive.get_header(),
            "tile_info": archive.tile_info,
            "size": getattr(archive.source, "size", None),
            "metadata": metadata,
            "tilejson": tilejson,
        }
    finally:
        await archive.close()


def print_results(locator: str, source_id: str, results: Dict[str, Any]) -> None:
    header = results["header"]
    info = results["tile_info"]
    metadata = results["metadata"]
    tilejson = results["tilejson"]

    print("\n" + "=" * 70)
    print(f"PMTILES ARCHIVE: {locator}")
    print("=" * 70)
    if results["size"]:
        print(f"Size: {format_size(results['size'])}")

    print("\n" + "-" * 70)
    print("HEADER")
    print("-" * 70)
    print(f"  Tile type:        {info.style_source_kind} ({info.content_type})")
    print(f"  Tile compression: {header.tile_compression.name}")
    print(f"  Zoom range:       {header.min_zoom}-{header.max_zoom}")
    print(
        f"  Bounds:           {header.min_lon:.5f}, {header.min_lat:.5f}, "
        f"{header.max_lon:.5f}, {header.max_lat:.5f}"
    )
    print(f"  Center:           {tilejson['center']}")

    print("\n" + "-" * 70)
    print("METADATA")
    print("-" * 70)
    if not metadata:
        print("  (No metadata)")
    for key in ("name", "description", "attribution", "version"):
        if key in metadata:
            print(f"  {key}: {metadata[key]}")
    layers = metadata.get("vector_layers") or []
    if layers:
        print(f"  vector_layers ({len(layers)}):")
        for layer in layers[:20]:
            print(
                f"    {layer.get('id')}  zoom {layer.get('minzoom', '?')}-{layer.get('maxzoom', '?')}"
            )
        if len(layers) > 20:
            print(f"    ... and {len(layers) - 20} more")

    print("\n" + "-" * 70)
    print("RECOMMENDED CONFIGURATION")
    print("-" * 70)
    print("\nAdd to the \"data\" section of your config.json:\n")
    print(json.dumps({source_id: {"pmtiles": locator}}, indent=2))
    print(f"\nStyles can reference it as \"pmtiles://{{{source_id}}}\".")
    print("\n" + "=" * 70 + "\n")


def main():
    parser = argparse.ArgumentParser(
        description="Inspect PMTiles archives for tile server configuration"
    )
    parser.add_argument(
        "archive",
        help="Path or http(s) URL of the PMTiles archive to inspect",
    )
    parser.add_argument(
        "--id",
        default=None,
        help="Data source id to use in the suggested configuration (default: file name)",
    )
    args = parser.parse_args()

    source_id = args.id or basename_id(args.archive)
    if not is_http_url(args.archive):
        print("Reading local archive...")
    else:
        print("Reading remote archive header with range requests...")

    try:
        results = asyncio.run(inspect_archive(args.archive, source_id))
    except TileServerError as e:
        print(f"\n❌ Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    print_results(args.archive, source_id, results)
    sys.exit(0)


if __name__ == "__main__":
    main()
