"""Registry of servable data sources backed by PMTiles archives."""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx

from tileserver.archive import PMTilesArchive, open_archive
from tileserver.config import SourceKind
from tileserver.tile_types import tilejson_format

logger = logging.getLogger("tileserver")

TILEJSON_VERSION = "2.0.0"
FIT_WIDTH = 1024
TILE_SIZE = 256
# Owned by the header, never taken from archive metadata
STRUCTURAL_KEYS = ("tilejson", "name", "format", "bounds", "center", "minzoom", "maxzoom", "tiles")
DROPPED_METADATA_KEYS = ("filesize", "mtime", "scheme")


@dataclass(frozen=True)
class DataSourceEntry:
    """
    A servable data source. Never mutated; reloads publish a new entry.

    Attributes:
        id: External identifier, stable for the process lifetime.
        tilejson: TileJSON document without resolved ``tiles`` URLs.
        archive: The open archive, owned exclusively by this entry.
        locator: Canonical locator (absolute path or URL) the archive was opened from.
        public_url: Configured public base URL, if any.
    """

    id: str
    tilejson: Dict[str, Any]
    archive: PMTilesArchive
    locator: str
    public_url: Optional[str] = None


def fix_tilejson_center(tilejson: Dict[str, Any]) -> None:
    """
    Derive ``center`` from ``bounds`` when absent.

    The zoom fits the bounds' width into a 1024px viewport of 256px tiles.
    """
    bounds = tilejson.get("bounds")
    if not bounds or tilejson.get("center"):
        return
    min_lon, min_lat, max_lon, max_lat = bounds
    tiles = FIT_WIDTH / TILE_SIZE
    width = max_lon - min_lon
    zoom = math.floor(-math.log2(width / 360 / tiles) + 0.5) if width > 0 else 0
    tilejson["center"] = [(min_lon + max_lon) / 2, (min_lat + max_lat) / 2, zoom]


async def build_tilejson(
    source_id: str,
    archive: PMTilesArchive,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Synthesize a TileJSON document from an archive's header and metadata.

    Args:
        source_id: Data source id, used as the default ``name``.
        archive: Open archive.
        overrides: Configured ``tilejson`` values, applied last.

    Returns:
        TileJSON dictionary (``tiles`` is filled in per request).
    """
    header = archive.get_header()
    metadata = await archive.get_metadata()

    tile_format = tilejson_format(archive.tile_info)
    if not tile_format:
        tile_format = str(metadata.get("format") or "bin")

    tilejson: Dict[str, Any] = {
        "tilejson": TILEJSON_VERSION,
        "name": source_id,
        "format": tile_format,
        "minzoom": header.min_zoom,
        "maxzoom": header.max_zoom,
        "bounds": [header.min_lon, header.min_lat, header.max_lon, header.max_lat],
    }
    # An all-zero center means the writer did not set one
    if (header.center_lon, header.center_lat, header.center_zoom) != (0, 0, 0):
        tilejson["center"] = [header.center_lon, header.center_lat, header.center_zoom]

    for key, value in metadata.items():
        if key in STRUCTURAL_KEYS or key in DROPPED_METADATA_KEYS:
            continue
        tilejson[key] = value

    if overrides:
        tilejson.update(overrides)

    fix_tilejson_center(tilejson)
    return tilejson


class DataSourceRegistry:
    """
    Process-wide mapping of data source id to DataSourceEntry.

    Reads never lock. Registration builds the new entry completely (archive
    opened, TileJSON derived) before publishing it into the id's slot, so a
    concurrent reader sees either the old entry or the new one.

    Attributes:
        register_lock: Serializes registrations so two ingestions cannot race
            to allocate the same id.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._entries: Dict[str, DataSourceEntry] = {}
        self._client = client
        self.register_lock: asyncio.Lock = asyncio.Lock()

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, source_id: str) -> Optional[DataSourceEntry]:
        return self._entries.get(source_id)

    def ids(self) -> List[str]:
        return list(self._entries.keys())

    def items(self) -> Iterator[Tuple[str, DataSourceEntry]]:
        return iter(list(self._entries.items()))

    def find_by_locator(self, locator: str) -> Optional[str]:
        """Id of the entry opened from this exact locator, if any."""
        for source_id, entry in self._entries.items():
            if entry.locator == locator:
                return source_id
        return None

    async def register_source(
        self,
        source_id: str,
        source: SourceKind,
        public_url: Optional[str] = None,
        tilejson_overrides: Optional[Dict[str, Any]] = None,
    ) -> DataSourceEntry:
        """
        Open an archive and publish it under source_id, replacing any previous entry.

        Raises:
            ArchiveOpenError: If the archive cannot be opened.
            ArchiveFormatError: If the archive header or metadata is invalid.
        """
        archive = await open_archive(source.locator, self._client)
        try:
            tilejson = await build_tilejson(source_id, archive, tilejson_overrides)
        except BaseException:
            await archive.close()
            raise

        entry = DataSourceEntry(
            id=source_id,
            tilejson=tilejson,
            archive=archive,
            locator=source.locator,
            public_url=public_url,
        )

        previous = self._entries.get(source_id)
        self._entries[source_id] = entry

        logger.info(
            "Data source '%s': %s tiles, zoom %d-%d from %s",
            source_id,
            tilejson["format"],
            tilejson["minzoom"],
            tilejson["maxzoom"],
            source.locator,
        )

        if previous is not None:
            await self._close_quietly(previous)
        return entry

    async def unregister(self, source_id: str) -> None:
        entry = self._entries.pop(source_id, None)
        if entry is not None:
            await self._close_quietly(entry)

    async def _close_quietly(self, entry: DataSourceEntry) -> None:
        # In-flight reads against the old handle may still finish
        try:
            await entry.archive.close()
        except Exception as e:
            logger.error("Error closing archive for data source '%s': %s", entry.id, e)

    async def close_all(self) -> None:
        """Close all open archives gracefully."""
        for source_id in list(self._entries):
            entry = self._entries.pop(source_id)
            await self._close_quietly(entry)
            logger.info("Closed archive for data source '%s'", source_id)
