"""
PMTiles archive access over byte ranges.

An archive is opened from a locator (local path or http(s) URL). Both kinds of
locator are served by a byte source with the same two capabilities,
``get_bytes(offset, length)`` and ``get_key()``; the archive logic on top reads the
v3 header, caches the root directory and walks leaf directories per tile.

All reads are awaitable: local reads run on a worker thread against an mmap of
the file, remote reads are HTTP range requests.
"""

import asyncio
import gzip
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx
from pmtiles.reader import MmapSource
from pmtiles.tile import (
    Compression,
    TileType,
    deserialize_directory,
    deserialize_header,
    find_tile,
    zxy_to_tileid,
)

from tileserver.exceptions import (
    ArchiveFormatError,
    ArchiveOpenError,
    ArchiveRangeError,
    ArchiveReadError,
    TileServerError,
)
from tileserver.tile_types import TileTypeInfo, classify
from tileserver.utils import is_http_url

logger = logging.getLogger("tileserver")

HEADER_LENGTH = 127
PMTILES_VERSION = 3
MAX_DIRECTORY_DEPTH = 4
MAX_ZOOM = 30
CONTENT_RANGE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")
KNOWN_TILE_TYPES = {t.value for t in TileType}
SERVABLE_COMPRESSIONS = (Compression.UNKNOWN, Compression.NONE, Compression.GZIP)


@dataclass
class RangeResponse:
    """Bytes returned by a source, plus any caching headers the source reported."""

    data: bytes
    etag: Optional[str] = None
    cache_control: Optional[str] = None


@dataclass(frozen=True)
class ArchiveHeader:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float
    center_lon: float
    center_lat: float
    center_zoom: int
    min_zoom: int
    max_zoom: int
    tile_type: int
    tile_compression: Compression


class FileSource:
    """Byte source over a local file, read through an mmap on a worker thread."""

    def __init__(self, path: Path) -> None:
        self.path = path
        try:
            self._file = open(path, "rb")
        except OSError as e:
            raise ArchiveOpenError(str(path), str(e))
        try:
            self.size = os.fstat(self._file.fileno()).st_size
            # mmap refuses empty files
            self._read = MmapSource(self._file)
        except (OSError, ValueError) as e:
            self._file.close()
            raise ArchiveOpenError(str(path), str(e))

    async def get_bytes(self, offset: int, length: int) -> RangeResponse:
        if offset < 0 or length < 0 or offset + length > self.size:
            raise ArchiveRangeError(self.get_key(), offset, length, self.size)
        try:
            data = await asyncio.to_thread(self._read, offset, length)
        except (OSError, ValueError) as e:
            raise ArchiveReadError(self.get_key(), str(e))
        return RangeResponse(data=bytes(data))

    def get_key(self) -> str:
        return str(self.path)

    async def close(self) -> None:
        await asyncio.to_thread(self._file.close)


class HttpSource:
    """
    Byte source over an http(s) URL using Range requests.

    The archive size is learned from the first ``Content-Range`` response header;
    after that, reads past the end fail locally without a request.
    """

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        self.size: Optional[int] = None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    async def get_bytes(self, offset: int, length: int) -> RangeResponse:
        if offset < 0 or length < 0:
            raise ArchiveRangeError(self.url, offset, length, self.size or 0)
        if self.size is not None and offset + length > self.size:
            raise ArchiveRangeError(self.url, offset, length, self.size)
        if length == 0:
            return RangeResponse(data=b"")

        headers = {"Range": f"bytes={offset}-{offset + length - 1}"}
        try:
            response = await self._client.get(self.url, headers=headers)
        except httpx.HTTPError as e:
            raise ArchiveReadError(self.url, str(e))

        if response.status_code == 416:
            raise ArchiveRangeError(self.url, offset, length, self.size or 0)

        if response.status_code == 206:
            match = CONTENT_RANGE.match(response.headers.get("Content-Range", ""))
            if match and match.group(3) != "*":
                self.size = int(match.group(3))
            data = response.content
        elif response.status_code == 200:
            # Server ignored the Range header and sent the whole archive
            self.size = len(response.content)
            data = response.content[offset : offset + length]
        else:
            raise ArchiveReadError(self.url, f"HTTP {response.status_code}")

        if len(data) < length:
            raise ArchiveRangeError(self.url, offset, length, self.size or len(data))

        return RangeResponse(
            data=data[:length],
            etag=response.headers.get("ETag"),
            cache_control=response.headers.get("Cache-Control"),
        )

    def get_key(self) -> str:
        return self.url

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


ByteSource = Union[FileSource, HttpSource]


class PMTilesArchive:
    """
    An open PMTiles v3 archive.

    Attributes:
        source: The byte source the archive reads from (owned by this archive).
        header: Parsed header, immutable after open.
        tile_info: Tile type classification of the header's tile type code.
    """

    def __init__(
        self,
        source: ByteSource,
        header: ArchiveHeader,
        layout: Dict[str, Any],
        root_directory: List[Any],
    ) -> None:
        self.source = source
        self.header = header
        self.tile_info: TileTypeInfo = classify(header.tile_type)
        self._layout = layout
        self._root_directory = root_directory

    @property
    def locator(self) -> str:
        return self.source.get_key()

    @classmethod
    async def open(cls, source: ByteSource) -> "PMTilesArchive":
        """
        Read and validate the header and root directory of an archive.

        Raises:
            ArchiveFormatError: If the header is not a valid PMTiles v3 header.
            ArchiveOpenError: If the source cannot be read at all.
        """
        key = source.get_key()
        try:
            raw = (await source.get_bytes(0, HEADER_LENGTH)).data
        except ArchiveRangeError:
            raise ArchiveFormatError(key, "file is shorter than a PMTiles header")
        except ArchiveReadError as e:
            raise ArchiveOpenError(key, e.message)

        if raw[:7] != b"PMTiles":
            raise ArchiveFormatError(key, "missing PMTiles magic number")
        if raw[7] != PMTILES_VERSION:
            raise ArchiveFormatError(key, f"unsupported PMTiles version {raw[7]}")

        tile_type = raw[99]
        if tile_type not in KNOWN_TILE_TYPES:
            # Served as opaque bytes; keep the raw code for classification
            raw = raw[:99] + bytes([TileType.UNKNOWN.value]) + raw[100:]

        try:
            layout = deserialize_header(raw)
        except (ValueError, IndexError) as e:
            raise ArchiveFormatError(key, f"cannot parse header: {e}")

        header = ArchiveHeader(
            min_lon=layout["min_lon_e7"] / 1e7,
            min_lat=layout["min_lat_e7"] / 1e7,
            max_lon=layout["max_lon_e7"] / 1e7,
            max_lat=layout["max_lat_e7"] / 1e7,
            center_lon=layout["center_lon_e7"] / 1e7,
            center_lat=layout["center_lat_e7"] / 1e7,
            center_zoom=layout["center_zoom"],
            min_zoom=layout["min_zoom"],
            max_zoom=layout["max_zoom"],
            tile_type=tile_type,
            tile_compression=layout["tile_compression"],
        )

        if not (0 <= header.min_zoom <= header.max_zoom <= MAX_ZOOM):
            raise ArchiveFormatError(
                key, f"invalid zoom range {header.min_zoom}-{header.max_zoom}"
            )
        if header.tile_compression not in SERVABLE_COMPRESSIONS:
            raise ArchiveFormatError(
                key, f"unsupported tile compression {header.tile_compression.name}"
            )

        archive = cls(source, header, layout, [])
        try:
            archive._root_directory = await archive._read_directory(
                layout["root_offset"], layout["root_length"]
            )
        except ArchiveReadError as e:
            raise ArchiveOpenError(key, e.message)
        except ArchiveRangeError:
            raise ArchiveFormatError(key, "root directory lies outside the archive")
        return archive

    def get_header(self) -> ArchiveHeader:
        return self.header

    def _decompress_internal(self, data: bytes) -> bytes:
        compression = self._layout["internal_compression"]
        if compression == Compression.GZIP:
            return gzip.decompress(data)
        if compression in (Compression.NONE, Compression.UNKNOWN):
            return data
        raise ArchiveFormatError(
            self.locator, f"unsupported internal compression {compression.name}"
        )

    async def _read_directory(self, offset: int, length: int) -> List[Any]:
        raw = (await self.source.get_bytes(offset, length)).data
        try:
            if self._layout["internal_compression"] != Compression.GZIP:
                # deserialize_directory always gunzips its input
                raw = gzip.compress(self._decompress_internal(raw))
            return deserialize_directory(raw)
        except (OSError, EOFError, ValueError, IndexError) as e:
            raise ArchiveFormatError(self.locator, f"cannot parse directory: {e}")

    async def get_metadata(self) -> Dict[str, Any]:
        """
        Read the archive's JSON metadata block.

        Returns:
            Metadata dictionary, empty if the archive has none.
        """
        length = self._layout["metadata_length"]
        if not length:
            return {}
        raw = (await self.source.get_bytes(self._layout["metadata_offset"], length)).data
        try:
            metadata = json.loads(self._decompress_internal(raw))
        except (OSError, EOFError, ValueError) as e:
            raise ArchiveFormatError(self.locator, f"cannot parse metadata: {e}")
        if not isinstance(metadata, dict):
            raise ArchiveFormatError(self.locator, "metadata is not a JSON object")
        return metadata

    async def get_tile(self, z: int, x: int, y: int) -> Optional[bytes]:
        """
        Fetch the raw (still tile-compressed) bytes of one tile.

        Returns:
            Tile bytes, or None if the archive has no tile at z/x/y.
        """
        if z < 0 or z > MAX_ZOOM or not (0 <= x < (1 << z)) or not (0 <= y < (1 << z)):
            return None
        tile_id = zxy_to_tileid(z, x, y)

        entries = self._root_directory
        for depth in range(MAX_DIRECTORY_DEPTH):
            if depth > 0:
                entries = await self._read_directory(dir_offset, dir_length)
            entry = find_tile(entries, tile_id)
            if entry is None:
                return None
            if entry.run_length == 0:
                dir_offset = self._layout["leaf_directory_offset"] + entry.offset
                dir_length = entry.length
                continue
            response = await self.source.get_bytes(
                self._layout["tile_data_offset"] + entry.offset, entry.length
            )
            return response.data

        logger.warning("Directory depth exceeded in %s for %d/%d/%d", self.locator, z, x, y)
        return None

    async def close(self) -> None:
        await self.source.close()


async def open_archive(
    locator: Union[str, Path], client: Optional[httpx.AsyncClient] = None
) -> PMTilesArchive:
    """
    Open a PMTiles archive from a local path or an absolute http(s) URL.

    Args:
        locator: Path to a readable local file, or an absolute URL.
        client: Shared HTTP client for remote archives (a private one is created if None).

    Raises:
        ArchiveOpenError: If the locator is neither a readable file nor a well-formed URL.
        ArchiveFormatError: If the archive header cannot be parsed.
    """
    text = str(locator)
    source: ByteSource
    if is_http_url(text):
        try:
            url = httpx.URL(text)
        except httpx.InvalidURL as e:
            raise ArchiveOpenError(text, f"malformed URL: {e}")
        if not url.host:
            raise ArchiveOpenError(text, "URL has no host")
        source = HttpSource(text, client)
    else:
        path = Path(text)
        if not path.is_file():
            raise ArchiveOpenError(text, "not a readable file or absolute URL")
        source = await asyncio.to_thread(FileSource, path)

    try:
        return await PMTilesArchive.open(source)
    except TileServerError:
        await source.close()
        raise
