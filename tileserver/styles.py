"""
Style ingestion: validation, archive reference rewriting and the style registry.

A style's ``pmtiles://`` sources are bound to data sources during ingestion and
their URLs replaced with ``local://`` placeholders; placeholders are turned into
absolute URLs per request, so one resolved style serves every public hostname.
"""

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from tileserver.config import (
    RemoteSource,
    ServerConfig,
    SourceKind,
    StyleConfig,
    source_kind_for,
)
from tileserver.data_sources import DataSourceRegistry
from tileserver.exceptions import StyleValidationError, TileServerError, UnknownSourceError
from tileserver.urls import placeholder
from tileserver.utils import basename_id, fnv1a, is_http_url, safe_path_component

logger = logging.getLogger("tileserver")

ARCHIVE_SCHEME = "pmtiles://"
DEFAULT_FONTS = ("Open Sans Regular", "Arial Unicode MS Regular")
GLYPHS_PLACEHOLDER = placeholder("fonts/{fontstack}/{range}.pbf")
LAYERS_WITHOUT_SOURCE = ("background", "sky")

FontSink = Callable[[str], None]


# ---- Validation ----


class SourceSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["vector", "raster", "raster-dem", "geojson", "image", "video"]
    url: Optional[str] = None
    tiles: Optional[List[str]] = None


class LayerSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: Literal[
        "fill",
        "line",
        "symbol",
        "circle",
        "heatmap",
        "fill-extrusion",
        "raster",
        "hillshade",
        "background",
        "sky",
        "color-relief",
    ]
    source: Optional[str] = None
    layout: Optional[Dict[str, Any]] = None
    paint: Optional[Dict[str, Any]] = None


class SpriteSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    url: str


class StyleSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: Literal[8]
    name: Optional[str] = None
    sources: Dict[str, SourceSpec]
    layers: List[LayerSpec]
    sprite: Optional[Union[str, List[SpriteSpec]]] = None
    glyphs: Optional[str] = None


def parse_style(style_id: str, text: str) -> Dict[str, Any]:
    """Parse style JSON, reporting syntax errors with their line number."""
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise StyleValidationError(style_id, [{"line": e.lineno, "message": e.msg}])
    if not isinstance(doc, dict):
        raise StyleValidationError(
            style_id, [{"line": 1, "message": "style must be a JSON object"}]
        )
    return doc


def validate_style(style_id: str, doc: Dict[str, Any]) -> None:
    """
    Validate a style document, collecting every error.

    Raises:
        StyleValidationError: With the list of ``{line, message}`` errors.
    """
    try:
        parsed = StyleSpec.model_validate(doc)
    except ValidationError as e:
        errors = [
            {
                "line": None,
                "message": f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}",
            }
            for err in e.errors()
        ]
        raise StyleValidationError(style_id, errors)

    errors: List[Dict[str, Any]] = []
    seen = set()
    for index, layer in enumerate(parsed.layers):
        if layer.id in seen:
            errors.append({"line": None, "message": f"layers.{index}: duplicate layer id '{layer.id}'"})
        seen.add(layer.id)
        if layer.type in LAYERS_WITHOUT_SOURCE:
            continue
        if not layer.source:
            errors.append({"line": None, "message": f"layers.{index}: missing required property 'source'"})
        elif layer.source not in parsed.sources:
            errors.append(
                {"line": None, "message": f"layers.{index}: source '{layer.source}' not found"}
            )
    if isinstance(parsed.sprite, list):
        sprite_ids = set()
        for index, sprite in enumerate(parsed.sprite):
            if not safe_path_component(sprite.id):
                errors.append({"line": None, "message": f"sprite.{index}: invalid sprite id '{sprite.id}'"})
            elif sprite.id in sprite_ids:
                errors.append({"line": None, "message": f"sprite.{index}: duplicate sprite id '{sprite.id}'"})
            sprite_ids.add(sprite.id)
    if errors:
        raise StyleValidationError(style_id, errors)


def _literal_font_lists(expression: Any) -> List[List[str]]:
    if not isinstance(expression, list) or not expression:
        return []
    if expression[0] == "literal" and len(expression) == 2 and isinstance(expression[1], list):
        return [[f for f in expression[1] if isinstance(f, str)]]
    found: List[List[str]] = []
    for item in expression[1:]:
        found.extend(_literal_font_lists(item))
    return found


def layer_fonts(layer: Dict[str, Any]) -> List[str]:
    """Font names a symbol layer uses, or the default pair when it names none."""
    text_font = (layer.get("layout") or {}).get("text-font")
    if (
        isinstance(text_font, list)
        and all(isinstance(f, str) for f in text_font)
        and text_font[:1] != ["get"]
    ):
        names = list(text_font)
    else:
        names = [name for fonts in _literal_font_lists(text_font) for name in fonts]
    return names or list(DEFAULT_FONTS)


def extract_locator(url: str) -> str:
    """``pmtiles://{base}`` -> ``base``; ``pmtiles://https://h/a.pmtiles`` -> the URL."""
    locator = url[len(ARCHIVE_SCHEME):]
    if locator.startswith("{") and locator.endswith("}"):
        locator = locator[1:-1]
    return locator


# ---- Registry ----


@dataclass(frozen=True)
class StyleEntry:
    """
    A resolved, servable style. Replaced wholesale on reload.

    Attributes:
        style: Resolved style document holding ``local://`` placeholders.
        sprite_path: Base path of local sprite files (without scale/extension).
        sprite_paths: Base paths of local sprites in the array form, keyed by sprite id.
    """

    id: str
    style: Dict[str, Any]
    name: str
    style_path: Optional[Path] = None
    sprite_path: Optional[Path] = None
    public_url: Optional[str] = None
    sprite_paths: Dict[str, Path] = field(default_factory=dict)


class StyleRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, StyleEntry] = {}

    def __contains__(self, style_id: object) -> bool:
        return style_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, style_id: str) -> Optional[StyleEntry]:
        return self._entries.get(style_id)

    def ids(self) -> List[str]:
        return list(self._entries.keys())

    def items(self) -> Iterator[Tuple[str, StyleEntry]]:
        return iter(list(self._entries.items()))

    def publish(self, entry: StyleEntry) -> None:
        self._entries[entry.id] = entry

    def remove(self, style_id: str) -> Optional[StyleEntry]:
        return self._entries.pop(style_id, None)


# ---- Resolver ----


class StyleResolver:
    """
    Turns style files into StyleEntry objects bound to data sources.

    Attributes:
        style_configs: Every style this server knows how to (re)load.
        fonts: Font names reported by ingested styles (the allowed font set).
        aliases: Configured data ids mapped to their canonical locators.
    """

    def __init__(
        self,
        config: ServerConfig,
        data_sources: DataSourceRegistry,
        styles: StyleRegistry,
    ) -> None:
        self.options = config["options"]
        self.data_sources = data_sources
        self.styles = styles
        self.style_configs: Dict[str, StyleConfig] = dict(config["styles"])
        self.fonts: set = set()
        self.aliases: Dict[str, SourceKind] = {
            data_id: item["source"] for data_id, item in config["data"].items()
        }
        self._reload_lock = asyncio.Lock()

    def report_font(self, name: str) -> None:
        self.fonts.add(name)

    def _canonical_source(self, locator: str) -> SourceKind:
        alias = self.aliases.get(locator)
        if alias is not None:
            return alias
        return source_kind_for(locator, self.options["paths"]["pmtiles"])

    def _candidate_id(self, locator: str, source: SourceKind) -> str:
        candidate = basename_id(locator)
        if isinstance(source, RemoteSource):
            candidate = f"{fnv1a(source.url)}_{candidate}"
        while candidate in self.data_sources or (
            candidate in self.aliases and self.aliases[candidate] != source
        ):
            candidate += "_"
        return candidate

    async def resolve_source_id(
        self, style_id: str, locator: str, allow_new_data: bool
    ) -> Tuple[str, bool]:
        """
        Bind an archive locator from a style to a data source id.

        Returns:
            Tuple of (data source id, True if a new source was registered).

        Raises:
            UnknownSourceError: If the archive is not registered and new data is not allowed.
        """
        source = self._canonical_source(locator)
        existing = self.data_sources.find_by_locator(source.locator)
        if existing is not None:
            return existing, False
        if not allow_new_data:
            raise UnknownSourceError(style_id, locator)

        async with self.data_sources.register_lock:
            # Another ingestion may have registered it while we waited
            existing = self.data_sources.find_by_locator(source.locator)
            if existing is not None:
                return existing, False
            source_id = self._candidate_id(locator, source)
            await self.data_sources.register_source(
                source_id, source, public_url=self.options["public_url"]
            )
        logger.info("Style '%s': registered data source '%s' for %s", style_id, source_id, locator)
        return source_id, True

    def _sprite_path(self, style_id: str, sprite: str, style_path: Optional[Path]) -> Path:
        sprites_dir = self.options["paths"]["sprites"]
        value = sprite.replace("{style}", style_id)
        if style_path is not None:
            folder = os.path.relpath(style_path.parent, sprites_dir)
            value = value.replace("{styleJsonFolder}", folder)
        return (sprites_dir / value).resolve()

    async def ingest(
        self,
        style_id: str,
        doc: Dict[str, Any],
        allow_new_data: bool = True,
        font_sink: Optional[FontSink] = None,
        style_path: Optional[Path] = None,
    ) -> StyleEntry:
        """
        Validate a style document and bind it to data sources.

        The input document is not modified. On any error nothing is published
        and data sources registered by this call are removed again.

        Raises:
            StyleValidationError: If the document is invalid.
            UnknownSourceError: If a referenced archive is unknown and new data is not allowed.
            ArchiveOpenError, ArchiveFormatError: If a new archive cannot be registered.
        """
        validate_style(style_id, doc)
        style = copy.deepcopy(doc)

        registered: List[str] = []
        try:
            for name, source in style["sources"].items():
                url = source.get("url")
                if not isinstance(url, str) or not url.startswith(ARCHIVE_SCHEME):
                    continue
                locator = extract_locator(url)
                source_id, is_new = await self.resolve_source_id(style_id, locator, allow_new_data)
                if is_new:
                    registered.append(source_id)
                source["url"] = placeholder(f"data/{source_id}.json")
        except TileServerError:
            for source_id in registered:
                await self.data_sources.unregister(source_id)
            raise

        if font_sink is not None:
            for layer in style["layers"]:
                if layer.get("type") == "symbol":
                    for font in layer_fonts(layer):
                        font_sink(font)

        sprite_path = None
        sprite_paths: Dict[str, Path] = {}
        sprite = style.get("sprite")
        if isinstance(sprite, str) and sprite and not is_http_url(sprite):
            sprite_path = self._sprite_path(style_id, sprite, style_path)
            style["sprite"] = placeholder(f"styles/{style_id}/sprite")
        elif isinstance(sprite, list):
            for item in sprite:
                if item["url"] and not is_http_url(item["url"]):
                    sprite_paths[item["id"]] = self._sprite_path(style_id, item["url"], style_path)
                    item["url"] = placeholder(f"styles/{style_id}/sprite/{item['id']}")

        glyphs = style.get("glyphs")
        if isinstance(glyphs, str) and glyphs and not is_http_url(glyphs):
            style["glyphs"] = GLYPHS_PLACEHOLDER

        return StyleEntry(
            id=style_id,
            style=style,
            name=style.get("name") or style_id,
            style_path=style_path,
            sprite_path=sprite_path,
            public_url=self.options["public_url"],
            sprite_paths=sprite_paths,
        )

    async def load_style(self, style_id: str, style_config: StyleConfig) -> StyleEntry:
        """Read, ingest and publish one style file."""
        style_path = style_config["style_path"]
        allow_new_data = style_config.get("allow_new_data", True)
        text = await asyncio.to_thread(style_path.read_text, encoding="utf-8")
        doc = parse_style(style_id, text)
        entry = await self.ingest(
            style_id,
            doc,
            allow_new_data=allow_new_data,
            font_sink=self.report_font if allow_new_data else None,
            style_path=style_path,
        )
        self.styles.publish(entry)
        logger.info("Style '%s' loaded from %s", style_id, style_path)
        return entry

    async def load_all(self, style_configs: Dict[str, StyleConfig]) -> None:
        """
        Load several styles; one bad style never stops the others.
        """
        for style_id, style_config in style_configs.items():
            self.style_configs[style_id] = style_config
            if not style_config["serve_data"]:
                continue
            try:
                await self.load_style(style_id, style_config)
            except TileServerError as e:
                logger.error("Skipping style '%s': %s", style_id, e.message)
            except OSError as e:
                logger.error("Skipping style '%s': cannot read %s: %s", style_id, style_config["style_path"], e)

    async def reload(self, style_id: str) -> Optional[StyleEntry]:
        """
        Re-ingest a style after its file changed (watch trigger entry point).

        Unknown ids are looked up as ``<id>.json`` in the styles directory when
        all styles are served. A style whose file is gone is removed.

        Returns:
            The new entry, or None if the style was removed.

        Raises:
            KeyError: If the style is neither configured nor discoverable.
        """
        async with self._reload_lock:
            style_config = self.style_configs.get(style_id)
            if style_config is None:
                candidate = self.options["paths"]["styles"] / f"{style_id}.json"
                if not self.options["serve_all_styles"] or not candidate.is_file():
                    raise KeyError(style_id)
                style_config = {
                    "style_path": candidate.resolve(),
                    "serve_data": True,
                    "allow_new_data": False,
                }
                self.style_configs[style_id] = style_config

            if not style_config["style_path"].is_file():
                self.styles.remove(style_id)
                logger.info("Style '%s' removed, file is gone", style_id)
                return None

            logger.info("Style '%s' changed, updating...", style_id)
            return await self.load_style(style_id, style_config)
