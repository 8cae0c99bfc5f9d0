"""Configuration loading and validation for the tile server."""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, TypedDict, Union

from typing_extensions import NotRequired

from tileserver.utils import is_http_url

logger = logging.getLogger("tileserver")


@dataclass(frozen=True)
class ArchiveSource:
    """A PMTiles archive on the local filesystem."""

    path: Path

    @property
    def locator(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class RemoteSource:
    """A PMTiles archive reachable over http(s) byte ranges."""

    url: str

    @property
    def locator(self) -> str:
        return self.url


SourceKind = Union[ArchiveSource, RemoteSource]


class PathsConfig(TypedDict):
    root: Path
    styles: Path
    fonts: Path
    sprites: Path
    pmtiles: Path


class ServerOptions(TypedDict):
    paths: PathsConfig
    domains: List[str]
    public_url: Optional[str]
    pbf_alias: Optional[str]
    serve_all_fonts: bool
    serve_all_styles: bool
    cache_control: str


class StyleConfig(TypedDict):
    """Type definition for one configured style."""

    style_path: Path
    serve_data: bool
    allow_new_data: NotRequired[bool]  # False for styles discovered on disk


class DataConfig(TypedDict):
    """Type definition for one configured data source."""

    source: SourceKind
    tilejson: NotRequired[Dict[str, Any]]  # Overrides merged into the TileJSON


class ServerConfig(TypedDict):
    options: ServerOptions
    styles: Dict[str, StyleConfig]
    data: Dict[str, DataConfig]


# Valid style/data id pattern: alphanumeric, dots, hyphens, underscores, must not start with digit
VALID_ID = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.-]*$")
DEFAULT_PATHS = {
    "root": "",
    "styles": "styles",
    "fonts": "fonts",
    "sprites": "sprites",
    "pmtiles": "pmtiles",
}
DEFAULT_CACHE_CONTROL = "public, max-age=86400"


def normalize_public_url(public_url: Optional[str]) -> Optional[str]:
    """Return the public URL with a trailing slash, or None if unset/empty."""
    if not public_url:
        return None
    return public_url if public_url.endswith("/") else public_url + "/"


def source_kind_for(locator: str, pmtiles_dir: Path) -> SourceKind:
    """
    Decide once whether a locator is a remote URL or a local archive.

    Relative local paths are resolved against the pmtiles directory.
    """
    if is_http_url(locator):
        return RemoteSource(locator)
    path = Path(locator)
    if not path.is_absolute():
        path = pmtiles_dir / path
    return ArchiveSource(path.resolve())


def _parse_domains(value: Any, errors: List[str]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [d.strip() for d in value.split(",") if d.strip()]
    if isinstance(value, list) and all(isinstance(d, str) for d in value):
        return [d.strip() for d in value if d.strip()]
    errors.append("• 'options.domains' must be a list of strings or a comma-separated string")
    return []


def _resolve_paths(
    raw_paths: Any, config_dir: Path, errors: List[str]
) -> PathsConfig:
    if raw_paths is None:
        raw_paths = {}
    if not isinstance(raw_paths, dict):
        errors.append(f"• 'options.paths' must be a dictionary, got {type(raw_paths).__name__}")
        raw_paths = {}

    merged = dict(DEFAULT_PATHS)
    for key, value in raw_paths.items():
        if key not in DEFAULT_PATHS:
            continue
        if not isinstance(value, str):
            errors.append(f"• 'options.paths.{key}' must be a string, got {type(value).__name__}")
            continue
        merged[key] = value

    root = (config_dir / merged["root"]).resolve()
    return {
        "root": root,
        "styles": (root / merged["styles"]).resolve(),
        "fonts": (root / merged["fonts"]).resolve(),
        "sprites": (root / merged["sprites"]).resolve(),
        "pmtiles": (root / merged["pmtiles"]).resolve(),
    }


def load_server_config(
    config_path: str,
    public_url: Optional[str] = None,
    show_warnings: bool = True,
) -> ServerConfig:
    """
    Load and validate the server configuration from a JSON file.

    Expected format:
    {
        "options": {
            "paths": {"root": "", "styles": "styles", "fonts": "fonts",
                      "sprites": "sprites", "pmtiles": "pmtiles"},
            "domains": ["a.example.com", "*.tiles.example.com"],
            "publicUrl": null,
            "pbfAlias": "mvt",
            "serveAllFonts": false,
            "serveAllStyles": false
        },
        "styles": {"demo": {"style": "demo.json"}},
        "data": {
            "base": {"pmtiles": "base.pmtiles"},                          # Local archive
            "planet": {"pmtiles": "https://example.com/planet.pmtiles"}  # Remote archive
        }
    }

    Args:
        config_path: Path to the JSON configuration file.
        public_url: Public base URL; overrides ``options.publicUrl`` when given.
        show_warnings: Log non-fatal configuration warnings.

    Returns:
        Validated configuration with resolved paths and tagged data sources.

    Raises:
        ValueError: If config is invalid (with comprehensive error list).
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        with open(config_file, "r") as f:
            config_data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")
    except Exception as e:
        raise ValueError(f"Error reading config file: {e}")

    if not isinstance(config_data, dict):
        raise ValueError("Config file must contain a JSON object")

    # Collect ALL errors instead of failing on first one
    errors: List[str] = []
    warnings: List[str] = []

    raw_options = config_data.get("options", {})
    if not isinstance(raw_options, dict):
        errors.append(f"• 'options' must be a dictionary, got {type(raw_options).__name__}")
        raw_options = {}

    paths = _resolve_paths(raw_options.get("paths"), config_file.parent.resolve(), errors)

    pbf_alias = raw_options.get("pbfAlias")
    if pbf_alias is not None and (not isinstance(pbf_alias, str) or not pbf_alias.isalnum()):
        errors.append("• 'options.pbfAlias' must be an alphanumeric string")
        pbf_alias = None

    configured_public_url = raw_options.get("publicUrl")
    if configured_public_url is not None and not is_http_url(str(configured_public_url)):
        errors.append(f"• 'options.publicUrl' must be an http(s) URL, got '{configured_public_url}'")
        configured_public_url = None

    options: ServerOptions = {
        "paths": paths,
        "domains": _parse_domains(raw_options.get("domains"), errors),
        "public_url": normalize_public_url(public_url or configured_public_url),
        "pbf_alias": pbf_alias,
        "serve_all_fonts": bool(raw_options.get("serveAllFonts", False)),
        "serve_all_styles": bool(raw_options.get("serveAllStyles", False)),
        "cache_control": str(raw_options.get("cacheControl", DEFAULT_CACHE_CONTROL)),
    }

    raw_styles = config_data.get("styles", {})
    if not isinstance(raw_styles, dict):
        errors.append("• 'styles' must be a dictionary")
        raw_styles = {}

    raw_data = config_data.get("data", {})
    if not isinstance(raw_data, dict):
        errors.append("• 'data' must be a dictionary")
        raw_data = {}

    if not raw_styles and not raw_data and not options["serve_all_styles"]:
        errors.append("• At least one style or data source must be configured")

    validated_styles: Dict[str, StyleConfig] = {}
    for style_id, item in raw_styles.items():
        if not VALID_ID.match(style_id):
            errors.append(
                f"• Invalid style id '{style_id}': Must be alphanumeric + dots/hyphens/underscores, and cannot start with a digit"
            )
            continue
        if not isinstance(item, dict):
            errors.append(f"• Style '{style_id}': Config must be a dict, got {type(item).__name__}")
            continue
        style_file = item.get("style")
        if not isinstance(style_file, str) or not style_file:
            errors.append(f"• Style '{style_id}': Missing \"style\" property")
            continue

        style_path = Path(style_file)
        if not style_path.is_absolute():
            style_path = paths["styles"] / style_path
        style_path = style_path.resolve()
        if not style_path.is_file():
            warnings.append(f"• Style '{style_id}': File does not exist yet: {style_path}")

        validated_styles[style_id] = {
            "style_path": style_path,
            "serve_data": item.get("serve_data", True) is not False,
            "allow_new_data": True,
        }

    validated_data: Dict[str, DataConfig] = {}
    for data_id, item in raw_data.items():
        if not VALID_ID.match(data_id):
            errors.append(
                f"• Invalid data id '{data_id}': Must be alphanumeric + dots/hyphens/underscores, and cannot start with a digit"
            )
            continue
        if not isinstance(item, dict):
            errors.append(f"• Data '{data_id}': Config must be a dict, got {type(item).__name__}")
            continue
        locator = item.get("pmtiles")
        if not isinstance(locator, str) or not locator:
            errors.append(f"• Data '{data_id}': Missing \"pmtiles\" property")
            continue
        tilejson = item.get("tilejson", {})
        if not isinstance(tilejson, dict):
            errors.append(f"• Data '{data_id}': 'tilejson' must be a dictionary")
            continue

        source = source_kind_for(locator, paths["pmtiles"])
        if isinstance(source, ArchiveSource) and not source.path.is_file():
            warnings.append(f"• Data '{data_id}': Archive does not exist: {source.path}")

        validated_data[data_id] = {"source": source, "tilejson": tilejson}

    # If there were any errors, raise them all at once
    if errors:
        error_count = len(errors)
        error_summary = f"Found {error_count} configuration error{'s' if error_count > 1 else ''}:\n\n"
        raise ValueError(error_summary + "\n".join(errors))

    # Log warnings if any (can be suppressed for worker processes)
    if warnings and show_warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(warning)

    return {"options": options, "styles": validated_styles, "data": validated_data}


def discover_styles(config: ServerConfig) -> Dict[str, StyleConfig]:
    """
    List ``*.json`` style files in the styles directory that are not configured.

    Discovered styles may only use data sources that are already registered
    and do not contribute to the allowed font set.
    """
    styles_dir = config["options"]["paths"]["styles"]
    if not styles_dir.is_dir():
        return {}

    configured = {s["style_path"] for s in config["styles"].values()}
    discovered: Dict[str, StyleConfig] = {}
    for style_file in sorted(styles_dir.iterdir()):
        if not style_file.is_file() or style_file.suffix.lower() != ".json":
            continue
        style_id = style_file.stem
        if style_id in config["styles"] or style_file.resolve() in configured:
            continue
        discovered[style_id] = {
            "style_path": style_file.resolve(),
            "serve_data": True,
            "allow_new_data": False,
        }
    return discovered
