"""
FastAPI application for the tile server.

Serves MapLibre/Mapbox styles, TileJSON and tiles from PMTiles archives
(local files or remote http(s) URLs), sprites and composed glyph PBFs.

Styles reference archives as ``pmtiles://<file or URL>`` or ``pmtiles://{data id}``;
referenced archives are registered as data sources automatically and the style
is served with absolute URLs for whichever host the request arrived on.

Usage:
    python -m tileserver [config_file] -p [port] -b [bind address]

    Or run directly with uvicorn:
    uvicorn tileserver.main:get_app --factory --host 0.0.0.0 --port 8080 --workers 4
"""

import asyncio
import copy
import email.utils
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.convertors import Convertor, register_url_convertor

from tileserver.config import discover_styles, load_server_config
from tileserver.data_sources import DataSourceRegistry
from tileserver.delivery import DataDecorator, deliver
from tileserver.exceptions import (
    SourceNotFoundError,
    SpriteNotFoundError,
    StyleNotFoundError,
    TileServerError,
)
from tileserver.fonts import FontCompositor, list_available_fonts
from tileserver.styles import StyleEntry, StyleRegistry, StyleResolver
from tileserver.urls import fix_url, get_public_url, get_tile_urls, key_query
from tileserver.utils import media_type_for_suffix, sprite_file

logger = logging.getLogger("tileserver")

SERVICE_NAME = "PMTiles Tile Server"
VERSION = "1.0.0"
SPRITE_FORMATS = ("json", "png")


class GlyphRangeConvertor(Convertor):
    regex = r"\d+-\d+"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


class SpriteScaleConvertor(Convertor):
    regex = r"@[23]x"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


register_url_convertor("glyphrange", GlyphRangeConvertor())
register_url_convertor("spritescale", SpriteScaleConvertor())


def resolve_style_urls(request: Request, entry: StyleEntry, public_url: Optional[str]) -> Dict[str, Any]:
    """Copy of a resolved style with its placeholders turned into absolute URLs."""
    style = copy.deepcopy(entry.style)
    for source in style.get("sources", {}).values():
        if "url" in source:
            source["url"] = fix_url(request, source["url"], public_url)
    # Clients append @2x.png etc. to sprite URLs, so no query string there
    sprite = style.get("sprite")
    if isinstance(sprite, str):
        style["sprite"] = fix_url(request, sprite, public_url, with_key=False)
    elif isinstance(sprite, list):
        for item in sprite:
            item["url"] = fix_url(request, item["url"], public_url, with_key=False)
    if "glyphs" in style:
        style["glyphs"] = fix_url(request, style["glyphs"], public_url)
    return style


def create_app(
    config_path: str,
    public_url: Optional[str] = None,
    data_decorator: Optional[DataDecorator] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config_path: Path to the JSON server configuration.
        public_url: Public base URL; overrides ``options.publicUrl``.
        data_decorator: Optional hook ``(source_id, stage, payload, *zxy)`` that may
            rewrite tile bytes (stage "data") or TileJSON (stage "tilejson").
        http_client: Shared client for remote archives (created if None).

    Returns:
        Configured FastAPI application instance.

    Raises:
        ValueError: If configuration file is invalid.
    """
    # Configure logging for worker processes (basicConfig is idempotent)
    pid = os.getpid()
    logging.basicConfig(
        level=logging.INFO,
        format=f"%(levelname)s:\t[WORKER {pid}] %(message)s",
    )

    # Load and validate configuration (suppress warnings, MAIN already showed them)
    try:
        config = load_server_config(config_path, public_url=public_url, show_warnings=False)
        logger.info(
            "Loaded %d styles and %d data sources from config",
            len(config["styles"]),
            len(config["data"]),
        )
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise

    options = config["options"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        client = http_client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        data_sources = DataSourceRegistry(client)
        styles = StyleRegistry()
        resolver = StyleResolver(config, data_sources, styles)

        for data_id, item in config["data"].items():
            try:
                await data_sources.register_source(
                    data_id,
                    item["source"],
                    public_url=options["public_url"],
                    tilejson_overrides=item.get("tilejson"),
                )
            except TileServerError as e:
                # Continue with other sources even if one fails
                logger.error("Skipping data source '%s': %s", data_id, e.message)

        await resolver.load_all(config["styles"])
        if options["serve_all_styles"]:
            await resolver.load_all(discover_styles(config))

        available_fonts = await asyncio.to_thread(list_available_fonts, options["paths"]["fonts"])
        fonts = FontCompositor(
            options["paths"]["fonts"],
            None if options["serve_all_fonts"] else resolver.fonts,
            available_fonts,
        )

        app.state.config = config
        app.state.data_sources = data_sources
        app.state.styles = styles
        app.state.resolver = resolver
        app.state.fonts = fonts
        app.state.started = email.utils.formatdate(usegmt=True)
        app.state.ready = True

        logger.info(
            "Startup complete: %d styles, %d data sources, %d fonts available",
            len(styles),
            len(data_sources),
            len(available_fonts),
        )
        try:
            yield
        finally:
            # Shutdown
            logger.info("Tile server shutting down...")
            app.state.ready = False
            await data_sources.close_all()
            if http_client is None:
                await client.aclose()

    app = FastAPI(
        title=SERVICE_NAME,
        description="Style, TileJSON, tile and glyph server for PMTiles archives",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.ready = False

    # Map clients load styles and tiles cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    # Custom exception handler for TileServerError
    @app.exception_handler(TileServerError)
    async def tile_server_error_handler(request: Request, exc: TileServerError):
        error_code = exc.error_code or "INTERNAL_ERROR"
        logger.warning("%s - %s [%s]", error_code, exc.message, request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": error_code,
                "message": exc.message,
                "path": str(request.url.path),
            },
        )

    def tilejson_for(request: Request, source_id: str) -> Dict[str, Any]:
        entry = request.app.state.data_sources.get(source_id)
        if entry is None:
            raise SourceNotFoundError(source_id, request.app.state.data_sources.ids())
        info = copy.deepcopy(entry.tilejson)
        info["tiles"] = get_tile_urls(
            request,
            options["domains"],
            f"data/{source_id}",
            info["format"],
            options["public_url"],
            options["pbf_alias"],
        )
        if data_decorator is not None:
            info = data_decorator(source_id, "tilejson", info)
        return info

    @app.get("/health", summary="Health check endpoint")
    async def health_check(request: Request):
        if not request.app.state.ready:
            return JSONResponse(status_code=503, content={"status": "starting"})
        return {"status": "healthy", "service": SERVICE_NAME}

    @app.get("/", summary="Server information and status")
    async def root(request: Request):
        data_sources = request.app.state.data_sources
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "styles": {
                style_id: {
                    "name": entry.name,
                    "sprite": entry.sprite_path is not None or bool(entry.sprite_paths),
                }
                for style_id, entry in request.app.state.styles.items()
            },
            "data": {
                source_id: {
                    "format": entry.tilejson["format"],
                    "minzoom": entry.tilejson["minzoom"],
                    "maxzoom": entry.tilejson["maxzoom"],
                    "locator": entry.locator,
                }
                for source_id, entry in data_sources.items()
            },
            "fonts": len(request.app.state.fonts.font_names()),
            "health_check_url": "/health",
            "style_url_format": "/styles/{style_id}/style.json",
            "tilejson_url_format": "/data/{source_id}.json",
            "tile_url_format": "/data/{source_id}/{z}/{x}/{y}.{format}",
            "glyphs_url_format": "/fonts/{fontstack}/{range}.pbf",
            "admin_endpoints": {"reload_style": "/admin/reload/{style_id}"},
        }

    @app.get("/styles.json", summary="List served styles")
    async def list_styles(request: Request):
        base = get_public_url(request, options["public_url"])
        query = key_query(request)
        return [
            {
                "version": entry.style.get("version"),
                "name": entry.name,
                "id": style_id,
                "url": f"{base}styles/{style_id}/style.json{query}",
            }
            for style_id, entry in request.app.state.styles.items()
        ]

    @app.get("/styles/{style_id}/style.json", summary="Get a resolved style document")
    async def get_style(style_id: str, request: Request):
        entry = request.app.state.styles.get(style_id)
        if entry is None:
            raise StyleNotFoundError(style_id)
        return resolve_style_urls(request, entry, options["public_url"])

    async def sprite_response(
        request: Request,
        style_id: str,
        scale: str,
        sprite_format: str,
        sprite_id: Optional[str] = None,
    ) -> Response:
        entry = request.app.state.styles.get(style_id)
        if entry is None:
            raise StyleNotFoundError(style_id)
        if sprite_id is None:
            base = entry.sprite_path
            name = f"sprite{scale}.{sprite_format}"
        else:
            base = entry.sprite_paths.get(sprite_id)
            name = f"sprite/{sprite_id}{scale}.{sprite_format}"
        if base is None or sprite_format not in SPRITE_FORMATS:
            raise SpriteNotFoundError(style_id, name)

        path = sprite_file(base, scale, sprite_format)
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError:
            raise SpriteNotFoundError(style_id, name)
        return Response(
            content=content,
            media_type=media_type_for_suffix(path.suffix),
            headers={"Cache-Control": options["cache_control"]},
        )

    @app.get("/styles/{style_id}/sprite.{sprite_format}", summary="Get a style's sprite")
    async def get_sprite(style_id: str, sprite_format: str, request: Request):
        return await sprite_response(request, style_id, "", sprite_format)

    @app.get(
        "/styles/{style_id}/sprite{scale:spritescale}.{sprite_format}",
        summary="Get a style's high-resolution sprite",
    )
    async def get_scaled_sprite(style_id: str, scale: str, sprite_format: str, request: Request):
        return await sprite_response(request, style_id, scale, sprite_format)

    @app.get(
        "/styles/{style_id}/sprite/{sprite_id}{scale:spritescale}.{sprite_format}",
        summary="Get one high-resolution sprite of a multi-sprite style",
    )
    async def get_scaled_named_sprite(
        style_id: str, sprite_id: str, scale: str, sprite_format: str, request: Request
    ):
        return await sprite_response(request, style_id, scale, sprite_format, sprite_id=sprite_id)

    @app.get(
        "/styles/{style_id}/sprite/{sprite_id}.{sprite_format}",
        summary="Get one sprite of a multi-sprite style",
    )
    async def get_named_sprite(style_id: str, sprite_id: str, sprite_format: str, request: Request):
        return await sprite_response(request, style_id, "", sprite_format, sprite_id=sprite_id)

    @app.get("/data.json", summary="List TileJSON for all data sources")
    @app.get("/index.json", summary="List TileJSON for all data sources")
    async def list_data(request: Request) -> List[Dict[str, Any]]:
        return [tilejson_for(request, source_id) for source_id in request.app.state.data_sources.ids()]

    @app.get("/data/{source_id}.json", summary="Get TileJSON for a data source")
    @app.get("/tiles/{source_id}.json", summary="Get TileJSON for a data source")
    async def get_tilejson(source_id: str, request: Request):
        return tilejson_for(request, source_id)

    @app.get(
        "/data/{source_id}/{z:int}/{x:int}/{y:int}.{tile_format}",
        summary="Serve a single tile from a data source",
    )
    @app.get(
        "/tiles/{source_id}/{z:int}/{x:int}/{y:int}.{tile_format}",
        summary="Serve a single tile from a data source",
    )
    async def get_tile(source_id: str, z: int, x: int, y: int, tile_format: str, request: Request):
        """
        Serve one tile in its native format, or a vector tile as GeoJSON.

        Responses are always gzip-encoded and never carry an ETag.
        """
        result = await deliver(
            request.app.state.data_sources,
            source_id,
            z,
            x,
            y,
            tile_format,
            pbf_alias=options["pbf_alias"],
            decorator=data_decorator,
            cache_control=options["cache_control"],
        )
        return Response(content=result.data, headers=result.headers)

    @app.get("/fonts.json", summary="List font names")
    async def list_fonts(request: Request) -> List[str]:
        return request.app.state.fonts.font_names()

    @app.get(
        "/fonts/{fontstack}/{glyph_range:glyphrange}.pbf",
        summary="Get composed glyphs for a font stack",
    )
    async def get_glyphs(fontstack: str, glyph_range: str, request: Request):
        content = await request.app.state.fonts.resolve_glyphs(fontstack, glyph_range)
        return Response(
            content=content,
            media_type="application/x-protobuf",
            headers={"Last-Modified": request.app.state.started},
        )

    @app.post(
        "/admin/reload/{style_id}",
        summary="Re-ingest a style after its file changed",
    )
    async def reload_style(style_id: str, request: Request):
        """
        Re-read a style and publish it, registering any new archives it uses.
        The previous version keeps being served if the new one is invalid.
        """
        try:
            entry = await request.app.state.resolver.reload(style_id)
        except KeyError:
            raise StyleNotFoundError(style_id)
        if entry is None:
            return {"status": "removed", "style": style_id}
        return {
            "status": "success",
            "style": style_id,
            "sources": [
                fix_url(request, source["url"], options["public_url"])
                for source in entry.style.get("sources", {}).values()
                if "url" in source
            ],
        }

    return app


def get_app() -> FastAPI:
    """
    Uvicorn factory entry point.

    Reads configuration from environment variables:
        CONFIG_PATH: Path to server config file (default: 'config.json').
        PUBLIC_URL: Public base URL for generated links (optional).

    Returns:
        Configured FastAPI application instance.
    """
    config_path = os.getenv("CONFIG_PATH", "config.json")
    public_url = os.getenv("PUBLIC_URL") or None
    return create_app(config_path, public_url=public_url)
