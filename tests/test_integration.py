"""Integration tests for the tile server API endpoints."""

import json

import mapbox_vector_tile
import pytest
from fastapi.testclient import TestClient

from tileserver.glyphs import Glyphs
from tileserver.main import create_app
from tests.conftest import build_server_root

# Note: The 'client' and 'public_client' fixtures are provided by conftest.py


def glyph_ids(content: bytes):
    message = Glyphs()
    message.ParseFromString(content)
    return [g.id for g in message.stacks[0].glyphs]


def test_health_endpoint(client):
    """Test /health endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_health_before_startup(config_path):
    """Test that /health reports 503 until startup has completed."""
    app = create_app(config_path=str(config_path))
    # No context manager: lifespan never runs
    response = TestClient(app).get("/health")
    assert response.status_code == 503
    assert response.json() == {"status": "starting"}


def test_root_endpoint(client):
    """Test / endpoint returns server info."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == "1.0.0"
    assert set(data["data"]) == {"base", "high", "raster"}
    assert data["data"]["base"]["format"] == "pbf"
    assert data["styles"]["demo"] == {"name": "Demo", "sprite": True}


# ============================================================================
# Styles
# ============================================================================


def test_styles_list(client):
    """Test that only styles that passed ingestion are listed."""
    response = client.get("/styles.json", params={"key": "k1"})
    assert response.status_code == 200
    styles = {item["id"]: item for item in response.json()}
    assert set(styles) == {"demo", "extra"}
    assert styles["demo"] == {
        "version": 8,
        "name": "Demo",
        "id": "demo",
        "url": "http://testserver/styles/demo/style.json?key=k1",
    }


def test_style_urls_resolved(client):
    response = client.get("/styles/demo/style.json")
    assert response.status_code == 200
    style = response.json()
    assert style["sources"]["openmaptiles"]["url"] == "http://testserver/data/base.json"
    assert style["sources"]["satellite"]["url"] == "http://testserver/data/raster.json"
    assert style["sources"]["plain"]["url"] == "http://testserver/data/base.json"
    assert style["sources"]["remote_geojson"]["data"] == "https://example.com/points.geojson"
    assert style["sprite"] == "http://testserver/styles/demo/sprite"
    assert style["glyphs"] == "http://testserver/fonts/{fontstack}/{range}.pbf"
    # Layers pass through untouched
    assert [layer["id"] for layer in style["layers"]][:3] == ["background", "imagery", "water"]


def test_style_key_propagation(client):
    """Test that the key query parameter is carried into generated URLs except the sprite."""
    style = client.get("/styles/demo/style.json", params={"key": "secret"}).json()
    assert style["sources"]["openmaptiles"]["url"] == "http://testserver/data/base.json?key=secret"
    assert style["glyphs"].endswith(".pbf?key=secret")
    assert style["sprite"] == "http://testserver/styles/demo/sprite"


def test_style_forwarded_host(client):
    style = client.get(
        "/styles/demo/style.json",
        headers={"X-Forwarded-Host": "maps.example.org", "X-Forwarded-Proto": "https"},
    ).json()
    assert style["sources"]["openmaptiles"]["url"] == "https://maps.example.org/data/base.json"


@pytest.mark.parametrize("style_id", ["broken", "unknown", "nope"])
def test_style_not_served(client, style_id):
    response = client.get(f"/styles/{style_id}/style.json")
    assert response.status_code == 404
    assert response.json()["error"] == "STYLE_NOT_FOUND"


def test_public_url_style(public_client):
    """Test that a configured public URL replaces the request host."""
    style = public_client.get("/styles/demo/style.json").json()
    assert style["sources"]["openmaptiles"]["url"] == "https://tiles.example.com/data/base.json"
    assert style["sprite"] == "https://tiles.example.com/styles/demo/sprite"
    tilejson = public_client.get("/data/base.json").json()
    assert tilejson["tiles"] == ["https://tiles.example.com/data/base/{z}/{x}/{y}.mvt"]


# ============================================================================
# Sprites
# ============================================================================


@pytest.mark.parametrize(
    "path, media_type",
    [
        ("sprite.json", "application/json"),
        ("sprite.png", "image/png"),
        ("sprite@2x.png", "image/png"),
    ],
)
def test_sprite(client, path, media_type):
    response = client.get(f"/styles/demo/{path}")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith(media_type)


def test_sprite_json_content(client):
    assert "marker" in client.get("/styles/demo/sprite.json").json()


@pytest.mark.parametrize("path", ["sprite@2x.json", "sprite@4x.png", "sprite.svg", "sprite@3x.png"])
def test_sprite_not_found(client, path):
    response = client.get(f"/styles/demo/{path}")
    assert response.status_code == 404


def test_sprite_style_without_sprite(client):
    response = client.get("/styles/extra/sprite.png")
    assert response.status_code == 404
    assert response.json()["error"] == "SPRITE_NOT_FOUND"


def test_sprite_array_style(tmp_path):
    """Test that each local sprite of a multi-sprite style is served under its id."""
    config_path = build_server_root(tmp_path)
    (tmp_path / "styles" / "multi.json").write_text(
        json.dumps(
            {
                "version": 8,
                "sprite": [
                    {"id": "default", "url": "basic"},
                    {"id": "remote", "url": "https://example.com/sprites/remote"},
                ],
                "sources": {},
                "layers": [],
            }
        )
    )
    app = create_app(config_path=str(config_path))
    with TestClient(app) as test_client:
        style = test_client.get("/styles/multi/style.json", params={"key": "k"}).json()
        assert style["sprite"] == [
            {"id": "default", "url": "http://testserver/styles/multi/sprite/default"},
            {"id": "remote", "url": "https://example.com/sprites/remote"},
        ]
        assert "marker" in test_client.get("/styles/multi/sprite/default.json").json()
        response = test_client.get("/styles/multi/sprite/default@2x.png")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("image/png")
        assert test_client.get("/styles/multi/sprite/remote.png").status_code == 404
        assert test_client.get("/").json()["styles"]["multi"]["sprite"] is True


# ============================================================================
# TileJSON
# ============================================================================


def test_tilejson(client):
    response = client.get("/data/base.json", params={"key": "k"})
    assert response.status_code == 200
    tilejson = response.json()
    assert tilejson["tilejson"] == "2.0.0"
    assert tilejson["format"] == "pbf"
    assert tilejson["minzoom"] == 0
    assert tilejson["maxzoom"] == 2
    assert tilejson["center"] == pytest.approx([0, 0, 6])
    assert tilejson["attribution"] == "Test data"
    assert tilejson["tiles"] == ["http://testserver/data/base/{z}/{x}/{y}.mvt?key=k"]
    assert "scheme" not in tilejson


def test_tilejson_tiles_alias_route(client):
    assert client.get("/tiles/raster.json").json()["tiles"] == [
        "http://testserver/data/raster/{z}/{x}/{y}.png"
    ]


def test_tilejson_list(client):
    for path in ("/data.json", "/index.json"):
        response = client.get(path)
        assert response.status_code == 200
        assert {item["format"] for item in response.json()} == {"pbf", "png"}
        assert len(response.json()) == 3


def test_tilejson_unknown_source(client):
    """Test error format for a data source that failed to open."""
    response = client.get("/data/missing.json")
    assert response.status_code == 404
    data = response.json()
    assert data["error"] == "SOURCE_NOT_FOUND"
    assert "base" in data["message"]
    assert data["path"] == "/data/missing.json"


# ============================================================================
# Tiles
# ============================================================================


@pytest.mark.parametrize("extension", ["pbf", "mvt"])
def test_serve_vector_tile(client, extension):
    """Test serving a vector tile under its native format and the configured alias."""
    response = client.get(f"/data/base/0/0/0.{extension}")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/x-protobuf"
    assert response.headers["content-encoding"] == "gzip"
    assert "etag" not in response.headers
    assert "Cache-Control" in response.headers
    # TestClient already removed the gzip layer
    assert "water" in mapbox_vector_tile.decode(response.content)


def test_serve_vector_tile_as_geojson(client):
    response = client.get("/data/base/0/0/0.geojson")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    collection = json.loads(response.content)
    assert collection["type"] == "FeatureCollection"
    feature = collection["features"][0]
    assert feature["properties"]["layer"] == "water"
    assert feature["properties"]["kind"] == "lake"
    assert feature["geometry"]["coordinates"] == pytest.approx([0, 0], abs=1e-9)


def test_serve_raster_tile(client):
    response = client.get("/tiles/raster/1/0/0.png")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")


@pytest.mark.parametrize(
    "path, error",
    [
        ("/data/raster/0/0/0.geojson", "INVALID_FORMAT"),
        ("/data/base/0/0/0.png", "INVALID_FORMAT"),
        ("/data/high/5/3/3.pbf", "OUT_OF_BOUNDS"),
        ("/data/base/3/0/0.pbf", "OUT_OF_BOUNDS"),
        ("/data/base/1/2/0.pbf", "OUT_OF_BOUNDS"),
        ("/data/base/2/0/0.pbf", "TILE_NOT_FOUND"),
        ("/data/missing/0/0/0.pbf", "SOURCE_NOT_FOUND"),
    ],
)
def test_tile_errors(client, path, error):
    response = client.get(path)
    assert response.status_code == 404
    data = response.json()
    assert data["error"] == error
    assert data["path"] == path


def test_non_numeric_coordinates(client):
    assert client.get("/data/base/a/0/0.pbf").status_code == 404


# ============================================================================
# Fonts
# ============================================================================


def test_fonts_list(client):
    """Test that restricted font listing is the set of fonts styles use."""
    response = client.get("/fonts.json")
    assert response.status_code == 200
    assert response.json() == [
        "Arial Unicode MS Regular",
        "Foo Bold",
        "Noto Sans Bold",
        "Open Sans Regular",
    ]


def test_glyphs_combined_stack(client):
    response = client.get("/fonts/Open Sans Regular,Noto Sans Bold/0-255.pbf")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/x-protobuf"
    assert "last-modified" in response.headers
    message = Glyphs()
    message.ParseFromString(response.content)
    glyphs = message.stacks[0].glyphs
    assert [g.id for g in glyphs] == [65, 66, 67]
    assert glyphs[1].advance == 11


@pytest.mark.parametrize(
    "font, expected_ids",
    [
        ("Foo Bold", [66, 67]),
        ("Arial Unicode MS Regular", [65, 66]),
    ],
)
def test_glyphs_fallback(client, font, expected_ids):
    response = client.get(f"/fonts/{font}/0-255.pbf")
    assert response.status_code == 200
    assert glyph_ids(response.content) == expected_ids


def test_glyphs_font_not_allowed(client):
    response = client.get("/fonts/Noto Sans Regular/0-255.pbf")
    assert response.status_code == 400
    assert response.json()["error"] == "FONT_NOT_ALLOWED"


def test_glyphs_bad_range(client):
    assert client.get("/fonts/Open Sans Regular/abc.pbf").status_code == 404


# ============================================================================
# Admin
# ============================================================================


def test_admin_reload_style(client):
    response = client.post("/admin/reload/demo")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert "http://testserver/data/base.json" in data["sources"]
    assert client.get("/styles/demo/style.json").status_code == 200


def test_admin_reload_invalid_style_keeps_serving(client):
    response = client.post("/admin/reload/broken")
    assert response.status_code == 400
    assert response.json()["error"] == "STYLE_INVALID"


def test_admin_reload_nonexistent_style(client):
    response = client.post("/admin/reload/nonexistent")
    assert response.status_code == 404
    assert response.json()["error"] == "STYLE_NOT_FOUND"


# ============================================================================
# Headers
# ============================================================================


def test_security_headers(client):
    """Test security headers are present."""
    response = client.get("/health")
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["referrer-policy"] == "no-referrer"


def test_cors_headers(client):
    response = client.get("/data/base.json", headers={"Origin": "https://example.org"})
    assert response.headers["access-control-allow-origin"] == "*"


def test_data_decorator(config_path):
    """Test that a decorator can rewrite TileJSON and tile bytes."""
    calls = []

    def decorator(source_id, stage, payload, *zxy):
        calls.append(stage)
        if stage == "tilejson":
            payload["decorated"] = True
        return payload

    app = create_app(config_path=str(config_path), data_decorator=decorator)
    with TestClient(app) as test_client:
        assert test_client.get("/data/base.json").json()["decorated"] is True
        assert test_client.get("/data/base/0/0/0.pbf").status_code == 200
    assert calls == ["tilejson", "data"]
