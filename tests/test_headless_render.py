from __future__ import annotations

import asyncio
import base64
import io

import httpx
from PIL import Image

from conftest import png_bytes, scene
from variant_forge.assembly.render import collect_image_urls, fetch_images, render_scene, render_thumbnail
from variant_forge.config import settings
from variant_forge.scene.model import parse_scene


def _plain(**overrides) -> dict:
    data = {
        "dimensions": {"width": 200, "height": 100},
        "backgroundColor": "#ff0000",
        "designableArea": {"x": 50, "y": 0, "width": 100, "height": 100, "cornerRadius": 20},
        "elements": {},
        "assets": {"baseImage": ""},
    }
    data.update(overrides)
    return data


def _open(png: bytes) -> Image.Image:
    return Image.open(io.BytesIO(png)).convert("RGBA")


def _rect(id, x, y, fill, z, w=20, h=20) -> dict:
    return {"id": id, "type": "rect", "x": x, "y": y, "width": w, "height": h, "fill": fill, "zIndex": z}


def test_output_matches_canvas_size():
    img = _open(render_scene(parse_scene(_plain()), {}))
    assert img.size == (200, 100)


def test_background_is_clipped_to_designable_area():
    img = _open(render_scene(parse_scene(_plain()), {}))
    assert img.getpixel((100, 50)) == (255, 0, 0, 255)
    assert img.getpixel((10, 50))[3] == 0
    assert img.getpixel((190, 50))[3] == 0
    # Rounded corner.
    assert img.getpixel((50, 0))[3] == 0


def test_base_image_is_drawn_beneath_everything():
    doc = parse_scene(_plain(assets={"baseImage": "https://cdn.test/base.png"}))
    img = _open(render_scene(doc, {"https://cdn.test/base.png": png_bytes((0, 0, 255, 255))}))
    assert img.getpixel((10, 50)) == (0, 0, 255, 255)
    assert img.getpixel((100, 50)) == (255, 0, 0, 255)


def test_elements_paint_in_z_order():
    doc = parse_scene(
        _plain(elements={"shapeElements": [_rect("top", 60, 10, "#0000ff", 2), _rect("under", 60, 10, "#00ff00", 1)]})
    )
    img = _open(render_scene(doc, {}))
    assert img.getpixel((70, 20)) == (0, 0, 255, 255)


def test_elements_outside_the_area_are_clipped():
    doc = parse_scene(_plain(backgroundColor="transparent", elements={"shapeElements": [_rect("edge", 30, 40, "#00ff00", 0, w=40)]}))
    img = _open(render_scene(doc, {}))
    assert img.getpixel((40, 50))[3] == 0
    assert img.getpixel((60, 50)) == (0, 255, 0, 255)


def test_rotated_rect_pivots_on_its_corner():
    shape = _rect("r", 100, 50, "#00ff00", 0, w=30, h=10)
    shape["rotation"] = 90
    doc = parse_scene(_plain(backgroundColor="transparent", elements={"shapeElements": [shape]}))
    img = _open(render_scene(doc, {}))
    # Turned clockwise about (100, 50): now hangs downwards and to the left.
    assert img.getpixel((95, 65))[3] == 255
    assert img.getpixel((115, 52))[3] == 0


def test_ellipse_and_ring_are_centred():
    shapes = [
        {"id": "dot", "type": "ellipse", "x": 80, "y": 50, "width": 20, "height": 20, "fill": "#00ff00"},
        {"id": "ring", "type": "ring", "x": 120, "y": 50, "innerRadius": 5, "outerRadius": 15, "fill": "#0000ff"},
    ]
    doc = parse_scene(_plain(backgroundColor="transparent", elements={"shapeElements": shapes}))
    img = _open(render_scene(doc, {}))
    assert img.getpixel((80, 50)) == (0, 255, 0, 255)
    assert img.getpixel((120, 50))[3] == 0
    assert img.getpixel((130, 50)) == (0, 0, 255, 255)


def test_gradient_background_runs_left_to_right():
    doc = parse_scene(
        _plain(
            backgroundColor="linear-gradient",
            backgroundGradient={"type": "linear", "colorStops": [0, "#000000", 1, "#ffffff"]},
            designableArea={"x": 0, "y": 0, "width": 200, "height": 100, "cornerRadius": 0},
        )
    )
    img = _open(render_scene(doc, {}))
    left, right = img.getpixel((2, 50)), img.getpixel((197, 50))
    assert left[0] < 20
    assert right[0] > 235


def test_text_is_drawn():
    doc = parse_scene(
        _plain(
            backgroundColor="transparent",
            elements={"textElements": [{"id": "t", "x": 60, "y": 20, "text": "Hi", "fontSize": 30, "fill": "#000000"}]},
        )
    )
    bbox = _open(render_scene(doc, {})).getchannel("A").getbbox()
    assert bbox is not None
    assert bbox[0] >= 55 and bbox[1] >= 15


def test_gold_gradient_text_is_gold():
    doc = parse_scene(
        _plain(
            backgroundColor="transparent",
            elements={"gradientTextElements": [{"id": "g", "x": 55, "y": 10, "text": "WW", "fontSize": 40}]},
        )
    )
    img = _open(render_scene(doc, {}))
    solid = [px for px in img.getdata() if px[3] == 255]
    assert solid
    assert all(r >= b for r, g, b, _ in solid)


def test_curved_text_is_drawn_around_its_centre():
    doc = parse_scene(
        _plain(
            backgroundColor="transparent",
            designableArea={"x": 0, "y": 0, "width": 200, "height": 100, "cornerRadius": 0},
            elements={
                "curvedTextElements": [
                    {"id": "c", "x": 100, "topY": 20, "radius": 60, "text": "CURVED", "fontSize": 16, "fill": "#000000"}
                ]
            },
        )
    )
    bbox = _open(render_scene(doc, {})).getchannel("A").getbbox()
    assert bbox is not None
    # The glyphs sit on the top of the circle (centre at y=80), not below it.
    assert bbox[1] < 40
    assert bbox[0] < 100 < bbox[2]


def test_missing_image_is_skipped():
    doc = parse_scene(
        _plain(elements={"imageElements": [{"id": "i", "url": "https://cdn.test/gone.png", "x": 60, "y": 10, "width": 20, "height": 20}]})
    )
    img = _open(render_scene(doc, {}))
    assert img.getpixel((70, 20)) == (255, 0, 0, 255)


def test_image_element_is_drawn():
    doc = parse_scene(
        _plain(elements={"imageElements": [{"id": "i", "url": "logo", "x": 60, "y": 10, "width": 20, "height": 20}]})
    )
    img = _open(render_scene(doc, {"logo": png_bytes((0, 255, 0, 255))}))
    assert img.getpixel((70, 20)) == (0, 255, 0, 255)


def test_scale_changes_output_size():
    img = _open(render_scene(parse_scene(_plain()), {}, scale=0.5))
    assert img.size == (100, 50)


def test_thumbnail_fits_configured_side():
    doc = parse_scene(_plain(dimensions={"width": 1200, "height": 600}, designableArea={"x": 0, "y": 0, "width": 1200, "height": 600}))
    img = _open(render_thumbnail(doc, {}))
    assert max(img.size) == settings.thumbnail_max_side
    assert img.size[0] == 2 * img.size[1]


def test_full_sample_scene_renders():
    img = _open(render_scene(parse_scene(scene()), {}))
    assert img.size == (400, 300)


def test_collect_image_urls_dedupes():
    doc = parse_scene(
        _plain(
            assets={"baseImage": "a"},
            elements={
                "imageElements": [
                    {"id": "1", "url": "a", "width": 1, "height": 1},
                    {"id": "2", "url": "b", "width": 1, "height": 1},
                ]
            },
        )
    )
    assert collect_image_urls(doc) == ["a", "b"]


def test_fetch_images_skips_failures(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "public_dir", str(tmp_path))
    (tmp_path / "img").mkdir()
    (tmp_path / "img" / "local.png").write_bytes(b"local")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/ok.png":
            return httpx.Response(200, content=b"remote")
        return httpx.Response(404)

    data_url = "data:image/png;base64," + base64.b64encode(b"inline").decode()
    urls = ["https://cdn.test/ok.png", "https://cdn.test/missing.png", data_url, "/img/local.png", "/img/nope.png"]
    got = asyncio.run(fetch_images(urls, transport=httpx.MockTransport(handler)))
    assert got == {"https://cdn.test/ok.png": b"remote", data_url: b"inline", "/img/local.png": b"local"}


def test_local_reads_stay_inside_public_dir(tmp_path, monkeypatch):
    public = tmp_path / "public"
    public.mkdir()
    sibling = tmp_path / "public_secret"
    sibling.mkdir()
    (sibling / "key.txt").write_bytes(b"SECRET")
    monkeypatch.setattr(settings, "public_dir", str(public))

    urls = ["/../public_secret/key.txt", "/../../etc/passwd"]
    assert asyncio.run(fetch_images(urls)) == {}
