from __future__ import annotations

import asyncio
import base64
import io
import logging
import math
import sys
from pathlib import Path
from typing import Any

import httpx
from PIL import Image, ImageChops, ImageColor, ImageDraw, ImageFile, ImageFont, ImageOps

from variant_forge.assembly.sandbox import GlobalSandbox
from variant_forge.config import settings
from variant_forge.errors import RenderError
from variant_forge.providers.asset_store import LocalAssetStore
from variant_forge.scene.arc import curved_text_layout, glyph_positions
from variant_forge.scene.model import (
    GOLD_GRADIENT,
    TRANSPARENT,
    CurvedTextElement,
    GradientTextElement,
    ImageElement,
    SceneDocument,
    ShapeElement,
    TextElement,
    ordered_elements,
)

logger = logging.getLogger(__name__)

GOLD_STOPS: list[Any] = [0, "#FFD700", 0.5, "#FFA500", 1, "#B8860B"]
# Used when a gradient background carries no stops of its own.
DEFAULT_BACKGROUND_STOPS: list[Any] = [0, "#c8102e", 1, "#ffaaaa"]

# Directories searched for font files. Installed for the duration of a render.
FONT_SEARCH_PATH: tuple[str, ...] = ()

_BLACK = (0, 0, 0, 255)


def renderer_sandbox() -> GlobalSandbox:
    module = sys.modules[__name__]
    return GlobalSandbox(
        [
            (Image, "MAX_IMAGE_PIXELS", settings.render_max_pixels),
            (ImageFile, "LOAD_TRUNCATED_IMAGES", True),
            (module, "FONT_SEARCH_PATH", tuple(settings.font_dirs)),
            (module, "_font_cache", {}),
        ]
    )


def render_scene(doc: SceneDocument, images: dict[str, bytes], scale: float = 1.0) -> bytes:
    """Render one side to PNG. `images` maps every URL the scene references to its bytes."""
    with renderer_sandbox():
        return _pil_to_png_bytes(_render_or_raise(doc, images, scale))


def render_thumbnail(doc: SceneDocument, images: dict[str, bytes]) -> bytes:
    with renderer_sandbox():
        img = _render_or_raise(doc, images, 1.0)
        side = settings.thumbnail_max_side
        img.thumbnail((side, side), Image.Resampling.LANCZOS)
        return _pil_to_png_bytes(img)


def collect_image_urls(doc: SceneDocument) -> list[str]:
    urls = [doc.assets.base_image] + [el.url for el in doc.elements.image_elements]
    return list(dict.fromkeys(u for u in urls if u))


async def fetch_images(urls: list[str], transport: httpx.AsyncBaseTransport | None = None) -> dict[str, bytes]:
    """Load every URL concurrently. Failures are logged and left out of the result."""
    if not urls:
        return {}
    timeout = httpx.Timeout(settings.image_timeout_seconds)
    async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
        results = await asyncio.gather(*(_fetch_one(client, url) for url in urls))
    return {url: data for url, data in zip(urls, results) if data is not None}


async def _fetch_one(client: httpx.AsyncClient, url: str) -> bytes | None:
    try:
        if url.startswith("data:"):
            _, _, payload = url.partition(",")
            return base64.b64decode(payload)
        if url.startswith(("http://", "https://")):
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
        return _read_local(url)
    except (httpx.HTTPError, OSError, ValueError) as exc:
        logger.warning("image %s could not be loaded: %s", url[:120], exc)
        return None


def _read_local(url: str) -> bytes:
    prefix = settings.asset_base_url.rstrip("/") + "/"
    if url.startswith(prefix):
        return LocalAssetStore().path_for(url[len(prefix):]).read_bytes()
    public_root = Path(settings.public_dir).resolve()
    path = (public_root / url.lstrip("/")).resolve()
    if not path.is_relative_to(public_root):
        raise ValueError("Refusing to read outside the public directory")
    return path.read_bytes()


def _render_or_raise(doc: SceneDocument, images: dict[str, bytes], scale: float) -> Image.Image:
    try:
        return _Painter(doc, images, scale).paint()
    except (OSError, ValueError, TypeError, MemoryError, Image.DecompressionBombError) as exc:
        raise RenderError(f"render failed: {exc}") from exc


class _Painter:
    def __init__(self, doc: SceneDocument, images: dict[str, bytes], scale: float) -> None:
        if scale <= 0:
            raise ValueError("scale must be positive")
        self.doc = doc
        self.images = images
        self.s = float(scale)
        self.size = (
            max(1, round(float(doc.dimensions.width) * self.s)),
            max(1, round(float(doc.dimensions.height) * self.s)),
        )

    def paint(self) -> Image.Image:
        canvas = Image.new("RGBA", self.size, (0, 0, 0, 0))

        base = self._open(self.doc.assets.base_image)
        if base is not None:
            canvas = Image.alpha_composite(canvas, _resize_cover(base, self.size))

        content = Image.new("RGBA", self.size, (0, 0, 0, 0))
        self._paint_background(content)
        for kind, element in ordered_elements(self.doc):
            if kind == "image":
                self._paint_image(content, element)
            elif kind == "text":
                self._paint_text(content, element)
            elif kind == "gradientText":
                self._paint_gradient_text(content, element)
            elif kind == "curvedText":
                self._paint_curved_text(content, element)
            elif kind == "shape":
                self._paint_shape(content, element)

        alpha = ImageChops.multiply(content.getchannel("A"), self._clip_mask())
        content.putalpha(alpha)
        return Image.alpha_composite(canvas, content)

    def _clip_mask(self) -> Image.Image:
        area = self.doc.designable_area
        box = self._box(area.x, area.y, area.width, area.height)
        mask = Image.new("L", self.size, 0)
        ImageDraw.Draw(mask).rounded_rectangle(box, radius=float(area.corner_radius) * self.s, fill=255)
        return mask

    def _paint_background(self, layer: Image.Image) -> None:
        doc = self.doc
        color = doc.background_color
        if not color or color == TRANSPARENT:
            return
        area = doc.designable_area
        box = self._box(area.x, area.y, area.width, area.height)
        w, h = box[2] - box[0], box[3] - box[1]
        if w <= 0 or h <= 0:
            return
        if doc.is_gradient_background:
            kind = "radial" if color == "radial-gradient" else "linear"
            gradient = doc.background_gradient
            stops = gradient.color_stops if gradient is not None and gradient.color_stops else DEFAULT_BACKGROUND_STOPS
            fill = _gradient_image((w, h), stops, kind, horizontal=True)
            _place(layer, fill, (0, 0), (box[0], box[1]))
        else:
            ImageDraw.Draw(layer).rectangle(box, fill=_parse_color(color))

    def _paint_image(self, layer: Image.Image, el: ImageElement) -> None:
        img = self._open(el.url)
        if img is None:
            return
        w = max(1, round(float(el.width) * self.s))
        h = max(1, round(float(el.height) * self.s))
        tile = img.resize((w, h), Image.Resampling.LANCZOS)
        # Images pivot on their centre.
        center = ((float(el.x) + float(el.width) / 2) * self.s, (float(el.y) + float(el.height) / 2) * self.s)
        _place(layer, tile, (w / 2, h / 2), center, el.rotation, el.scale_x, el.scale_y)

    def _paint_text(self, layer: Image.Image, el: TextElement) -> None:
        if not el.text:
            return
        font = _load_font(el.font_family, float(el.font_size) * self.s, bold=el.font_weight == "bold")
        stroke = _parse_color(el.stroke) if el.stroke and el.stroke != TRANSPARENT else None
        stroke_width = round(float(el.stroke_width or (2 if stroke else 0)) * self.s) if stroke else 0
        if el.fill == GOLD_GRADIENT:
            tile, origin = _gradient_text_tile(el.text, font, float(el.font_size) * self.s, stroke, stroke_width)
        else:
            tile, origin = _text_tile(el.text, font, _parse_color(el.fill) or _BLACK, stroke, stroke_width)
        _place(layer, tile, origin, (float(el.x) * self.s, float(el.y) * self.s), el.rotation, el.scale_x, el.scale_y)

    def _paint_gradient_text(self, layer: Image.Image, el: GradientTextElement) -> None:
        if not el.text:
            return
        font = _load_font(el.font_family, float(el.font_size) * self.s)
        tile, origin = _gradient_text_tile(el.text, font, float(el.font_size) * self.s, None, 0)
        _place(layer, tile, origin, (float(el.x) * self.s, float(el.y) * self.s), el.rotation, el.scale_x, el.scale_y)

    def _paint_curved_text(self, layer: Image.Image, el: CurvedTextElement) -> None:
        if not el.text:
            return
        layout = curved_text_layout(el)
        font_px = float(el.font_size) * self.s
        font = _load_font(el.font_family, font_px, bold=el.font_weight == "bold")
        stroke = _parse_color(el.stroke) if el.stroke and el.stroke != TRANSPARENT else None
        stroke_width = round(float(el.stroke_width or 2) * self.s) if stroke else 0
        gold = el.fill == GOLD_GRADIENT
        fill = _parse_color(el.fill) or _BLACK

        advances = [(ch, font.getlength(ch) / self.s) for ch in el.text]
        half = math.ceil((float(el.radius) + float(el.font_size) * 2) * self.s) + stroke_width
        group = Image.new("RGBA", (half * 2, half * 2), (0, 0, 0, 0))
        for glyph in glyph_positions(layout, advances):
            if not glyph.char.strip():
                continue
            if gold:
                tile, origin = _gradient_text_tile(glyph.char, font, font_px, stroke, stroke_width, anchor="ms")
            else:
                tile, origin = _text_tile(glyph.char, font, fill, stroke, stroke_width, anchor="ms")
            dest = (half + glyph.x * self.s, half + glyph.y * self.s)
            _place(group, tile, origin, dest, glyph.rotation_deg, 1, 1)

        # The group's origin is the circle centre, as in the editor.
        dest = (float(el.x) * self.s, layout.center_y * self.s)
        _place(layer, group, (half, half), dest, el.rotation, el.scale_x, el.scale_y)

    def _paint_shape(self, layer: Image.Image, el: ShapeElement) -> None:
        stroke = _parse_color(el.stroke) if el.stroke and el.stroke != TRANSPARENT else None
        sw = round(float(el.stroke_width or 1) * self.s) if stroke else 0
        pad = sw + 1
        s = self.s
        if el.shape_type == "ring":
            outer = float(el.outer_radius if el.outer_radius is not None else float(el.width) / 2) * s
            inner = float(el.inner_radius) * s if el.inner_radius is not None else outer / 2
            w = h = 2 * outer
        else:
            w, h = float(el.width) * s, float(el.height) * s
        size = (max(1, math.ceil(w) + 2 * pad), max(1, math.ceil(h) + 2 * pad))
        box = (pad, pad, pad + w, pad + h)

        mask = Image.new("L", size, 0)
        mdraw = ImageDraw.Draw(mask)
        if el.shape_type == "rect":
            mdraw.rectangle(box, fill=255)
        else:
            mdraw.ellipse(box, fill=255)
        if el.shape_type == "ring":
            cx, cy = pad + outer, pad + outer
            mdraw.ellipse((cx - inner, cy - inner, cx + inner, cy + inner), fill=0)

        tile = Image.new("RGBA", size, (0, 0, 0, 0))
        if el.fill_linear_gradient_color_stops:
            _fill_through(tile, _gradient_image(size, el.fill_linear_gradient_color_stops, "linear", horizontal=True), mask)
        elif el.fill_radial_gradient_color_stops:
            _fill_through(tile, _gradient_image(size, el.fill_radial_gradient_color_stops, "radial"), mask)
        else:
            fill = _parse_color(el.fill)
            if fill is not None:
                _fill_through(tile, Image.new("RGBA", size, fill), mask)

        if stroke is not None:
            draw = ImageDraw.Draw(tile)
            if el.shape_type == "rect":
                draw.rectangle(box, outline=stroke, width=sw)
            else:
                draw.ellipse(box, outline=stroke, width=sw)
            if el.shape_type == "ring":
                draw.ellipse((cx - inner, cy - inner, cx + inner, cy + inner), outline=stroke, width=sw)

        # Rectangles hang from their top-left corner; ellipses and rings from their centre.
        if el.shape_type == "rect":
            origin = (pad, pad)
        else:
            origin = (pad + w / 2, pad + h / 2)
        _place(layer, tile, origin, (float(el.x) * s, float(el.y) * s), el.rotation, el.scale_x, el.scale_y)

    def _open(self, url: str | None) -> Image.Image | None:
        if not url:
            return None
        data = self.images.get(url)
        if data is None:
            logger.warning("image %s was not prefetched, skipping", url[:120])
            return None
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning("image %s could not be decoded: %s", url[:120], exc)
            return None
        return img.convert("RGBA")

    def _box(self, x, y, w, h) -> tuple[int, int, int, int]:
        s = self.s
        return (round(float(x) * s), round(float(y) * s), round((float(x) + float(w)) * s), round((float(y) + float(h)) * s))


def _place(
    layer: Image.Image,
    tile: Image.Image,
    origin: tuple[float, float],
    dest: tuple[float, float],
    rotation: float = 0,
    scale_x: float = 1,
    scale_y: float = 1,
) -> None:
    """Composite `tile` so its `origin` lands on `dest`, scaled and then rotated
    clockwise by `rotation` degrees about that point.
    """
    ox, oy = origin
    sx, sy = float(scale_x), float(scale_y)
    if sx == 0 or sy == 0:
        return
    if (sx, sy) != (1, 1):
        w = max(1, round(tile.width * abs(sx)))
        h = max(1, round(tile.height * abs(sy)))
        ox, oy = ox * w / tile.width, oy * h / tile.height
        tile = tile.resize((w, h), Image.Resampling.BICUBIC)
        if sx < 0:
            tile = ImageOps.mirror(tile)
            ox = tile.width - ox
        if sy < 0:
            tile = ImageOps.flip(tile)
            oy = tile.height - oy

    if rotation:
        reach = math.ceil(max(math.hypot(cx - ox, cy - oy) for cx in (0, tile.width) for cy in (0, tile.height))) + 1
        square = Image.new("RGBA", (reach * 2, reach * 2), (0, 0, 0, 0))
        square.paste(tile, (round(reach - ox), round(reach - oy)))
        # PIL turns counter-clockwise; scene rotation is clockwise.
        tile = square.rotate(-float(rotation), resample=Image.Resampling.BICUBIC, center=(reach, reach))
        ox = oy = reach

    overlay = Image.new("RGBA", layer.size, (0, 0, 0, 0))
    overlay.paste(tile, (round(dest[0] - ox), round(dest[1] - oy)))
    layer.alpha_composite(overlay)


def _text_tile(
    text: str,
    font,
    fill: tuple[int, int, int, int],
    stroke: tuple[int, int, int, int] | None,
    stroke_width: int,
    anchor: str = "la",
) -> tuple[Image.Image, tuple[float, float]]:
    tile, origin = _blank_text_tile(text, font, stroke_width, anchor)
    ImageDraw.Draw(tile).text(
        origin,
        text,
        font=font,
        fill=fill,
        anchor=anchor,
        stroke_width=stroke_width,
        stroke_fill=stroke,
    )
    return tile, origin


def _gradient_text_tile(
    text: str,
    font,
    font_px: float,
    stroke: tuple[int, int, int, int] | None,
    stroke_width: int,
    anchor: str = "la",
) -> tuple[Image.Image, tuple[float, float]]:
    tile, origin = _blank_text_tile(text, font, stroke_width, anchor)
    if stroke is not None and stroke_width:
        ImageDraw.Draw(tile).text(
            origin, text, font=font, fill=stroke, anchor=anchor, stroke_width=stroke_width, stroke_fill=stroke
        )
    mask = Image.new("L", tile.size, 0)
    ImageDraw.Draw(mask).text(origin, text, font=font, fill=255, anchor=anchor)

    # Top to bottom over one font height, measured from the text's top line.
    top = origin[1] - (font_px * 0.8 if anchor.endswith("s") else 0)
    ramp = _gradient_image((1, max(1, round(font_px))), GOLD_STOPS, "linear", horizontal=False)
    gradient = Image.new("RGBA", tile.size, ramp.getpixel((0, 0)))
    gradient.paste(ramp.resize((tile.width, ramp.height)), (0, round(top)))
    below = round(top) + ramp.height
    if below < tile.height:
        gradient.paste(ramp.getpixel((0, ramp.height - 1)), (0, below, tile.width, tile.height))
    _fill_through(tile, gradient, mask)
    return tile, origin


def _fill_through(tile: Image.Image, fill: Image.Image, mask: Image.Image) -> None:
    fill.putalpha(ImageChops.multiply(fill.getchannel("A"), mask))
    tile.alpha_composite(fill)


def _blank_text_tile(text: str, font, stroke_width: int, anchor: str) -> tuple[Image.Image, tuple[float, float]]:
    probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = probe.textbbox((0, 0), text, font=font, anchor=anchor, stroke_width=stroke_width)
    pad = 2
    ox, oy = pad - left, pad - top
    size = (max(1, math.ceil(right - left) + 2 * pad), max(1, math.ceil(bottom - top) + 2 * pad))
    return Image.new("RGBA", size, (0, 0, 0, 0)), (ox, oy)


def _gradient_image(size: tuple[int, int], stops: list[Any], kind: str, horizontal: bool = True) -> Image.Image:
    """RGBA gradient filling `size`. Linear runs left to right (or top to bottom);
    radial runs from the centre out to half the shorter side.
    """
    w, h = max(1, size[0]), max(1, size[1])
    if kind == "radial":
        r = max(1, round(min(w, h) / 2))
        tmap = Image.new("L", (w, h), 255)
        disc = Image.radial_gradient("L").resize((2 * r, 2 * r), Image.Resampling.BILINEAR)
        tmap.paste(disc, (w // 2 - r, h // 2 - r))
    else:
        ramp = Image.linear_gradient("L")
        if horizontal:
            ramp = ramp.transpose(Image.Transpose.ROTATE_90)
        tmap = ramp.resize((w, h), Image.Resampling.BILINEAR)
    bands = [tmap.point(lut) for lut in _ramp_luts(stops)]
    return Image.merge("RGBA", bands)


def _ramp_luts(stops: list[Any]) -> list[list[int]]:
    pairs: list[tuple[float, tuple[int, int, int, int]]] = []
    for i in range(0, len(stops) - 1, 2):
        try:
            pos = min(1.0, max(0.0, float(stops[i])))
        except (TypeError, ValueError):
            continue
        color = _parse_color(stops[i + 1])
        pairs.append((pos, color if color is not None else (0, 0, 0, 0)))
    if not pairs:
        pairs = [(0.0, _BLACK)]
    pairs.sort(key=lambda p: p[0])

    luts: list[list[int]] = [[], [], [], []]
    for v in range(256):
        t = v / 255
        color = _color_at(pairs, t)
        for band in range(4):
            luts[band].append(color[band])
    return luts


def _color_at(pairs: list[tuple[float, tuple[int, int, int, int]]], t: float) -> tuple[int, int, int, int]:
    if t <= pairs[0][0]:
        return pairs[0][1]
    for (p0, c0), (p1, c1) in zip(pairs, pairs[1:]):
        if t <= p1:
            f = 0.0 if p1 == p0 else (t - p0) / (p1 - p0)
            return tuple(round(a + (b - a) * f) for a, b in zip(c0, c1))  # type: ignore[return-value]
    return pairs[-1][1]


def _parse_color(value: Any) -> tuple[int, int, int, int] | None:
    if not isinstance(value, str) or not value or value == TRANSPARENT:
        return None
    try:
        return ImageColor.getcolor(value.strip(), "RGBA")  # type: ignore[return-value]
    except ValueError:
        logger.debug("unparseable color %r, using black", value)
        return _BLACK


def _font_candidates(family: str, bold: bool) -> list[str]:
    compact = family.replace(" ", "")
    names = []
    if bold:
        names += [f"{family} Bold.ttf", f"{compact}-Bold.ttf", f"{compact}Bold.ttf"]
    names += [f"{family}.ttf", f"{compact}.ttf", f"{compact}-Regular.ttf", f"{family}.ttc", f"{compact}.otf"]
    names += ["DejaVuSans-Bold.ttf" if bold else "DejaVuSans.ttf", "Arial.ttf", "Helvetica.ttc"]
    return names


def _load_font(family: str, size: float, bold: bool = False):
    """
    Prefer a TTF font from the search path. If we can't find one, fall back to
    Pillow's default font at the requested size.
    """
    px = max(1, round(size))
    cache = getattr(sys.modules[__name__], "_font_cache", None)
    key = (family, px, bold)
    if cache is not None and key in cache:
        return cache[key]

    font = None
    for directory in FONT_SEARCH_PATH:
        for name in _font_candidates(family or "Arial", bold):
            path = Path(directory) / name
            if not path.exists():
                continue
            try:
                font = ImageFont.truetype(str(path), size=px)
                break
            except OSError:
                continue
        if font is not None:
            break
    if font is None:
        font = ImageFont.load_default(size=px)

    if cache is not None:
        cache[key] = font
    return font


def _resize_cover(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """
    Resize to cover the target canvas (no stretching), then center-crop.
    """
    tw, th = size
    iw, ih = img.size
    if iw <= 0 or ih <= 0:
        return img.resize(size, Image.Resampling.LANCZOS)

    scale = max(tw / iw, th / ih)
    nw, nh = max(tw, round(iw * scale)), max(th, round(ih * scale))
    resized = img.resize((nw, nh), Image.Resampling.LANCZOS)

    left = max(0, (nw - tw) // 2)
    top = max(0, (nh - th) // 2)
    return resized.crop((left, top, left + tw, top + th))


def _pil_to_png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
