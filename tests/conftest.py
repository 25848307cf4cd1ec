"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import copy
import io
from typing import Any

import pytest
from PIL import Image

from variant_forge.errors import RemoteCallError
from variant_forge.jobs import JobStore
from variant_forge.providers.base import MetafieldWrite, PlatformVariant
from variant_forge.scene.palette import Palette
from variant_forge.storage import PaletteStore, TemplateStore


RED = Palette("red", "#c8102e", "#ffaaaa", "#6b0615", "#60a8dc", "#ff6d74")
BLUE = Palette("blue", "#0057b8", "#7fa8db", "#1a4786", "#ebe70e", "#1982ea")
WHITE = Palette("white", "#ffffff", "#cccccc", "#424242")

PRODUCT_ID = "gid://shopify/Product/100"

# A master design in the red chip. Every color is either a red slot, a
# sentinel, or a color no palette uses.
SCENE: dict[str, Any] = {
    "dimensions": {"width": 400, "height": 300},
    "backgroundColor": "#ffaaaa",
    "designableArea": {"x": 50, "y": 25, "width": 300, "height": 250, "cornerRadius": 20, "visible": True},
    "elements": {
        "textElements": [
            {"id": "name", "x": 80, "y": 60, "text": "ALEX", "fontSize": 32, "fill": "#c8102e", "stroke": "#6b0615", "strokeWidth": 1},
            {"id": "motto", "x": 80, "y": 120, "text": "Go", "fontSize": 24, "fill": "gold-gradient"},
        ],
        "curvedTextElements": [
            {"id": "arc", "x": 200, "topY": 100, "radius": 80, "text": "CHAMPIONS", "fontSize": 18, "fill": "#6b0615", "flipped": False},
        ],
        "gradientTextElements": [],
        "imageElements": [],
        "shapeElements": [
            {
                "id": "badge",
                "type": "rect",
                "x": 260,
                "y": 180,
                "width": 60,
                "height": 40,
                "fill": "#ff6d74",
                "fillLinearGradientColorStops": [0, "#c8102e", 0.5, "#123456", 1, "#ffaaaa"],
                "editorLocked": True,
            }
        ],
    },
    "assets": {"baseImage": ""},
    "editorVersion": "3.2",
}


def scene(**overrides: Any) -> dict[str, Any]:
    data = copy.deepcopy(SCENE)
    data.update(overrides)
    return data


def png_bytes(color: tuple[int, int, int, int] = (0, 0, 255, 255), size: tuple[int, int] = (10, 10)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


def variant(variant_id: str, color: str | None, pattern: str | None = "Classic", image_url: str | None = None) -> PlatformVariant:
    options: dict[str, str] = {"Size": "One size"}
    if color is not None:
        options["Color"] = color
    if pattern is not None:
        options["Edge Pattern"] = pattern
    return PlatformVariant(variant_id=variant_id, title=f"{color} / {pattern}", image_url=image_url, options=options)


class FakePlatform:
    name = "fake"

    def __init__(self, variants: dict[str, list[PlatformVariant]] | None = None) -> None:
        self.variants = variants or {}
        self.writes: list[MetafieldWrite] = []
        self.events: list[str] = []
        self.fail_writes: set[str] = set()
        self.slow_writes: set[str] = set()
        self.fail_listing = False

    async def list_product_variants(self, product_id: str) -> list[PlatformVariant]:
        self.events.append("list")
        if self.fail_listing or product_id not in self.variants:
            raise RemoteCallError(f"product {product_id} not found")
        return list(self.variants[product_id])

    async def get_variant(self, variant_id: str) -> PlatformVariant | None:
        self.events.append("get")
        for variants in self.variants.values():
            for v in variants:
                if v.variant_id == variant_id:
                    return v
        return None

    async def set_metafield(self, write: MetafieldWrite) -> None:
        self.events.append("metafield")
        if write.owner_id in self.slow_writes:
            await asyncio.sleep(5)
        if write.owner_id in self.fail_writes:
            raise RemoteCallError(f"metafieldsSet rejected for {write.owner_id}")
        self.writes.append(write)


class MemoryAssetStore:
    def __init__(self) -> None:
        self.uploads: dict[str, bytes] = {}

    def upload(self, content: bytes, content_type: str, key: str | None = None) -> str:
        key = key or f"uploads/{len(self.uploads)}.png"
        self.uploads[key] = content
        return f"memory://{key}"


@pytest.fixture
def templates(tmp_path) -> TemplateStore:
    return TemplateStore(tmp_path)


@pytest.fixture
def palettes(tmp_path) -> PaletteStore:
    return PaletteStore(tmp_path)


@pytest.fixture
def jobs(tmp_path) -> JobStore:
    return JobStore(tmp_path)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform(
        {
            PRODUCT_ID: [
                variant("v-red", "Red", image_url="https://cdn.test/red.png"),
                variant("v-blue", "Blue", image_url="https://cdn.test/blue.png"),
                variant("v-lblue", "Light Blue", image_url="https://cdn.test/light-blue.png"),
                variant("v-grey", "Grey"),
                variant("v-mauve", "Mauve"),
            ]
        }
    )


@pytest.fixture
def asset_store() -> MemoryAssetStore:
    return MemoryAssetStore()
