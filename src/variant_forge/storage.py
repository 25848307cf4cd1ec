from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from variant_forge.config import settings
from variant_forge.errors import ValidationError
from variant_forge.scene.palette import Palette
from variant_forge.variants import normalize_option_value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:6]}.tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


# Fields a matched variant may still change.
_MUTABLE_AFTER_MATCH = {"thumbnail", "back_thumbnail", "updated_at"}


@dataclass(frozen=True)
class Template:
    template_id: str
    shop: str
    name: str
    canvas_data: str
    front_canvas_data: str | None = None
    back_canvas_data: str | None = None
    master_template_id: str | None = None
    color_variant: str | None = None
    pattern: str = ""
    shopify_product_id: str | None = None
    shopify_variant_id: str | None = None
    thumbnail: str | None = None
    back_thumbnail: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_variant(self) -> bool:
        return self.master_template_id is not None

    def sides(self) -> dict[str, str]:
        """Scene JSON per printable side; "default" is always present."""
        out = {"default": self.canvas_data}
        if self.front_canvas_data:
            out["front"] = self.front_canvas_data
        if self.back_canvas_data:
            out["back"] = self.back_canvas_data
        return out

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.template_id,
            "shop": self.shop,
            "name": self.name,
            "canvasData": self.canvas_data,
            "frontCanvasData": self.front_canvas_data,
            "backCanvasData": self.back_canvas_data,
            "masterTemplateId": self.master_template_id,
            "isColorVariant": self.is_variant,
            "colorVariant": self.color_variant,
            "pattern": self.pattern,
            "shopifyProductId": self.shopify_product_id,
            "shopifyVariantId": self.shopify_variant_id,
            "thumbnail": self.thumbnail,
            "backThumbnail": self.back_thumbnail,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


_TEMPLATE_FIELDS = {f.name for f in fields(Template)}


class TemplateStore:
    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.templates_dir = self.root_dir / "templates"
        self.templates_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def create_template(self, shop: str, name: str, canvas_data: str, **extra: Any) -> Template:
        unknown = set(extra) - _TEMPLATE_FIELDS
        if unknown:
            raise TypeError(f"unknown template fields: {sorted(unknown)}")
        now = _now_iso()
        template = Template(
            template_id=uuid.uuid4().hex[:12],
            shop=shop,
            name=name,
            canvas_data=canvas_data,
            created_at=now,
            updated_at=now,
            **extra,
        )
        with self._lock:
            self._write_template(template)
        return template

    def get_template(self, template_id: str, shop: str | None = None) -> Template | None:
        path = self._path(template_id)
        if not path.exists():
            return None
        template = Template(**json.loads(path.read_text("utf-8")))
        if shop is not None and template.shop != shop:
            return None
        return template

    def update_template(self, template_id: str, **changes: Any) -> Template:
        with self._lock:
            current = self.get_template(template_id)
            if current is None:
                raise KeyError(template_id)
            if current.is_variant and current.shopify_variant_id and set(changes) - _MUTABLE_AFTER_MATCH:
                raise ValidationError(f"variant template {template_id} is bound to a platform variant; only thumbnails can change")
            updated = replace(current, updated_at=_now_iso(), **changes)
            self._write_template(updated)
            return updated

    def list_templates(self, shop: str) -> list[Template]:
        out: list[Template] = []
        for path in sorted(self.templates_dir.glob("*.json")):
            try:
                template = Template(**json.loads(path.read_text("utf-8")))
            except (ValueError, TypeError):
                # Skip a half-written or foreign file rather than failing the listing.
                continue
            if template.shop == shop:
                out.append(template)
        return out

    def list_variants(self, master_template_id: str) -> list[Template]:
        out = []
        for path in sorted(self.templates_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text("utf-8"))
            except ValueError:
                continue
            if data.get("master_template_id") == master_template_id:
                out.append(Template(**data))
        return out

    def find_by_variant(self, shop: str, shopify_variant_id: str) -> Template | None:
        """The template bound to a platform variant, if any."""
        for template in self.list_templates(shop):
            if template.shopify_variant_id == shopify_variant_id:
                return template
        return None

    def delete_variants(self, master_template_id: str) -> int:
        with self._lock:
            variants = self.list_variants(master_template_id)
            for variant in variants:
                self._path(variant.template_id).unlink(missing_ok=True)
            return len(variants)

    def delete_template(self, template_id: str) -> int:
        """Delete a template and, for a master, all of its variants."""
        with self._lock:
            removed = self.delete_variants(template_id)
            path = self._path(template_id)
            if path.exists():
                path.unlink()
                removed += 1
            return removed

    def _path(self, template_id: str) -> Path:
        safe = os.path.basename(template_id).replace("..", "_")
        return self.templates_dir / f"{safe}.json"

    def _write_template(self, template: Template) -> None:
        _write_json_atomic(self._path(template.template_id), asdict(template))


DEFAULT_PALETTES: list[Palette] = [
    Palette("white", "#ffffff", "#cccccc", "#424242"),
    Palette("red", "#c8102e", "#ffaaaa", "#6b0615", "#60a8dc", "#ff6d74"),
    Palette("blue", "#0057b8", "#7fa8db", "#1a4786", "#ebe70e", "#1982ea"),
    Palette("green", "#009639", "#e0eed5", "#006325", "#841d80", "#60bc82"),
    Palette("black", "#000000", "#cccccc", "#424242", "#ffffff", "#5b5959"),
    Palette("purple", "#5f259f", "#aaaaff", "#3f186b", "#45b757", "#8e63bf"),
    Palette("yellow", "#fff110", "#febd11", "#7c6800", "#215baa", "#cb9f2c"),
    Palette("grey", "#a2aaad", "#97872a", "#424242", "#983351", "#cccccc"),
    Palette("orange", "#ff8200", "#ffcfa3", "#87451e", "#d2007d", "#fcb36a"),
    Palette("ivory", "#f1e6b2", "#f7f4e8", "#b5ac85", "#7c9fcd", "#fff2c1"),
    Palette("light-blue", "#71c5e8", "#b8d6e0", "#5ca0bd", "#cb4a3b", "#96e1ff"),
    Palette("pink", "#f8a3bc", "#ffd6e1", "#d38a9f", "#33ba9f", "#ffc4d4"),
    Palette("brown", "#9e652e", "#c49a73", "#734921", "#000000", "#e8a86d"),
]


class PaletteStore:
    """Chip palettes, keyed by normalized chip name. Seeded with the default chips."""

    def __init__(self, root_dir: Path | None = None, seed: list[Palette] | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.path = self.root_dir / "palettes.json"
        self._lock = threading.Lock()
        if not self.path.exists():
            self._write(DEFAULT_PALETTES if seed is None else seed)

    def all(self) -> dict[str, Palette]:
        data = json.loads(self.path.read_text("utf-8"))
        return {normalize_option_value(p["chip"]): Palette(**p) for p in data.get("palettes", [])}

    def get(self, chip: str) -> Palette | None:
        return self.all().get(normalize_option_value(chip))

    def upsert(self, palette: Palette) -> Palette:
        if not (palette.color1 and palette.color2 and palette.color3):
            raise ValidationError("color1, color2 and color3 are required")
        with self._lock:
            current = self.all()
            current[normalize_option_value(palette.chip)] = palette
            self._write(list(current.values()))
        return palette

    def _write(self, palettes: list[Palette]) -> None:
        _write_json_atomic(self.path, {"palettes": [asdict(p) for p in palettes]})
