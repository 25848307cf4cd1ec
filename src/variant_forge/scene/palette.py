"""Palette substitution: re-color a scene from one chip's palette to another's.

Slot position is what ties two palettes together. A color equal to the source
chip's slot N becomes the target chip's slot N; anything else, including
sentinels such as ``gold-gradient`` and ``transparent``, is left alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from variant_forge.errors import ValidationError
from variant_forge.scene.model import ElementBase, SceneDocument
from variant_forge.variants import normalize_option_value

COLOR_KEYS = ("fill", "stroke")
STOP_KEYS = ("fillLinearGradientColorStops", "fillRadialGradientColorStops", "colorStops")


@dataclass(frozen=True)
class Palette:
    chip: str
    color1: str
    color2: str
    color3: str
    color4: str | None = None
    color5: str | None = None

    @property
    def slots(self) -> tuple[str | None, ...]:
        return (self.color1, self.color2, self.color3, self.color4, self.color5)

    def slot_of(self, color: str) -> int | None:
        needle = color.strip().lower()
        for idx, slot in enumerate(self.slots):
            if slot and slot.strip().lower() == needle:
                return idx
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chipColor": self.chip,
            "color1": self.color1,
            "color2": self.color2,
            "color3": self.color3,
            "color4": self.color4,
            "color5": self.color5,
        }


class ColorMap:
    """Slot-by-slot lookup from a source palette to a target palette."""

    def __init__(self, source: Palette, target: Palette) -> None:
        self.source = source
        self.target = target

    def __call__(self, color: Any) -> Any:
        if not isinstance(color, str) or not color:
            return color
        slot = self.source.slot_of(color)
        if slot is None:
            return color
        replacement = self.target.slots[slot]
        # Target chip without this optional slot keeps the original.
        return replacement if replacement else color

    def stops(self, stops: list[Any] | None) -> list[Any] | None:
        if stops is None:
            return None
        # [position, color, position, color, ...] - positions are never touched.
        return [self(value) if idx % 2 == 1 else value for idx, value in enumerate(stops)]


def substitute(document: SceneDocument, source: Palette, target: Palette) -> SceneDocument:
    cmap = ColorMap(source, target)

    update: dict[str, Any] = {}
    if not document.is_gradient_background:
        update["background_color"] = cmap(document.background_color)
    if document.background_gradient is not None:
        gradient = document.background_gradient
        update["background_gradient"] = gradient.model_copy(
            update={"color_stops": cmap.stops(gradient.color_stops)},
        )
        _replace_extra(update["background_gradient"], cmap)

    elements = document.elements
    element_updates = {
        "text_elements": [_substitute_element(el, cmap) for el in elements.text_elements],
        "curved_text_elements": [_substitute_element(el, cmap) for el in elements.curved_text_elements],
        "gradient_text_elements": [_substitute_element(el, cmap) for el in elements.gradient_text_elements],
        "image_elements": [_substitute_element(el, cmap) for el in elements.image_elements],
        "shape_elements": [_substitute_element(el, cmap) for el in elements.shape_elements],
    }
    new_elements = elements.model_copy(update=element_updates)
    _replace_extra(new_elements, cmap)
    update["elements"] = new_elements

    result = document.model_copy(update=update)
    _replace_extra(result, cmap)
    return result


def _substitute_element(element: ElementBase, cmap: ColorMap) -> ElementBase:
    update: dict[str, Any] = {}
    for key in COLOR_KEYS:
        if key in type(element).model_fields:
            update[key] = cmap(getattr(element, key))
    update["fill_linear_gradient_color_stops"] = cmap.stops(element.fill_linear_gradient_color_stops)
    update["fill_radial_gradient_color_stops"] = cmap.stops(element.fill_radial_gradient_color_stops)
    copied = element.model_copy(update=update)
    _replace_extra(copied, cmap)
    return copied


def _replace_extra(model: Any, cmap: ColorMap) -> None:
    # Nested extra values are shared with the source model; rebuild rather than edit.
    extra = model.__pydantic_extra__
    if extra:
        rebuilt = {key: _substitute_value(key, value, cmap) for key, value in extra.items()}
        object.__setattr__(model, "__pydantic_extra__", rebuilt)


def _substitute_value(key: str, value: Any, cmap: ColorMap) -> Any:
    if key in COLOR_KEYS and isinstance(value, str):
        return cmap(value)
    if key in STOP_KEYS and isinstance(value, list):
        return cmap.stops(value)
    return _substitute_any(value, cmap)


def _substitute_any(value: Any, cmap: ColorMap) -> Any:
    if isinstance(value, dict):
        return {key: _substitute_value(key, item, cmap) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute_any(item, cmap) for item in value]
    return value


def require_palette(palettes: dict[str, Palette], chip: str | None) -> Palette:
    """Source palette lookup. A chip without a mapping fails the whole request."""
    if not chip:
        raise ValidationError("master template has no color variant")
    palette = palettes.get(normalize_option_value(chip))
    if palette is None:
        raise ValidationError(f"Color mapping not found for {chip}")
    return palette
