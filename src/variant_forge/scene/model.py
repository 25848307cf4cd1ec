"""Scene Document: the serializable description of one printable side of a product.

The editor and the headless renderer read and write the same JSON. Keys are
camelCase on the wire; unknown keys are carried through untouched so an editor
newer than this service never loses data on a round trip.
"""

from __future__ import annotations

import json
from typing import Any, Iterator, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, model_serializer, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from variant_forge.errors import ValidationError

Number = Union[int, float]

ElementKind = Literal["image", "text", "gradientText", "curvedText", "shape"]

GRADIENT_SENTINELS = ("linear-gradient", "radial-gradient")
GOLD_GRADIENT = "gold-gradient"
TRANSPARENT = "transparent"

# Fixed scan order for zIndex defaults and for tie-breaking.
KIND_ORDER: tuple[ElementKind, ...] = ("image", "text", "gradientText", "curvedText", "shape")

_COLLECTIONS: dict[str, str] = {
    "image": "image_elements",
    "text": "text_elements",
    "gradientText": "gradient_text_elements",
    "curvedText": "curved_text_elements",
    "shape": "shape_elements",
}


class _SceneModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    @model_serializer(mode="wrap")
    def _drop_empty_fields(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        # Declared fields at None are left out. Unknown keys go back as received, nulls included.
        data = handler(self)
        extra = self.__pydantic_extra__ or {}
        return {key: value for key, value in data.items() if value is not None or key in extra}


class Dimensions(_SceneModel):
    width: Number
    height: Number


class BackgroundGradient(_SceneModel):
    type: str = "linear"
    color_stops: list[Any] = Field(default_factory=list)


class DesignableArea(_SceneModel):
    x: Number = 0
    y: Number = 0
    width: Number
    height: Number
    corner_radius: Number = 0
    visible: bool = True

    @model_validator(mode="after")
    def _check_corner_radius(self) -> "DesignableArea":
        if self.width <= 0 or self.height <= 0:
            raise ValueError("designableArea must have a positive width and height")
        if self.corner_radius < 0 or self.corner_radius > min(self.width, self.height) / 2:
            raise ValueError("designableArea.cornerRadius must be within [0, min(width, height) / 2]")
        return self


class SceneAssets(_SceneModel):
    base_image: str = ""


class ElementBase(_SceneModel):
    id: str
    x: Number = 0
    y: Number = 0
    rotation: Number = 0
    scale_x: Number = 1
    scale_y: Number = 1
    z_index: int | None = None
    fill_linear_gradient_color_stops: list[Any] | None = None
    fill_radial_gradient_color_stops: list[Any] | None = None


class TextElement(ElementBase):
    text: str = ""
    font_family: str = "Arial"
    font_size: Number = 24
    font_weight: str = "normal"
    fill: str | None = "black"
    stroke: str | None = None
    stroke_width: Number | None = None


class CurvedTextElement(TextElement):
    font_size: Number = 20
    top_y: Number = 0
    radius: Number = 100
    flipped: bool = False

    @model_validator(mode="after")
    def _check_radius(self) -> "CurvedTextElement":
        if self.radius <= 0:
            raise ValueError("curved text radius must be positive")
        return self


class GradientTextElement(ElementBase):
    text: str = ""
    font_family: str = "Arial"
    font_size: Number = 24


class ImageElement(ElementBase):
    url: str
    width: Number
    height: Number


class ShapeElement(ElementBase):
    shape_type: Literal["rect", "ellipse", "ring"] = Field(
        default="rect",
        validation_alias=AliasChoices("type", "shapeType", "shape_type"),
        serialization_alias="type",
    )
    width: Number = 100
    height: Number = 100
    inner_radius: Number | None = None
    outer_radius: Number | None = None
    fill: str | None = None
    stroke: str | None = None
    stroke_width: Number | None = None


AnyElement = Union[TextElement, CurvedTextElement, GradientTextElement, ImageElement, ShapeElement]


class SceneElements(_SceneModel):
    text_elements: list[TextElement] = Field(default_factory=list)
    curved_text_elements: list[CurvedTextElement] = Field(default_factory=list)
    gradient_text_elements: list[GradientTextElement] = Field(default_factory=list)
    image_elements: list[ImageElement] = Field(default_factory=list)
    shape_elements: list[ShapeElement] = Field(default_factory=list)

    def collection(self, kind: ElementKind) -> list[Any]:
        return getattr(self, _COLLECTIONS[kind])


class SceneDocument(_SceneModel):
    dimensions: Dimensions
    background_color: str = TRANSPARENT
    background_gradient: BackgroundGradient | None = None
    designable_area: DesignableArea
    elements: SceneElements = Field(default_factory=SceneElements)
    assets: SceneAssets = Field(default_factory=SceneAssets)

    @model_validator(mode="before")
    @classmethod
    def _default_designable_area(cls, data: Any) -> Any:
        # Older documents omit the designable area; it then covers the whole canvas.
        if isinstance(data, dict) and "designableArea" not in data and "designable_area" not in data:
            dims = data.get("dimensions")
            if isinstance(dims, dict) and "width" in dims and "height" in dims:
                data = dict(data)
                data["designableArea"] = {"x": 0, "y": 0, "width": dims["width"], "height": dims["height"]}
        return data

    @model_validator(mode="after")
    def _check_document(self) -> "SceneDocument":
        if self.dimensions.width <= 0 or self.dimensions.height <= 0:
            raise ValueError("dimensions must be positive")
        seen: set[str] = set()
        for _, element in iter_elements(self):
            if element.id in seen:
                raise ValueError(f"duplicate element id '{element.id}'")
            seen.add(element.id)
        return self

    @property
    def is_gradient_background(self) -> bool:
        return self.background_color in GRADIENT_SENTINELS


def parse_scene(raw: str | bytes | dict[str, Any]) -> SceneDocument:
    """Validate an incoming document. Anything malformed raises ValidationError."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"scene document is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValidationError("scene document must be a JSON object")
    try:
        return SceneDocument.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid scene document: {_summarize(exc)}") from exc


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def serialize_scene(doc: SceneDocument) -> dict[str, Any]:
    """camelCase dict ready for json.dumps; missing zIndex values are filled in first."""
    return assign_default_z_indexes(doc).model_dump(by_alias=True)


def dumps_scene(doc: SceneDocument) -> str:
    return json.dumps(serialize_scene(doc))


def iter_elements(doc: SceneDocument) -> Iterator[tuple[ElementKind, AnyElement]]:
    """Every element, collection by collection in the fixed scan order."""
    for kind in KIND_ORDER:
        for element in doc.elements.collection(kind):
            yield kind, element


def assign_default_z_indexes(doc: SceneDocument) -> SceneDocument:
    # Pass one: who needs a default, in scan order.
    missing: list[tuple[ElementKind, int]] = []
    taken: list[int] = []
    for kind in KIND_ORDER:
        for idx, element in enumerate(doc.elements.collection(kind)):
            if element.z_index is None:
                missing.append((kind, idx))
            else:
                taken.append(element.z_index)
    if not missing:
        return doc

    # Pass two: sequential integers after the highest explicit value.
    next_z = max(taken) + 1 if taken else 0
    assigned: dict[tuple[ElementKind, int], int] = {}
    for key in missing:
        assigned[key] = next_z
        next_z += 1

    updates: dict[str, list[Any]] = {}
    for kind in KIND_ORDER:
        collection = doc.elements.collection(kind)
        updates[_COLLECTIONS[kind]] = [
            el.model_copy(update={"z_index": assigned[(kind, idx)]}) if (kind, idx) in assigned else el
            for idx, el in enumerate(collection)
        ]
    return doc.model_copy(update={"elements": doc.elements.model_copy(update=updates)})


def ordered_elements(doc: SceneDocument) -> list[tuple[ElementKind, AnyElement]]:
    """Elements in paint order: zIndex, then scan order, then declaration order."""
    doc = assign_default_z_indexes(doc)
    ranked = [
        (element.z_index, KIND_ORDER.index(kind), pos, kind, element)
        for pos, (kind, element) in enumerate(iter_elements(doc))
    ]
    ranked.sort(key=lambda r: (r[0], r[1], r[2]))
    return [(kind, element) for _, _, _, kind, element in ranked]


def ensure_same_dimensions(current: SceneDocument, incoming: SceneDocument) -> None:
    """A document keeps the canvas extent it was first saved with."""
    if (current.dimensions.width, current.dimensions.height) != (incoming.dimensions.width, incoming.dimensions.height):
        raise ValidationError(
            f"dimensions cannot change from {current.dimensions.width}x{current.dimensions.height} "
            f"to {incoming.dimensions.width}x{incoming.dimensions.height}"
        )


def with_base_image(doc: SceneDocument, url: str | None) -> SceneDocument:
    assets = doc.assets.model_copy(update={"base_image": url or ""})
    return doc.model_copy(update={"assets": assets})


def apply_text_updates(doc: SceneDocument, text_updates: dict[str, str]) -> SceneDocument:
    """Copy of doc with the text of the named text-bearing elements replaced."""
    if not text_updates:
        return doc
    updates: dict[str, list[Any]] = {}
    for kind in ("text", "gradientText", "curvedText"):
        updates[_COLLECTIONS[kind]] = [
            el.model_copy(update={"text": text_updates[el.id]}) if el.id in text_updates else el
            for el in doc.elements.collection(kind)
        ]
    return doc.model_copy(update={"elements": doc.elements.model_copy(update=updates)})
