"""Curved-text arc geometry.

Both the editor (through the API) and the headless renderer lay out curved text
with these functions. Any second implementation, even one with a different
text-width estimate, makes previews drift from the final output.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from variant_forge.scene.model import CurvedTextElement

MAX_ANGLE_SPAN = 1.5 * math.pi
# Average glyph advance as a fraction of the font size.
GLYPH_WIDTH_RATIO = 0.6


@dataclass(frozen=True)
class ArcLayout:
    radius: float
    angle_span: float
    start_angle: float
    end_angle: float
    sweep_flag: int  # 1 = clockwise, 0 = counter-clockwise
    large_arc_flag: int
    center_y: float
    start: tuple[float, float]
    end: tuple[float, float]
    path: str

    @property
    def arc_length(self) -> float:
        return self.angle_span * self.radius

    def to_dict(self) -> dict[str, object]:
        return {
            "radius": self.radius,
            "angleSpan": self.angle_span,
            "startAngle": self.start_angle,
            "endAngle": self.end_angle,
            "sweepFlag": self.sweep_flag,
            "largeArcFlag": self.large_arc_flag,
            "centerY": self.center_y,
            "start": {"x": self.start[0], "y": self.start[1]},
            "end": {"x": self.end[0], "y": self.end[1]},
            "path": self.path,
        }


@dataclass(frozen=True)
class GlyphPlacement:
    char: str
    x: float
    y: float
    rotation_deg: float  # clockwise, screen coordinates
    advance: float


def estimate_text_length(text: str, font_size: float) -> float:
    return len(text) * float(font_size) * GLYPH_WIDTH_RATIO


def center_y_for(top_y: float, radius: float, flipped: bool) -> float:
    # Unflipped pins the top edge of the circle, flipped pins the bottom edge.
    return top_y - radius if flipped else top_y + radius


def top_y_from_center(center_y: float, radius: float, flipped: bool) -> float:
    return center_y + radius if flipped else center_y - radius


def arc_layout(text_length: float, radius: float, flipped: bool, top_y: float = 0.0) -> ArcLayout:
    if radius <= 0:
        raise ValueError("radius must be positive")
    radius = float(radius)
    angle_span = min(max(text_length, 0.0) / radius, MAX_ANGLE_SPAN)

    if not flipped:
        start_angle = -math.pi / 2 - angle_span / 2
        end_angle = -math.pi / 2 + angle_span / 2
        sweep_flag = 1
    else:
        # Runs right to left along the bottom so glyphs still read left to right.
        start_angle = math.pi / 2 + angle_span / 2
        end_angle = math.pi / 2 - angle_span / 2
        sweep_flag = 0

    start = (math.cos(start_angle) * radius, math.sin(start_angle) * radius)
    end = (math.cos(end_angle) * radius, math.sin(end_angle) * radius)
    large_arc_flag = 1 if angle_span > math.pi else 0
    path = f"M {_fmt(start[0])},{_fmt(start[1])} A {_fmt(radius)},{_fmt(radius)} 0 {large_arc_flag},{sweep_flag} {_fmt(end[0])},{_fmt(end[1])}"

    return ArcLayout(
        radius=radius,
        angle_span=angle_span,
        start_angle=start_angle,
        end_angle=end_angle,
        sweep_flag=sweep_flag,
        large_arc_flag=large_arc_flag,
        center_y=center_y_for(float(top_y), radius, flipped),
        start=start,
        end=end,
        path=path,
    )


def curved_text_layout(element: CurvedTextElement) -> ArcLayout:
    length = estimate_text_length(element.text, element.font_size)
    return arc_layout(length, element.radius, element.flipped, element.top_y)


def resize_radius(element: CurvedTextElement, new_radius: float) -> CurvedTextElement:
    """Change the radius while keeping the pinned edge where the user left it."""
    if new_radius <= 0:
        raise ValueError("radius must be positive")
    update: dict[str, object] = {"radius": new_radius}
    if element.flipped:
        update["top_y"] = element.top_y + 2 * (new_radius - element.radius)
    return element.model_copy(update=update)


def toggle_flip(element: CurvedTextElement) -> CurvedTextElement:
    return element.model_copy(update={"flipped": not element.flipped})


def move_to_center(element: CurvedTextElement, x: float, center_y: float) -> CurvedTextElement:
    """Apply a drag that left the group origin at (x, center_y)."""
    return element.model_copy(
        update={"x": x, "top_y": top_y_from_center(center_y, element.radius, element.flipped)}
    )


def glyph_positions(layout: ArcLayout, advances: list[tuple[str, float]]) -> list[GlyphPlacement]:
    """Place glyphs centred along the arc, relative to the circle centre.

    `advances` holds (char, measured advance) pairs. Text longer than the arc
    keeps going past its ends rather than being squeezed.
    """
    total = sum(a for _, a in advances)
    direction = 1.0 if layout.sweep_flag == 1 else -1.0
    offset = (layout.arc_length - total) / 2
    out: list[GlyphPlacement] = []
    for char, advance in advances:
        mid = offset + advance / 2
        angle = layout.start_angle + direction * mid / layout.radius
        tangent = angle + direction * math.pi / 2
        out.append(
            GlyphPlacement(
                char=char,
                x=math.cos(angle) * layout.radius,
                y=math.sin(angle) * layout.radius,
                rotation_deg=math.degrees(tangent),
                advance=advance,
            )
        )
        offset += advance
    return out


def _fmt(value: float) -> str:
    text = f"{value:.4f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text
