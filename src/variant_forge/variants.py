"""Variant matching: which (color, pattern) combinations the platform sells,
and which generated template belongs to each of them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from variant_forge.config import settings
from variant_forge.providers.base import CommercePlatform, PlatformVariant

logger = logging.getLogger(__name__)

COLOR_OPTION_NAMES = ("color", "colour")
PATTERN_OPTION_NAMES = ("edge pattern", "pattern")

_SPELLINGS = {"grey": "gray", "colour": "color", "colours": "colors"}
_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_option_value(value: str | None) -> str:
    """Fold case, separators and British spellings: "Light Blue" -> "light-blue", "Grey" -> "gray"."""
    if not value:
        return ""
    words = [w for w in _SEPARATORS.split(value.strip().lower()) if w]
    return "-".join(_SPELLINGS.get(w, w) for w in words)


def combination_key(color: str | None, pattern: str | None) -> tuple[str, str]:
    # The one place a (color, pattern) pair is reduced to something comparable.
    # An empty pattern is a valid value for single-pattern products.
    return (normalize_option_value(color), normalize_option_value(pattern))


def selling_product_id(source_product_id: str, mappings: dict[str, str] | None = None) -> str:
    mappings = settings.product_mappings if mappings is None else mappings
    return mappings.get(source_product_id, source_product_id)


@dataclass(frozen=True)
class VariantCombination:
    color: str
    pattern: str
    variant_id: str
    image_url: str | None
    title: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return combination_key(self.color, self.pattern)

    def to_dict(self) -> dict[str, Any]:
        return {
            "color": self.color,
            "pattern": self.pattern,
            "variantId": self.variant_id,
            "imageUrl": self.image_url,
            "title": self.title,
        }


def _option(options: dict[str, str], names: tuple[str, ...]) -> str | None:
    for name, value in options.items():
        if name.strip().lower() in names:
            return value
    return None


def variant_color(variant: PlatformVariant) -> str | None:
    return _option(variant.options, COLOR_OPTION_NAMES)


def variant_pattern(variant: PlatformVariant) -> str:
    return _option(variant.options, PATTERN_OPTION_NAMES) or ""


def combinations_from_variants(variants: list[PlatformVariant]) -> list[VariantCombination]:
    out: list[VariantCombination] = []
    seen: set[tuple[str, str]] = set()
    for variant in variants:
        color = variant_color(variant)
        if not color:
            logger.warning("variant %s has no color option, skipping", variant.variant_id)
            continue
        combo = VariantCombination(
            color=color,
            pattern=variant_pattern(variant),
            variant_id=variant.variant_id,
            image_url=variant.image_url,
            title=variant.title,
        )
        if combo.key in seen:
            logger.warning("duplicate variant for %s/%s (%s), keeping the first", combo.color, combo.pattern, combo.variant_id)
            continue
        seen.add(combo.key)
        out.append(combo)
    return out


async def list_combinations(platform: CommercePlatform, product_id: str) -> list[VariantCombination]:
    """Every (color, pattern) combination the product currently sells."""
    variants = await platform.list_product_variants(product_id)
    combos = combinations_from_variants(variants)
    logger.info("product %s: %d variants, %d color/pattern combinations", product_id, len(variants), len(combos))
    return combos


class HasCombination(Protocol):
    color_variant: str | None
    pattern: str


T = TypeVar("T", bound=HasCombination)


@dataclass
class MatchReport(Generic[T]):
    matched: list[tuple[T, VariantCombination]] = field(default_factory=list)
    unmatched_templates: list[T] = field(default_factory=list)
    uncovered_combinations: list[VariantCombination] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "matched": len(self.matched),
            "unmatchedTemplates": [
                {"id": getattr(t, "template_id", None), "color": t.color_variant, "pattern": t.pattern}
                for t in self.unmatched_templates
            ],
            "uncoveredCombinations": [c.to_dict() for c in self.uncovered_combinations],
        }


def match_variants(templates: list[T], combinations: list[VariantCombination]) -> MatchReport[T]:
    """Pair templates with platform variants by normalized (color, pattern).

    Nothing is dropped: templates without a variant and combinations without a
    template are both reported.
    """
    by_key = {combo.key: combo for combo in combinations}
    report: MatchReport[T] = MatchReport()
    used: set[tuple[str, str]] = set()
    for template in templates:
        key = combination_key(template.color_variant, template.pattern)
        combo = by_key.get(key)
        if combo is None or key in used:
            report.unmatched_templates.append(template)
            continue
        used.add(key)
        report.matched.append((template, combo))
    report.uncovered_combinations = [c for c in combinations if c.key not in used]
    return report
