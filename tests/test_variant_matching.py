from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from conftest import PRODUCT_ID, variant
from variant_forge.variants import (
    VariantCombination,
    combination_key,
    combinations_from_variants,
    list_combinations,
    match_variants,
    normalize_option_value,
    selling_product_id,
)


@dataclass
class _Tpl:
    template_id: str
    color_variant: str | None
    pattern: str = ""


@pytest.mark.parametrize("value", ["Light Blue", "light blue", "light-blue", "LIGHT_BLUE", "  Light   Blue "])
def test_light_blue_spellings_normalize_together(value):
    assert normalize_option_value(value) == "light-blue"


def test_grey_and_gray_are_the_same_chip():
    assert normalize_option_value("Gray") == normalize_option_value("grey") == "gray"
    assert normalize_option_value("Dark Grey") == "dark-gray"


def test_empty_values_normalize_to_empty():
    assert normalize_option_value(None) == ""
    assert normalize_option_value("   ") == ""


def test_combination_key_treats_missing_pattern_as_empty():
    assert combination_key("Blue", None) == ("blue", "")
    assert combination_key("blue", "") == combination_key("Blue", None)


def test_combinations_from_variants_skips_colorless_and_duplicates():
    combos = combinations_from_variants(
        [
            variant("1", "Red"),
            variant("2", None),
            variant("3", "red", pattern="classic"),
            variant("4", "Blue", pattern=None),
        ]
    )
    assert [(c.variant_id, c.color, c.pattern) for c in combos] == [("1", "Red", "Classic"), ("4", "Blue", "")]


def test_list_combinations_uses_platform(platform):
    combos = asyncio.run(list_combinations(platform, PRODUCT_ID))
    assert [c.key for c in combos] == [
        ("red", "classic"),
        ("blue", "classic"),
        ("light-blue", "classic"),
        ("gray", "classic"),
        ("mauve", "classic"),
    ]
    assert combos[1].image_url == "https://cdn.test/blue.png"


def test_match_reports_both_sides():
    combos = [
        VariantCombination("Blue", "Classic", "v1", None),
        VariantCombination("Grey", "Classic", "v2", None),
        VariantCombination("Pink", "Classic", "v3", None),
    ]
    templates = [
        _Tpl("t1", "blue", "classic"),
        _Tpl("t2", "Gray", "Classic"),
        _Tpl("t3", "Orange", "Classic"),
        _Tpl("t4", "Blue", "Striped"),
    ]
    report = match_variants(templates, combos)
    assert [(t.template_id, c.variant_id) for t, c in report.matched] == [("t1", "v1"), ("t2", "v2")]
    assert [t.template_id for t in report.unmatched_templates] == ["t3", "t4"]
    assert [c.variant_id for c in report.uncovered_combinations] == ["v3"]

    summary = report.summary()
    assert summary["matched"] == 2
    assert summary["unmatchedTemplates"][0] == {"id": "t3", "color": "Orange", "pattern": "Classic"}
    assert summary["uncoveredCombinations"][0]["variantId"] == "v3"


def test_one_combination_matches_one_template():
    combos = [VariantCombination("Blue", "", "v1", None)]
    report = match_variants([_Tpl("a", "Blue"), _Tpl("b", "blue")], combos)
    assert len(report.matched) == 1
    assert [t.template_id for t in report.unmatched_templates] == ["b"]


def test_selling_product_id_mapping():
    assert selling_product_id("gid://a", {"gid://a": "gid://b"}) == "gid://b"
    assert selling_product_id("gid://c", {"gid://a": "gid://b"}) == "gid://c"
