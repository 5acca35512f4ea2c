"""Unit tests for field-name normalization and rapidfuzz matching helpers."""

from __future__ import annotations

import pytest

from townplanner.utils.text_normalizer import (
    find_near_duplicate,
    fuzzy_match,
    normalize_field_name,
    value_in_text,
    word_count,
)


class TestNormalizeFieldName:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Report Issued-Date", "report_issued_date"),
            ("DateOfReport", "date_of_report"),
            ("  Lot / DP ", "lot_dp"),
            ("Café Name", "cafe_name"),
            ("site_address", "site_address"),
        ],
    )
    def test_normalization(self, name: str, expected: str) -> None:
        assert normalize_field_name(name) == expected

    def test_punctuation_only_normalizes_to_empty(self) -> None:
        assert normalize_field_name(" -- ") == ""


class TestFindNearDuplicate:
    def test_exact_match_after_normalization(self) -> None:
        assert find_near_duplicate("Site Address", ["site_address", "zoning"]) == "site_address"

    def test_substring_match(self) -> None:
        assert find_near_duplicate("address", ["site_address", "zoning"]) == "site_address"

    def test_fuzzy_match_on_typo(self) -> None:
        assert find_near_duplicate("Prepared Fro", ["prepared_for", "zoning"], threshold=0.85) == "prepared_for"

    def test_no_match(self) -> None:
        assert find_near_duplicate("heritage listing", ["zoning", "lot_dp"]) is None
        assert find_near_duplicate("", ["zoning"]) is None
        assert find_near_duplicate("zoning", []) is None


class TestFuzzyMatch:
    def test_word_order_is_ignored(self) -> None:
        assert fuzzy_match("report date", ["date report", "zoning"]) == ("date report", 1.0)

    def test_below_threshold(self) -> None:
        assert fuzzy_match("heritage", ["parking"], threshold=0.9) is None
        assert fuzzy_match("anything", []) is None


class TestValueInText:
    def test_exact_containment(self) -> None:
        assert value_in_text("R2 Low Density", "Zoned R2 low density residential") == 1.0

    def test_fuzzy_containment_across_line_break(self) -> None:
        assert value_in_text("12 Smith Street", "Site: 12 Smith\nStreet, Paddington") >= 0.9

    def test_short_or_missing_values(self) -> None:
        assert value_in_text("R2", "zoned R3") == 0.0
        assert value_in_text("", "anything") == 0.0
        assert value_in_text("Heritage conservation area", "") == 0.0


def test_word_count() -> None:
    assert word_count("  two  words ") == 2
