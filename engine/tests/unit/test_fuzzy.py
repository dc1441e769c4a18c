"""Unit tests for fuzzy roster matching."""

from __future__ import annotations

import pytest

from nestscout.matching.fuzzy import best_match, edit_distance, normalize_name, similarity


class TestNormalizeName:

    @pytest.mark.parametrize(
        "raw",
        ["Living Room Light", "living-room_light", "LivingRoomLight", "  LIVING room light!"],
    )
    def test_variants_normalize_identically(self, raw: str) -> None:
        assert normalize_name(raw) == "livingroomlight"

    def test_none_and_empty(self) -> None:
        assert normalize_name(None) == ""
        assert normalize_name("") == ""
        assert normalize_name("--- ___") == ""


class TestEditDistance:

    def test_identical(self) -> None:
        assert edit_distance("lamp", "lamp") == 0

    def test_against_empty(self) -> None:
        assert edit_distance("", "lamp") == 4
        assert edit_distance("lamp", "") == 4

    def test_classic_example(self) -> None:
        assert edit_distance("kitten", "sitting") == 3

    def test_symmetric(self) -> None:
        assert edit_distance("flaw", "lawn") == edit_distance("lawn", "flaw") == 2


class TestSimilarity:

    def test_identical_after_normalization(self) -> None:
        assert similarity("Front Door", "front-door") == 1.0

    def test_both_empty_is_non_match(self) -> None:
        assert similarity("", "!!") == 0.0

    def test_one_empty(self) -> None:
        assert similarity("Lamp", None) == 0.0

    def test_partial(self) -> None:
        # "lamp" vs "lamps": one insertion over five characters
        assert similarity("Lamp", "Lamps") == pytest.approx(0.8)

    def test_bounded(self) -> None:
        value = similarity("Kitchen Speaker", "Garage Door")
        assert 0.0 <= value <= 1.0


class TestBestMatch:

    def test_empty_roster(self) -> None:
        assert best_match("Lamp", []) == (None, 0.0)

    def test_empty_name(self) -> None:
        assert best_match("", ["Lamp"]) == (None, 0.0)

    def test_picks_closest(self) -> None:
        name, score = best_match("Hall Lamp", ["Garage Door", "Hall Lamps", "Thermostat"])
        assert name == "Hall Lamps"
        assert score > 0.85

    def test_tie_keeps_first(self) -> None:
        name, score = best_match("abc", ["abd", "abe"])
        assert name == "abd"
        assert score == pytest.approx(2 / 3)
