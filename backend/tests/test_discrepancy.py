"""
Discrepancy Classification Tests — submitted vs collected garment counts.
"""

import pytest

from audits.discrepancy import (
    NO_GARMENTS_COLLECTED,
    GarmentCounts,
    classify,
    compose_notes,
    explain,
    validate_counts,
)
from core.errors import ValidationError


class TestClassify:
    def test_matching_counts_have_no_discrepancy(self):
        result = classify(GarmentCounts(2, 1), GarmentCounts(2, 1))
        assert not result.has_discrepancy
        assert result.dark_delta == 0
        assert result.light_delta == 0
        assert result.explanation is None

    def test_deltas_are_collected_minus_submitted(self):
        result = classify(GarmentCounts(3, 2), GarmentCounts(2, 4))
        assert result.dark_delta == -1
        assert result.light_delta == 2
        assert result.has_discrepancy

    def test_nothing_collected_short_circuits(self):
        result = classify(GarmentCounts(3, 2), GarmentCounts(0, 0))
        assert result.explanation == NO_GARMENTS_COLLECTED
        assert result.explanation == "No garments collected at all"
        assert result.dark_delta == -3
        assert result.light_delta == -2

    def test_zero_submitted_and_zero_collected_matches(self):
        result = classify(GarmentCounts(0, 0), GarmentCounts(0, 0))
        assert not result.has_discrepancy
        assert result.explanation is None


class TestExplain:
    def test_more_collected_than_submitted(self):
        # submitted (dark=2, light=1), collected (dark=3, light=1)
        assert explain(GarmentCounts(2, 1), GarmentCounts(3, 1)) == "Dark garments: collected 3 exceeds submitted 2"

    def test_fewer_collected(self):
        assert explain(GarmentCounts(2, 3), GarmentCounts(2, 1)) == "Light garments: collected 1 fewer than submitted 3"

    def test_one_type_none_collected(self):
        assert explain(GarmentCounts(2, 3), GarmentCounts(0, 3)) == "Dark garments: none collected (submitted 2)"

    def test_both_types_joined_dark_first(self):
        text = explain(GarmentCounts(2, 3), GarmentCounts(4, 1))
        assert text == (
            "Dark garments: collected 4 exceeds submitted 2; "
            "Light garments: collected 1 fewer than submitted 3"
        )

    def test_is_deterministic(self):
        a = explain(GarmentCounts(5, 0), GarmentCounts(1, 2))
        b = explain(GarmentCounts(5, 0), GarmentCounts(1, 2))
        assert a == b


class TestComposeNotes:
    def test_notes_appended_after_explanation(self):
        assert (
            compose_notes("Dark garments: none collected (submitted 2)", "parent will bring later")
            == "Dark garments: none collected (submitted 2) | Auditor notes: parent will bring later"
        )

    def test_blank_notes_ignored(self):
        assert compose_notes("No garments collected at all", "   ") == "No garments collected at all"

    def test_notes_only_when_no_discrepancy(self):
        assert compose_notes(None, "all good") == "all good"

    def test_nothing_at_all(self):
        assert compose_notes(None, None) is None


class TestValidateCounts:
    def test_accepts_zero(self):
        assert validate_counts(0, 0) == GarmentCounts(0, 0)

    @pytest.mark.parametrize("dark,light", [(-1, 0), (0, -3)])
    def test_rejects_negative(self, dark, light):
        with pytest.raises(ValidationError, match="negative"):
            validate_counts(dark, light)

    @pytest.mark.parametrize("value", [1.5, "2", True, None])
    def test_rejects_non_integers(self, value):
        with pytest.raises(ValidationError, match="integer"):
            validate_counts(value, 0)
