"""Tests for post-filtering and final coordinate mapping."""

import pytest

from scallop_analysis.core.postfilter import (
    interpolate_results,
    is_inside,
    remove_inside_points,
    resolve_category,
)
from scallop_analysis.models import Candidate, Category


class TestContainment:
    """Tests for nested-positive removal."""

    def test_is_inside(self):
        """Test containment with the outer radius slack."""
        outer = Candidate(r=50, c=50, major=20, minor=20)

        assert is_inside(Candidate(r=55, c=50, major=10, minor=10), outer)
        assert is_inside(Candidate(r=50, c=60, major=11, minor=11), outer)
        assert not is_inside(Candidate(r=50, c=70, major=10, minor=10), outer)
        assert not is_inside(Candidate(r=50, c=50, major=25, minor=25), outer)

    def test_keeps_outermost(self):
        """Test that a chain of nested positives collapses to the largest."""
        small = Candidate(r=50, c=50, major=5, minor=5)
        medium = Candidate(r=51, c=50, major=12, minor=12)
        large = Candidate(r=50, c=50, major=20, minor=20)
        separate = Candidate(r=150, c=150, major=8, minor=8)

        kept = remove_inside_points([small, separate, medium, large])

        assert kept == [large, separate]

    def test_overlapping_not_removed(self):
        """Test that partially overlapping positives both survive."""
        a = Candidate(r=50, c=50, major=15, minor=15)
        b = Candidate(r=50, c=65, major=15, minor=15)

        assert len(remove_inside_points([a, b])) == 2


class TestResolveCategory:
    """Tests for choosing the final category."""

    def test_highest_score_wins(self):
        """Test that the best scoring category is chosen."""
        cd = Candidate(r=0, c=0, major=5, minor=5, label=Category.OTHER)
        cd.class_scores = {Category.BROWN_SCALLOP: 0.3, Category.SAND_DOLLAR: 0.8}

        assert resolve_category(cd) == Category.SAND_DOLLAR

    def test_label_fallback(self):
        """Test that the label is used when there are no scores."""
        cd = Candidate(r=0, c=0, major=5, minor=5, label=Category.WHITE_SCALLOP)

        assert resolve_category(cd) == Category.WHITE_SCALLOP

    def test_unmapped_is_other(self):
        """Test that an unlabeled positive becomes OTHER."""
        assert resolve_category(Candidate(r=0, c=0, major=5, minor=5)) == Category.OTHER


class TestInterpolateResults:
    """Tests for mapping detections back to original pixels."""

    def test_scales_by_inverse_factor(self):
        """Test that geometry is divided by the resize factor."""
        cd = Candidate(r=40, c=60, major=10, minor=8, angle=30, label=Category.BROWN_SCALLOP)

        det = interpolate_results([cd], resize_factor=0.5)[0]

        assert (det.r, det.c, det.major, det.minor) == (80, 120, 20, 16)
        assert det.angle == 30
        assert det.category == Category.BROWN_SCALLOP

    def test_unit_factor(self):
        """Test that a factor of one leaves geometry unchanged."""
        cd = Candidate(r=40.5, c=60.25, major=10, minor=10)

        det = interpolate_results([cd])[0]

        assert det.r == pytest.approx(40.5)
        assert det.c == pytest.approx(60.25)

    def test_record_layout(self):
        """Test the six-field detection record."""
        cd = Candidate(r=10, c=20, major=6, minor=4, angle=45, label=Category.SAND_DOLLAR)

        record = interpolate_results([cd])[0].to_record()

        assert record == ["sand_dollar", 10, 20, 45, 6, 4]
