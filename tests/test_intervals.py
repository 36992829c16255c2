"""
Tests for Percentile Intervals
==============================
"""

import math

import numpy as np
import pytest

from conjoint.errors import ConfigurationError, InsufficientDrawsError
from conjoint.intervals import collect_columns, percentile_interval, summarize
from conjoint.models import EstimandKind


@pytest.mark.unit
class TestPercentileInterval:
    """Tests for percentile_interval."""

    def test_one_to_hundred(self):
        draws = list(range(1, 101))
        point, lower, upper = percentile_interval(draws, alpha=0.05)
        assert point == pytest.approx(50.5)
        # Linear interpolation: 1 + 0.025 * 99 and 1 + 0.975 * 99
        assert lower == pytest.approx(3.475)
        assert upper == pytest.approx(97.525)
        assert lower == pytest.approx(np.percentile(draws, 2.5))
        assert upper == pytest.approx(np.percentile(draws, 97.5))
        assert lower <= point <= upper

    def test_order_does_not_matter(self):
        draws = [5.0, 1.0, 4.0, 2.0, 3.0]
        assert percentile_interval(draws, 0.1) == percentile_interval(sorted(draws), 0.1)

    def test_nan_draws_are_dropped(self):
        point, lower, upper = percentile_interval([1.0, math.nan, 3.0], alpha=0.5)
        assert point == pytest.approx(2.0)
        assert lower == pytest.approx(1.5)
        assert upper == pytest.approx(2.5)

    @pytest.mark.parametrize("draws", [[], [1.0], [math.nan, 2.0], [math.nan, math.nan]])
    def test_fewer_than_two_valid_draws(self, draws):
        with pytest.raises(InsufficientDrawsError):
            percentile_interval(draws, 0.05)

    @pytest.mark.parametrize("alpha", [0.0, 1.0, -0.1, 1.5])
    def test_alpha_out_of_range(self, alpha):
        with pytest.raises(ConfigurationError):
            percentile_interval([1.0, 2.0, 3.0], alpha)


@pytest.mark.unit
class TestSummarize:
    """Tests for building estimands from draws."""

    def test_interval_fields(self):
        e = summarize([0.1, 0.2, 0.3, 0.4], 0.1, kind=EstimandKind.AMCE, attribute="price", level="$3")
        assert e.estimate == pytest.approx(0.25)
        assert e.has_interval
        assert e.conf_level == pytest.approx(0.9)
        assert e.n_draws == 4
        assert e.attribute == "price"

    def test_single_draw_is_point_only(self):
        e = summarize([0.42], kind=EstimandKind.MARGINAL_MEAN, attribute="flavor", level="nuts")
        assert e.estimate == 0.42
        assert not e.has_interval
        assert e.n_draws == 1

    def test_insufficient_draws_names_estimand(self):
        with pytest.raises(InsufficientDrawsError, match="level=nuts"):
            summarize([], kind=EstimandKind.MARGINAL_MEAN, attribute="flavor", level="nuts")

    def test_collect_columns(self):
        columns = collect_columns([{"a": 1.0, "b": 2.0}, {"a": 3.0, "b": 4.0}])
        assert columns == {"a": [1.0, 3.0], "b": [2.0, 4.0]}
