"""
Tests for poststratification math in analysis/poststrat.py.

Small hand-computed inputs: every expected value below can be checked on paper.

Run: uv run pytest tests/test_poststrat.py -v
"""

import sys
from pathlib import Path

import numpy as np
import polars as pl
import pytest

# Add project root to path so we can import analysis.poststrat
sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.poststrat import (
    cell_probabilities,
    poststratify,
    poststratify_by,
    raw_group_means,
    summarize_draws,
    true_group_means,
)

# ── cell_probabilities ───────────────────────────────────────────────────────


class TestCellProbabilities:
    """Inverse-logit of the linear predictor, one column per cell."""

    @staticmethod
    def _zeros(n_draws: int, n_levels: int) -> np.ndarray:
        return np.zeros((n_draws, n_levels))

    def test_all_zero_gives_half(self):
        p = cell_probabilities(
            intercept=np.zeros(3),
            beta=np.zeros(3),
            a_age=self._zeros(3, 2),
            a_income=self._zeros(3, 2),
            a_state=self._zeros(3, 2),
            z_income=np.array([-1.0, 1.0]),
            age_idx=np.array([0, 1, 0, 1]),
            income_idx=np.array([0, 0, 1, 1]),
            state_idx=np.array([0, 0, 1, 1]),
        )
        assert p.shape == (3, 4)
        np.testing.assert_allclose(p, 0.5)

    def test_effects_add_on_logit_scale(self):
        """intercept 0.5 + beta 1 * z(-1) + age 0.2 + income -0.3 + state 0.6 = 0.0"""
        p = cell_probabilities(
            intercept=np.array([0.5]),
            beta=np.array([1.0]),
            a_age=np.array([[0.2, 0.0]]),
            a_income=np.array([[-0.3, 0.0]]),
            a_state=np.array([[0.6, 0.0]]),
            z_income=np.array([-1.0, 1.0]),
            age_idx=np.array([0]),
            income_idx=np.array([0]),
            state_idx=np.array([0]),
        )
        assert p[0, 0] == pytest.approx(0.5)

    def test_state_income_slope_orders_states(self):
        p = cell_probabilities(
            intercept=0.0,
            beta=2.0,
            a_age=np.zeros(1),
            a_income=np.zeros(1),
            a_state=np.zeros(2),
            z_income=np.array([-1.0, 1.0]),
            age_idx=np.array([0, 0]),
            income_idx=np.array([0, 0]),
            state_idx=np.array([0, 1]),
        )
        assert p.shape == (1, 2)
        assert p[0, 1] > p[0, 0]

    def test_draw_count_mismatch_raises(self):
        with pytest.raises(ValueError, match="a_state"):
            cell_probabilities(
                intercept=np.zeros(3),
                beta=np.zeros(3),
                a_age=self._zeros(3, 2),
                a_income=self._zeros(3, 2),
                a_state=self._zeros(2, 2),
                z_income=np.zeros(2),
                age_idx=np.array([0]),
                income_idx=np.array([0]),
                state_idx=np.array([0]),
            )


# ── poststratify ─────────────────────────────────────────────────────────────


class TestPoststratify:
    """Population-weighted average over cells."""

    def test_weighted_mean(self):
        # (0.2 * 1 + 0.8 * 3) / 4 = 0.65
        out = poststratify(np.array([[0.2, 0.8]]), np.array([1, 3]))
        np.testing.assert_allclose(out, [0.65])

    def test_one_value_per_draw(self):
        cell_p = np.array([[0.2, 0.8], [0.4, 0.4], [1.0, 0.0]])
        out = poststratify(cell_p, np.array([1, 1]))
        np.testing.assert_allclose(out, [0.5, 0.4, 0.5])

    def test_equal_cells_return_cell_value(self):
        out = poststratify(np.full((2, 5), 0.3), np.array([1, 10, 100, 1000, 5]))
        np.testing.assert_allclose(out, [0.3, 0.3])

    def test_zero_weight_cell_ignored(self):
        out = poststratify(np.array([[0.9, 0.1]]), np.array([0, 7]))
        np.testing.assert_allclose(out, [0.1])

    def test_shape_mismatch_raises(self):
        with pytest.raises(ValueError, match="cells"):
            poststratify(np.array([[0.2, 0.8]]), np.array([1, 2, 3]))

    def test_zero_population_raises(self):
        with pytest.raises(ValueError, match="zero"):
            poststratify(np.array([[0.2, 0.8]]), np.array([0, 0]))

    def test_negative_counts_raise(self):
        with pytest.raises(ValueError, match="non-negative"):
            poststratify(np.array([[0.2, 0.8]]), np.array([-1, 2]))


# ── poststratify_by ──────────────────────────────────────────────────────────


class TestPoststratifyBy:
    """Population-weighted average within each group."""

    def test_group_means(self):
        # group 0: (0.2*1 + 0.4*1)/2 = 0.3 ; group 1: 0.9
        out = poststratify_by(
            np.array([[0.2, 0.4, 0.9]]),
            n=np.array([1, 1, 2]),
            group_idx=np.array([0, 0, 1]),
            n_groups=2,
        )
        np.testing.assert_allclose(out, [[0.3, 0.9]])

    def test_shape_draws_by_groups(self):
        out = poststratify_by(
            np.random.default_rng(0).uniform(size=(7, 4)),
            n=np.ones(4),
            group_idx=np.array([0, 1, 2, 2]),
            n_groups=3,
        )
        assert out.shape == (7, 3)

    def test_groups_consistent_with_overall(self):
        """Population-weighted average of group estimates equals the overall estimate."""
        rng = np.random.default_rng(1)
        cell_p = rng.uniform(size=(5, 6))
        n = rng.integers(1, 100, size=6)
        group_idx = np.array([0, 1, 0, 2, 1, 2])
        by_group = poststratify_by(cell_p, n, group_idx, 3)
        group_n = np.bincount(group_idx, weights=n)
        np.testing.assert_allclose(by_group @ group_n / n.sum(), poststratify(cell_p, n))

    def test_empty_group_is_nan(self):
        out = poststratify_by(
            np.array([[0.2, 0.4]]),
            n=np.array([1, 1]),
            group_idx=np.array([0, 0]),
            n_groups=2,
        )
        assert out[0, 0] == pytest.approx(0.3)
        assert np.isnan(out[0, 1])

    def test_group_out_of_range_raises(self):
        with pytest.raises(ValueError, match="group_idx"):
            poststratify_by(
                np.array([[0.2, 0.4]]),
                n=np.array([1, 1]),
                group_idx=np.array([0, 2]),
                n_groups=2,
            )

    def test_group_length_mismatch_raises(self):
        with pytest.raises(ValueError, match="one entry per cell"):
            poststratify_by(
                np.array([[0.2, 0.4]]),
                n=np.array([1, 1]),
                group_idx=np.array([0]),
                n_groups=1,
            )


# ── summarize_draws ──────────────────────────────────────────────────────────


class TestSummarizeDraws:
    def test_columns(self):
        out = summarize_draws(np.random.default_rng(0).normal(size=(200, 3)))
        assert out.columns == ["mean", "sd", "hdi_low", "hdi_high"]
        assert out.height == 3

    def test_constant_draws(self):
        out = summarize_draws(np.full(100, 0.4)).row(0, named=True)
        assert out["mean"] == pytest.approx(0.4)
        assert out["sd"] == pytest.approx(0.0)
        assert out["hdi_low"] == pytest.approx(0.4)
        assert out["hdi_high"] == pytest.approx(0.4)

    def test_hdi_brackets_mean(self):
        draws = np.random.default_rng(2).normal(loc=1.0, scale=0.5, size=2000)
        row = summarize_draws(draws).row(0, named=True)
        assert row["hdi_low"] < row["mean"] < row["hdi_high"]
        assert row["hdi_low"] == pytest.approx(1.0 - 1.96 * 0.5, abs=0.1)
        assert row["hdi_high"] == pytest.approx(1.0 + 1.96 * 0.5, abs=0.1)

    def test_narrower_prob_narrower_interval(self):
        draws = np.random.default_rng(3).normal(size=2000)
        wide = summarize_draws(draws, hdi_prob=0.95).row(0, named=True)
        narrow = summarize_draws(draws, hdi_prob=0.5).row(0, named=True)
        assert narrow["hdi_high"] - narrow["hdi_low"] < wide["hdi_high"] - wide["hdi_low"]

    def test_all_nan_column(self):
        draws = np.column_stack([np.full(50, np.nan), np.full(50, 0.5)])
        out = summarize_draws(draws)
        assert np.isnan(out["mean"][0])
        assert out["mean"][1] == pytest.approx(0.5)


# ── raw / true group means ───────────────────────────────────────────────────


class TestRawGroupMeans:
    @pytest.fixture
    def survey(self) -> pl.DataFrame:
        return pl.DataFrame(
            {
                "age": [0, 0, 0, 2, 2],
                "outcome": [1, 0, 1, 0, 0],
            }
        )

    def test_means(self, survey):
        out = raw_group_means(survey, "age", 3)
        assert out["raw_mean"][0] == pytest.approx(2 / 3)
        assert out["raw_mean"][2] == pytest.approx(0.0)

    def test_missing_level_is_null_with_zero_count(self, survey):
        out = raw_group_means(survey, "age", 3)
        assert out["raw_mean"][1] is None
        assert out["n_respondents"].to_list() == [3, 0, 2]

    def test_one_row_per_level(self, survey):
        out = raw_group_means(survey, "age", 4)
        assert out["age"].to_list() == [0, 1, 2, 3]


class TestTrueGroupMeans:
    def test_weighted(self):
        population = pl.DataFrame(
            {
                "state": [0, 0, 1],
                "n": [1, 3, 5],
                "true_p": [0.2, 0.6, 0.9],
            }
        )
        out = true_group_means(population, "state", 2)
        assert out["true_mean"][0] == pytest.approx(0.5)
        assert out["true_mean"][1] == pytest.approx(0.9)
        assert out["population"].to_list() == [4, 5]
