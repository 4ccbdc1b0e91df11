"""
Tests for scenario naming and validation in scenario.py.

Run: uv run pytest tests/test_scenario.py -v
"""

from pathlib import Path

import pytest

from mrp_sim.config import N_STATES, RANDOM_SEED, SAMPLE_SIZE
from mrp_sim.scenario import Scenario

# ── Defaults ─────────────────────────────────────────────────────────────────


class TestDefaults:
    """A bare Scenario() uses the config defaults."""

    def test_default_sample_size(self):
        assert Scenario().sample_size == SAMPLE_SIZE

    def test_default_seed(self):
        assert Scenario().seed == RANDOM_SEED

    def test_n_cells(self):
        s = Scenario(n_age=3, n_income=4, n_states=5)
        assert s.n_cells == 60

    def test_frozen(self):
        s = Scenario()
        with pytest.raises(AttributeError):
            s.seed = 7  # type: ignore[misc]


# ── Naming ───────────────────────────────────────────────────────────────────


class TestNaming:
    """output_name, label and data_dir are derived from the parameters."""

    def test_output_name(self):
        s = Scenario(sample_size=500, n_states=20, seed=3)
        assert s.output_name == "mrp_n500_s20_seed3"

    def test_default_output_name(self):
        assert Scenario().output_name == f"mrp_n{SAMPLE_SIZE}_s{N_STATES}_seed{RANDOM_SEED}"

    def test_non_default_factor_sizes_in_name(self):
        s = Scenario(n_age=3, n_income=2)
        assert s.output_name == f"mrp_n{SAMPLE_SIZE}_s{N_STATES}_a3_i2_seed{RANDOM_SEED}"

    def test_non_default_bias_in_name(self):
        assert Scenario(response_bias=0.0).output_name.endswith("_rb0")
        assert Scenario(response_bias=1.5).output_name.endswith("_rb150")

    def test_distinct_scenarios_get_distinct_names(self):
        """A changed factor size or bias never reuses the default data directory."""
        default = Scenario().output_name
        for changed in (
            Scenario(n_age=3),
            Scenario(n_income=2),
            Scenario(response_bias=0.0),
            Scenario(n_age=3, n_income=2, response_bias=0.0),
        ):
            assert changed.output_name != default

    def test_data_dir(self):
        s = Scenario(sample_size=500, seed=3)
        assert s.data_dir == Path("data") / s.output_name

    def test_label_mentions_sizes(self):
        s = Scenario(sample_size=800, n_states=10, n_age=4, n_income=3)
        assert s.label == "800 respondents, 10 states x 4 age x 3 income, bias 0.35"

    def test_to_dict_round_trip(self):
        s = Scenario(sample_size=321, seed=9, response_bias=0.0)
        assert Scenario(**s.to_dict()) == s


# ── from_string ──────────────────────────────────────────────────────────────


class TestFromString:
    """CLI shorthand parsing."""

    def test_sample_and_seed(self):
        s = Scenario.from_string("n800-seed7")
        assert s.sample_size == 800
        assert s.seed == 7
        assert s.n_states == N_STATES

    def test_sample_states_seed(self):
        s = Scenario.from_string("n800-s30-seed1")
        assert (s.sample_size, s.n_states, s.seed) == (800, 30, 1)

    def test_sample_only(self):
        s = Scenario.from_string("n250")
        assert s.sample_size == 250
        assert s.seed == RANDOM_SEED

    def test_underscores_accepted(self):
        assert Scenario.from_string("n800_seed7") == Scenario.from_string("n800-seed7")

    def test_output_name_parses_back(self):
        s = Scenario(sample_size=640, n_states=12, seed=5)
        assert Scenario.from_string(s.output_name) == s

    def test_factor_sizes_and_bias(self):
        s = Scenario.from_string("n800-s30-a3-i2-seed1-rb0")
        assert (s.n_age, s.n_income, s.n_states) == (3, 2, 30)
        assert s.response_bias == 0.0

    def test_full_name_parses_back(self):
        s = Scenario(sample_size=640, n_states=12, n_age=4, n_income=3, seed=5, response_bias=0.5)
        assert Scenario.from_string(s.output_name) == s

    def test_garbage_raises(self):
        with pytest.raises(ValueError, match="Unrecognized scenario"):
            Scenario.from_string("2025-26")


# ── Validation ───────────────────────────────────────────────────────────────


class TestValidation:
    """Invalid parameters raise ValueError at construction."""

    @pytest.mark.parametrize("field", ["n_age", "n_income", "n_states"])
    def test_single_level_factor_rejected(self, field):
        with pytest.raises(ValueError, match=field):
            Scenario(**{field: 1})

    def test_zero_sample_rejected(self):
        with pytest.raises(ValueError, match="sample_size"):
            Scenario(sample_size=0)

    def test_negative_sigma_rejected(self):
        with pytest.raises(ValueError, match="sigma_state"):
            Scenario(sigma_state=-0.1)

    def test_zero_sigma_allowed(self):
        assert Scenario(sigma_age=0.0).sigma_age == 0.0
