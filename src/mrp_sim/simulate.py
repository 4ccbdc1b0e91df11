"""Synthetic survey simulator for MRP experiments."""

from pathlib import Path

import numpy as np
import polars as pl
from scipy.special import expit

from mrp_sim.config import (
    DIRICHLET_CONCENTRATION,
    STATE_INCOME_RANGE,
    STATE_POPULATION_RANGE,
)
from mrp_sim.models import GroundTruth
from mrp_sim.output import save_simulation
from mrp_sim.scenario import Scenario


def standardize(values: np.ndarray) -> np.ndarray:
    """Center and scale to unit sd (population sd, ddof=0).

    A constant input maps to zeros rather than dividing by zero.
    """
    values = np.asarray(values, dtype=float)
    sd = values.std()
    if sd == 0:
        return np.zeros_like(values)
    return (values - values.mean()) / sd


def true_population_mean(population: pl.DataFrame) -> float:
    """N-weighted mean of the true cell probabilities."""
    n = population["n"].to_numpy().astype(float)
    p = population["true_p"].to_numpy()
    return float(p @ n / n.sum())


class SurveySimulator:
    """Draws a population, its true opinion, and a biased survey of it.

    The generating model is the one the analysis fits:

        logit p = intercept + beta * z(state_income)
                  + a_age[age] + a_income[income] + a_state[state]
        a_k ~ Normal(0, sigma_k)

    Respondents are sampled in proportion to cell size times a response
    propensity that rises with age group, so the raw sample over-represents
    older groups.
    """

    def __init__(self, scenario: Scenario, output_dir: Path | None = None):
        self.scenario = scenario
        self.output_dir = output_dir or scenario.data_dir
        self.rng = np.random.default_rng(scenario.seed)

    def draw_truth(self) -> GroundTruth:
        """Draw group effects and per-state average income."""
        s = self.scenario
        lo, hi = STATE_INCOME_RANGE
        return GroundTruth(
            intercept=s.intercept,
            beta_state_income=s.beta_state_income,
            sigma_age=s.sigma_age,
            sigma_income=s.sigma_income,
            sigma_state=s.sigma_state,
            age_effects=self.rng.normal(0.0, s.sigma_age, s.n_age).tolist(),
            income_effects=self.rng.normal(0.0, s.sigma_income, s.n_income).tolist(),
            state_effects=self.rng.normal(0.0, s.sigma_state, s.n_states).tolist(),
            state_income=np.round(self.rng.uniform(lo, hi, s.n_states), 2).tolist(),
        )

    def build_population(self, truth: GroundTruth) -> pl.DataFrame:
        """Build the poststratification table: one row per (state, age, income) cell.

        Cells are ordered state-major, then age, then income; cell_id is the
        row position.
        """
        s = self.scenario
        state, age, income = (
            a.ravel()
            for a in np.meshgrid(
                np.arange(s.n_states), np.arange(s.n_age), np.arange(s.n_income), indexing="ij"
            )
        )

        # Log-uniform state sizes; age/income shares vary by state
        lo, hi = STATE_POPULATION_RANGE
        state_size = np.exp(self.rng.uniform(np.log(lo), np.log(hi), s.n_states))
        age_share = self.rng.dirichlet(np.full(s.n_age, DIRICHLET_CONCENTRATION), s.n_states)
        income_share = self.rng.dirichlet(
            np.full(s.n_income, DIRICHLET_CONCENTRATION), s.n_states
        )
        n = np.maximum(
            np.rint(state_size[state] * age_share[state, age] * income_share[state, income]),
            1,
        ).astype(np.int64)

        state_income = np.asarray(truth.state_income)
        z_income = standardize(state_income)
        eta = (
            truth.intercept
            + truth.beta_state_income * z_income[state]
            + np.asarray(truth.age_effects)[age]
            + np.asarray(truth.income_effects)[income]
            + np.asarray(truth.state_effects)[state]
        )

        return pl.DataFrame(
            {
                "cell_id": np.arange(s.n_cells),
                "age": age,
                "income": income,
                "state": state,
                "state_income": state_income[state],
                "n": n,
                "true_p": expit(eta),
            }
        )

    def draw_survey(self, population: pl.DataFrame) -> pl.DataFrame:
        """Sample respondents from the population with age-dependent nonresponse."""
        s = self.scenario
        age = population["age"].to_numpy()
        n = population["n"].to_numpy().astype(float)

        # Propensity centered on the middle age group
        propensity = expit(s.response_bias * (age - (s.n_age - 1) / 2))
        weights = n * propensity
        cells = self.rng.choice(population.height, size=s.sample_size, p=weights / weights.sum())

        true_p = population["true_p"].to_numpy()[cells]
        outcome = self.rng.binomial(1, true_p)

        return pl.DataFrame(
            {
                "respondent_id": np.arange(s.sample_size),
                "age": age[cells],
                "income": population["income"].to_numpy()[cells],
                "state": population["state"].to_numpy()[cells],
                "state_income": population["state_income"].to_numpy()[cells],
                "outcome": outcome.astype(np.int64),
            }
        )

    def run(self, save: bool = True) -> tuple[pl.DataFrame, pl.DataFrame, GroundTruth]:
        """Simulate truth, population and survey; optionally write them to output_dir."""
        print(f"Simulating: {self.scenario.label} (seed={self.scenario.seed})")
        truth = self.draw_truth()
        population = self.build_population(truth)
        truth.population_p = true_population_mean(population)
        survey = self.draw_survey(population)

        print(f"  Population cells: {population.height:,} ({int(population['n'].sum()):,} people)")
        print(f"  Respondents:      {survey.height:,}")
        print(f"  Raw sample mean:  {survey['outcome'].mean():.3f}")
        print(f"  True population:  {truth.population_p:.3f}")

        if save:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            save_simulation(
                output_dir=self.output_dir,
                output_name=self.scenario.output_name,
                survey=survey,
                population=population,
                truth=truth,
                scenario=self.scenario,
            )
        return survey, population, truth
