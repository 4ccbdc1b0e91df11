"""
MRP — Multilevel Regression and Poststratification on a Simulated Survey

Fits a hierarchical Bayesian logistic regression to a deliberately unrepresentative
survey (older respondents over-sampled), then reweights the model's cell-level
predictions by the known population table. Because the survey is simulated, every
estimate is reported next to the generating truth and the raw sample mean.

Usage:
  uv run python analysis/mrp.py [--scenario n1200-seed42] [--data-dir ...] [--simulate]
      [--n-samples 1000] [--n-tune 1000] [--n-chains 4] [--target-accept 0.95]

Outputs (in results/<scenario>/mrp/<date>/):
  - data/:   Parquet files (parameters, national/age/income/state estimates) + NetCDF
  - plots/:  PNG visualizations (state forest, subgroups, national, traces, PPC, recovery)
  - filtering_manifest.json, run_info.json, run_log.txt
"""

from __future__ import annotations

import argparse
import json
import time
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
import polars as pl
import pymc as pm

from mrp_sim.models import GroundTruth
from mrp_sim.output import load_simulation
from mrp_sim.scenario import Scenario
from mrp_sim.simulate import SurveySimulator, standardize, true_population_mean

try:
    from analysis.run_context import RunContext
except ModuleNotFoundError:
    from run_context import RunContext  # type: ignore[no-redef]

try:
    from analysis.poststrat import (
        cell_probabilities,
        poststratify,
        poststratify_by,
        raw_group_means,
        summarize_draws,
        true_group_means,
    )
except ModuleNotFoundError:
    from poststrat import (  # type: ignore[no-redef]
        cell_probabilities,
        poststratify,
        poststratify_by,
        raw_group_means,
        summarize_draws,
        true_group_means,
    )

# ── Primer ───────────────────────────────────────────────────────────────────
# Written to results/<scenario>/mrp/README.md by RunContext on each run.

MRP_PRIMER = """\
# Multilevel Regression and Poststratification (MRP)

## Purpose

Surveys rarely look like the population they are meant to describe. MRP fixes
this in two steps: a multilevel (hierarchical) regression predicts the outcome
for every demographic cell, borrowing strength across cells with few or no
respondents; poststratification then averages those cell predictions using the
known population count of each cell.

This run uses a **simulated** survey, so the true answer is known. Respondents
are sampled with a response propensity that rises with age, so the raw sample
mean is biased toward older groups. The question is how close MRP gets to the
truth, and how much better it does than the raw mean.

## Method

### Hierarchical logistic regression (non-centered)

```
logit P(y_i = 1) = alpha + beta_income * z_income[state_i]
                   + a_age[age_i] + a_income[income_i] + a_state[state_i]

alpha        ~ Normal(0, 2)
beta_income  ~ Normal(0, 1)         -- standardized state average income
sigma_k      ~ HalfNormal(1)        -- k in {age, income, state}
z_k          ~ Normal(0, 1)
a_k          = sigma_k * z_k
```

### Poststratification

For posterior draw d and population cell c with count N_c:

```
theta[d]   = sum_c p[d, c] * N_c / sum_c N_c
theta_g[d] = sum_{c in g} p[d, c] * N_c / sum_{c in g} N_c
```

### Pipeline

1. Load the simulated survey, population table, and truth
2. Build integer indices and the standardized state income covariate
3. Build the PyMC model and sample with NUTS
4. Convergence diagnostics (R-hat, ESS, divergences, E-BFMI)
5. Posterior summaries for fixed effects, scales, and group effects
6. Poststratify: national, by age, by income, by state
7. Parameter recovery against the simulated truth
8. Posterior predictive check and in-sample fit
9. Plots

## Inputs

Reads from `data/<scenario>/` (written by `mrp-simulate`):
- `<scenario>_survey.csv` — one row per respondent
- `<scenario>_population.csv` — one row per (state, age, income) cell with count N
- `<scenario>_truth.json` — generating parameters

## Outputs

All outputs land in `results/<scenario>/mrp/<date>/`:

### `data/`

| File | Description |
|------|-------------|
| `parameters.parquet` | Posterior mean/sd/HDI per parameter with truth and coverage |
| `national_draws.parquet` | Poststratified national estimate, one row per draw |
| `estimates_age.parquet` | MRP vs raw vs truth by age group |
| `estimates_income.parquet` | MRP vs raw vs truth by income group |
| `estimates_state.parquet` | MRP vs raw vs truth by state |
| `idata.nc` | Full posterior (ArviZ NetCDF) |

### `plots/`

| File | Description |
|------|-------------|
| `state_estimates.png` | State forest plot: MRP with 95% HDI, raw mean, truth |
| `estimates_age.png` | Age group estimates |
| `estimates_income.png` | Income group estimates |
| `national_posterior.png` | National posterior vs truth and raw mean |
| `trace_scales.png` | Trace plots for the fixed effects and group scales |
| `ppc_positive_rate.png` | Posterior predictive positive rate vs observed |
| `recovery.png` | Estimated vs true group effects |

## Interpretation Guide

- **National**: the MRP HDI should contain the true value; the raw mean usually won't.
- **States**: states with few respondents are shrunk toward the national pattern;
  their raw means are noisy or missing entirely.
- **Recovery coverage**: near 0.95 for group effects is expected; much lower means
  the model is overconfident.
- **PPC p-value**: within [0.1, 0.9] means the model reproduces the overall rate.

## Caveats

- The model matches the generating process exactly; real surveys are never this kind.
- The intercept and the means of the group effects are only weakly separated, so
  alpha's recovery is less informative than the poststratified estimates.
- In-sample fit metrics use data the model saw.
"""

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_SCENARIO = "n1200-seed42"
DEFAULT_N_SAMPLES = 1000
DEFAULT_N_TUNE = 1000
DEFAULT_N_CHAINS = 4
TARGET_ACCEPT = 0.95
RANDOM_SEED = 42

HDI_PROB = 0.95
PPC_REPLICATIONS = 500

# Priors
PRIOR_INTERCEPT_SD = 2.0
PRIOR_BETA_SD = 1.0
PRIOR_SIGMA_SD = 1.0

# Convergence thresholds
RHAT_THRESHOLD = 1.01
ESS_THRESHOLD = 400
MAX_DIVERGENCES = 10
BFMI_THRESHOLD = 0.3

GROUP_FACTORS = ("age", "income", "state")
SCALAR_VARS = ["alpha", "beta_income", "sigma_age", "sigma_income", "sigma_state"]
GROUP_VARS = ["a_age", "a_income", "a_state"]

# Posterior variable -> GroundTruth field
TRUTH_FIELDS = {
    "alpha": "intercept",
    "beta_income": "beta_state_income",
    "sigma_age": "sigma_age",
    "sigma_income": "sigma_income",
    "sigma_state": "sigma_state",
    "a_age": "age_effects",
    "a_income": "income_effects",
    "a_state": "state_effects",
}

COLOR_MRP = "#4C72B0"
COLOR_RAW = "#888888"
COLOR_TRUTH = "#E81B23"


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MRP on a simulated survey")
    parser.add_argument(
        "--scenario",
        default=DEFAULT_SCENARIO,
        help="Scenario shorthand, e.g. n1200-seed42 or n800-s30-a3-seed1-rb0",
    )
    parser.add_argument("--data-dir", default=None, help="Override data directory path")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Simulate the scenario's data first (overwrites existing files)",
    )
    parser.add_argument(
        "--n-samples",
        type=int,
        default=DEFAULT_N_SAMPLES,
        help="MCMC samples per chain",
    )
    parser.add_argument(
        "--n-tune",
        type=int,
        default=DEFAULT_N_TUNE,
        help="MCMC tuning samples (discarded)",
    )
    parser.add_argument(
        "--n-chains",
        type=int,
        default=DEFAULT_N_CHAINS,
        help="Number of MCMC chains",
    )
    parser.add_argument(
        "--target-accept",
        type=float,
        default=TARGET_ACCEPT,
        help="NUTS target acceptance rate",
    )
    return parser.parse_args(argv)


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


def _flatten_draws(idata: az.InferenceData, var: str) -> np.ndarray:
    """Stack chains: (chain, draw, *shape) -> (chain * draw, *shape)."""
    values = idata.posterior[var].values
    return values.reshape(-1, *values.shape[2:])


# ── Phase 1: Load Data ──────────────────────────────────────────────────────


def load_data(
    data_dir: Path,
    scenario: Scenario | None = None,
    simulate: bool = False,
) -> tuple[pl.DataFrame, pl.DataFrame, GroundTruth, Scenario | None]:
    """Load the simulated survey, population table, truth and saved scenario.

    With simulate=True the scenario is simulated into data_dir first.
    """
    if simulate:
        if scenario is None:
            raise ValueError("simulate=True requires a scenario")
        SurveySimulator(scenario, output_dir=data_dir).run()
    return load_simulation(data_dir)


# ── Phase 2: Prepare Model Data ─────────────────────────────────────────────


def prepare_mrp_data(survey: pl.DataFrame, population: pl.DataFrame) -> dict:
    """Build index arrays for the respondents and for the population cells.

    Factor sizes come from the population table, which covers every cell.
    The state income covariate is standardized across states, matching the
    simulator.

    Returns dict with respondent indices (age_idx, income_idx, state_idx, y),
    cell indices (cell_age, cell_income, cell_state, cell_n), z_income, and counts.
    """
    sizes = {f: int(population[f].max()) + 1 for f in GROUP_FACTORS}

    for factor in GROUP_FACTORS:
        codes = survey[factor]
        if codes.min() < 0 or codes.max() >= sizes[factor]:
            raise ValueError(
                f"Survey {factor} codes outside population range [0, {sizes[factor]})"
            )

    expected_cells = sizes["age"] * sizes["income"] * sizes["state"]
    if population.height != expected_cells:
        raise ValueError(
            f"Population table has {population.height} rows, expected {expected_cells} "
            "(one per state x age x income cell)"
        )

    state_income = (
        population.group_by("state")
        .agg(pl.col("state_income").first())
        .sort("state")["state_income"]
        .to_numpy()
    )
    z_income = standardize(state_income)

    y = survey["outcome"].to_numpy().astype(np.int64)
    if not set(np.unique(y)) <= {0, 1}:
        raise ValueError("Survey outcome must be binary (0/1)")

    print(f"  Respondents: {survey.height:,}")
    print(
        f"  Cells: {population.height:,} "
        f"({sizes['state']} states x {sizes['age']} age x {sizes['income']} income)"
    )
    n_observed = survey.select(GROUP_FACTORS).unique().height
    print(
        f"  Cells with respondents: {n_observed:,} / {population.height:,} "
        f"({100 * n_observed / population.height:.1f}%)"
    )
    print(f"  Positive rate: {y.mean():.3f}")

    return {
        "age_idx": survey["age"].to_numpy().astype(np.int64),
        "income_idx": survey["income"].to_numpy().astype(np.int64),
        "state_idx": survey["state"].to_numpy().astype(np.int64),
        "y": y,
        "z_income": z_income,
        "cell_age": population["age"].to_numpy().astype(np.int64),
        "cell_income": population["income"].to_numpy().astype(np.int64),
        "cell_state": population["state"].to_numpy().astype(np.int64),
        "cell_n": population["n"].to_numpy().astype(float),
        "n_age": sizes["age"],
        "n_income": sizes["income"],
        "n_states": sizes["state"],
        "n_obs": survey.height,
        "n_cells": population.height,
    }


# ── Phase 3: Build and Sample PyMC Model ────────────────────────────────────


def build_model(data: dict) -> pm.Model:
    """Build the non-centered hierarchical logistic regression.

    Returns the PyMC model; sampling happens in build_and_sample().
    """
    coords = {
        "age": np.arange(data["n_age"]),
        "income": np.arange(data["n_income"]),
        "state": np.arange(data["n_states"]),
        "obs_id": np.arange(data["n_obs"]),
    }

    with pm.Model(coords=coords) as model:
        alpha = pm.Normal("alpha", mu=0, sigma=PRIOR_INTERCEPT_SD)
        beta_income = pm.Normal("beta_income", mu=0, sigma=PRIOR_BETA_SD)

        # --- Group effects, non-centered ---
        effects = {}
        for factor in GROUP_FACTORS:
            sigma = pm.HalfNormal(f"sigma_{factor}", sigma=PRIOR_SIGMA_SD)
            z = pm.Normal(f"z_{factor}", mu=0, sigma=1, dims=factor)
            effects[factor] = pm.Deterministic(f"a_{factor}", sigma * z, dims=factor)

        # --- Likelihood ---
        eta = (
            alpha
            + beta_income * data["z_income"][data["state_idx"]]
            + effects["age"][data["age_idx"]]
            + effects["income"][data["income_idx"]]
            + effects["state"][data["state_idx"]]
        )
        pm.Bernoulli("obs", logit_p=eta, observed=data["y"], dims="obs_id")

    return model


def build_and_sample(
    data: dict,
    n_samples: int,
    n_tune: int,
    n_chains: int,
    target_accept: float = TARGET_ACCEPT,
) -> tuple[az.InferenceData, float]:
    """Build the model and sample with NUTS.

    Returns (InferenceData, sampling_time_seconds).
    """
    model = build_model(data)
    with model:
        print(f"  Sampling: {n_samples} draws, {n_tune} tune, {n_chains} chains")
        print(f"  target_accept={target_accept}, seed={RANDOM_SEED}")
        t0 = time.time()
        idata = pm.sample(
            draws=n_samples,
            tune=n_tune,
            chains=n_chains,
            target_accept=target_accept,
            random_seed=RANDOM_SEED,
            progressbar=True,
        )
        sampling_time = time.time() - t0

    print(f"  Sampling complete in {sampling_time:.1f}s")
    return idata, sampling_time


# ── Phase 4: Convergence Diagnostics ────────────────────────────────────────


def check_convergence(idata: az.InferenceData) -> dict:
    """Run standard MCMC convergence diagnostics on the reported parameters.

    Returns dict with per-variable R-hat max and ESS min, divergences,
    E-BFMI per chain, and an all_ok flag.
    """
    print_header("CONVERGENCE DIAGNOSTICS")
    var_names = SCALAR_VARS + GROUP_VARS
    diag: dict = {}

    rhat = az.rhat(idata, var_names=var_names)
    ess = az.ess(idata, var_names=var_names)
    rhat_ok = True
    ess_ok = True
    for var in var_names:
        rhat_max = float(rhat[var].max())
        ess_min = float(ess[var].min())
        diag[f"{var}_rhat_max"] = rhat_max
        diag[f"{var}_ess_min"] = ess_min
        rhat_ok = rhat_ok and rhat_max < RHAT_THRESHOLD
        ess_ok = ess_ok and ess_min > ESS_THRESHOLD
        r_status = "OK" if rhat_max < RHAT_THRESHOLD else "WARNING"
        e_status = "OK" if ess_min > ESS_THRESHOLD else "WARNING"
        print(
            f"  {var:13s} R-hat max = {rhat_max:.4f}  {r_status:7s}  "
            f"ESS min = {ess_min:.0f}  {e_status}"
        )

    divergences = int(idata.sample_stats["diverging"].sum().values)
    diag["divergences"] = divergences
    div_ok = divergences < MAX_DIVERGENCES
    print(f"  Divergences:   {divergences}  {'OK' if div_ok else 'WARNING'}")

    bfmi_values = az.bfmi(idata)
    diag["ebfmi"] = [float(v) for v in bfmi_values]
    bfmi_ok = all(v > BFMI_THRESHOLD for v in bfmi_values)
    for i, v in enumerate(bfmi_values):
        print(f"  E-BFMI chain {i}: {v:.3f}  {'OK' if v > BFMI_THRESHOLD else 'WARNING'}")

    diag["all_ok"] = rhat_ok and ess_ok and div_ok and bfmi_ok
    if diag["all_ok"]:
        print("  CONVERGENCE: ALL CHECKS PASSED")
    else:
        print("  CONVERGENCE: SOME CHECKS FAILED — inspect diagnostics")

    return diag


# ── Phase 5: Extract Posteriors ─────────────────────────────────────────────


def extract_parameters(
    idata: az.InferenceData,
    truth: GroundTruth,
    hdi_prob: float = HDI_PROB,
) -> pl.DataFrame:
    """Posterior summaries for every reported parameter, with truth and HDI coverage.

    Returns polars DataFrame with parameter, level (null for scalars), mean, sd,
    hdi_low, hdi_high, true_value, covered.
    """
    var_names = list(TRUTH_FIELDS)
    hdi = az.hdi(idata, var_names=var_names, hdi_prob=hdi_prob)

    rows = []
    for var, field_name in TRUTH_FIELDS.items():
        post = idata.posterior[var]
        is_scalar = post.ndim == 2
        mean = np.atleast_1d(post.mean(dim=["chain", "draw"]).values)
        sd = np.atleast_1d(post.std(dim=["chain", "draw"]).values)
        bounds = np.atleast_2d(hdi[var].values)
        true_vals = np.atleast_1d(np.asarray(getattr(truth, field_name), dtype=float))
        if true_vals.size != mean.size:
            raise ValueError(
                f"{var} has {mean.size} levels but truth.{field_name} has {true_vals.size}"
            )
        for k in range(mean.size):
            low, high = float(bounds[k, 0]), float(bounds[k, 1])
            rows.append(
                {
                    "parameter": var,
                    "level": None if is_scalar else k,
                    "mean": float(mean[k]),
                    "sd": float(sd[k]),
                    "hdi_low": low,
                    "hdi_high": high,
                    "true_value": float(true_vals[k]),
                    "covered": low <= true_vals[k] <= high,
                }
            )

    return pl.DataFrame(rows, schema_overrides={"level": pl.Int64})


def posterior_cell_probabilities(
    idata: az.InferenceData,
    data: dict,
    age_idx: np.ndarray,
    income_idx: np.ndarray,
    state_idx: np.ndarray,
) -> np.ndarray:
    """Draws-by-row probability matrix for arbitrary (age, income, state) index arrays.

    Pass the cell indices for poststratification, or the respondent indices for
    posterior predictive checks.
    """
    return cell_probabilities(
        intercept=_flatten_draws(idata, "alpha"),
        beta=_flatten_draws(idata, "beta_income"),
        a_age=_flatten_draws(idata, "a_age"),
        a_income=_flatten_draws(idata, "a_income"),
        a_state=_flatten_draws(idata, "a_state"),
        z_income=data["z_income"],
        age_idx=age_idx,
        income_idx=income_idx,
        state_idx=state_idx,
    )


# ── Phase 6: Poststratification ─────────────────────────────────────────────


def compute_national_estimate(
    cell_p: np.ndarray,
    data: dict,
    survey: pl.DataFrame,
    population: pl.DataFrame,
    hdi_prob: float = HDI_PROB,
) -> tuple[dict, np.ndarray]:
    """Poststratified national estimate vs raw sample mean vs truth.

    Returns (summary dict, per-draw national estimates).
    """
    draws = poststratify(cell_p, data["cell_n"])
    summary = summarize_draws(draws, hdi_prob).row(0, named=True)
    raw_mean = float(survey["outcome"].mean())
    true_mean = true_population_mean(population)

    result = {
        "mrp_mean": summary["mean"],
        "mrp_sd": summary["sd"],
        "mrp_hdi_low": summary["hdi_low"],
        "mrp_hdi_high": summary["hdi_high"],
        "raw_mean": raw_mean,
        "true_mean": true_mean,
        "mrp_error": summary["mean"] - true_mean,
        "raw_error": raw_mean - true_mean,
        "truth_in_hdi": summary["hdi_low"] <= true_mean <= summary["hdi_high"],
    }

    print(
        f"  MRP:   {result['mrp_mean']:.3f}  "
        f"[{result['mrp_hdi_low']:.3f}, {result['mrp_hdi_high']:.3f}]"
    )
    print(f"  Raw:   {raw_mean:.3f}")
    print(f"  Truth: {true_mean:.3f}")
    print(f"  Error: MRP {result['mrp_error']:+.3f}, raw {result['raw_error']:+.3f}")
    return result, draws


def compute_group_estimates(
    cell_p: np.ndarray,
    data: dict,
    survey: pl.DataFrame,
    population: pl.DataFrame,
    factor: str,
    hdi_prob: float = HDI_PROB,
) -> pl.DataFrame:
    """Poststratified estimate per level of `factor`, joined with raw and true means."""
    n_groups = data["n_states"] if factor == "state" else data[f"n_{factor}"]
    draws = poststratify_by(cell_p, data["cell_n"], data[f"cell_{factor}"], n_groups)

    mrp = summarize_draws(draws, hdi_prob).rename(
        {
            "mean": "mrp_mean",
            "sd": "mrp_sd",
            "hdi_low": "mrp_hdi_low",
            "hdi_high": "mrp_hdi_high",
        }
    )
    mrp = mrp.with_columns(pl.Series(factor, np.arange(n_groups, dtype=np.int64)))

    raw = raw_group_means(survey, factor, n_groups)
    true = true_group_means(population, factor, n_groups)

    return (
        mrp.join(raw, on=factor, how="left")
        .join(true, on=factor, how="left")
        .select(
            factor,
            "mrp_mean",
            "mrp_sd",
            "mrp_hdi_low",
            "mrp_hdi_high",
            "raw_mean",
            "n_respondents",
            "true_mean",
            "population",
        )
        .sort(factor)
    )


def compute_group_errors(estimates: pl.DataFrame) -> dict:
    """RMSE and MAE of MRP and raw means against truth.

    Raw means only exist for groups with respondents; MRP is scored on all
    groups and on the observed subset for a like-for-like comparison.
    """
    observed = estimates.filter(pl.col("n_respondents") > 0)

    def _rmse(err: pl.Series) -> float:
        return float(np.sqrt((err.to_numpy() ** 2).mean())) if err.len() else float("nan")

    def _mae(err: pl.Series) -> float:
        return float(np.abs(err.to_numpy()).mean()) if err.len() else float("nan")

    mrp_err_all = estimates["mrp_mean"] - estimates["true_mean"]
    mrp_err_obs = observed["mrp_mean"] - observed["true_mean"]
    raw_err_obs = observed["raw_mean"] - observed["true_mean"]

    return {
        "n_groups": estimates.height,
        "n_groups_observed": observed.height,
        "mrp_rmse": _rmse(mrp_err_all),
        "mrp_rmse_observed": _rmse(mrp_err_obs),
        "raw_rmse_observed": _rmse(raw_err_obs),
        "mrp_mae_observed": _mae(mrp_err_obs),
        "raw_mae_observed": _mae(raw_err_obs),
    }


# ── Phase 7: Parameter Recovery ─────────────────────────────────────────────


def check_recovery(parameters: pl.DataFrame) -> dict:
    """Fraction of true values inside their HDI, per parameter block and overall."""
    per_param = parameters.group_by("parameter", maintain_order=True).agg(
        pl.col("covered").mean().alias("coverage"),
        pl.len().alias("n"),
    )
    coverage = {
        row["parameter"]: float(row["coverage"]) for row in per_param.iter_rows(named=True)
    }
    group_rows = parameters.filter(pl.col("parameter").is_in(GROUP_VARS))
    result = {
        "coverage": coverage,
        "group_effect_coverage": (
            float(group_rows["covered"].mean()) if group_rows.height else float("nan")
        ),
        "overall_coverage": float(parameters["covered"].mean()),
    }

    for param, cov in coverage.items():
        print(f"  {param:13s} coverage = {cov:.2f}")
    print(f"  Group effects overall: {result['group_effect_coverage']:.2f}")
    return result


# ── Phase 8: Posterior Predictive Checks ────────────────────────────────────


def run_ppc(respondent_p: np.ndarray, y: np.ndarray) -> dict:
    """Posterior predictive check on the overall positive rate.

    respondent_p is a (draws, respondents) probability matrix.
    """
    observed_rate = float(y.mean())
    n_draws = respondent_p.shape[0]
    n_reps = min(PPC_REPLICATIONS, n_draws)

    rng = np.random.default_rng(RANDOM_SEED)
    picks = rng.choice(n_draws, size=n_reps, replace=False)
    y_rep = rng.binomial(1, respondent_p[picks])
    rep_rates = y_rep.mean(axis=1)
    rep_accuracy = (y_rep == y[None, :]).mean(axis=1)

    p_value = float(np.mean(rep_rates >= observed_rate))

    print(f"    Observed positive rate: {observed_rate:.3f}")
    print(f"    Replicated rate: {rep_rates.mean():.3f} +/- {rep_rates.std():.3f}")
    print(f"    Bayesian p-value: {p_value:.3f}")
    if 0.1 <= p_value <= 0.9:
        print("    Result: WELL-CALIBRATED (p in [0.1, 0.9])")
    else:
        print("    Result: POTENTIAL MISFIT (p outside [0.1, 0.9])")

    return {
        "observed_rate": observed_rate,
        "replicated_rate_mean": float(rep_rates.mean()),
        "replicated_rate_sd": float(rep_rates.std()),
        "bayesian_p_value": p_value,
        "mean_replicated_accuracy": float(rep_accuracy.mean()),
        "n_replications": n_reps,
        "replicated_rates": rep_rates,
    }


def run_fit_check(p_mean: np.ndarray, y: np.ndarray) -> dict:
    """In-sample classification metrics from posterior-mean respondent probabilities."""
    from sklearn.metrics import roc_auc_score

    pred = (p_mean >= 0.5).astype(int)
    accuracy = float((pred == y).mean())
    base_rate = float(y.mean())
    base_accuracy = max(base_rate, 1 - base_rate)
    brier = float(((p_mean - y) ** 2).mean())
    try:
        auc = float(roc_auc_score(y, p_mean))
    except ValueError:
        auc = float("nan")

    print(f"    Base-rate accuracy: {base_accuracy:.3f}")
    print(f"    Model accuracy:     {accuracy:.3f}")
    print(f"    AUC-ROC:            {auc:.3f}")
    print(f"    Brier score:        {brier:.4f}")

    return {
        "base_rate": base_rate,
        "base_accuracy": base_accuracy,
        "accuracy": accuracy,
        "auc_roc": auc,
        "brier": brier,
        "note": "In-sample (model saw all respondents).",
    }


# ── Phase 9: Plots ──────────────────────────────────────────────────────────


def _style(ax: plt.Axes) -> None:
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)


def plot_state_estimates(by_state: pl.DataFrame, out_dir: Path) -> None:
    """Forest plot: MRP state estimates with HDI, raw state means, and truth."""
    sorted_df = by_state.sort("mrp_mean")
    n = sorted_df.height

    fig, ax = plt.subplots(figsize=(10, max(8, n * 0.22)))
    y_pos = np.arange(n)

    ax.hlines(
        y_pos,
        sorted_df["mrp_hdi_low"].to_numpy(),
        sorted_df["mrp_hdi_high"].to_numpy(),
        colors=COLOR_MRP,
        alpha=0.4,
        linewidth=1.5,
    )
    ax.scatter(
        sorted_df["mrp_mean"].to_numpy(),
        y_pos,
        c=COLOR_MRP,
        s=20,
        zorder=5,
        edgecolors="black",
        linewidth=0.3,
        label="MRP (95% HDI)",
    )
    ax.scatter(
        sorted_df["true_mean"].to_numpy(),
        y_pos,
        c=COLOR_TRUTH,
        marker="D",
        s=14,
        zorder=6,
        label="Truth",
    )
    observed = sorted_df.with_row_index("pos").filter(pl.col("n_respondents") > 0)
    ax.scatter(
        observed["raw_mean"].to_numpy(),
        observed["pos"].to_numpy(),
        c=COLOR_RAW,
        marker="x",
        s=18,
        zorder=4,
        label="Raw sample mean",
    )

    ax.set_yticks(y_pos)
    labels = [
        f"State {row['state']} (n={row['n_respondents']})"
        for row in sorted_df.iter_rows(named=True)
    ]
    ax.set_yticklabels(labels, fontsize=5.5)
    ax.set_xlabel("P(outcome = 1)")
    ax.set_title("State Estimates — MRP vs Raw vs Truth")
    ax.legend(loc="lower right")
    _style(ax)

    fig.tight_layout()
    save_fig(fig, out_dir / "state_estimates.png")


def plot_group_estimates(estimates: pl.DataFrame, factor: str, out_dir: Path) -> None:
    """Per-level MRP estimate with HDI, raw mean and truth for a demographic factor."""
    levels = estimates[factor].to_numpy()
    mean = estimates["mrp_mean"].to_numpy()
    err = np.vstack(
        [
            mean - estimates["mrp_hdi_low"].to_numpy(),
            estimates["mrp_hdi_high"].to_numpy() - mean,
        ]
    )

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.errorbar(
        levels,
        mean,
        yerr=err,
        fmt="o",
        color=COLOR_MRP,
        capsize=4,
        label="MRP (95% HDI)",
    )
    ax.plot(levels, estimates["true_mean"].to_numpy(), "D--", color=COLOR_TRUTH, label="Truth")
    ax.plot(
        levels,
        estimates["raw_mean"].to_numpy(),
        "x:",
        color=COLOR_RAW,
        label="Raw sample mean",
    )
    ax.set_xticks(levels)
    ax.set_xlabel(f"{factor.capitalize()} group")
    ax.set_ylabel("P(outcome = 1)")
    ax.set_title(f"Estimates by {factor.capitalize()} Group")
    ax.legend()
    _style(ax)

    fig.tight_layout()
    save_fig(fig, out_dir / f"estimates_{factor}.png")


def plot_national(national_draws: np.ndarray, national: dict, out_dir: Path) -> None:
    """Histogram of the poststratified national estimate with truth and raw mean."""
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.hist(
        national_draws,
        bins=50,
        edgecolor="black",
        alpha=0.7,
        color=COLOR_MRP,
        label="MRP posterior",
    )
    ax.axvline(
        national["true_mean"],
        color=COLOR_TRUTH,
        linewidth=2,
        label=f"Truth = {national['true_mean']:.3f}",
    )
    ax.axvline(
        national["raw_mean"],
        color=COLOR_RAW,
        linestyle="--",
        linewidth=2,
        label=f"Raw mean = {national['raw_mean']:.3f}",
    )
    ax.set_xlabel("Population P(outcome = 1)")
    ax.set_ylabel("Posterior draws")
    ax.set_title("National Estimate — Poststratified Posterior")
    ax.legend()
    _style(ax)

    fig.tight_layout()
    save_fig(fig, out_dir / "national_posterior.png")


def plot_traces(idata: az.InferenceData, out_dir: Path) -> None:
    """Trace plots for the fixed effects and the group-level scales."""
    az.plot_trace(idata, var_names=SCALAR_VARS, figsize=(14, 3 * len(SCALAR_VARS)))
    fig = plt.gcf()
    fig.suptitle("Trace Plots (Fixed Effects and Group Scales)", fontsize=14, y=1.01)
    fig.tight_layout()
    save_fig(fig, out_dir / "trace_scales.png")


def plot_ppc(observed_rate: float, replicated_rates: np.ndarray, out_dir: Path) -> float:
    """Plot posterior predictive positive rate distribution vs observed.

    Returns Bayesian p-value.
    """
    bayesian_p = float(np.mean(replicated_rates >= observed_rate))

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.hist(
        replicated_rates,
        bins=40,
        edgecolor="black",
        alpha=0.7,
        color=COLOR_MRP,
        label="Replicated positive rates",
    )
    ax.axvline(
        observed_rate,
        color="red",
        linestyle="-",
        linewidth=2,
        label=f"Observed = {observed_rate:.3f}",
    )
    ax.set_xlabel("Overall Positive Rate")
    ax.set_ylabel("Frequency")
    ax.set_title(f"PPC: Overall Positive Rate\nBayesian p-value = {bayesian_p:.3f}")
    ax.legend()
    _style(ax)

    fig.tight_layout()
    save_fig(fig, out_dir / "ppc_positive_rate.png")

    return bayesian_p


def plot_recovery(parameters: pl.DataFrame, out_dir: Path) -> None:
    """Estimated vs true group effects with HDI bars and an identity line."""
    fig, ax = plt.subplots(figsize=(8, 8))
    colors = {"a_age": "#55A868", "a_income": "#C44E52", "a_state": COLOR_MRP}

    groups = parameters.filter(pl.col("parameter").is_in(GROUP_VARS))
    for param, color in colors.items():
        subset = groups.filter(pl.col("parameter") == param)
        if subset.height == 0:
            continue
        true = subset["true_value"].to_numpy()
        mean = subset["mean"].to_numpy()
        err = np.vstack(
            [mean - subset["hdi_low"].to_numpy(), subset["hdi_high"].to_numpy() - mean]
        )
        ax.errorbar(
            true,
            mean,
            yerr=err,
            fmt="o",
            color=color,
            alpha=0.7,
            markersize=4,
            capsize=0,
            label=param,
        )

    if groups.height:
        lo = float(min(groups["true_value"].min(), groups["hdi_low"].min())) - 0.1
        hi = float(max(groups["true_value"].max(), groups["hdi_high"].max())) + 0.1
        ax.plot([lo, hi], [lo, hi], "k--", alpha=0.5, label="Identity line")
    ax.set_xlabel("True effect")
    ax.set_ylabel("Posterior mean (95% HDI)")
    ax.set_title("Parameter Recovery — Group Effects")
    ax.legend()
    ax.set_aspect("equal")
    _style(ax)

    fig.tight_layout()
    save_fig(fig, out_dir / "recovery.png")


# ── Phase 10: Manifest + Main ───────────────────────────────────────────────


def save_filtering_manifest(manifest: dict, out_dir: Path) -> None:
    path = out_dir / "filtering_manifest.json"
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    print(f"  Saved: {path.name}")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    scenario = Scenario.from_string(args.scenario)
    data_dir = Path(args.data_dir) if args.data_dir else scenario.data_dir
    run_name = data_dir.name if args.data_dir else args.scenario

    with RunContext(
        scenario=run_name,
        analysis_name="mrp",
        params=vars(args),
        primer=MRP_PRIMER,
    ) as ctx:
        print(f"MRP — Scenario {run_name}")
        print(f"Data:      {data_dir}")
        print(f"Output:    {ctx.run_dir}")
        print(f"Samples:   {args.n_samples} draws, {args.n_tune} tune, {args.n_chains} chains")

        # ── Phase 1: Load data ──
        print_header("PHASE 1: LOADING DATA")
        survey, population, truth, saved = load_data(data_dir, scenario, simulate=args.simulate)
        if saved is not None:
            # Parameters that produced the data
            scenario = saved
        print(f"  Scenario: {scenario.label}")
        print(f"  Survey: {survey.height} respondents")
        print(f"  Population: {population.height} cells")

        # ── Phase 2: Prepare model data ──
        print_header("PHASE 2: PREPARE MODEL DATA")
        data = prepare_mrp_data(survey, population)

        # ── Phase 3: Build and sample ──
        print_header("PHASE 3: MCMC SAMPLING")
        idata, sampling_time = build_and_sample(
            data,
            args.n_samples,
            args.n_tune,
            args.n_chains,
            args.target_accept,
        )

        # ── Phase 4: Convergence diagnostics ──
        diagnostics = check_convergence(idata)

        # ── Phase 5: Extract posteriors ──
        print_header("PHASE 5: EXTRACT POSTERIORS")
        parameters = extract_parameters(idata, truth)
        for row in parameters.filter(pl.col("level").is_null()).iter_rows(named=True):
            print(
                f"    {row['parameter']:13s}  mean={row['mean']:+.3f}  "
                f"[{row['hdi_low']:+.3f}, {row['hdi_high']:+.3f}]  "
                f"true={row['true_value']:+.3f}"
            )
        parameters.write_parquet(ctx.data_dir / "parameters.parquet")
        print("  Saved: parameters.parquet")

        nc_path = ctx.data_dir / "idata.nc"
        idata.to_netcdf(str(nc_path))
        print("  Saved: idata.nc")

        # ── Phase 6: Poststratification ──
        print_header("PHASE 6: POSTSTRATIFICATION")
        cell_p = posterior_cell_probabilities(
            idata, data, data["cell_age"], data["cell_income"], data["cell_state"]
        )
        print(f"  Cell probability draws: {cell_p.shape[0]:,} draws x {cell_p.shape[1]:,} cells")

        print("\n  National:")
        national, national_draws = compute_national_estimate(cell_p, data, survey, population)
        national_frame = pl.DataFrame(
            {"draw": np.arange(national_draws.size), "estimate": national_draws}
        )
        national_frame.write_parquet(ctx.data_dir / "national_draws.parquet")

        group_estimates: dict[str, pl.DataFrame] = {}
        group_errors: dict[str, dict] = {}
        for factor in GROUP_FACTORS:
            estimates = compute_group_estimates(cell_p, data, survey, population, factor)
            errors = compute_group_errors(estimates)
            group_estimates[factor] = estimates
            group_errors[factor] = errors
            estimates.write_parquet(ctx.data_dir / f"estimates_{factor}.parquet")
            print(
                f"\n  By {factor}: MRP RMSE = {errors['mrp_rmse_observed']:.3f}, "
                f"raw RMSE = {errors['raw_rmse_observed']:.3f} "
                f"({errors['n_groups_observed']}/{errors['n_groups']} groups observed)"
            )

        # ── Phase 7: Parameter recovery ──
        print_header("PHASE 7: PARAMETER RECOVERY")
        recovery = check_recovery(parameters)

        # ── Phase 8: Posterior predictive checks ──
        print_header("PHASE 8: POSTERIOR PREDICTIVE CHECKS")
        respondent_p = posterior_cell_probabilities(
            idata, data, data["age_idx"], data["income_idx"], data["state_idx"]
        )
        ppc = run_ppc(respondent_p, data["y"])
        print("\n  In-sample fit:")
        fit = run_fit_check(respondent_p.mean(axis=0), data["y"])

        # ── Phase 9: Plots ──
        print_header("PHASE 9: PLOTS")
        plot_state_estimates(group_estimates["state"], ctx.plots_dir)
        plot_group_estimates(group_estimates["age"], "age", ctx.plots_dir)
        plot_group_estimates(group_estimates["income"], "income", ctx.plots_dir)
        plot_national(national_draws, national, ctx.plots_dir)
        plot_traces(idata, ctx.plots_dir)
        plot_ppc(ppc["observed_rate"], ppc["replicated_rates"], ctx.plots_dir)
        plot_recovery(parameters, ctx.plots_dir)

        # ── Phase 10: Manifest ──
        print_header("PHASE 10: FILTERING MANIFEST")
        manifest: dict = {
            "model": "Hierarchical logistic regression + poststratification",
            "scenario": scenario.to_dict(),
            "priors": {
                "alpha": f"Normal(0, {PRIOR_INTERCEPT_SD})",
                "beta_income": f"Normal(0, {PRIOR_BETA_SD})",
                "sigma_k": f"HalfNormal({PRIOR_SIGMA_SD})",
                "a_k": "sigma_k * Normal(0, 1) (non-centered)",
            },
            "sampling": {
                "n_samples": args.n_samples,
                "n_tune": args.n_tune,
                "n_chains": args.n_chains,
                "target_accept": args.target_accept,
                "seed": RANDOM_SEED,
                "sampling_time_s": sampling_time,
            },
            "data": {
                "n_respondents": data["n_obs"],
                "n_cells": data["n_cells"],
                "n_age": data["n_age"],
                "n_income": data["n_income"],
                "n_states": data["n_states"],
            },
            "diagnostics": diagnostics,
            "national": national,
            "group_errors": group_errors,
            "recovery": recovery,
            "ppc": {k: v for k, v in ppc.items() if k != "replicated_rates"},
            "fit": fit,
        }
        save_filtering_manifest(manifest, ctx.run_dir)

        print_header("DONE")
        print(f"  All outputs in: {ctx.run_dir}")
        print(f"  Parquet files:  {len(list(ctx.data_dir.glob('*.parquet')))}")
        print(f"  NetCDF files:   {len(list(ctx.data_dir.glob('*.nc')))}")
        print(f"  PNG plots:      {len(list(ctx.plots_dir.glob('*.png')))}")


if __name__ == "__main__":
    main()
