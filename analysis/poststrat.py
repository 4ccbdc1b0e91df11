"""
Poststratification math for MRP.

Turns posterior draws of the multilevel model into draws of cell probabilities,
then reweights those cells by their population counts:

  cell_p[d, c]   = inv_logit(alpha_d + beta_d * z[state_c] + a_age[d, age_c] + ...)
  theta[d]       = sum_c cell_p[d, c] * N_c / sum_c N_c
  theta_g[d]     = sum_{c in g} cell_p[d, c] * N_c / sum_{c in g} N_c

Everything here is plain numpy/polars so it can be tested without sampling.
"""

from __future__ import annotations

import arviz as az
import numpy as np
import polars as pl
from scipy.special import expit


def cell_probabilities(
    intercept: np.ndarray,
    beta: np.ndarray,
    a_age: np.ndarray,
    a_income: np.ndarray,
    a_state: np.ndarray,
    z_income: np.ndarray,
    age_idx: np.ndarray,
    income_idx: np.ndarray,
    state_idx: np.ndarray,
) -> np.ndarray:
    """Draws-by-cell matrix of cell probabilities.

    intercept and beta have shape (draws,); each group effect has shape
    (draws, n_levels); z_income has one entry per state; the index arrays have
    one entry per cell. Scalars and 1D effects are treated as a single draw.
    """
    intercept = np.atleast_1d(np.asarray(intercept, dtype=float))
    beta = np.atleast_1d(np.asarray(beta, dtype=float))
    a_age = np.atleast_2d(a_age)
    a_income = np.atleast_2d(a_income)
    a_state = np.atleast_2d(a_state)
    z_income = np.asarray(z_income, dtype=float)

    n_draws = intercept.shape[0]
    params = {"beta": beta, "a_age": a_age, "a_income": a_income, "a_state": a_state}
    for name, arr in params.items():
        if arr.shape[0] != n_draws:
            raise ValueError(f"{name} has {arr.shape[0]} draws, intercept has {n_draws}")

    eta = (
        intercept[:, None]
        + beta[:, None] * z_income[state_idx][None, :]
        + a_age[:, age_idx]
        + a_income[:, income_idx]
        + a_state[:, state_idx]
    )
    return expit(eta)


def _check_weights(cell_p: np.ndarray, n: np.ndarray) -> np.ndarray:
    n = np.asarray(n, dtype=float)
    if n.ndim != 1:
        raise ValueError(f"Population counts must be 1D, got shape {n.shape}")
    if cell_p.shape[-1] != n.shape[0]:
        raise ValueError(
            f"cell_p has {cell_p.shape[-1]} cells but population table has {n.shape[0]}"
        )
    if np.any(n < 0):
        raise ValueError("Population counts must be non-negative")
    return n


def poststratify(cell_p: np.ndarray, n: np.ndarray) -> np.ndarray:
    """Population-weighted average over cells, one value per draw."""
    cell_p = np.asarray(cell_p, dtype=float)
    n = _check_weights(cell_p, n)
    total = n.sum()
    if total <= 0:
        raise ValueError("Total population is zero; nothing to poststratify")
    return cell_p @ n / total


def poststratify_by(
    cell_p: np.ndarray,
    n: np.ndarray,
    group_idx: np.ndarray,
    n_groups: int,
) -> np.ndarray:
    """Population-weighted average within each group, shape (draws, n_groups).

    Groups with no population get NaN.
    """
    cell_p = np.atleast_2d(np.asarray(cell_p, dtype=float))
    n = _check_weights(cell_p, n)
    group_idx = np.asarray(group_idx)
    if group_idx.shape != n.shape:
        raise ValueError("group_idx must have one entry per cell")
    if group_idx.size and (group_idx.min() < 0 or group_idx.max() >= n_groups):
        raise ValueError(f"group_idx values must lie in [0, {n_groups})")

    # Cells x groups weight matrix
    weights = np.zeros((n.shape[0], n_groups))
    weights[np.arange(n.shape[0]), group_idx] = n
    totals = weights.sum(axis=0)

    weighted = cell_p @ weights
    with np.errstate(invalid="ignore", divide="ignore"):
        out = np.where(totals > 0, weighted / totals, np.nan)
    return out


def summarize_draws(draws: np.ndarray, hdi_prob: float = 0.95) -> pl.DataFrame:
    """Mean, sd and HDI per column of a (draws, k) array.

    Columns that are entirely NaN (empty groups) summarize to nulls-as-NaN.
    """
    draws = np.asarray(draws, dtype=float)
    if draws.ndim == 1:
        draws = draws[:, None]

    rows = []
    for j in range(draws.shape[1]):
        col = draws[:, j]
        if np.all(np.isnan(col)):
            rows.append({"mean": np.nan, "sd": np.nan, "hdi_low": np.nan, "hdi_high": np.nan})
            continue
        low, high = az.hdi(col, hdi_prob=hdi_prob)
        rows.append(
            {
                "mean": float(col.mean()),
                "sd": float(col.std()),
                "hdi_low": float(low),
                "hdi_high": float(high),
            }
        )
    return pl.DataFrame(rows)


def raw_group_means(survey: pl.DataFrame, column: str, n_groups: int) -> pl.DataFrame:
    """Unweighted sample mean and respondent count for every level of `column`.

    Levels with no respondents get a null mean and a count of 0.
    """
    stats = survey.group_by(column).agg(
        pl.col("outcome").mean().alias("raw_mean"),
        pl.len().cast(pl.Int64).alias("n_respondents"),
    )
    levels = pl.DataFrame({column: np.arange(n_groups, dtype=np.int64)})
    return (
        levels.join(stats.with_columns(pl.col(column).cast(pl.Int64)), on=column, how="left")
        .with_columns(pl.col("n_respondents").fill_null(0))
        .sort(column)
    )


def true_group_means(population: pl.DataFrame, column: str, n_groups: int) -> pl.DataFrame:
    """Population-weighted true probability for every level of `column`."""
    stats = population.group_by(column).agg(
        ((pl.col("true_p") * pl.col("n")).sum() / pl.col("n").sum()).alias("true_mean"),
        pl.col("n").sum().cast(pl.Int64).alias("population"),
    )
    levels = pl.DataFrame({column: np.arange(n_groups, dtype=np.int64)})
    return levels.join(
        stats.with_columns(pl.col(column).cast(pl.Int64)), on=column, how="left"
    ).sort(column)
