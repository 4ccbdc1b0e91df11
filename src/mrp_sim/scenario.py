"""Simulation scenario: the full parameter set for one synthetic survey.

A scenario fixes everything the simulator needs (factor sizes, sample size,
seed, and the true generating parameters) and derives the filesystem names
used by the simulator and the analysis scripts:

  Scenario()                          -> data/mrp_n1200_s50_seed42/
  Scenario(sample_size=500, seed=7)   -> data/mrp_n500_s50_seed7/
  Scenario(n_age=3, response_bias=0)  -> data/mrp_n1200_s50_a3_seed42_rb0/

The CLI shorthand "n500-seed7" maps to the second example via from_string().
"""

import re
from dataclasses import asdict, dataclass
from pathlib import Path

from mrp_sim.config import (
    N_AGE,
    N_INCOME,
    N_STATES,
    RANDOM_SEED,
    RESPONSE_BIAS,
    SAMPLE_SIZE,
    TRUE_BETA_STATE_INCOME,
    TRUE_INTERCEPT,
    TRUE_SIGMA_AGE,
    TRUE_SIGMA_INCOME,
    TRUE_SIGMA_STATE,
)

_SHORTHAND_RE = re.compile(
    r"^n(\d+)(?:[-_]s(\d+))?(?:[-_]a(\d+))?(?:[-_]i(\d+))?(?:[-_]seed(\d+))?(?:[-_]rb(\d+))?$",
    re.I,
)


@dataclass(frozen=True)
class Scenario:
    """Parameters of one simulated survey."""

    n_age: int = N_AGE
    n_income: int = N_INCOME
    n_states: int = N_STATES
    sample_size: int = SAMPLE_SIZE
    seed: int = RANDOM_SEED
    intercept: float = TRUE_INTERCEPT
    beta_state_income: float = TRUE_BETA_STATE_INCOME
    sigma_age: float = TRUE_SIGMA_AGE
    sigma_income: float = TRUE_SIGMA_INCOME
    sigma_state: float = TRUE_SIGMA_STATE
    response_bias: float = RESPONSE_BIAS

    def __post_init__(self) -> None:
        for name in ("n_age", "n_income", "n_states"):
            if getattr(self, name) < 2:
                raise ValueError(f"{name} must be at least 2, got {getattr(self, name)}")
        if self.sample_size < 1:
            raise ValueError(f"sample_size must be positive, got {self.sample_size}")
        for name in ("sigma_age", "sigma_income", "sigma_state"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")

    @property
    def n_cells(self) -> int:
        return self.n_age * self.n_income * self.n_states

    @property
    def output_name(self) -> str:
        """Filesystem-safe name, e.g. 'mrp_n1200_s50_seed42'.

        Factor sizes and response bias appear only when they differ from the
        defaults ('mrp_n1200_s50_a3_i2_seed42_rb0').
        """
        parts = [f"mrp_n{self.sample_size}", f"s{self.n_states}"]
        if self.n_age != N_AGE:
            parts.append(f"a{self.n_age}")
        if self.n_income != N_INCOME:
            parts.append(f"i{self.n_income}")
        parts.append(f"seed{self.seed}")
        if self.response_bias != RESPONSE_BIAS:
            # Hundredths of a logit per age group
            parts.append(f"rb{round(self.response_bias * 100)}")
        return "_".join(parts)

    @property
    def label(self) -> str:
        """Human-readable label.

        e.g. '1200 respondents, 50 states x 5 age x 5 income, bias 0.35'
        """
        return (
            f"{self.sample_size} respondents, "
            f"{self.n_states} states x {self.n_age} age x {self.n_income} income, "
            f"bias {self.response_bias:g}"
        )

    @property
    def data_dir(self) -> Path:
        return Path("data") / self.output_name

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_string(cls, text: str) -> "Scenario":
        """Create a scenario from CLI shorthand like 'n1200-seed42' or 'n800-s30-a3-seed1-rb0'.

        Parts not given keep their defaults. Also accepts a full output_name
        ('mrp_n1200_s50_seed42').
        """
        m = _SHORTHAND_RE.match(text.removeprefix("mrp_"))
        if not m:
            raise ValueError(f"Unrecognized scenario string: {text!r}")
        sample, states, n_age, n_income, seed, bias = m.groups()
        kwargs: dict = {"sample_size": int(sample)}
        if states:
            kwargs["n_states"] = int(states)
        if n_age:
            kwargs["n_age"] = int(n_age)
        if n_income:
            kwargs["n_income"] = int(n_income)
        if seed:
            kwargs["seed"] = int(seed)
        if bias:
            kwargs["response_bias"] = int(bias) / 100
        return cls(**kwargs)

