"""Data classes for simulated survey records and the generating truth."""

from dataclasses import asdict, dataclass, field


@dataclass
class SurveyResponse:
    """One simulated respondent."""
    respondent_id: int
    age: int
    income: int
    state: int
    state_income: float
    outcome: int  # 1 = yes, 0 = no


@dataclass
class PopulationCell:
    """Population count for one (age, income, state) cell."""
    cell_id: int
    age: int
    income: int
    state: int
    state_income: float
    n: int
    true_p: float


@dataclass
class GroundTruth:
    """Parameters the survey was simulated from."""
    intercept: float
    beta_state_income: float
    sigma_age: float
    sigma_income: float
    sigma_state: float
    age_effects: list[float] = field(default_factory=list)
    income_effects: list[float] = field(default_factory=list)
    state_effects: list[float] = field(default_factory=list)
    state_income: list[float] = field(default_factory=list)
    population_p: float | None = None  # N-weighted true probability

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "GroundTruth":
        """Rebuild from to_dict() output, ignoring keys this class doesn't define."""
        names = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in names})
