"""CSV/JSON output for simulated survey data."""

import json
from dataclasses import fields
from pathlib import Path

import polars as pl

from mrp_sim.models import GroundTruth, PopulationCell, SurveyResponse
from mrp_sim.scenario import Scenario

SURVEY_COLUMNS = [fld.name for fld in fields(SurveyResponse)]
POPULATION_COLUMNS = [fld.name for fld in fields(PopulationCell)]


def save_simulation(
    output_dir: Path,
    output_name: str,
    survey: pl.DataFrame,
    population: pl.DataFrame,
    truth: GroundTruth,
    scenario: Scenario | None = None,
) -> None:
    """Save the survey, the population table, and the generating truth."""
    print("\n" + "=" * 60)
    print("Saving simulation files...")
    print("=" * 60)

    survey_file = output_dir / f"{output_name}_survey.csv"
    survey.select(SURVEY_COLUMNS).write_csv(survey_file)
    print(f"  {survey_file} ({survey.height} rows)")

    population_file = output_dir / f"{output_name}_population.csv"
    population.select(POPULATION_COLUMNS).write_csv(population_file)
    print(f"  {population_file} ({population.height} rows)")

    truth_file = output_dir / f"{output_name}_truth.json"
    payload = {"truth": truth.to_dict()}
    if scenario is not None:
        payload["scenario"] = scenario.to_dict()
    with open(truth_file, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    print(f"  {truth_file}")


def _find_prefix(data_dir: Path) -> str:
    """Return the file-name prefix of the single simulation saved in data_dir."""
    surveys = sorted(data_dir.glob("*_survey.csv"))
    if not surveys:
        raise FileNotFoundError(
            f"Missing survey file: no *_survey.csv in {data_dir} "
            "(run `mrp-simulate` to generate it)"
        )
    if len(surveys) > 1:
        names = [p.name for p in surveys]
        raise ValueError(f"Expected one simulation in {data_dir}, found {len(surveys)}: {names}")
    return surveys[0].name.removesuffix("_survey.csv")


def load_simulation(
    data_dir: Path,
) -> tuple[pl.DataFrame, pl.DataFrame, GroundTruth, Scenario | None]:
    """Load the files written by save_simulation() from data_dir.

    The directory may have any name; the files are found by their suffixes.
    The returned scenario is None when the truth file was saved without one.
    """
    name = _find_prefix(data_dir)
    paths = {
        "survey": data_dir / f"{name}_survey.csv",
        "population": data_dir / f"{name}_population.csv",
        "truth": data_dir / f"{name}_truth.json",
    }
    for kind, path in paths.items():
        if not path.exists():
            raise FileNotFoundError(
                f"Missing {kind} file: {path} (run `mrp-simulate` to generate it)"
            )

    survey = pl.read_csv(paths["survey"])
    population = pl.read_csv(paths["population"])
    for frame, expected, kind in (
        (survey, SURVEY_COLUMNS, "survey"),
        (population, POPULATION_COLUMNS, "population"),
    ):
        missing = [c for c in expected if c not in frame.columns]
        if missing:
            raise ValueError(f"{kind} file is missing columns: {missing}")

    with open(paths["truth"], encoding="utf-8") as f:
        payload = json.load(f)
    truth = GroundTruth.from_dict(payload["truth"])
    scenario = Scenario(**payload["scenario"]) if "scenario" in payload else None
    return survey, population, truth, scenario
