"""Command-line interface for the MRP survey simulator."""

import argparse
from pathlib import Path

from mrp_sim.config import N_AGE, N_INCOME, N_STATES, RANDOM_SEED, SAMPLE_SIZE
from mrp_sim.scenario import Scenario
from mrp_sim.simulate import SurveySimulator


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="mrp-simulate",
        description="Simulate a biased survey and its population table for MRP.",
    )
    parser.add_argument(
        "--sample-size",
        "-n",
        type=int,
        default=SAMPLE_SIZE,
        help=f"Number of survey respondents (default: {SAMPLE_SIZE})",
    )
    parser.add_argument(
        "--n-states",
        type=int,
        default=N_STATES,
        help=f"Number of states (default: {N_STATES})",
    )
    parser.add_argument(
        "--n-age",
        type=int,
        default=N_AGE,
        help=f"Number of age groups (default: {N_AGE})",
    )
    parser.add_argument(
        "--n-income",
        type=int,
        default=N_INCOME,
        help=f"Number of income groups (default: {N_INCOME})",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=RANDOM_SEED,
        help=f"Random seed (default: {RANDOM_SEED})",
    )
    parser.add_argument(
        "--no-response-bias",
        action="store_true",
        help="Sample respondents in proportion to cell size only",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help="Output directory (default: data/{scenario_name}/)",
    )
    parser.add_argument(
        "--list-defaults",
        action="store_true",
        help="Print the default scenario parameters and exit",
    )

    args = parser.parse_args(argv)

    if args.list_defaults:
        print("Default scenario parameters:")
        print()
        for key, value in Scenario().to_dict().items():
            print(f"  {key:20s}  {value}")
        return

    kwargs: dict = {}
    if args.no_response_bias:
        kwargs["response_bias"] = 0.0
    try:
        scenario = Scenario(
            n_age=args.n_age,
            n_income=args.n_income,
            n_states=args.n_states,
            sample_size=args.sample_size,
            seed=args.seed,
            **kwargs,
        )
    except ValueError as exc:
        parser.error(str(exc))

    simulator = SurveySimulator(scenario=scenario, output_dir=args.output)
    simulator.run()
