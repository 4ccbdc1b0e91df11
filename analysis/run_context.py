"""Reusable run context for structured analysis output.

Every analysis script uses RunContext to get:
  - Structured output directories: results/<scenario>/<analysis>/<date>/plots/ + data/
  - Automatic console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamp, parameters
  - A `latest` symlink pointing to the most recent run

Usage:
    with RunContext(
        scenario="n1200-seed42",
        analysis_name="mrp",
        params=vars(args),
        primer=MRP_PRIMER,        # Markdown primer written to results/<scenario>/mrp/README.md
    ) as ctx:
        # ctx.plots_dir, ctx.data_dir, ctx.run_dir are ready
        estimates.write_parquet(ctx.data_dir / "estimates_state.parquet")
        save_fig(fig, ctx.plots_dir / "plot.png")
"""

from __future__ import annotations

import io
import json
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from mrp_sim.scenario import Scenario


class _TeeStream:
    """Wraps a stream to duplicate output to both the original stream and a buffer.

    All print() output goes to both the console (so the user sees progress)
    and an internal StringIO buffer (captured for run_log.txt).
    """

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def _normalize_scenario(scenario: str) -> str:
    """Convert scenario shorthand to its output directory name.

    Examples:
        "n1200-seed42"          -> "mrp_n1200_s50_seed42"
        "n500-s20-seed3"        -> "mrp_n500_s20_seed3"
        "mrp_n1200_s50_seed42"  -> "mrp_n1200_s50_seed42"
        "n800-a3-seed1-rb0"     -> "mrp_n800_s50_a3_seed1_rb0"
        "custom"                -> "custom"  (unrecognized names pass through)
    """
    try:
        return Scenario.from_string(scenario).output_name
    except ValueError:
        return scenario


def _git_commit_hash() -> str:
    """Get the current git commit hash, or 'unknown' if not in a repo."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


class RunContext:
    """Context manager that sets up structured output for an analysis run.

    Creates the directory tree, captures console output, and writes
    metadata on exit.

    Attributes:
        scenario: Normalized scenario name (e.g. "mrp_n1200_s50_seed42").
        analysis_name: Name of the analysis phase (e.g. "mrp").
        params: Script parameters to record in run_info.json.
        run_dir: Root of this run's output (results/<scenario>/<analysis>/<date>/).
        plots_dir: Directory for PNG plots.
        data_dir: Directory for parquet/NetCDF output files.
    """

    def __init__(
        self,
        scenario: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
    ) -> None:
        self.scenario = _normalize_scenario(scenario)
        self.analysis_name = analysis_name
        self.params = params or {}

        root = results_root or Path("results")
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        self.run_dir = root / self.scenario / analysis_name / today
        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"

        # Parent of date dirs: where the `latest` symlink and primer live
        self._analysis_dir = root / self.scenario / analysis_name
        self._today = today
        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: io.TextIOBase | None = None
        self._start_time: datetime | None = None

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        """Create directories, write primer, and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.plots_dir.mkdir(exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)

        # Primer lives at the analysis level, not per-run
        if self._primer:
            readme = self._analysis_dir / "README.md"
            readme.write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(timezone.utc)

    def finalize(self, failed: bool = False) -> None:
        """Write run_info.json, run_log.txt, and update latest symlink.

        A failed run still gets its log and run_info (status "failed"), but
        `latest` keeps pointing at the last successful run.
        """
        # Restore stdout before writing metadata (so our writes aren't captured)
        log_text = ""
        if self._tee is not None:
            log_text = self._tee.getvalue()
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]

        log_path = self.run_dir / "run_log.txt"
        log_path.write_text(log_text, encoding="utf-8")

        end_time = datetime.now(timezone.utc)
        run_info = {
            "analysis": self.analysis_name,
            "scenario": self.scenario,
            "run_date": self._today,
            "status": "failed" if failed else "ok",
            "timestamp_start": (self._start_time.isoformat() if self._start_time else None),
            "timestamp_end": end_time.isoformat(),
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "params": self.params,
        }
        info_path = self.run_dir / "run_info.json"
        with open(info_path, "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        if failed:
            return

        # Relative symlink so the results tree stays portable
        latest = self._analysis_dir / "latest"
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(self._today)
