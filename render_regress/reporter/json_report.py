"""JSON report output."""

from __future__ import annotations

import json
from pathlib import Path

from render_regress.models.test_result import RunResult


def generate_json_report(run_result: RunResult, output_path: Path) -> None:
    """Write a machine-readable JSON report of the run."""
    report = run_result.model_dump(mode="json")
    report["failures"] = [
        {
            "test_name": r.test_name,
            "test_path": r.test_path,
            "failures": [f.model_dump(mode="json") for f in r.failures],
        }
        for r in run_result.test_results
        if r.result == "fail"
    ]

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(report, f, indent=2, default=str)
