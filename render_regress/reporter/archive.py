"""Failure archive — persists logs and offending images of failing tests."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from render_regress.models.test_result import TestResult
from render_regress.paths import encode_component

logger = logging.getLogger(__name__)


class FailureArchiver:
    """Copies failure evidence into the log directory (one entry set per test)."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _base_name(self, result: TestResult) -> str:
        if result.output_path:
            return Path(result.output_path).name
        return encode_component(Path(result.test_path).name)

    def write_log(self, result: TestResult) -> Path:
        """Write the failure blocks of ``result`` to ``<output name>.log``."""
        path = self.log_dir / f"{self._base_name(result)}.log"
        lines = [f"{result.test_name}: FAILED:"]
        lines += [failure.format_block() for failure in result.failures]
        with open(path, "w") as f:
            f.write("\n".join(lines) + "\n")
        return path

    def copy_artifacts(self, result: TestResult) -> list[Path]:
        """Copy the output image and any archived artifacts that exist."""
        candidates = ([result.output_path] if result.output_path else []) + result.artifacts
        copied = []
        for src in candidates:
            src_path = Path(src)
            if not src_path.is_file():
                continue
            dest = self.log_dir / src_path.name
            shutil.copy2(src_path, dest)
            copied.append(dest)
        return copied

    def archive(self, result: TestResult) -> list[str]:
        """Persist everything about a failing test; returns the written paths."""
        written = [self.write_log(result)]
        try:
            written += self.copy_artifacts(result)
        except OSError as e:
            logger.warning("Could not archive images for %s: %s", result.test_name, e)
        logger.debug("Archived %d files for %s", len(written), result.test_name)
        return [str(p) for p in written]
