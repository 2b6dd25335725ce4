"""Directory walker — discovers test files and manifest-listed subdirectories."""

from __future__ import annotations

import logging
from pathlib import Path

from render_regress.executor.runner import TestRunner
from render_regress.models.test_case import DirectoryManifest
from render_regress.models.test_result import TestResult

logger = logging.getLogger(__name__)


class DirectoryWalker:
    """Runs every test under a path.

    Files directly inside a directory run first, in sorted order. Then the
    subdirectories named in its SUBDIRS manifest are visited in manifest order;
    unlisted subdirectories are never visited.
    """

    def __init__(self, runner: TestRunner):
        self.runner = runner

    def run_path(self, path: str | Path) -> list[TestResult]:
        path = Path(path).absolute()
        if path.is_dir():
            return self._run_dir(path)
        if not path.exists():
            raise FileNotFoundError(f"No such test file or directory: {path}")
        result = self.runner.run_file(path)
        return [result] if result is not None else []

    def _run_dir(self, directory: Path) -> list[TestResult]:
        logger.debug("Entering %s", directory)
        results: list[TestResult] = []
        for entry in sorted(directory.iterdir(), key=lambda p: p.name):
            if entry.is_dir():
                continue
            result = self.runner.run_file(entry)
            if result is not None:
                results.append(result)

        manifest_name = self.runner.ctx.config.subdirs_manifest
        try:
            manifest = DirectoryManifest.read(directory, manifest_name)
        except OSError as e:
            logger.warning("Cannot read %s: %s", directory / manifest_name, e)
            return results
        for name in manifest.subdirs:
            subdir = directory / name
            if not subdir.is_dir():
                logger.warning("%s lists missing subdirectory %s", directory / manifest_name, name)
                continue
            results.extend(self._run_dir(subdir))
        return results
