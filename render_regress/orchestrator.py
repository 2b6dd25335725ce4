"""Run orchestrator — sets up the run context, walks test paths and reports."""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

from rich.console import Console

from render_regress.executor.context import run_context
from render_regress.executor.runner import TestRunner
from render_regress.executor.walker import DirectoryWalker
from render_regress.models.config import ConfigurationError, HarnessConfig
from render_regress.models.test_result import RunResult, TestResult
from render_regress.params.extractor import ParameterExtractor
from render_regress.reporter.archive import FailureArchiver
from render_regress.reporter.json_report import generate_json_report
from render_regress.reporter.reporter import Reporter

logger = logging.getLogger(__name__)


class Orchestrator:
    """Coordinates a full regression run over one or more test paths."""

    def __init__(self, config: HarnessConfig, console: Optional[Console] = None,
                 check_tools: bool = True):
        self.config = config
        self.console = console or Console()
        self.check_tools = check_tools

    def run(self, paths: Iterable[str | Path]) -> RunResult:
        """Run every test under ``paths`` sequentially and return the summary."""
        roots = [Path(p).absolute() for p in paths]
        missing = [str(p) for p in roots if not p.exists()]
        if missing:
            raise ConfigurationError(f"No such test file or directory: {', '.join(missing)}")

        run_id = f"run_{uuid.uuid4().hex[:8]}"
        started_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        start = time.time()
        logger.info("=== Starting regression run %s (update mode: %s) ===",
                    run_id, self.config.update_mode.value)

        results: list[TestResult] = []
        with run_context(self.config, check=self.check_tools) as ctx:
            archiver = FailureArchiver(ctx.log_dir) if ctx.log_dir else None
            walker = DirectoryWalker(TestRunner(ctx, Reporter(self.console, archiver)))
            for root in roots:
                logger.debug("--- Running tests under %s ---", root)
                results.extend(walker.run_path(root))

        duration = time.time() - start
        run_result = RunResult.from_results(
            run_id=run_id,
            started_at=started_at,
            completed_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            roots=[str(r) for r in roots],
            results=results,
            duration=duration,
        )
        logger.info(
            "=== Run complete: %d passed, %d failed, %d ignored (%.1fs) ===",
            run_result.passed, run_result.failed, run_result.ignored, duration,
        )

        if self.config.report_path:
            path = Path(self.config.report_path)
            generate_json_report(run_result, path)
            logger.info("JSON report: %s", path)
        return run_result

    def show_params(self, test_file: str | Path) -> dict[str, list[str]]:
        """Return the raw parameter table of a test file."""
        extractor = ParameterExtractor(self.config.comment_prefixes, self.config.params_suffix)
        return dict(extractor.read(test_file).items())
