"""Test runner — executes one test file and compares its output."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from render_regress.executor.adapters import (
    ExecutionAdapter,
    ReferenceRendererAdapter,
    RendererAdapter,
    ScriptAdapter,
)
from render_regress.executor.context import RunContext
from render_regress.images.comparator import compare
from render_regress.images.converter import ConversionError
from render_regress.models.config import UpdateMode
from render_regress.models.test_case import TestCase, TestKind, TestParams
from render_regress.models.test_result import FailureKind, TestResult
from render_regress.params.extractor import ParamTable, is_yes
from render_regress.paths import (
    CLAMPED_SUFFIX,
    OUTPUT_TAG,
    PBRT_TAG,
    SCRIPT_TAG,
    output_path,
    with_suffix_before_ext,
)

if TYPE_CHECKING:
    from render_regress.reporter.reporter import Reporter

logger = logging.getLogger(__name__)

_DISABLED = ("no", "none", "")


def display_name(path: Path) -> str:
    try:
        return str(path.relative_to(Path.cwd()))
    except ValueError:
        return str(path)


class TestRunner:
    """Runs single test files through execute, compare, report and update."""

    __test__ = False

    def __init__(self, ctx: RunContext, reporter: Optional["Reporter"] = None):
        self.ctx = ctx
        self.reporter = reporter
        self.renderer = RendererAdapter(ctx)
        self.reference_renderer = ReferenceRendererAdapter(ctx)
        self.script = ScriptAdapter(ctx)

    def adapter_for(self, kind: TestKind) -> Optional[ExecutionAdapter]:
        match kind:
            case TestKind.RENDERER_SCENE | TestKind.REFERENCE_SCENE:
                return self.renderer
            case TestKind.SCRIPT:
                return self.script
            case _:
                return None

    def build_case(self, path: Path) -> Optional[TestCase]:
        """Classify ``path`` and derive its output and reference locations."""
        path = Path(path).absolute()
        kind = TestKind.classify(path, self.ctx.config)
        adapter = self.adapter_for(kind)
        if adapter is None:
            return None

        config = self.ctx.config
        tag = SCRIPT_TAG if kind == TestKind.SCRIPT else OUTPUT_TAG
        reference = None
        if config.ref_subdir:
            reference = path.parent / config.ref_subdir / f"{path.stem}{config.ref_ext}"
        return TestCase(
            path=path,
            kind=kind,
            adapter=adapter,
            output_path=output_path(self.ctx.out_dir, tag, path, config.output_ext),
            reference_path=reference,
            display_name=display_name(path),
        )

    def resolve_params(self, case: TestCase, table: ParamTable) -> TestParams:
        """Apply defaults to the raw parameter table.

        Raises ValueError for a malformed ``compare_threshold``.
        """
        config = self.ctx.config
        threshold = table.get("compare_threshold")
        clamp = table.get("clamp_output")

        companion = None
        declared = table.get("pbrt_reference")
        if declared is not None:
            if declared.strip().lower() not in _DISABLED:
                companion = str(case.directory / declared)
        elif case.kind == TestKind.REFERENCE_SCENE:
            # only reference-format scenes default to a ground-truth render of themselves
            companion = str(case.path)

        return TestParams(
            threshold=float(threshold) if threshold is not None else config.compare_threshold,
            clamp=is_yes(clamp) if clamp is not None else config.clamp_output,
            ignore=is_yes(table.get("ignore")),
            pbrt_reference=companion,
            compare_with=table.get_all("compare_with"),
        )

    def run_file(self, path: str | Path) -> Optional[TestResult]:
        """Run one test file; returns None for files that are not tests."""
        case = self.build_case(Path(path))
        if case is None:
            logger.debug("Skipping non-test file %s", path)
            return None

        start = time.time()
        result = TestResult(
            test_path=str(case.path),
            test_name=case.display_name,
            kind=case.kind.value,
            result="fail",
            output_path=str(case.output_path),
            reference_path=str(case.reference_path) if case.reference_path else None,
        )

        try:
            case.params = self.resolve_params(case, self.ctx.params.read(case.path))
        except (OSError, ValueError) as e:
            result.add_failure(FailureKind.EXECUTION, "cannot read test parameters", str(e))
            return self._finish(case, result, start)

        if case.params.ignore:
            logger.info("Ignoring %s", case.display_name)
            result.result = "ignored"
            return result

        if case.params.clamp:
            # clamped and unclamped renders of one scene are cached separately
            case.output_path = with_suffix_before_ext(case.output_path, CLAMPED_SUFFIX)
            result.output_path = str(case.output_path)

        logger.debug("Running %s (%s, threshold %g)", case.display_name,
                     case.kind.value, case.params.threshold)
        try:
            if self._execute(case, result):
                self._compare_reference(case, result)
                self._compare_companion(case, result)
                self._compare_peers(case, result)
        except (OSError, ValueError, ConversionError) as e:
            detail = getattr(e, "log", "")
            result.add_failure(FailureKind.EXECUTION, f"error while testing: {e}", detail)

        return self._finish(case, result, start)

    def _execute(self, case: TestCase, result: TestResult) -> bool:
        run = case.adapter.run(case.path, case.output_path, clamp=case.params.clamp)
        if not run.success:
            result.add_failure(FailureKind.EXECUTION, "execution failed", run.log)
            return False
        return True

    def _compare_reference(self, case: TestCase, result: TestResult) -> None:
        ref = case.reference_path
        if ref is None or not ref.exists() or self.ctx.update_mode == UpdateMode.ALL:
            return
        comparison = self.ctx.references.compare_reference(
            case.output_path, ref, case.params.threshold
        )
        if comparison.differs:
            result.add_failure(
                FailureKind.COMPARISON,
                f"output differs from reference image {display_name(ref)}",
                comparison.report,
            )
            result.artifacts.append(str(self.ctx.references.make_reference_image(case.output_path)))

    def _compare_companion(self, case: TestCase, result: TestResult) -> None:
        if case.params.pbrt_reference is None:
            return
        if not self.ctx.config.reference_renderer_command:
            logger.debug("No reference renderer configured, skipping ground-truth comparison")
            return

        scene = Path(case.params.pbrt_reference)
        companion_out = output_path(self.ctx.out_dir, PBRT_TAG, scene, self.ctx.config.output_ext,
                                    clamp=case.params.clamp)
        run = self.reference_renderer.run(scene, companion_out, clamp=case.params.clamp)
        if not run.success:
            result.add_failure(
                FailureKind.COMPANION,
                f"reference render of {display_name(scene)} failed",
                run.log,
            )
            return
        comparison = compare(self.ctx.comparator, case.output_path, companion_out,
                             case.params.threshold)
        if comparison.differs:
            result.add_failure(
                FailureKind.COMPARISON,
                f"output differs from reference render of {display_name(scene)}",
                comparison.report,
            )
            result.artifacts.append(str(companion_out))

    def _compare_peers(self, case: TestCase, result: TestResult) -> None:
        for name in case.params.compare_with:
            peer = case.directory / name
            if not peer.is_file():
                result.add_failure(FailureKind.COMPANION,
                                   f"comparison scene {display_name(peer)} not found")
                continue
            peer_out = output_path(self.ctx.out_dir, OUTPUT_TAG, peer, self.ctx.config.output_ext,
                                   clamp=case.params.clamp)
            run = self.renderer.run(peer, peer_out, clamp=case.params.clamp)
            if not run.success:
                result.add_failure(
                    FailureKind.COMPANION,
                    f"render of comparison scene {display_name(peer)} failed",
                    run.log,
                )
                continue
            comparison = compare(self.ctx.comparator, case.output_path, peer_out,
                                 case.params.threshold)
            if comparison.differs:
                result.add_failure(
                    FailureKind.COMPARISON,
                    f"output differs from {display_name(peer)}",
                    comparison.report,
                )
                result.artifacts.append(str(peer_out))

    def _finish(self, case: TestCase, result: TestResult, start: float) -> TestResult:
        if not result.failures and case.reference_path is not None:
            try:
                result.reference_updated = self.ctx.references.apply_update_policy(
                    case.output_path, case.reference_path, self.ctx.update_mode
                )
            except (OSError, ConversionError) as e:
                result.add_failure(
                    FailureKind.EXECUTION,
                    f"cannot update reference {display_name(case.reference_path)}",
                    str(e),
                )
        result.result = "pass" if not result.failures else "fail"
        result.duration_seconds = round(time.time() - start, 2)

        if self.reporter is not None:
            self.reporter.report(result)
        return result
