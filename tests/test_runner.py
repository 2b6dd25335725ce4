"""Tests for the test runner state machine.

These drive the fake renderer through real subprocesses, with the Pillow
image backend doing the comparisons.
"""

import io
from pathlib import Path
from unittest.mock import Mock

import pytest
from PIL import Image
from rich.console import Console

from conftest import make_image, read_calls, write_scene
from render_regress.executor.context import run_context
from render_regress.executor.runner import TestRunner
from render_regress.models.config import UpdateMode
from render_regress.models.test_case import TestKind
from render_regress.models.test_result import FailureKind
from render_regress.paths import OUTPUT_TAG, output_path
from render_regress.reporter.archive import FailureArchiver
from render_regress.reporter.reporter import Reporter


@pytest.fixture
def runner(ctx, reporter) -> TestRunner:
    return TestRunner(ctx, reporter)


# ============================================================================
# Case construction
# ============================================================================


class TestBuildCase:
    def test_kinds_by_extension(self, runner, test_dir):
        assert runner.build_case(test_dir / "a.lua").kind is TestKind.RENDERER_SCENE
        assert runner.build_case(test_dir / "a.pbrt").kind is TestKind.REFERENCE_SCENE
        assert runner.build_case(test_dir / "a.sh").kind is TestKind.SCRIPT
        assert runner.build_case(test_dir / "a.txt") is None

    def test_adapter_chosen_once_per_kind(self, runner, test_dir):
        assert runner.build_case(test_dir / "a.lua").adapter is runner.renderer
        assert runner.build_case(test_dir / "a.pbrt").adapter is runner.renderer
        assert runner.build_case(test_dir / "a.sh").adapter is runner.script

    def test_paths(self, runner, ctx, test_dir):
        case = runner.build_case(test_dir / "cube.lua")
        assert case.output_path == output_path(ctx.out_dir, OUTPUT_TAG, test_dir / "cube.lua", ".png")
        assert case.reference_path == test_dir / "REFS" / "cube.png"

    def test_no_reference_without_ref_subdir(self, runner, ctx, test_dir):
        ctx.config.ref_subdir = None
        assert runner.build_case(test_dir / "cube.lua").reference_path is None


class TestResolveParams:
    def _params(self, runner, path):
        case = runner.build_case(path)
        return runner.resolve_params(case, runner.ctx.params.read(path))

    def test_defaults(self, runner, test_dir):
        params = self._params(runner, write_scene(test_dir / "cube.lua"))
        assert params.threshold == 0.002
        assert params.clamp is False
        assert params.ignore is False
        assert params.pbrt_reference is None
        assert params.compare_with == []

    def test_reference_scene_defaults_to_itself(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.pbrt", prefix="#")
        assert self._params(runner, scene).pbrt_reference == str(scene)

    def test_declared_companion(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.lua", params=["pbrt_reference = truth.pbrt"])
        assert self._params(runner, scene).pbrt_reference == str(test_dir / "truth.pbrt")

    def test_companion_disabled(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.pbrt", params=["pbrt_reference = no"], prefix="#")
        assert self._params(runner, scene).pbrt_reference is None

    def test_overrides(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.lua", params=[
            "compare_threshold = 0.1",
            "clamp_output = yes",
            "compare_with = a.lua",
            "compare_with = b.lua",
        ])
        params = self._params(runner, scene)
        assert params.threshold == 0.1
        assert params.clamp is True
        assert params.compare_with == ["a.lua", "b.lua"]

    def test_config_clamp_default(self, runner, ctx, test_dir):
        ctx.config.clamp_output = True
        assert self._params(runner, write_scene(test_dir / "cube.lua")).clamp is True


# ============================================================================
# End-to-end scenarios
# ============================================================================


@pytest.mark.integration
class TestRunFile:
    def test_plain_scene_passes(self, runner, ctx, test_dir, console_output):
        scene = write_scene(test_dir / "cube.lua")
        result = runner.run_file(scene)

        assert result.result == "pass"
        assert result.failures == []
        assert Path(result.output_path).exists()
        assert result.reference_updated is False
        assert not (test_dir / "REFS").exists()
        assert console_output.getvalue().strip().endswith("cube.lua: OK")

    def test_reference_mismatch_reports_diff(self, runner, test_dir, console_output):
        scene = write_scene(test_dir / "cube.lua", "value 128")
        make_image(test_dir / "REFS" / "cube.png", 200, size=(4, 4))

        result = runner.run_file(scene)

        assert result.result == "fail"
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.kind is FailureKind.COMPARISON
        assert "reference image" in failure.title
        assert "mean difference" in failure.detail
        assert result.artifacts == [result.output_path + "-ref.png"]
        text = console_output.getvalue()
        assert "cube.lua: FAILED:" in text
        assert "mean difference" in text

    def test_reference_mismatch_archived_to_log_dir(self, harness_config, renderer_log,
                                                    test_dir, tmp_path):
        log_dir = tmp_path / "logs"
        config = harness_config.model_copy(update={"log_dir": str(log_dir)})
        scene = write_scene(test_dir / "cube.lua", "value 128")
        make_image(test_dir / "REFS" / "cube.png", 200, size=(4, 4))

        with run_context(config) as ctx:
            reporter = Reporter(Console(file=io.StringIO()),
                                FailureArchiver(ctx.log_dir))
            result = TestRunner(ctx, reporter).run_file(scene)

        names = sorted(p.name for p in log_dir.iterdir())
        output_name = Path(result.output_path).name
        assert names == sorted([output_name, output_name + "-ref.png", output_name + ".log"])
        assert "FAILED" in (log_dir / (output_name + ".log")).read_text()

    def test_matching_reference_passes(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.lua", "value 90")
        make_image(test_dir / "REFS" / "cube.png", 90, size=(4, 4))
        assert runner.run_file(scene).result == "pass"

    def test_threshold_parameter_allows_difference(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.lua", "value 128", params=["compare_threshold = 0.5"])
        make_image(test_dir / "REFS" / "cube.png", 140, size=(4, 4))
        assert runner.run_file(scene).result == "pass"

    def test_ignored_scene_is_not_executed(self, runner, test_dir, console_output, renderer_log):
        scene = write_scene(test_dir / "cube.lua", params=["ignore = yes"])
        result = runner.run_file(scene)

        assert result.result == "ignored"
        assert console_output.getvalue() == ""
        assert read_calls(renderer_log) == []

    def test_unsupported_file_is_skipped(self, runner, test_dir, console_output):
        notes = test_dir / "README.txt"
        notes.write_text("not a test")
        assert runner.run_file(notes) is None
        assert console_output.getvalue() == ""

    def test_execution_failure_short_circuits(self, runner, test_dir, renderer_log):
        write_scene(test_dir / "a.lua", "value 10")
        scene = write_scene(test_dir / "cube.lua", "fail", params=["compare_with = a.lua"])
        make_image(test_dir / "REFS" / "cube.png", 200, size=(4, 4))

        result = runner.run_file(scene)

        assert result.result == "fail"
        assert len(result.failures) == 1
        assert result.failures[0].kind is FailureKind.EXECUTION
        assert "cannot render cube.lua" in result.failures[0].detail
        assert read_calls(renderer_log) == ["render cube.lua"]

    def test_two_peers_one_differs(self, runner, test_dir, renderer_log):
        write_scene(test_dir / "a.lua", "value 128")
        write_scene(test_dir / "b.lua", "value 200")
        scene = write_scene(test_dir / "cube.lua", "value 128",
                            params=["compare_with = a.lua", "compare_with = b.lua"])

        result = runner.run_file(scene)

        assert [f.kind for f in result.failures] == [FailureKind.COMPARISON]
        assert "b.lua" in result.failures[0].title
        assert read_calls(renderer_log) == ["render cube.lua", "render a.lua", "render b.lua"]

    def test_two_peers_both_differ_in_order(self, runner, test_dir):
        write_scene(test_dir / "a.lua", "value 100")
        write_scene(test_dir / "b.lua", "value 200")
        scene = write_scene(test_dir / "cube.lua", "value 10",
                            params=["compare_with = b.lua", "compare_with = a.lua"])

        result = runner.run_file(scene)

        assert len(result.failures) == 2
        assert "b.lua" in result.failures[0].title
        assert "a.lua" in result.failures[1].title

    def test_failures_accumulate_across_comparisons(self, runner, test_dir):
        write_scene(test_dir / "a.lua", "value 100")
        scene = write_scene(test_dir / "cube.lua", "value 10", params=["compare_with = a.lua"])
        make_image(test_dir / "REFS" / "cube.png", 200, size=(4, 4))

        result = runner.run_file(scene)

        assert [f.kind for f in result.failures] == [FailureKind.COMPARISON, FailureKind.COMPARISON]

    def test_missing_peer_is_companion_failure(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.lua", params=["compare_with = ghost.lua"])
        result = runner.run_file(scene)
        assert result.failures[0].kind is FailureKind.COMPANION

    def test_peer_render_failure_is_companion_failure(self, runner, test_dir):
        write_scene(test_dir / "a.lua", "fail")
        scene = write_scene(test_dir / "cube.lua", params=["compare_with = a.lua"])
        result = runner.run_file(scene)
        assert result.failures[0].kind is FailureKind.COMPANION
        assert "cannot render a.lua" in result.failures[0].detail


@pytest.mark.integration
class TestGroundTruthComparison:
    def test_reference_scene_matches_ground_truth(self, runner, test_dir, renderer_log):
        scene = write_scene(test_dir / "cube.pbrt", "value 80", prefix="#")
        result = runner.run_file(scene)
        assert result.result == "pass"
        assert read_calls(renderer_log) == ["render cube.pbrt", "reference cube.pbrt"]

    def test_reference_scene_differs_from_ground_truth(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.pbrt", "value 80\nreference_value 180", prefix="#")
        result = runner.run_file(scene)
        assert [f.kind for f in result.failures] == [FailureKind.COMPARISON]
        assert "reference render" in result.failures[0].title

    def test_ground_truth_without_output(self, runner, test_dir):
        write_scene(test_dir / "truth.pbrt", "no_output", prefix="#")
        scene = write_scene(test_dir / "cube.lua", params=["pbrt_reference = truth.pbrt"])
        result = runner.run_file(scene)
        assert [f.kind for f in result.failures] == [FailureKind.COMPANION]
        assert "no output file found" in result.failures[0].detail

    def test_native_scene_has_no_default_ground_truth(self, runner, test_dir, renderer_log):
        write_scene(test_dir / "cube.pbrt", "value 1", prefix="#")
        scene = write_scene(test_dir / "cube.lua")
        runner.run_file(scene)
        assert read_calls(renderer_log) == ["render cube.lua"]

    def test_disabled_ground_truth(self, runner, test_dir, renderer_log):
        scene = write_scene(test_dir / "cube.pbrt", params=["pbrt_reference = no"], prefix="#")
        assert runner.run_file(scene).result == "pass"
        assert read_calls(renderer_log) == ["render cube.pbrt"]

    def test_skipped_without_reference_renderer(self, runner, ctx, test_dir, renderer_log):
        ctx.config.reference_renderer_command = None
        scene = write_scene(test_dir / "cube.pbrt", prefix="#")
        assert runner.run_file(scene).result == "pass"
        assert read_calls(renderer_log) == ["render cube.pbrt"]


@pytest.mark.integration
class TestReferenceUpdates:
    def test_update_new_creates_missing_reference(self, runner, ctx, test_dir):
        ctx.config.update_mode = UpdateMode.NEW
        scene = write_scene(test_dir / "cube.lua", "value 66")

        result = runner.run_file(scene)

        assert result.reference_updated is True
        with Image.open(test_dir / "REFS" / "cube.png") as img:
            assert img.size == (4, 4)
            assert img.getpixel((0, 0)) == (66, 66, 66)

    def test_update_new_keeps_existing_reference(self, runner, ctx, test_dir):
        ctx.config.update_mode = UpdateMode.NEW
        scene = write_scene(test_dir / "cube.lua", "value 66")
        stored = make_image(test_dir / "REFS" / "cube.png", 66, size=(4, 4))
        before = stored.stat().st_mtime_ns

        result = runner.run_file(scene)

        assert result.result == "pass"
        assert result.reference_updated is False
        assert stored.stat().st_mtime_ns == before

    def test_update_all_skips_comparison_and_overwrites(self, runner, ctx, test_dir):
        ctx.config.update_mode = UpdateMode.ALL
        scene = write_scene(test_dir / "cube.lua", "value 66")
        make_image(test_dir / "REFS" / "cube.png", 250, size=(4, 4))

        result = runner.run_file(scene)

        assert result.result == "pass"
        assert result.reference_updated is True
        with Image.open(test_dir / "REFS" / "cube.png") as img:
            assert img.getpixel((0, 0)) == (66, 66, 66)

    def test_failed_test_does_not_update(self, runner, ctx, test_dir):
        ctx.config.update_mode = UpdateMode.ALL
        write_scene(test_dir / "a.lua", "value 1")
        scene = write_scene(test_dir / "cube.lua", "value 66", params=["compare_with = a.lua"])
        result = runner.run_file(scene)
        assert result.result == "fail"
        assert not (test_dir / "REFS").exists()

    def test_update_failure_fails_the_test(self, runner, ctx, test_dir):
        ctx.config.update_mode = UpdateMode.NEW
        (test_dir / "REFS").write_text("a file where the directory should be")
        scene = write_scene(test_dir / "cube.lua")

        result = runner.run_file(scene)

        assert result.result == "fail"
        assert "cannot update reference" in result.failures[0].title


@pytest.mark.integration
class TestOtherKinds:
    def test_script_test(self, runner, test_dir):
        make_image(test_dir / "expected.png", 12)
        script = test_dir / "copy.sh"
        script.write_text('# [test param] compare_threshold = 0.01\ncp "$TEST_DIR/expected.png" "$OUTPUT_FILE"\n')

        result = runner.run_file(script)

        assert result.result == "pass"
        assert result.kind == "script"
        assert Path(result.output_path).name.startswith("script-")

    def test_clamp_parameter(self, runner, ctx, test_dir):
        scene = write_scene(test_dir / "cube.lua", params=["clamp_output = yes"])
        result = runner.run_file(scene)
        assert result.result == "pass"
        unclamped = Path(result.output_path).with_name(Path(result.output_path).stem + "-unclamped.png")
        assert unclamped.exists()

    def test_invalid_threshold_is_a_failure(self, runner, test_dir):
        scene = write_scene(test_dir / "cube.lua", params=["compare_threshold = lots"])
        result = runner.run_file(scene)
        assert result.result == "fail"
        assert result.failures[0].title == "cannot read test parameters"

    def test_outputs_are_memoized_across_runs(self, runner, test_dir, renderer_log):
        scene = write_scene(test_dir / "cube.lua")
        runner.run_file(scene)
        runner.run_file(scene)
        assert read_calls(renderer_log) == ["render cube.lua"]

    def test_clamped_and_unclamped_renders_are_cached_separately(self, runner, test_dir,
                                                                 renderer_log):
        peer = write_scene(test_dir / "a.lua")
        scene = write_scene(test_dir / "cube.lua", params=["clamp_output = yes", "compare_with = a.lua"])

        plain = runner.run_file(peer)
        clamped = runner.run_file(scene)

        assert plain.result == clamped.result == "pass"
        assert Path(clamped.output_path).stem.endswith("-clamped")
        assert read_calls(renderer_log) == ["render a.lua", "render cube.lua", "render a.lua"]

    def test_deep_test_directory(self, runner, test_dir):
        deep = test_dir.joinpath(*(f"deeply_nested_scene_directory_{i}" for i in range(8)))
        scene = write_scene(deep / "x.lua")
        make_image(deep / "REFS" / "x.png", 200, size=(4, 4))

        result = runner.run_file(scene)

        assert [f.kind for f in result.failures] == [FailureKind.COMPARISON]
        assert result.failures[0].title.endswith("x.png")
        assert Path(result.artifacts[0]).exists()

    def test_unexpected_value_error_becomes_failure(self, runner, test_dir):
        runner.renderer.run = Mock(side_effect=ValueError("bad manifest"))
        scene = write_scene(test_dir / "cube.lua")

        result = runner.run_file(scene)

        assert result.result == "fail"
        assert result.failures[0].title == "error while testing: bad manifest"
