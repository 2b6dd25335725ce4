"""Execution adapters — strategies that produce an output image from a test file.

Every adapter treats an existing, readable output file as success and does not
run anything. This memoization is by presence only: a stale output is never
detected, so callers delete outputs to force a re-render.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from render_regress.executor.context import RunContext
from render_regress.images.converter import ConversionError
from render_regress.models.test_case import read_name_list
from render_regress.paths import with_suffix_before_ext

logger = logging.getLogger(__name__)

UNCLAMPED_SUFFIX = "-unclamped"


@dataclass
class ExecutionResult:
    success: bool
    log: str = ""
    cached: bool = False


class ExecutionAdapter(Protocol):
    def run(self, test_file: Path, output_path: Path, clamp: bool = False) -> ExecutionResult: ...


def output_ready(path: Path) -> bool:
    path = Path(path)
    return path.is_file() and os.access(path, os.R_OK)


def run_process(cmd: list[str], cwd: Path, env: Optional[dict[str, str]] = None,
                timeout: Optional[int] = None) -> ExecutionResult:
    """Run a command, capturing stdout and stderr together as the log."""
    logger.debug("Running in %s: %s", cwd, shlex.join(cmd))
    try:
        proc = subprocess.run(
            cmd, cwd=cwd, env=env, stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT, text=True, errors="replace", timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        out = e.stdout or ""
        if isinstance(out, bytes):
            out = out.decode(errors="replace")
        return ExecutionResult(False, f"{out}\ntimed out after {timeout}s: {shlex.join(cmd)}")
    except OSError as e:
        return ExecutionResult(False, f"could not run {shlex.join(cmd)}: {e}")

    if proc.returncode != 0:
        return ExecutionResult(
            False, f"{proc.stdout}\n{shlex.join(cmd)}: exit status {proc.returncode}"
        )
    return ExecutionResult(True, proc.stdout)


def _clamp_into(ctx: RunContext, unclamped: Path, output_path: Path, log: str) -> ExecutionResult:
    try:
        ctx.converter.convert(unclamped, output_path, clamp=True)
    except ConversionError as e:
        return ExecutionResult(False, f"{log}\n{e}\n{e.log}".strip())
    return ExecutionResult(True, log)


class RendererAdapter:
    """Runs the primary renderer on a scene file."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    def load_options(self, test_dir: Path) -> list[str]:
        """Translate PRELOADS / POSTLOADS in ``test_dir`` into renderer options."""
        config = self.ctx.config
        opts: list[str] = []
        for manifest, option in (
            (config.preloads_manifest, config.preload_option),
            (config.postloads_manifest, config.postload_option),
        ):
            path = test_dir / manifest
            if path.is_file():
                for name in read_name_list(path):
                    opts += [option, str(test_dir / name)]
        return opts

    def run(self, test_file: Path, output_path: Path, clamp: bool = False) -> ExecutionResult:
        test_file = Path(test_file).absolute()
        output_path = Path(output_path)
        if output_ready(output_path):
            logger.debug("Reusing existing output %s", output_path)
            return ExecutionResult(True, cached=True)

        config = self.ctx.config
        target = with_suffix_before_ext(output_path, UNCLAMPED_SUFFIX) if clamp else output_path
        cmd = (
            list(config.renderer_command)
            + list(config.renderer_options)
            + self.load_options(test_file.parent)
            + [str(test_file), str(target)]
        )
        result = run_process(cmd, cwd=test_file.parent, timeout=config.timeout_seconds)
        if not result.success:
            return result
        if not target.is_file():
            return ExecutionResult(False, f"{result.log}\nrenderer produced no output file {target}")
        if clamp:
            return _clamp_into(self.ctx, target, output_path, result.log)
        return result


class ReferenceRendererAdapter:
    """Runs the ground-truth renderer in the scratch run directory."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    def run(self, test_file: Path, output_path: Path, clamp: bool = False) -> ExecutionResult:
        test_file = Path(test_file).absolute()
        output_path = Path(output_path)
        if output_ready(output_path):
            logger.debug("Reusing existing reference render %s", output_path)
            return ExecutionResult(True, cached=True)

        config = self.ctx.config
        if not config.reference_renderer_command:
            return ExecutionResult(False, "no reference renderer configured")

        self.ctx.clear_run_dir()
        cmd = list(config.reference_renderer_command) + [str(test_file)]
        result = run_process(cmd, cwd=self.ctx.run_dir, timeout=config.timeout_seconds)
        if not result.success:
            return result

        produced = sorted(self.ctx.run_dir.glob(f"*{config.reference_output_ext}"))
        if len(produced) != 1:
            found = ", ".join(p.name for p in produced) or "none"
            return ExecutionResult(
                False, f"{result.log}\nno output file found (*{config.reference_output_ext}: {found})"
            )

        target = with_suffix_before_ext(output_path, UNCLAMPED_SUFFIX) if clamp else output_path
        shutil.copy2(produced[0], target)
        if clamp:
            return _clamp_into(self.ctx, target, output_path, result.log)
        return result


class ScriptAdapter:
    """Runs an arbitrary test script with a fixed environment contract."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    def environment(self, script: Path, output_path: Path) -> dict[str, str]:
        config = self.ctx.config
        env = dict(os.environ)
        env.update({
            "RENDERER": shlex.join(config.renderer_command),
            "IMAGE_DIFF": shlex.join(config.image_diff_command),
            "IMAGE_CONVERT": shlex.join(config.image_convert_command),
            "TEST_SCRIPT": str(script),
            "TEST_DIR": str(script.parent),
            "RUN_DIR": str(self.ctx.run_dir),
            "OUT_DIR": str(self.ctx.out_dir),
            "OUTPUT_FILE": str(output_path),
            "QUIET": "1" if self.ctx.quiet else "",
        })
        return env

    def run(self, test_file: Path, output_path: Path, clamp: bool = False) -> ExecutionResult:
        script = Path(test_file).absolute()
        output_path = Path(output_path)
        if output_ready(output_path):
            logger.debug("Reusing existing script output %s", output_path)
            return ExecutionResult(True, cached=True)

        config = self.ctx.config
        self.ctx.clear_run_dir()
        cmd = list(config.script_interpreter) + [str(script)]
        result = run_process(
            cmd, cwd=self.ctx.run_dir, env=self.environment(script, output_path),
            timeout=config.timeout_seconds,
        )
        if not result.success:
            return result
        if not output_path.is_file():
            return ExecutionResult(False, f"{result.log}\nscript produced no output file {output_path}")
        return result
