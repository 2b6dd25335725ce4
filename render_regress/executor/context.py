"""Run context — scratch directories and tools shared by one harness run."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from render_regress.images.comparator import (
    ExternalImageComparator,
    ImageComparator,
    PillowImageComparator,
)
from render_regress.images.converter import (
    ExternalImageConverter,
    ImageConverter,
    PillowImageConverter,
)
from render_regress.images.reference import ReferenceImageManager
from render_regress.models.config import (
    HarnessConfig,
    LogDirNotEmptyError,
    MissingToolError,
    UpdateMode,
)
from render_regress.params.extractor import ParameterExtractor

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a run shares; created once per process and passed explicitly."""
    config: HarnessConfig
    run_dir: Path
    out_dir: Path
    log_dir: Optional[Path]
    comparator: ImageComparator
    converter: ImageConverter
    references: ReferenceImageManager
    params: ParameterExtractor

    @property
    def update_mode(self) -> UpdateMode:
        return self.config.update_mode

    @property
    def quiet(self) -> bool:
        return self.config.quiet

    def clear_run_dir(self) -> None:
        """Empty the scratch run directory before an external process uses it."""
        for entry in self.run_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()


def build_tools(config: HarnessConfig) -> tuple[ImageComparator, ImageConverter]:
    if config.image_backend == "pillow":
        return PillowImageComparator(), PillowImageConverter()
    return (
        ExternalImageComparator(config.image_diff_command, timeout=config.timeout_seconds),
        ExternalImageConverter(config.image_convert_command, timeout=config.timeout_seconds),
    )


def _tool_available(command: list[str]) -> bool:
    if not command:
        return False
    exe = command[0]
    if os.sep in exe:
        return os.path.isfile(exe) and os.access(exe, os.X_OK)
    return shutil.which(exe) is not None


def check_tools(config: HarnessConfig) -> None:
    """Fail fast if a required external tool cannot be found."""
    required = {"renderer": config.renderer_command}
    if config.image_backend == "external":
        required["image diff tool"] = config.image_diff_command
        required["image convert tool"] = config.image_convert_command
    if config.reference_renderer_command:
        required["reference renderer"] = config.reference_renderer_command

    for label, command in required.items():
        if not _tool_available(command):
            shown = command[0] if command else "(empty command)"
            raise MissingToolError(f"Cannot find {label}: {shown}")


def prepare_log_dir(log_dir: Optional[str | Path]) -> Optional[Path]:
    """Create the log directory, which must start out empty."""
    if log_dir is None:
        return None
    path = Path(log_dir).absolute()
    if path.exists() and any(path.iterdir()):
        raise LogDirNotEmptyError(f"Log directory is not empty: {path}")
    path.mkdir(parents=True, exist_ok=True)
    return path


@contextmanager
def _cleanup_on_signals() -> Iterator[None]:
    """Turn SIGTERM/SIGINT into SystemExit so enclosing cleanup still runs."""
    def _handler(signum, frame):
        raise SystemExit(128 + signum)

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread; default handling applies
            pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@contextmanager
def run_context(config: HarnessConfig, check: bool = True) -> Iterator[RunContext]:
    """Acquire the run's scratch directories and release them unconditionally."""
    if check:
        check_tools(config)
    log_dir = prepare_log_dir(config.log_dir)

    scratch = Path(tempfile.mkdtemp(prefix="render-regress-"))
    run_dir = scratch / "run"
    run_dir.mkdir()
    if config.out_dir:
        out_dir = Path(config.out_dir).absolute()
        out_dir.mkdir(parents=True, exist_ok=True)
    else:
        out_dir = scratch / "out"
        out_dir.mkdir()
    logger.debug("Scratch directory: %s (outputs in %s)", scratch, out_dir)

    comparator, converter = build_tools(config)
    ctx = RunContext(
        config=config,
        run_dir=run_dir,
        out_dir=out_dir,
        log_dir=log_dir,
        comparator=comparator,
        converter=converter,
        references=ReferenceImageManager(
            comparator, converter, ref_ext=config.ref_ext, scale=config.reference_scale,
        ),
        params=ParameterExtractor(config.comment_prefixes, config.params_suffix),
    )
    try:
        with _cleanup_on_signals():
            yield ctx
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
        logger.debug("Removed scratch directory %s", scratch)
