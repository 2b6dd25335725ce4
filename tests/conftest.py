"""Pytest configuration and shared fixtures."""

import io
import sys
from pathlib import Path

import pytest
from PIL import Image
from rich.console import Console

from render_regress.executor.context import run_context
from render_regress.models.config import HarnessConfig
from render_regress.reporter.reporter import Reporter

FAKE_RENDERER = Path(__file__).with_name("fake_renderer.py")


# ============================================================================
# Helpers
# ============================================================================


def make_image(path: Path, value: int = 128, size=(8, 8)) -> Path:
    """Write a solid gray RGB image."""
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, (value, value, value)).save(path)
    return path


def write_scene(path: Path, body: str = "value 128", params=None, prefix: str = "--") -> Path:
    """Write a scene file with a ``[test param]`` header."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"{prefix} [test param] {p}" for p in (params or [])]
    lines.append(body)
    path.write_text("\n".join(lines) + "\n")
    return path


def read_calls(log_path: Path) -> list[str]:
    if not log_path.exists():
        return []
    return log_path.read_text().splitlines()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def renderer_log(tmp_path: Path, monkeypatch) -> Path:
    """File the fake renderer appends one line per invocation to."""
    log = tmp_path / "renderer-calls.log"
    monkeypatch.setenv("FAKE_RENDERER_LOG", str(log))
    return log


@pytest.fixture
def harness_config(tmp_path: Path) -> HarnessConfig:
    """Config driving the fake renderer with the Pillow image backend."""
    return HarnessConfig(
        renderer_command=[sys.executable, str(FAKE_RENDERER)],
        reference_renderer_command=[sys.executable, str(FAKE_RENDERER), "--reference"],
        image_backend="pillow",
        output_ext=".png",
        reference_output_ext=".png",
        ref_ext=".png",
        reference_scale=0.5,
        out_dir=str(tmp_path / "out"),
    )


@pytest.fixture
def ctx(harness_config: HarnessConfig, renderer_log: Path):
    """An open run context; scratch directories are removed afterwards."""
    with run_context(harness_config) as context:
        yield context


@pytest.fixture
def console_output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def reporter(console_output: io.StringIO) -> Reporter:
    console = Console(file=console_output, width=200, force_terminal=False, color_system=None)
    return Reporter(console)


@pytest.fixture
def test_dir(tmp_path: Path) -> Path:
    path = tmp_path / "tests"
    path.mkdir()
    return path
