"""Image conversion — downsampling and intensity clamping."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class ConversionError(Exception):
    def __init__(self, message: str, log: str = ""):
        super().__init__(message)
        self.log = log


class ImageConverter(Protocol):
    def convert(self, source: Path, dest: Path, scale: Optional[float] = None,
                clamp: bool = False) -> None: ...


class ExternalImageConverter:
    """Runs ``<tool> [--scale S] [--clamp] INPUT OUTPUT``."""

    def __init__(self, command: list[str], timeout: Optional[int] = None):
        self.command = list(command)
        self.timeout = timeout

    def convert(self, source: Path, dest: Path, scale: Optional[float] = None,
                clamp: bool = False) -> None:
        cmd = list(self.command)
        if scale is not None:
            cmd += ["--scale", str(scale)]
        if clamp:
            cmd.append("--clamp")
        cmd += [str(source), str(dest)]
        logger.debug("Converting image: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ConversionError(f"image conversion of {source} failed", str(e)) from e
        if result.returncode != 0 or not Path(dest).is_file():
            raise ConversionError(f"image conversion of {source} failed", result.stdout)


class PillowImageConverter:
    """Pillow implementation; clamping converts to 8-bit RGB."""

    def convert(self, source: Path, dest: Path, scale: Optional[float] = None,
                clamp: bool = False) -> None:
        from PIL import Image

        try:
            with Image.open(source) as img:
                out = img.convert("RGB") if clamp or img.mode not in ("RGB", "RGBA", "L") else img.copy()
                if scale is not None and scale != 1.0:
                    size = (max(1, round(out.size[0] * scale)),
                            max(1, round(out.size[1] * scale)))
                    out = out.resize(size, Image.Resampling.BOX)
                out.save(dest)
        except OSError as e:
            raise ConversionError(f"image conversion of {source} failed", str(e)) from e
