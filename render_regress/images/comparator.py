"""Image comparison — answers whether two images differ beyond a threshold.

The threshold is the maximum allowed average intensity delta, with
intensities normalized to [0, 1].
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class ComparisonResult:
    equal: bool
    report: str = ""

    @property
    def differs(self) -> bool:
        return not self.equal


class ImageComparator(Protocol):
    def differ(self, image_a: Path, image_b: Path, threshold: float) -> bool: ...

    def diff_report(self, image_a: Path, image_b: Path) -> str: ...


def compare(comparator: ImageComparator, image_a: Path, image_b: Path,
            threshold: float) -> ComparisonResult:
    """Compare two images, producing a diff report only when they differ."""
    if not comparator.differ(image_a, image_b, threshold):
        return ComparisonResult(True)
    return ComparisonResult(False, comparator.diff_report(image_a, image_b))


class ExternalImageComparator:
    """Delegates to an image-diff tool.

    ``<tool> --threshold T A B`` must exit zero iff the images are within
    tolerance; ``<tool> A B`` prints a textual diff report.
    """

    def __init__(self, command: list[str], timeout: Optional[int] = None):
        self.command = list(command)
        self.timeout = timeout

    def differ(self, image_a: Path, image_b: Path, threshold: float) -> bool:
        cmd = self.command + ["--threshold", str(threshold), str(image_a), str(image_b)]
        logger.debug("Comparing images: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Image diff tool failed to run: %s", e)
            return True
        return result.returncode != 0

    def diff_report(self, image_a: Path, image_b: Path) -> str:
        cmd = self.command + [str(image_a), str(image_b)]
        try:
            result = subprocess.run(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return f"image diff tool failed: {e}"
        return result.stdout


class PillowImageComparator:
    """In-process comparison of 8-bit images using Pillow."""

    def _load_pair(self, image_a: Path, image_b: Path):
        from PIL import Image

        with Image.open(image_a) as a, Image.open(image_b) as b:
            return a.convert("RGB"), b.convert("RGB")

    def mean_delta(self, image_a: Path, image_b: Path) -> Optional[float]:
        """Average absolute channel difference in [0, 1], or None if sizes differ."""
        from PIL import ImageChops, ImageStat

        a, b = self._load_pair(image_a, image_b)
        if a.size != b.size:
            return None
        stat = ImageStat.Stat(ImageChops.difference(a, b))
        return sum(stat.mean) / len(stat.mean) / 255.0

    def differ(self, image_a: Path, image_b: Path, threshold: float) -> bool:
        delta = self.mean_delta(image_a, image_b)
        return delta is None or delta > threshold

    def diff_report(self, image_a: Path, image_b: Path) -> str:
        from PIL import ImageChops, ImageStat

        a, b = self._load_pair(image_a, image_b)
        if a.size != b.size:
            return (f"image sizes differ: {a.size[0]}x{a.size[1]} "
                    f"vs {b.size[0]}x{b.size[1]}")
        diff = ImageChops.difference(a, b)
        stat = ImageStat.Stat(diff)
        mean = sum(stat.mean) / len(stat.mean) / 255.0
        peak = max(hi for _, hi in diff.getextrema()) / 255.0
        changed = sum(1 for px in diff.getdata() if any(px))
        total = a.size[0] * a.size[1]
        return (
            f"mean difference: {mean:.6f}\n"
            f"max difference:  {peak:.6f}\n"
            f"pixels changed:  {changed}/{total} ({changed / total:.2%})"
        )
