"""Reference image manager — derives, compares and stores reference images."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from render_regress.images.comparator import ComparisonResult, ImageComparator, compare
from render_regress.images.converter import ImageConverter
from render_regress.models.config import UpdateMode

logger = logging.getLogger(__name__)


class ReferenceImageManager:
    """Manages derived (downsampled) reference images and the stored references."""

    def __init__(self, comparator: ImageComparator, converter: ImageConverter,
                 ref_ext: str = ".png", scale: float = 0.25):
        self.comparator = comparator
        self.converter = converter
        self.ref_ext = ref_ext
        self.scale = scale
        self._derived: dict[Path, Path] = {}

    def derived_path(self, output_image: Path) -> Path:
        output_image = Path(output_image)
        return output_image.with_name(f"{output_image.name}-ref{self.ref_ext}")

    def make_reference_image(self, output_image: Path) -> Path:
        """Downsample ``output_image`` once and return the derived image path."""
        output_image = Path(output_image)
        cached = self._derived.get(output_image)
        if cached is not None and cached.exists():
            return cached

        ref = self.derived_path(output_image)
        if not ref.exists():
            logger.debug("Deriving reference image %s", ref)
            self.converter.convert(output_image, ref, scale=self.scale)
        self._derived[output_image] = ref
        return ref

    def compare_reference(self, output_image: Path, stored_reference: Path,
                          threshold: float) -> ComparisonResult:
        ref = self.make_reference_image(output_image)
        return compare(self.comparator, ref, stored_reference, threshold)

    def reference_differs(self, output_image: Path, stored_reference: Path,
                          threshold: float) -> bool:
        ref = self.make_reference_image(output_image)
        return self.comparator.differ(ref, stored_reference, threshold)

    def update_reference(self, output_image: Path, stored_reference: Path) -> None:
        """Copy the derived reference over the stored reference."""
        ref = self.make_reference_image(output_image)
        stored_reference = Path(stored_reference)
        stored_reference.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(ref, stored_reference)
        logger.info("Updated reference %s", stored_reference)

    def apply_update_policy(self, output_image: Path, stored_reference: Path,
                            mode: UpdateMode) -> bool:
        """Write the stored reference according to ``mode``; return True if written."""
        if mode == UpdateMode.ALL or (
            mode == UpdateMode.NEW and not Path(stored_reference).exists()
        ):
            self.update_reference(output_image, stored_reference)
            return True
        return False
