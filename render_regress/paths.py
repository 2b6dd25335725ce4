"""Shared path utilities — derive collision-free output names for tests."""

from __future__ import annotations

import hashlib
from pathlib import Path
from urllib.parse import quote

OUTPUT_TAG = "out"
SCRIPT_TAG = "script"
PBRT_TAG = "pbrt"
CLAMPED_SUFFIX = "-clamped"

DIR_DIGEST_LENGTH = 16


def encode_component(text: str) -> str:
    """Quote a path component so it can be embedded in a single filename."""
    return quote(text, safe="")


def directory_id(directory: Path) -> str:
    """Stable fixed-length id for an absolute test directory."""
    return hashlib.sha1(str(directory).encode("utf-8")).hexdigest()[:DIR_DIGEST_LENGTH]


def output_name(tag: str, test_file: Path, ext: str) -> str:
    """Build the output filename for a test file.

    The directory id has a fixed length and sits right before the extension,
    so ``<tag>-<quoted basename>-<dir id><ext>`` splits back unambiguously
    however deep the test directory is.
    """
    test_file = Path(test_file).absolute()
    base = encode_component(test_file.name)
    return f"{tag}-{base}-{directory_id(test_file.parent)}{ext}"


def output_path(out_dir: Path, tag: str, test_file: Path, ext: str, clamp: bool = False) -> Path:
    path = Path(out_dir) / output_name(tag, test_file, ext)
    return with_suffix_before_ext(path, CLAMPED_SUFFIX) if clamp else path


def with_suffix_before_ext(path: Path, suffix: str) -> Path:
    """Insert ``suffix`` before the final extension: ``a.exr`` -> ``a-unclamped.exr``."""
    path = Path(path)
    return path.with_name(f"{path.stem}{suffix}{path.suffix}")
