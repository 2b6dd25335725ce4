"""Configuration models for the regression harness."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigurationError(Exception):
    """A configuration problem that aborts the whole run."""

    exit_code = 2


class MissingToolError(ConfigurationError):
    exit_code = 3


class InvalidUpdateModeError(ConfigurationError):
    exit_code = 4


class LogDirNotEmptyError(ConfigurationError):
    exit_code = 5


class ConfigFileError(ConfigurationError):
    exit_code = 6


class UpdateMode(str, Enum):
    NO = "no"    # never write stored references
    NEW = "new"  # write only where no reference exists yet
    ALL = "all"  # always overwrite

    @classmethod
    def parse(cls, value: str | "UpdateMode") -> "UpdateMode":
        if isinstance(value, UpdateMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise InvalidUpdateModeError(
                f"Invalid update mode '{value}' (expected one of: {choices})"
            ) from None


class HarnessConfig(BaseModel):
    # External tools (argv prefixes)
    renderer_command: list[str] = Field(default_factory=lambda: ["render"])
    renderer_options: list[str] = Field(default_factory=list)
    preload_option: str = "--preload"
    postload_option: str = "--postload"
    reference_renderer_command: Optional[list[str]] = None
    image_diff_command: list[str] = Field(default_factory=lambda: ["imgdiff"])
    image_convert_command: list[str] = Field(default_factory=lambda: ["imgcvt"])
    script_interpreter: list[str] = Field(default_factory=lambda: ["sh"])
    timeout_seconds: Optional[int] = None

    # Image handling
    image_backend: Literal["external", "pillow"] = "external"
    compare_threshold: float = 0.002
    clamp_output: bool = False
    output_ext: str = ".exr"
    ref_ext: str = ".png"
    reference_output_ext: str = ".exr"
    reference_scale: float = 0.25

    # Test discovery
    renderer_scene_extensions: list[str] = Field(default_factory=lambda: [".lua"])
    reference_scene_extensions: list[str] = Field(default_factory=lambda: [".pbrt"])
    script_extensions: list[str] = Field(default_factory=lambda: [".sh"])
    comment_prefixes: dict[str, str] = Field(
        default_factory=lambda: {".lua": "--", ".pbrt": "#", ".sh": "#"}
    )
    params_suffix: str = ".params"
    subdirs_manifest: str = "SUBDIRS"
    preloads_manifest: str = "PRELOADS"
    postloads_manifest: str = "POSTLOADS"
    ref_subdir: Optional[str] = "REFS"

    # Run behaviour
    update_mode: UpdateMode = UpdateMode.NO
    log_dir: Optional[str] = None
    out_dir: Optional[str] = None
    report_path: Optional[str] = None
    quiet: bool = False

    @field_validator("update_mode", mode="before")
    @classmethod
    def parse_update_mode(cls, v):
        return UpdateMode.parse(v)

    @field_validator(
        "renderer_scene_extensions", "reference_scene_extensions", "script_extensions"
    )
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        return [e if e.startswith(".") else f".{e}" for e in v]

    @classmethod
    def load(cls, path: str | Path) -> "HarnessConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "HarnessConfig":
        """Validate raw settings, mapping failures onto configuration errors."""
        # InvalidUpdateModeError is not a ValueError, so pydantic lets it through
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigFileError(f"Invalid configuration: {e}") from None

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)

    def merged(self, **overrides) -> "HarnessConfig":
        """Return a copy with every non-None override applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return HarnessConfig.from_dict(data)
