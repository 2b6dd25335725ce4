"""Parameter extraction — reads per-test parameters from a file header.

Parameters live either in a sidecar ``<test file>.params`` file, where every
line may hold a ``NAME = VALUE`` (or ``NAME: VALUE``) assignment, or in the
test file itself as marked comment lines::

    -- [test param] compare_threshold = 0.01
    -- [test param] compare_with: other-scene.lua

Only the leading block of the test file is scanned: the first line that is
neither blank nor a comment (for the file's comment syntax) ends the header.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_ASSIGNMENT = r"(?P<name>[A-Za-z_][\w.-]*)\s*[=:]\s*(?P<value>.*?)\s*$"
_MARKER = r"\[\s*test\s+param\s*\]"
_BLANK = re.compile(r"^\s*$")
_SIDECAR_PARAM = re.compile(r"^\s*" + _ASSIGNMENT)


class ParamTable:
    """Parameter name to ordered list of raw string values."""

    def __init__(self, values: Optional[dict[str, list[str]]] = None):
        self._values: OrderedDict[str, list[str]] = OrderedDict()
        for name, vals in (values or {}).items():
            self._values[name] = list(vals)

    def add(self, name: str, value: str) -> None:
        self._values.setdefault(name, []).append(value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self._values.get(name)
        return values[0] if values else default

    def get_all(self, name: str, default: Optional[Iterable[str]] = None) -> list[str]:
        values = self._values.get(name)
        if values:
            return list(values)
        return list(default) if default is not None else []

    def names(self) -> list[str]:
        return list(self._values)

    def items(self):
        return [(k, list(v)) for k, v in self._values.items()]

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParamTable):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"ParamTable({dict(self._values)!r})"


def _comment_patterns(comment_prefix: Optional[str]) -> tuple[re.Pattern, re.Pattern]:
    if comment_prefix:
        lead = r"^\s*" + re.escape(comment_prefix)
        valid = re.compile(lead)
    else:
        lead = r"^\s*"
        valid = re.compile(r"")  # any line belongs to the header
    param = re.compile(lead + r"\s*" + _MARKER + r"\s*" + _ASSIGNMENT)
    return valid, param


def parse_sidecar(lines: Iterable[str]) -> ParamTable:
    """Parse a dedicated parameters file; every line is a candidate."""
    table = ParamTable()
    for line in lines:
        if _BLANK.match(line):
            continue
        m = _SIDECAR_PARAM.match(line)
        if m:
            table.add(m.group("name"), m.group("value"))
    return table


def parse_header(lines: Iterable[str], comment_prefix: Optional[str]) -> ParamTable:
    """Parse marked parameter comments from the leading block of a test file."""
    valid, param = _comment_patterns(comment_prefix)
    table = ParamTable()
    for line in lines:
        if _BLANK.match(line):
            continue
        if not valid.match(line):
            break
        m = param.match(line)
        if m:
            table.add(m.group("name"), m.group("value"))
    return table


def is_yes(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() == "yes"


class ParameterExtractor:
    """Looks up test parameters with per-extension comment syntax."""

    def __init__(self, comment_prefixes: Optional[dict[str, str]] = None,
                 params_suffix: str = ".params"):
        self.comment_prefixes = dict(comment_prefixes or {})
        self.params_suffix = params_suffix

    def sidecar_path(self, source_file: Path) -> Path:
        source_file = Path(source_file)
        return source_file.with_name(source_file.name + self.params_suffix)

    def read(self, source_file: str | Path) -> ParamTable:
        """Return every parameter declared for ``source_file``.

        Raises FileNotFoundError if the source file does not exist.
        """
        source_file = Path(source_file)
        if not source_file.is_file():
            raise FileNotFoundError(f"Test file not found: {source_file}")

        sidecar = self.sidecar_path(source_file)
        if sidecar.is_file():
            logger.debug("Reading parameters from %s", sidecar)
            with open(sidecar, encoding="utf-8", errors="replace") as f:
                return parse_sidecar(f)

        prefix = self.comment_prefixes.get(source_file.suffix)
        with open(source_file, encoding="utf-8", errors="replace") as f:
            return parse_header(f, prefix)

    def get(self, name: str, source_file: str | Path,
            default: Optional[str] = None) -> Optional[str]:
        return self.read(source_file).get(name, default)

    def get_all(self, name: str, source_file: str | Path,
                default: Optional[Iterable[str]] = None) -> list[str]:
        return self.read(source_file).get_all(name, default)
