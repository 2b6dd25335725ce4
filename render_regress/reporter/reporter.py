"""Per-test status reporting."""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape

from render_regress.models.test_result import TestResult

from .archive import FailureArchiver

logger = logging.getLogger(__name__)


class Reporter:
    """Prints ``OK`` / ``FAILED:`` lines and archives failures."""

    def __init__(self, console: Optional[Console] = None,
                 archiver: Optional[FailureArchiver] = None):
        self.console = console or Console()
        self.archiver = archiver

    def report(self, result: TestResult) -> None:
        if result.result == "ignored":
            return

        name = escape(result.test_name)
        if result.passed:
            suffix = " [dim](reference updated)[/dim]" if result.reference_updated else ""
            self.console.print(f"{name}: [green]OK[/green]{suffix}", soft_wrap=True)
            return

        self.console.print(f"{name}: [red]FAILED:[/red]", soft_wrap=True)
        for failure in result.failures:
            self.console.print(escape(failure.format_block()), highlight=False, soft_wrap=True)

        if self.archiver is not None:
            self.archiver.archive(result)
