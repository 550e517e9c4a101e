"""Plain-text rendering for the shipgate CLI.

Output is deterministic and column-aligned. Outcome labels are colored with
ANSI codes only when stdout is a terminal and neither ``--no-color`` nor
``NO_COLOR`` is set.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping, Sequence
from typing import Final, TextIO

from shipgate.domain.models import (
    Finding,
    PipelineRun,
    RunOutcome,
    Severity,
    Verdict,
    VerdictOutcome,
)

_ANSI: Final[Mapping[str, str]] = {
    "pass": "\033[32m",
    "fail": "\033[31m",
    "skipped": "\033[33m",
}
_RESET: Final[str] = "\033[0m"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag or os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Writes headings, key/value lines and tables to one stream."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def text(self, line: str = "") -> None:
        print(line, file=self._stream)

    def kv(self, key: str, value: object) -> None:
        self.text(f"{key}: {value}")

    def section(self, title: str) -> None:
        self.text()
        self.text(title)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self.text(f"  {prefix}{entry}")

    def outcome(self, value: str) -> str:
        label = value.upper()
        if not self._color:
            return label
        return f"{_ANSI.get(value, '')}{label}{_RESET}"

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        """Column-aligned table; widths ignore ANSI codes in cells."""
        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], _visible_len(cell))

        def line(cells: Sequence[str]) -> str:
            padded = [
                cell + " " * (widths[index] - _visible_len(cell))
                for index, cell in enumerate(cells)
            ]
            return "  ".join(padded).rstrip()

        self.text(f"  {line(headers)}")
        self.text(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self.text(f"  {line(row)}")

    def verdicts(self, verdicts: Sequence[Verdict]) -> None:
        rows = [
            [
                item.stage_name,
                self.outcome(item.outcome.value),
                "blocking" if item.blocking else "advisory",
                str(item.attempts),
                f"{item.duration_ms}ms",
                item.reason,
            ]
            for item in verdicts
        ]
        self.table(("STAGE", "OUTCOME", "GATE", "ATTEMPTS", "DURATION", "REASON"), rows)
        if self.verbose:
            for item in verdicts:
                if item.outcome is VerdictOutcome.FAIL and item.failing_findings:
                    self.section(f"{item.stage_name} failing findings:")
                    self.items([_finding_line(finding) for finding in item.failing_findings])

    def run(self, run: PipelineRun, severity_counts: Mapping[Severity, int]) -> None:
        self.kv("Run ID", run.run_id)
        self.kv("Pipeline", run.pipeline_name)
        self.kv("Commit", f"{run.trigger.commit_sha} ({run.trigger.branch})")
        outcome = self.outcome(run.outcome.value)
        if run.aborted:
            outcome = f"{outcome} (aborted)"
        elif run.cancelled:
            outcome = f"{outcome} (cancelled)"
        self.kv("Outcome", outcome)
        self.kv("Duration", f"{run.duration_ms}ms")
        self.kv(
            "Findings",
            " ".join(f"{severity.value}={count}" for severity, count in severity_counts.items()),
        )
        self.section("Stages:")
        self.verdicts(run.verdicts)
        if run.outcome is RunOutcome.FAIL:
            blocking = [item.stage_name for item in run.failing_verdicts() if item.blocking]
            if blocking:
                self.section("Rejected by:")
                self.items(blocking)


def _finding_line(finding: Finding) -> str:
    line = f"[{finding.severity.value}] {finding.rule_id or finding.category}: {finding.message}"
    return f"{line} ({finding.location})" if finding.location else line


def _visible_len(text: str) -> int:
    for code in (*_ANSI.values(), _RESET):
        text = text.replace(code, "")
    return len(text)


def create_renderer(
    *,
    no_color: bool = False,
    verbose: bool = False,
    stream: TextIO | None = None,
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
