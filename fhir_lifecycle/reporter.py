"""Console rendering of runner events.

`ConsoleReporter` prints a section header per run, request/response details
per step and a markdown summary table at the end.
"""
import json
import sys
from typing import Iterable, List, Sequence, TextIO

from fhir_lifecycle.runner import FixtureStep, RunObserver
from fhir_lifecycle.schemas import RunSummary, StepOutcome, StepStatus

SECTION_LINE = "=" * 60
DIVIDER = "-" * 60

# Body fields echoed under each step, when present
SUMMARY_FIELDS = ("resourceType", "id", "meta.versionId", "total")

_LABELS = {
    StepStatus.PASSED: "\033[92mPASS\033[0m",
    StepStatus.FAILED: "\033[91m**FAIL**\033[0m",
    StepStatus.SKIPPED: "\033[93mSKIP\033[0m",
}
_PLAIN_LABELS = {
    StepStatus.PASSED: "PASS",
    StepStatus.FAILED: "**FAIL**",
    StepStatus.SKIPPED: "SKIP",
}


def render_summary_markdown(summaries: Iterable[RunSummary]) -> str:
    """Markdown table with one row per run: name, passed, failed, skipped."""
    headers = ["run", "passed", "failed", "skipped"]
    table = ["| " + " | ".join(headers) + " |", "| " + " | ".join(["---"] * len(headers)) + " |"]
    for summary in summaries:
        row = [summary.name, str(summary.passed), str(summary.failed), str(summary.skipped)]
        table.append("| " + " | ".join(row) + " |")
    return "\n".join(table)


class ConsoleReporter(RunObserver):
    """
    Print human-readable progress for fixture runs.

    Args:
        stream: where to write; defaults to stdout.
        verbose: also print each response body.
        colors: wrap PASS/FAIL/SKIP in ANSI colours.
    """
    def __init__(self, stream: TextIO = None, verbose: bool = False, colors: bool = True):
        self.stream = stream or sys.stdout
        self.verbose = verbose
        self.labels = _LABELS if colors else _PLAIN_LABELS
        self.summaries: List[RunSummary] = []

    def _print(self, line: str = "") -> None:
        print(line, file=self.stream)

    def run_started(self, name: str, steps: Sequence[FixtureStep]) -> None:
        self._print()
        self._print(SECTION_LINE)
        self._print(f"SECTION: {name.upper()}")
        self._print(f"  {len(steps)} step(s): " + " -> ".join(step.name for step in steps))
        self._print(SECTION_LINE)

    def step_finished(self, outcome: StepOutcome) -> None:
        self._print(f"Test: {outcome.name}...")
        result = outcome.result
        if result is not None:
            self._print(f"  Request : {result.method} {result.url}")
            self._print(f"  Status  : {result.status_code}")
            self._print(f"  Time    : {result.elapsed_millis:.0f} ms")
            for field in SUMMARY_FIELDS:
                value = result.lookup(field)
                if value is not None and not isinstance(value, (dict, list)):
                    self._print(f"  {field:<15}: {value}")
            if self.verbose and result.text:
                body = json.dumps(result.body, indent=2) if result.body is not None else result.text
                self._print("  Body:")
                for line in body.splitlines():
                    self._print(f"    {line}")
        label = self.labels[outcome.status]
        if outcome.message:
            self._print(f"  {label}: {outcome.message}")
        else:
            self._print(f"  {label}")
        self._print(DIVIDER)

    def run_finished(self, summary: RunSummary) -> None:
        self.summaries.append(summary)
        self._print(
            f"{summary.name}: {summary.passed} passed, {summary.failed} failed, {summary.skipped} skipped"
        )

    def print_totals(self) -> None:
        """Print the summary table for every run seen so far."""
        self._print()
        self._print(render_summary_markdown(self.summaries))
        self._print()
