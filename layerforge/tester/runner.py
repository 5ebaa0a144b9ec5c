"""Build/test runner collaborator.

The quality workflow does not run tests itself; it asks a
:class:`BuildRunner` for a :class:`~layerforge.tester.coverage.CoverageReport`.
:class:`CommandBuildRunner` shells out to the project's test command (with an
explicit timeout) and parses the coverage file it leaves behind.

Two report formats are understood:

- the layerforge JSON summary::

    {
      "threshold": 85,
      "overallPercent": 72.5,
      "components": {
        "Invoices.CreateInvoiceCommand": 60,
        "Invoices.InvoicesController": {"coveredPercent": 90, "testedScenarios": ["create"]}
      }
    }

- Cobertura XML (as written by coverlet / ``XPlat Code Coverage``), one
  component per class with compiler-generated nested classes folded into
  their declaring class.
"""

from __future__ import annotations

import asyncio
import json
import shlex
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Optional, Protocol

from ..utils import console, run_command
from .coverage import DEFAULT_THRESHOLD, ComponentCoverage, CoverageReport, CoverageUnavailableError


class BuildRunner(Protocol):
    """Anything that can produce a coverage report for a target set."""

    async def collect(self, targets: list[str]) -> CoverageReport:
        ...


# ---------------------------------------------------------------------------
# Report parsers
# ---------------------------------------------------------------------------


def parse_json_report(data: dict[str, Any], threshold: float = DEFAULT_THRESHOLD) -> CoverageReport:
    """Parse the layerforge JSON summary format.

    A ``threshold`` inside the file wins over the *threshold* argument.
    """
    components: dict[str, ComponentCoverage] = {}
    for component_id, value in (data.get("components") or {}).items():
        if isinstance(value, dict):
            components[component_id] = ComponentCoverage(
                covered_percent=float(value.get("coveredPercent", value.get("covered_percent", 0.0))),
                tested_scenarios=list(value.get("testedScenarios", value.get("tested_scenarios", []))),
            )
        else:
            components[component_id] = ComponentCoverage(covered_percent=float(value))

    overall = data.get("overallPercent", data.get("overall_percent"))
    return CoverageReport(
        threshold=float(data.get("threshold", threshold)),
        overall_percent=float(overall) if overall is not None else None,
        components=components,
    )


def parse_cobertura(xml_text: str, threshold: float = DEFAULT_THRESHOLD) -> CoverageReport:
    """Parse a Cobertura XML report into per-class coverage.

    Raises:
        ValueError: If the document is not a Cobertura report.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise ValueError(f"not valid XML: {exc}") from exc
    if root.tag != "coverage":
        raise ValueError(f"expected a <coverage> root element, found <{root.tag}>")

    totals: dict[str, list[int]] = {}
    rates: dict[str, float] = {}
    for cls in root.iter("class"):
        name = (cls.get("name") or cls.get("filename") or "").split("/")[0]
        if not name:
            continue
        lines = cls.findall("./lines/line")
        if lines:
            covered = sum(1 for line in lines if int(line.get("hits", "0")) > 0)
            bucket = totals.setdefault(name, [0, 0])
            bucket[0] += covered
            bucket[1] += len(lines)
        else:
            rates.setdefault(name, float(cls.get("line-rate", "0")) * 100)

    components: dict[str, ComponentCoverage] = {}
    for name in dict.fromkeys([*totals, *rates]):
        if name in totals and totals[name][1]:
            covered, total = totals[name]
            percent = covered * 100.0 / total
        else:
            percent = rates.get(name, 0.0)
        components[name] = ComponentCoverage(covered_percent=round(percent, 2))

    line_rate = root.get("line-rate")
    return CoverageReport(
        threshold=threshold,
        overall_percent=round(float(line_rate) * 100, 2) if line_rate is not None else None,
        components=components,
    )


def load_coverage_report(path: str | Path, threshold: float = DEFAULT_THRESHOLD) -> CoverageReport:
    """Read and parse a coverage file, picking the format from its content.

    Raises:
        CoverageUnavailableError: If the file is missing or unparseable.
    """
    report_path = Path(path)
    try:
        text = report_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise CoverageUnavailableError(f"Coverage report not found: {report_path}") from None
    except OSError as exc:
        raise CoverageUnavailableError(f"Cannot read coverage report {report_path}: {exc}") from exc

    try:
        if text.lstrip().startswith("<"):
            return parse_cobertura(text, threshold)
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("top-level JSON value must be an object")
        return parse_json_report(data, threshold)
    except (ValueError, TypeError) as exc:
        raise CoverageUnavailableError(f"Cannot parse coverage report {report_path}: {exc}") from exc


def merge_reports(reports: list[CoverageReport]) -> CoverageReport:
    """Combine the reports of several test projects into one.

    Components keep first-seen order; a component reported twice keeps its
    higher percentage.  The overall figure is only carried over from a single
    report, since per-report aggregates cannot be combined without line counts.
    """
    if len(reports) == 1:
        return reports[0]
    components: dict[str, ComponentCoverage] = {}
    for report in reports:
        for component_id, coverage in report.components.items():
            seen = components.get(component_id)
            if seen is None or coverage.covered_percent > seen.covered_percent:
                components[component_id] = coverage
    return CoverageReport(threshold=reports[0].threshold, components=components)


def _split_pattern(path: Path) -> tuple[Path, Optional[str]]:
    """Split *path* into a directory and a glob pattern (``None`` for a plain path)."""
    parts = path.parts
    for index, part in enumerate(parts):
        if any(ch in part for ch in "*?["):
            return Path(*parts[:index]), "/".join(parts[index:])
    return path, None


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


class CommandBuildRunner:
    """Runs the project's test command and parses the coverage it writes.

    ``{targets}`` in *command* is replaced with the shell-quoted target list.

    Only reports written by the current run are read.  A plain report path is
    removed before the command starts.  A glob pattern (such as
    ``**/TestResults/*/coverage.cobertura.xml``, where ``dotnet test`` puts
    one report per test project) matches files that are new or modified
    since the command started, and their reports are merged.

    Args:
        command: Shell command that runs the tests with coverage enabled.
        report_path: Where the command leaves its coverage report; may be a
            glob pattern.  Relative paths are taken from *cwd*.
        cwd: Working directory (the project root).
        timeout: Seconds before the command is killed.
        threshold: Threshold used when the report does not carry its own.
    """

    def __init__(
        self,
        command: str,
        report_path: str | Path,
        *,
        cwd: Optional[str | Path] = None,
        timeout: float = 900,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        self.command = command
        self.cwd = Path(cwd) if cwd else None
        report_path = Path(report_path)
        if self.cwd is not None and not report_path.is_absolute():
            report_path = self.cwd / report_path
        self.report_path = report_path
        self.timeout = timeout
        self.threshold = threshold

    def build_command(self, targets: list[str]) -> str:
        return self.command.replace("{targets}", " ".join(shlex.quote(t) for t in targets))

    def report_files(self) -> dict[Path, int]:
        """Existing report files with their modification times (ns)."""
        base, pattern = _split_pattern(self.report_path)
        candidates = [base] if pattern is None else base.glob(pattern)
        files: dict[Path, int] = {}
        for path in candidates:
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            if path.is_file():
                files[path] = stat.st_mtime_ns
        return files

    def _discard_previous(self) -> dict[Path, int]:
        if _split_pattern(self.report_path)[1] is None:
            self.report_path.unlink(missing_ok=True)
            return {}
        return self.report_files()

    def _fresh_reports(self, before: dict[Path, int]) -> list[Path]:
        return sorted(p for p, mtime in self.report_files().items() if before.get(p) != mtime)

    async def collect(self, targets: list[str]) -> CoverageReport:
        """Run the tests and return the coverage this run produced.

        Raises:
            CoverageUnavailableError: If the command times out, cannot be
                started, or writes no readable report.
        """
        cmd = self.build_command(targets)
        before = await asyncio.to_thread(self._discard_previous)
        console.print(f"  [dim]$ {cmd}[/dim]")
        returncode, _stdout, stderr = await run_command(cmd, cwd=self.cwd, timeout=self.timeout)

        if returncode in (-1, 127):
            raise CoverageUnavailableError(
                stderr or f"Build runner failed to run: {cmd}", command=cmd, returncode=returncode
            )

        fresh = await asyncio.to_thread(self._fresh_reports, before)
        if not fresh:
            raise CoverageUnavailableError(
                f"Build runner exited with {returncode} and wrote no coverage report "
                f"at {self.report_path}: {stderr[-500:]}",
                command=cmd,
                returncode=returncode,
            )
        if returncode != 0:
            # Failing tests still produce usable coverage.
            console.print(f"  [yellow]Test command exited with {returncode}; using its coverage report[/yellow]")

        reports = [
            await asyncio.to_thread(load_coverage_report, path, self.threshold) for path in fresh
        ]
        return merge_reports(reports)
