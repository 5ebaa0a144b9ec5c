"""Coverage-gated quality workflow.

Implements the quality state machine::

    DISCOVERY -> REVIEW -> AUDIT -> REPORT
                             |  ^
                             v  |
                           GENERATE

DISCOVERY  -- Resolve the target (uncommitted changes, last commit, a
              feature or an explicit file list) into a set of files.
REVIEW     -- Apply the static checklists; produces warnings only.
AUDIT      -- Ask the build runner for coverage and classify components.
GENERATE   -- Emit test-layer artifacts for under-covered components, then
              audit again.  Bounded by ``max_iterations``.
REPORT     -- Terminal success; FAILED is terminal failure.  Both produce a
              :class:`QualityReport` after which the state is discarded.

External-collaborator failures (build runner, git) are routed through the
:class:`~layerforge.recovery.RecoveryController`.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from rich.panel import Panel
from rich.table import Table

from .config import Config
from .recovery import RecoveryAction, RecoveryController, RecoveryRequest
from .scaffolder.catalog import TemplateCatalog
from .scaffolder.emitter import EmitError
from .scaffolder.filesystem import FileSystem, LocalFileSystem
from .scaffolder.generator import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_OK,
    EXIT_WARNINGS,
    FeatureScaffolder,
    ScaffoldAborted,
    ScaffoldResult,
)
from .scaffolder.layers import Layer
from .scaffolder.models import FeatureSpec, Operation
from .scaffolder.naming import InvalidNameError, NamingVariantSet, derive, singularize_name
from .scaffolder.spec import FeatureRequest, SpecError, SpecResolver
from .tester.changes import GitChanges, VcsError
from .tester.coverage import AuditResult, CoverageAuditor, CoverageUnavailableError
from .tester.review import Reviewer
from .tester.runner import BuildRunner
from .utils import (
    console,
    format_duration,
    format_percent,
    print_error,
    print_phase_header,
    print_success,
    print_summary_table,
    print_warning,
)

_SKIP_DIRS = {".git", ".hg", ".svn", "bin", "obj", "node_modules", ".vs", ".idea", "coverage"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WorkflowTransitionError(Exception):
    """Raised on a phase transition the state machine does not allow."""

    def __init__(self, source: "WorkflowPhase", target: "WorkflowPhase") -> None:
        self.source = source
        self.target = target
        super().__init__(f"Illegal workflow transition {source.value} -> {target.value}")


class IterationCapExceeded(Exception):
    """Informational: the Generate -> Audit loop hit its cap with gaps left.

    Recorded as a note on the workflow state, never raised.
    """

    def __init__(self, cap: int, remaining: list[str]) -> None:
        self.cap = cap
        self.remaining = list(remaining)
        super().__init__(
            f"Iteration cap of {cap} reached; still under-covered: {', '.join(remaining) or 'none'}"
        )


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class WorkflowPhase(str, Enum):
    DISCOVERY = "discovery"
    REVIEW = "review"
    AUDIT = "audit"
    GENERATE = "generate"
    REPORT = "report"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[WorkflowPhase, frozenset[WorkflowPhase]] = {
    WorkflowPhase.DISCOVERY: frozenset({WorkflowPhase.REVIEW, WorkflowPhase.FAILED}),
    WorkflowPhase.REVIEW: frozenset({WorkflowPhase.AUDIT, WorkflowPhase.FAILED}),
    WorkflowPhase.AUDIT: frozenset(
        {WorkflowPhase.GENERATE, WorkflowPhase.REPORT, WorkflowPhase.FAILED}
    ),
    WorkflowPhase.GENERATE: frozenset({WorkflowPhase.AUDIT, WorkflowPhase.FAILED}),
    WorkflowPhase.REPORT: frozenset({WorkflowPhase.DONE}),
    WorkflowPhase.FAILED: frozenset({WorkflowPhase.DONE}),
    WorkflowPhase.DONE: frozenset(),
}

Note = Union[str, Exception]


@dataclass
class WorkflowState:
    """Mutable state of one orchestration run; changed only via :meth:`transition`."""

    phase: WorkflowPhase = WorkflowPhase.DISCOVERY
    target_set: list[str] = field(default_factory=list)
    iteration_count: int = 0
    last_error: Optional[BaseException] = None
    notes: list[Note] = field(default_factory=list)
    history: list[WorkflowPhase] = field(default_factory=lambda: [WorkflowPhase.DISCOVERY])

    def transition(self, target: WorkflowPhase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise WorkflowTransitionError(self.phase, target)
        self.phase = target
        self.history.append(target)


@dataclass(frozen=True)
class QualityTarget:
    """What the quality workflow should look at."""

    kind: str
    values: tuple[str, ...] = ()

    KINDS = ("uncommitted", "last-change", "feature", "files")

    @classmethod
    def parse(cls, text: str) -> "QualityTarget":
        """Parse ``uncommitted``, ``last-change``, ``feature:<name>`` or ``files:<a,b>``.

        Raises:
            ValueError: For anything else.
        """
        raw = text.strip()
        if raw in ("uncommitted", "last-change"):
            return cls(raw)
        kind, sep, rest = raw.partition(":")
        if sep and kind in ("feature", "files"):
            values = tuple(v.strip() for v in re.split(r"[,\s]+", rest) if v.strip())
            if kind == "feature" and len(values) == 1:
                return cls(kind, values)
            if kind == "files" and values:
                return cls(kind, values)
        raise ValueError(
            f"Invalid target {text!r} (expected uncommitted, last-change, "
            "feature:<name> or files:<path,...>)"
        )

    def __str__(self) -> str:
        return self.kind if not self.values else f"{self.kind}:{','.join(self.values)}"


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class QualityReport:
    """Structured summary of one orchestration run."""

    final_phase: WorkflowPhase
    target: str
    target_files: list[str] = field(default_factory=list)
    iterations: int = 0
    threshold: float = 85.0
    overall_percent: Optional[float] = None
    under_covered: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    review_warnings: list[str] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    history: list[WorkflowPhase] = field(default_factory=list)
    error: str = ""
    cancelled: bool = False
    duration: float = 0.0

    @property
    def threshold_met(self) -> bool:
        return self.final_phase is WorkflowPhase.REPORT and not self.under_covered

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if self.final_phase is WorkflowPhase.FAILED:
            return EXIT_FAILED
        if self.under_covered or self.failed or self.review_warnings or self.notes:
            return EXIT_WARNINGS
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_phase": self.final_phase.value,
            "target": self.target,
            "target_files": self.target_files,
            "iterations": self.iterations,
            "threshold": self.threshold,
            "overall_percent": self.overall_percent,
            "under_covered": self.under_covered,
            "excluded": self.excluded,
            "written": self.written,
            "skipped": self.skipped,
            "failed": self.failed,
            "review_warnings": self.review_warnings,
            "notes": [str(n) for n in self.notes],
            "history": [p.value for p in self.history],
            "error": self.error,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def summary_text(self) -> str:
        lines = [
            f"Quality run for {self.target}: {self.final_phase.value}",
            f"  iterations: {self.iterations}",
            f"  coverage: {format_percent(self.overall_percent)} (threshold {self.threshold:g}%)",
            f"  under-covered: {', '.join(self.under_covered) or 'none'}",
            f"  written: {len(self.written)}, skipped: {len(self.skipped)}, failed: {len(self.failed)}",
        ]
        if self.excluded:
            lines.append(f"  excluded: {', '.join(self.excluded)}")
        lines.extend(f"  note: {note}" for note in self.notes)
        if self.error:
            lines.append(f"  error: {self.error}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class QualityOrchestrator:
    """Drives Discovery -> Review -> Audit -> Generate -> Report.

    Args:
        config: Loaded configuration (threshold, iteration cap, timeouts...).
        catalog: Template catalog used to emit test-layer artifacts.
        runner: Build/test collaborator that produces coverage reports.
        vcs: Version-control collaborator for change-based targets.
        reviewer: Checklist reviewer; a reviewer with no checklists if omitted.
        recovery: Resolves collaborator and emission failures.
        fs: File-system collaborator; defaults to the project root on disk.
    """

    def __init__(
        self,
        config: Config,
        catalog: TemplateCatalog,
        runner: BuildRunner,
        *,
        vcs: Optional[GitChanges] = None,
        reviewer: Optional[Reviewer] = None,
        recovery: Optional[RecoveryController] = None,
        fs: Optional[FileSystem] = None,
        auditor: Optional[CoverageAuditor] = None,
    ) -> None:
        self.config = config
        self.root = Path(config.project_root)
        self.catalog = catalog
        self.runner = runner
        self.vcs = vcs or GitChanges(self.root, timeout=config.quality.vcs_timeout)
        self.reviewer = reviewer or Reviewer([])
        self.recovery = recovery or RecoveryController(config.recovery)
        self.fs = fs or LocalFileSystem(self.root)
        self.auditor = auditor or CoverageAuditor()
        self.resolver = SpecResolver(catalog.options, config.scaffold.reserved_properties)
        self.scaffolder = FeatureScaffolder(
            catalog,
            self.fs,
            resolver=self.resolver,
            recovery=self.recovery,
            extension_marker=config.scaffold.extension_marker,
            marker_tiebreak=config.scaffold.marker_tiebreak,
            root_namespace=config.scaffold.root_namespace,
            max_parallel_renders=config.scaffold.max_parallel_renders,
        )
        self.threshold = config.quality.threshold
        self.max_iterations = config.quality.max_iterations

        self.state = WorkflowState()
        self._handlers: dict[WorkflowPhase, Callable[[QualityTarget], Awaitable[WorkflowPhase]]] = {
            WorkflowPhase.DISCOVERY: self._discover,
            WorkflowPhase.REVIEW: self._review,
            WorkflowPhase.AUDIT: self._audit,
            WorkflowPhase.GENERATE: self._generate,
        }
        self._reset()

    def _reset(self) -> None:
        self.state = WorkflowState()
        self.known_features: list[str] = []
        self.excluded: set[str] = set()
        self.last_audit: Optional[AuditResult] = None
        self.review_warnings: list[str] = []
        self._audit_spec: Optional[FeatureSpec] = None
        self._scaffold_results: list[ScaffoldResult] = []
        self._last_action: Optional[RecoveryAction] = None

    # -- Public API ----------------------------------------------------------

    async def run(self, target: Union[QualityTarget, str]) -> QualityReport:
        """Run the workflow to a terminal phase and return its report.

        Cancellation is converted into a ``FAILED`` report flagged as
        cancelled; files already written stay on disk.
        """
        target = QualityTarget.parse(target) if isinstance(target, str) else target
        self._reset()
        started = time.monotonic()

        console.print(
            Panel(
                f"[bold bright_cyan]Quality workflow[/bold bright_cyan]\n"
                f"Target    : {target}\n"
                f"Project   : {self.root.resolve()}\n"
                f"Threshold : {self.threshold:g}%   Iteration cap: {self.max_iterations}",
                border_style="bright_cyan",
            )
        )

        cancelled = False
        try:
            while self.state.phase not in (WorkflowPhase.REPORT, WorkflowPhase.FAILED):
                phase = self.state.phase
                detail = f"iteration {self.state.iteration_count + 1}" if phase is WorkflowPhase.GENERATE else ""
                print_phase_header(phase.value, detail)
                next_phase = await self._handlers[phase](target)
                self.state.transition(next_phase)
        except asyncio.CancelledError as exc:
            cancelled = True
            marker = (
                "cancelled mid-generation"
                if self.state.phase is WorkflowPhase.GENERATE
                else f"cancelled during {self.state.phase.value}"
            )
            if self.scaffolder.last_result is not None:
                self._record(self.scaffolder.last_result)
            self.state.last_error = exc
            self.state.notes.append(marker)
            self.state.transition(WorkflowPhase.FAILED)

        report = self._build_report(target, cancelled, time.monotonic() - started)
        self.state.transition(WorkflowPhase.DONE)
        self._display(report)
        return report

    # -- Discovery -----------------------------------------------------------

    async def _discover(self, target: QualityTarget) -> WorkflowPhase:
        if target.kind in ("uncommitted", "last-change"):
            files = await self._with_recovery(
                f"discovery:{target.kind}", lambda: self.vcs.changed_files(target.kind)
            )
            if files is None:
                return WorkflowPhase.FAILED
        elif target.kind == "feature":
            try:
                names = derive(target.values[0])
            except InvalidNameError as exc:
                self.state.last_error = exc
                print_error(str(exc))
                return WorkflowPhase.FAILED
            self.known_features = [names.pascal_singular]
            self._audit_spec = FeatureSpec(base_name=names.pascal_singular)
            files = await asyncio.to_thread(_files_for_feature, self.root, names)
        else:
            files = [f for f in target.values if self.fs.exists(f)]
            missing = [f for f in target.values if f not in files]
            for path in missing:
                self.state.notes.append(f"target file not found: {path}")
                print_warning(f"Target file not found: {path}")

        if not files:
            self.state.last_error = ValueError(f"Target {target} resolved to no files")
            print_error(f"Target {target} resolved to no files")
            return WorkflowPhase.FAILED

        self.state.target_set = list(files)
        console.print(f"  {len(files)} file(s) in scope")
        return WorkflowPhase.REVIEW

    # -- Review --------------------------------------------------------------

    async def _review(self, target: QualityTarget) -> WorkflowPhase:
        result = await self.reviewer.review(self.root, self.state.target_set)
        self.reviewer.display(result)
        self.review_warnings = result.warnings
        return WorkflowPhase.AUDIT

    # -- Audit ---------------------------------------------------------------

    async def _audit(self, target: QualityTarget) -> WorkflowPhase:
        report = await self._with_recovery(
            "audit:build-runner", lambda: self.runner.collect(self.state.target_set)
        )
        if report is None:
            if self._last_action is RecoveryAction.SKIP:
                self.state.notes.append("coverage unavailable; audit skipped")
                self.state.last_error = None
                return WorkflowPhase.REPORT
            return WorkflowPhase.FAILED

        report = report.model_copy(update={"threshold": self.threshold})
        result = self.auditor.audit(report, self._audit_spec, exclude=self.excluded)
        self.last_audit = result
        _print_audit(result)

        if result.passed:
            print_success(f"Coverage threshold of {self.threshold:g}% met")
            return WorkflowPhase.REPORT
        if self.state.iteration_count >= self.max_iterations:
            cap = IterationCapExceeded(self.max_iterations, result.under_covered)
            self.state.notes.append(cap)
            print_warning(str(cap))
            return WorkflowPhase.REPORT
        return WorkflowPhase.GENERATE

    # -- Generate ------------------------------------------------------------

    async def _generate(self, target: QualityTarget) -> WorkflowPhase:
        if self.last_audit is None:
            raise RuntimeError("Generate phase entered without an audit result")
        self.state.iteration_count += 1

        grouped: dict[str, tuple[FeatureSpec, list[str]]] = {}
        for component in self.last_audit.under_covered:
            spec = await asyncio.to_thread(self.infer_spec, component)
            if spec is None:
                self.excluded.add(component)
                self.state.notes.append(f"no feature could be inferred for {component}; excluded")
                print_warning(f"No feature could be inferred for {component}; excluded")
                continue
            grouped.setdefault(spec.base_name, (spec, []))[1].append(component)

        for spec, components in grouped.values():
            console.print(f"  Generating tests for [bold]{spec.base_name}[/bold] ({', '.join(components)})")
            try:
                result = await self.scaffolder.scaffold(spec, layers=[Layer.TESTS])
            except ScaffoldAborted as exc:
                self._record(exc.result)
                self.state.last_error = exc
                print_error(str(exc))
                return WorkflowPhase.FAILED
            self._record(result)
            if result.failures:
                self.excluded.update(components)
                self.state.notes.append(
                    f"test generation for {spec.base_name} skipped after failures; "
                    f"excluded {', '.join(components)}"
                )
        return WorkflowPhase.AUDIT

    def infer_spec(self, component_id: str) -> Optional[FeatureSpec]:
        """Derive the feature behind a coverage component.

        Known target features are matched first; otherwise candidate names
        are cut from the component id and kept only if application-layer
        artifacts for them exist on disk.  The operations of the returned spec
        are those whose artifacts exist.
        """
        candidates = [f for f in self.known_features if derive(f).mentions(component_id)]
        candidates += [c for c in _candidate_names(component_id) if c not in candidates]
        for name in candidates:
            operations = self._operations_on_disk(name)
            if not operations:
                continue
            try:
                return self.resolver.resolve(
                    FeatureRequest(name=name, operations=sorted(op.value for op in operations))
                )
            except SpecError:
                continue
        return None

    def _operations_on_disk(self, name: str) -> set[Operation]:
        try:
            probe = FeatureSpec(base_name=derive(name).pascal_singular, operations=frozenset(Operation))
        except InvalidNameError:
            return set()
        emitter = self.scaffolder.new_emitter()
        found: set[Operation] = set()
        for descriptor in self.catalog.resolve(Layer.APPLICATION, {}, probe.operations):
            if not descriptor.operations:
                continue
            try:
                artifact = emitter.render(probe, Layer.APPLICATION, descriptor)
            except EmitError:
                continue
            if self.fs.exists(artifact.path):
                found.update(descriptor.operations)
        return found

    # -- Helpers -------------------------------------------------------------

    async def _with_recovery(self, point: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Call a collaborator, routing failures through recovery.

        Returns ``None`` when the decision was Skip or Abort; the failure is
        kept in ``state.last_error`` and the decision in ``_last_action``.
        """
        self._last_action = None
        while True:
            try:
                return await call()
            except (CoverageUnavailableError, VcsError) as exc:
                print_error(str(exc))
                self.state.last_error = exc
                decision = await self.recovery.decide(RecoveryRequest(point=point, error=exc))
                self._last_action = decision.action
                if decision.action is RecoveryAction.RETRY:
                    continue
                return None

    def _record(self, result: ScaffoldResult) -> None:
        if not any(r is result for r in self._scaffold_results):
            self._scaffold_results.append(result)

    def _build_report(self, target: QualityTarget, cancelled: bool, elapsed: float) -> QualityReport:
        audit = self.last_audit
        return QualityReport(
            final_phase=self.state.phase,
            target=str(target),
            target_files=list(self.state.target_set),
            iterations=self.state.iteration_count,
            threshold=self.threshold,
            overall_percent=audit.overall_percent if audit else None,
            under_covered=list(audit.under_covered) if audit else [],
            excluded=sorted(self.excluded),
            written=[p for r in self._scaffold_results for p in r.written],
            skipped=[p for r in self._scaffold_results for p in r.skipped],
            failed=[f for r in self._scaffold_results for f in r.failed],
            review_warnings=list(self.review_warnings),
            notes=list(self.state.notes),
            history=list(self.state.history),
            error=str(self.state.last_error) if self.state.last_error else "",
            cancelled=cancelled,
            duration=elapsed,
        )

    def _display(self, report: QualityReport) -> None:
        print_phase_header(report.final_phase.value)
        print_summary_table(
            {
                "Target": report.target,
                "Files in scope": str(len(report.target_files)),
                "Iterations": str(report.iterations),
                "Coverage": format_percent(report.overall_percent),
                "Threshold": f"{report.threshold:g}%",
                "Under-covered": ", ".join(report.under_covered) or "none",
                "Tests written": str(len(report.written)),
                "Review warnings": str(len(report.review_warnings)),
                "Duration": format_duration(report.duration),
            },
            title="Quality Report",
        )
        for note in report.notes:
            print_warning(f"Note: {note}")
        if report.final_phase is WorkflowPhase.FAILED:
            print_error(f"Quality run failed: {report.error or 'see notes'}")
        elif report.threshold_met:
            print_success("Quality run complete")


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

_NAME_PREFIXES = ("Create", "Update", "Delete", "Search", "Get", "List")
_NAME_SUFFIXES = (
    "CommandValidator",
    "CommandHandler",
    "QueryHandler",
    "CommandTests",
    "QueriesTests",
    "ControllerTests",
    "SoftDeleteFilter",
    "Configuration",
    "Permissions",
    "Controller",
    "Contracts",
    "Mappings",
    "Response",
    "Request",
    "Command",
    "Service",
    "Queries",
    "Events",
    "Query",
    "Tests",
    "ById",
    "Hub",
)


def _candidate_names(component_id: str) -> list[str]:
    """Feature-name candidates cut from a component id, most specific first."""
    segments = [s for s in re.split(r"[^A-Za-z0-9]+", component_id) if s]
    candidates: list[str] = []
    for segment in reversed(segments):
        core = segment
        changed = True
        while changed:
            changed = False
            for suffix in _NAME_SUFFIXES:
                if core.endswith(suffix) and len(core) > len(suffix):
                    core = core[: -len(suffix)]
                    changed = True
                    break
        for prefix in _NAME_PREFIXES:
            if core.startswith(prefix) and len(core) > len(prefix) and core[len(prefix)].isupper():
                core = core[len(prefix):]
                break
        if not core[:1].isupper():
            continue
        # Keep the raw core too: singular names may end in "s" (Gas, Canvas).
        for name in (singularize_name(core), core):
            if name and name not in candidates:
                candidates.append(name)
    return candidates


def _files_for_feature(root: Path, names: NamingVariantSet) -> list[str]:
    """Project files whose path mentions the feature in any casing."""
    needles_exact = (names.pascal_singular, names.pascal_plural)
    needles_lower = (names.kebab_singular, names.snake_singular)
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
        for filename in sorted(filenames):
            rel = (Path(dirpath) / filename).relative_to(root).as_posix()
            lowered = rel.lower()
            if any(n in rel for n in needles_exact) or any(n in lowered for n in needles_lower):
                found.append(rel)
    return found


def _print_audit(result: AuditResult) -> None:
    table = Table(show_header=True, header_style="bold yellow", title="Coverage audit")
    table.add_column("Component")
    table.add_column("Gap", justify="right")
    for component in result.under_covered:
        table.add_row(component, f"{result.gaps.get(component, 0):.1f} pts")
    console.print(
        f"  Overall {format_percent(result.overall_percent)} against {result.threshold:g}%: "
        f"{len(result.under_covered)} component(s) under threshold"
    )
    if result.under_covered:
        console.print(table)
