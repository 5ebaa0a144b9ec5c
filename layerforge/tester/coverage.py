"""Coverage report model and the coverage auditor.

A :class:`CoverageReport` is produced by the external build/test runner (see
:mod:`layerforge.tester.runner`).  :class:`CoverageAuditor` only classifies
it: it never runs tests and never recomputes the report's own aggregate.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..scaffolder.models import FeatureSpec
from ..scaffolder.naming import derive

DEFAULT_THRESHOLD = 85.0


class CoverageUnavailableError(Exception):
    """The build/test collaborator failed to produce a coverage report."""

    def __init__(self, message: str, *, command: str = "", returncode: Optional[int] = None) -> None:
        self.command = command
        self.returncode = returncode
        super().__init__(message)


class ComponentCoverage(BaseModel):
    """Coverage figures for one component (class, module, project...)."""

    covered_percent: float = Field(..., ge=0, le=100)
    tested_scenarios: list[str] = Field(default_factory=list)


class CoverageReport(BaseModel):
    """Per-component coverage plus the threshold to hold it against.

    ``components`` keeps the order in which the runner reported them.
    """

    threshold: float = Field(default=DEFAULT_THRESHOLD, ge=0, le=100)
    overall_percent: Optional[float] = Field(default=None, ge=0, le=100)
    components: dict[str, ComponentCoverage] = Field(default_factory=dict)

    @classmethod
    def from_percentages(
        cls,
        percentages: dict[str, float],
        *,
        threshold: float = DEFAULT_THRESHOLD,
        overall_percent: Optional[float] = None,
    ) -> "CoverageReport":
        """Shortcut for reports that carry only a percentage per component."""
        return cls(
            threshold=threshold,
            overall_percent=overall_percent,
            components={k: ComponentCoverage(covered_percent=v) for k, v in percentages.items()},
        )


class AuditResult(BaseModel):
    """Outcome of one audit."""

    under_covered: list[str] = Field(default_factory=list)
    overall_percent: Optional[float] = None
    threshold: float = DEFAULT_THRESHOLD
    gaps: dict[str, float] = Field(
        default_factory=dict, description="Percentage points missing per under-covered component"
    )

    @property
    def passed(self) -> bool:
        return not self.under_covered


class CoverageAuditor:
    """Classifies the components of a :class:`CoverageReport`.

    A component is under-covered when its percentage is strictly below the
    report's threshold; exactly at the threshold counts as covered.
    """

    def audit(
        self,
        report: CoverageReport,
        spec: Optional[FeatureSpec] = None,
        *,
        exclude: frozenset[str] | set[str] = frozenset(),
    ) -> AuditResult:
        """Return the under-covered components in report order.

        Args:
            report: Coverage produced by the build runner.
            spec: When given, only components that mention the feature's
                singular or plural name are considered.
            exclude: Component ids to leave out (targets skipped during
                recovery).
        """
        names = derive(spec.base_name) if spec is not None else None
        under: list[str] = []
        gaps: dict[str, float] = {}
        for component_id, coverage in report.components.items():
            if component_id in exclude:
                continue
            if names is not None and not names.mentions(component_id):
                continue
            if coverage.covered_percent < report.threshold:
                under.append(component_id)
                gaps[component_id] = round(report.threshold - coverage.covered_percent, 2)
        return AuditResult(
            under_covered=under,
            overall_percent=report.overall_percent,
            threshold=report.threshold,
            gaps=gaps,
        )
