"""layerforge tester -- the collaborators of the quality workflow.

Public API
----------
.. autoclass:: CoverageAuditor
.. autoclass:: CoverageReport
.. autoclass:: CommandBuildRunner
.. autoclass:: Reviewer
.. autoclass:: GitChanges
"""

from .changes import GitChanges, VcsError
from .coverage import (
    AuditResult,
    ComponentCoverage,
    CoverageAuditor,
    CoverageReport,
    CoverageUnavailableError,
)
from .review import Checklist, ChecklistRule, ReviewIssue, ReviewResult, Reviewer
from .runner import BuildRunner, CommandBuildRunner, load_coverage_report

__all__ = [
    # Coverage
    "CoverageAuditor",
    "CoverageReport",
    "ComponentCoverage",
    "AuditResult",
    "CoverageUnavailableError",
    # Runner
    "BuildRunner",
    "CommandBuildRunner",
    "load_coverage_report",
    # Review
    "Reviewer",
    "Checklist",
    "ChecklistRule",
    "ReviewIssue",
    "ReviewResult",
    # VCS
    "GitChanges",
    "VcsError",
]
