"""layerforge configuration.

Centralised, typed configuration for scaffolding and the quality workflow.
All settings use Pydantic v2 models so they are validated at construction
time and can be serialised to/from JSON or environment variables.  The CLI
loads one ``Config`` and passes it down; nothing reads configuration from a
global.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

_PACKAGE_DIR = Path(__file__).parent

DEFAULT_CATALOG_PATH = _PACKAGE_DIR / "scaffolder" / "templates" / "catalog.json"
DEFAULT_CHECKLIST_PATH = _PACKAGE_DIR / "tester" / "checklists.json"
DEFAULT_EXTENSION_MARKER = "layerforge:extension-point"

DEFAULT_RESERVED_PROPERTIES: tuple[str, ...] = (
    "id",
    "createdAt",
    "createdBy",
    "lastModified",
    "lastModifiedBy",
    "isDeleted",
    "deletedAt",
)


class ScaffoldConfig(BaseModel):
    """Settings for the scaffolding engine."""

    catalog_path: Path = Field(default=DEFAULT_CATALOG_PATH)
    root_namespace: str = Field(default="App", min_length=1)
    reserved_properties: list[str] = Field(default_factory=lambda: list(DEFAULT_RESERVED_PROPERTIES))
    extension_marker: str = Field(default=DEFAULT_EXTENSION_MARKER, min_length=1)
    marker_tiebreak: Literal["skip", "first", "last"] = Field(
        default="skip",
        description="What to do when a file holds the same extension point more than once",
    )
    max_parallel_renders: int = Field(default=4, ge=1)


class QualityConfig(BaseModel):
    """Tuning knobs for the coverage-gated quality workflow."""

    threshold: float = Field(default=85.0, ge=0, le=100)
    max_iterations: int = Field(
        default=2, ge=1, description="Maximum Generate -> Audit cycles before reporting a gap"
    )
    build_command: str = Field(
        default='dotnet test --collect:"XPlat Code Coverage"',
        description="Command that runs the tests and writes the coverage report",
    )
    coverage_report: Path = Field(
        default=Path("**/TestResults/*/coverage.cobertura.xml"),
        description="Report written by build_command; a glob matches one report per test project",
    )
    build_timeout: int = Field(default=900, ge=1, description="Build runner timeout in seconds")
    vcs_timeout: int = Field(default=30, ge=1, description="git timeout in seconds")
    checklist_path: Path = Field(default=DEFAULT_CHECKLIST_PATH)


class RecoveryConfig(BaseModel):
    """How failures are resolved when nobody is at the keyboard."""

    interactive: bool = Field(default=False)
    default_decision: Literal["retry", "skip", "abort"] = Field(
        default="abort", description="Decision used in headless mode"
    )
    max_retries: int = Field(default=2, ge=0, description="Retries per failure point")

    @field_validator("default_decision", mode="before")
    @classmethod
    def _reject_modify(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() == "modify":
            raise ValueError("'modify' needs new input and cannot be a headless default")
        return value.strip().lower() if isinstance(value, str) else value


class Config(BaseModel):
    """Top-level layerforge configuration.

    Instances are created once by the CLI (from a JSON file, the environment
    or defaults) and then passed through the rest of the system.
    """

    project_root: Path = Field(default=Path("."))
    scaffold: ScaffoldConfig = Field(default_factory=ScaffoldConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def coverage_report_path(self) -> Path:
        """Absolute location of the coverage report the build runner writes."""
        report = self.quality.coverage_report
        return report if report.is_absolute() else self.project_root / report

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file and return its path."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Build a ``Config`` from environment variables layered over *base*.

        Recognised variables (all optional):
            LF_PROJECT_ROOT, LF_CATALOG, LF_ROOT_NAMESPACE, LF_MARKER_TIEBREAK,
            LF_MAX_PARALLEL_RENDERS, LF_THRESHOLD, LF_MAX_ITERATIONS,
            LF_BUILD_COMMAND, LF_COVERAGE_REPORT, LF_BUILD_TIMEOUT,
            LF_INTERACTIVE, LF_DEFAULT_DECISION, LF_MAX_RETRIES.
        """
        base = base or cls()

        scaffold_kwargs: dict[str, Any] = {}
        if os.environ.get("LF_CATALOG"):
            scaffold_kwargs["catalog_path"] = Path(os.environ["LF_CATALOG"])
        if os.environ.get("LF_ROOT_NAMESPACE"):
            scaffold_kwargs["root_namespace"] = os.environ["LF_ROOT_NAMESPACE"]
        if os.environ.get("LF_MARKER_TIEBREAK"):
            scaffold_kwargs["marker_tiebreak"] = os.environ["LF_MARKER_TIEBREAK"]
        if os.environ.get("LF_MAX_PARALLEL_RENDERS"):
            scaffold_kwargs["max_parallel_renders"] = int(os.environ["LF_MAX_PARALLEL_RENDERS"])

        quality_kwargs: dict[str, Any] = {}
        if os.environ.get("LF_THRESHOLD"):
            quality_kwargs["threshold"] = float(os.environ["LF_THRESHOLD"])
        if os.environ.get("LF_MAX_ITERATIONS"):
            quality_kwargs["max_iterations"] = int(os.environ["LF_MAX_ITERATIONS"])
        if os.environ.get("LF_BUILD_COMMAND"):
            quality_kwargs["build_command"] = os.environ["LF_BUILD_COMMAND"]
        if os.environ.get("LF_COVERAGE_REPORT"):
            quality_kwargs["coverage_report"] = Path(os.environ["LF_COVERAGE_REPORT"])
        if os.environ.get("LF_BUILD_TIMEOUT"):
            quality_kwargs["build_timeout"] = int(os.environ["LF_BUILD_TIMEOUT"])

        recovery_kwargs: dict[str, Any] = {}
        if os.environ.get("LF_INTERACTIVE"):
            recovery_kwargs["interactive"] = os.environ["LF_INTERACTIVE"].lower() in ("1", "true", "yes")
        if os.environ.get("LF_DEFAULT_DECISION"):
            recovery_kwargs["default_decision"] = os.environ["LF_DEFAULT_DECISION"]
        if os.environ.get("LF_MAX_RETRIES"):
            recovery_kwargs["max_retries"] = int(os.environ["LF_MAX_RETRIES"])

        return cls(
            project_root=Path(os.environ.get("LF_PROJECT_ROOT", str(base.project_root))),
            scaffold=ScaffoldConfig.model_validate({**base.scaffold.model_dump(), **scaffold_kwargs}),
            quality=QualityConfig.model_validate({**base.quality.model_dump(), **quality_kwargs}),
            recovery=RecoveryConfig.model_validate({**base.recovery.model_dump(), **recovery_kwargs}),
        )
