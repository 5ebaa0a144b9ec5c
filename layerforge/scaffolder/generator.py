"""Feature scaffolding orchestrator.

:class:`FeatureScaffolder` runs the scaffolding flow for one resolved
feature: order the layers, look up each layer's templates in the catalog and
hand them to the :class:`~layerforge.scaffolder.emitter.ArtifactEmitter`.
Layers are emitted strictly in order; a layer's failures are surfaced to the
:class:`~layerforge.recovery.RecoveryController` only after every sibling in
the layer has finished.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Optional

from rich.panel import Panel

from ..recovery import (
    EMISSION_CHOICES,
    RecoveryAction,
    RecoveryController,
    RecoveryRequest,
)
from ..utils import console, print_error, print_warning
from .catalog import TemplateCatalog, TemplateDescriptor
from .emitter import (
    ArtifactEmitter,
    EmitError,
    EmitStatus,
    GeneratedArtifact,
    LayerResult,
    PathCollisionError,
)
from .filesystem import FileSystem
from .layers import Layer
from .models import FeatureSpec
from .spec import SpecError, SpecResolver

EXIT_OK = 0
EXIT_WARNINGS = 1
EXIT_FAILED = 2
EXIT_CANCELLED = 3


class ScaffoldAborted(Exception):
    """Raised when recovery decides to abort a scaffolding run."""

    def __init__(self, message: str, result: "ScaffoldResult") -> None:
        self.result = result
        super().__init__(message)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class ScaffoldResult:
    """What a scaffolding run wrote, left alone and failed on."""

    feature: str
    layers: list[LayerResult] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False

    def _paths(self, *statuses: EmitStatus) -> list[str]:
        return [p for layer in self.layers for p in layer.paths(*statuses)]

    @property
    def written(self) -> list[str]:
        return self._paths(EmitStatus.WRITTEN, EmitStatus.MERGED)

    @property
    def unchanged(self) -> list[str]:
        return self._paths(EmitStatus.UNCHANGED)

    @property
    def skipped(self) -> list[str]:
        return self._paths(EmitStatus.SKIPPED)

    @property
    def failures(self) -> list[EmitError]:
        return [f for layer in self.layers for f in layer.failures]

    @property
    def failed(self) -> list[str]:
        return [f"{f.template_id}: {f}" for f in self.failures]

    @property
    def warnings(self) -> list[str]:
        return [w for layer in self.layers for w in layer.warnings] + self.notes

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if self.aborted or any(isinstance(f, PathCollisionError) for f in self.failures):
            return EXIT_FAILED
        if self.failures or self.warnings:
            return EXIT_WARNINGS
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature": self.feature,
            "written": self.written,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
            "warnings": self.warnings,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def summary_text(self) -> str:
        lines = [f"Feature {self.feature}:"]
        for label, items in (
            ("written", self.written),
            ("unchanged", self.unchanged),
            ("skipped", self.skipped),
            ("failed", self.failed),
        ):
            lines.append(f"  {label}: {len(items)}")
            lines.extend(f"    - {item}" for item in items)
        if self.aborted:
            lines.append("  run aborted")
        if self.cancelled:
            lines.append("  run cancelled")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Scaffolder
# ---------------------------------------------------------------------------


class FeatureScaffolder:
    """Scaffolds one feature across the catalog's layers.

    Args:
        catalog: Loaded, validated template catalog (shared, read-only).
        fs: File-system collaborator rooted at the target project.
        resolver: Used to validate option overrides chosen during recovery.
        recovery: Decides what happens after a layer reports failures.
        emitter_options: Extra keyword arguments for each
            :class:`ArtifactEmitter` (marker, tie-break, namespace...).
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        fs: FileSystem,
        *,
        resolver: Optional[SpecResolver] = None,
        recovery: Optional[RecoveryController] = None,
        **emitter_options: Any,
    ) -> None:
        self.catalog = catalog
        self.fs = fs
        self.resolver = resolver or SpecResolver(catalog.options)
        self.recovery = recovery or RecoveryController()
        self.emitter_options = emitter_options
        self.last_result: Optional[ScaffoldResult] = None

    def new_emitter(self) -> ArtifactEmitter:
        return ArtifactEmitter(self.catalog, self.fs, **self.emitter_options)

    def layer_order(self, layers: Optional[Iterable[Layer]] = None) -> tuple[Layer, ...]:
        selected = set(layers) if layers is not None else set(Layer)
        return self.catalog.orderer.order(selected)

    # -- Dry run ---------------------------------------------------------------

    def plan(
        self, spec: FeatureSpec, layers: Optional[Iterable[Layer]] = None
    ) -> dict[Layer, list[GeneratedArtifact]]:
        """Render every matching template without writing anything.

        Raises:
            EmitError: If a template cannot be rendered.
        """
        emitter = self.new_emitter()
        planned: dict[Layer, list[GeneratedArtifact]] = {}
        for layer in self.layer_order(layers):
            for descriptor in self.catalog.resolve(layer, spec.options, spec.operations):
                planned.setdefault(layer, []).append(emitter.render(spec, layer, descriptor))
        return planned

    # -- Emission --------------------------------------------------------------

    async def scaffold(
        self, spec: FeatureSpec, layers: Optional[Iterable[Layer]] = None
    ) -> ScaffoldResult:
        """Emit *spec* layer by layer.

        The partially filled result stays available as :attr:`last_result`
        if the run is cancelled.

        Raises:
            ScaffoldAborted: If recovery decides to abort.
        """
        result = ScaffoldResult(feature=spec.base_name)
        self.last_result = result
        emitter = self.new_emitter()

        for layer in self.layer_order(layers):
            layer_result, spec = await self._emit_layer(emitter, spec, layer, result)
            if layer_result is not None:
                result.layers.append(layer_result)
            if result.aborted:
                raise ScaffoldAborted(
                    f"Scaffolding {spec.base_name} aborted in layer {layer.value!r}", result
                )
        return result

    async def _emit_layer(
        self,
        emitter: ArtifactEmitter,
        spec: FeatureSpec,
        layer: Layer,
        result: ScaffoldResult,
    ) -> tuple[Optional[LayerResult], FeatureSpec]:
        pending = self.catalog.resolve(layer, spec.options, spec.operations)
        if not pending:
            return None, spec

        combined = LayerResult(layer=layer)
        point = f"scaffold:{spec.base_name}:{layer.value}"
        while True:
            attempt = await emitter.emit_layer(spec, layer, pending)
            combined.outcomes.extend(attempt.outcomes)
            _print_layer(attempt)
            if attempt.ok:
                return combined, spec

            decision = await self.recovery.decide(
                RecoveryRequest(
                    point=point,
                    error=attempt.failures[0],
                    choices=EMISSION_CHOICES,
                    detail="; ".join(str(f) for f in attempt.failures),
                )
            )
            failed_ids = set(attempt.failed_template_ids)
            if decision.action is RecoveryAction.RETRY:
                pending = [d for d in pending if d.id in failed_ids]
            elif decision.action is RecoveryAction.MODIFY:
                try:
                    overrides = self.resolver.resolve_options(dict(decision.overrides))
                except SpecError as exc:
                    result.notes.append(f"{point}: modification rejected: {exc}")
                    print_warning(f"Modification rejected: {exc}")
                    pending = [d for d in pending if d.id in failed_ids]
                    continue
                spec = spec.with_options(overrides)
                done = {o.artifact.template_id for o in combined.outcomes}
                pending = _remaining(
                    self.catalog.resolve(layer, spec.options, spec.operations), done
                )
                if not pending:
                    return combined, spec
            else:
                combined.failures.extend(attempt.failures)
                if decision.action is RecoveryAction.ABORT:
                    result.aborted = True
                return combined, spec

    def summary_panel(self, result: ScaffoldResult) -> Panel:
        style = "green" if result.exit_code == EXIT_OK else "yellow" if result.exit_code == EXIT_WARNINGS else "red"
        return Panel(result.summary_text(), title=f"Scaffold {result.feature}", border_style=style)


def _remaining(
    descriptors: Iterable[TemplateDescriptor], done: set[str]
) -> list[TemplateDescriptor]:
    return [d for d in descriptors if d.id not in done]


def _print_layer(layer_result: LayerResult) -> None:
    written = len(layer_result.paths(EmitStatus.WRITTEN, EmitStatus.MERGED))
    unchanged = len(layer_result.paths(EmitStatus.UNCHANGED))
    skipped = len(layer_result.paths(EmitStatus.SKIPPED))
    console.print(
        f"  [cyan]{layer_result.layer.value:<13}[/cyan] "
        f"{written} written, {unchanged} unchanged, {skipped} skipped, "
        f"{len(layer_result.failures)} failed"
    )
    for warning in layer_result.warnings:
        print_warning(f"    {warning}")
    for failure in layer_result.failures:
        print_error(f"    {failure.template_id}: {failure}")
