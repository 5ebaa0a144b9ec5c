"""Artifact emission: render catalog templates and apply collision policies.

:class:`ArtifactEmitter` turns a ``(FeatureSpec, layer, TemplateDescriptor)``
triple into a :class:`GeneratedArtifact` and writes it through the
file-system collaborator.  Within one layer, rendering runs in worker
threads; writes are serialised per target path, and every write re-reads the
target immediately beforehand so concurrent external edits are treated as a
fresh collision instead of being clobbered.

Per-artifact failures never abort sibling artifacts: :meth:`emit_layer`
collects them in its :class:`LayerResult` for the caller to act on.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Optional

from jinja2 import TemplateError, UndefinedError

from ..config import DEFAULT_EXTENSION_MARKER
from ..utils import content_hash
from .catalog import TemplateCatalog, TemplateDescriptor
from .filesystem import FileSystem
from .layers import Layer
from .models import CollisionPolicy, FeatureSpec

MARKER_TIEBREAKS = ("skip", "first", "last")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EmitError(Exception):
    """A single artifact could not be rendered or written."""

    def __init__(self, message: str, *, template_id: str = "", path: str = "") -> None:
        self.template_id = template_id
        self.path = path
        super().__init__(message)


class UnresolvedPlaceholderError(EmitError):
    """A template referenced a placeholder the render context does not define."""


class PathCollisionError(EmitError):
    """Two templates in one run resolved to the same output path."""

    def __init__(self, path: str, *, template_id: str, claimed_by: str) -> None:
        self.claimed_by = claimed_by
        super().__init__(
            f"{template_id!r} resolves to {path}, already claimed by {claimed_by!r}",
            template_id=template_id,
            path=path,
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeneratedArtifact:
    """One concrete rendered file.  Never mutated; edits make a new artifact."""

    path: str
    layer: Layer
    content: str
    content_hash: str
    collision_policy: CollisionPolicy
    template_id: str
    extension_point: Optional[str] = None


class EmitStatus(str, Enum):
    WRITTEN = "written"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    MERGED = "merged"


@dataclass
class EmitOutcome:
    artifact: GeneratedArtifact
    status: EmitStatus
    warnings: list[str] = field(default_factory=list)

    @property
    def wrote(self) -> bool:
        return self.status in (EmitStatus.WRITTEN, EmitStatus.MERGED)


@dataclass
class LayerResult:
    """Everything that happened while emitting one layer."""

    layer: Layer
    outcomes: list[EmitOutcome] = field(default_factory=list)
    failures: list[EmitError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def warnings(self) -> list[str]:
        return [w for outcome in self.outcomes for w in outcome.warnings]

    def paths(self, *statuses: EmitStatus) -> list[str]:
        return [o.artifact.path for o in self.outcomes if o.status in statuses]

    @property
    def failed_template_ids(self) -> list[str]:
        return [f.template_id for f in self.failures]


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class ArtifactEmitter:
    """Renders templates against a feature and writes the results.

    One emitter serves one scaffolding invocation: it remembers which
    template claimed each output path so that a second template resolving to
    the same path is reported as a :class:`PathCollisionError` (first writer
    wins).  Merge-guarded templates may share a path since each inserts its
    own fragment.

    Args:
        catalog: The loaded template catalog.
        fs: File-system collaborator rooted at the target project.
        extension_marker: Marker prefix that identifies extension points in
            existing files (``<marker>:<extension_point>``).
        marker_tiebreak: What to do when a file contains the marker more than
            once: ``skip`` (warn, write nothing), ``first`` or ``last``.
        root_namespace: Root namespace passed to templates.
        max_parallel_renders: Upper bound on concurrent render threads.
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        fs: FileSystem,
        *,
        extension_marker: str = DEFAULT_EXTENSION_MARKER,
        marker_tiebreak: str = "skip",
        root_namespace: str = "App",
        max_parallel_renders: int = 4,
    ) -> None:
        if marker_tiebreak not in MARKER_TIEBREAKS:
            raise ValueError(
                f"marker_tiebreak must be one of {', '.join(MARKER_TIEBREAKS)}, got {marker_tiebreak!r}"
            )
        self.catalog = catalog
        self.fs = fs
        self.extension_marker = extension_marker
        self.marker_tiebreak = marker_tiebreak
        self.root_namespace = root_namespace
        self.max_parallel_renders = max(1, max_parallel_renders)
        self._claims: dict[str, GeneratedArtifact] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # -- Rendering -----------------------------------------------------------

    def build_context(self, spec: FeatureSpec, descriptor: TemplateDescriptor) -> dict[str, Any]:
        """Return the placeholder context a template is rendered against."""
        providers = self.catalog.providers_for(spec.options)
        return {
            "names": spec.names.as_dict(),
            "feature": spec.as_dict(),
            "properties": [
                {**prop.as_dict(), "pascal_name": prop.pascal_name} for prop in spec.properties
            ],
            "operations": [op.value for op in spec.ordered_operations],
            "options": dict(spec.options),
            "providers": {k: v.model_dump(mode="json") for k, v in providers.items()},
            "root_namespace": self.root_namespace,
            "template": {"id": descriptor.id, "layer": descriptor.layer.value},
        }

    def render(
        self, spec: FeatureSpec, layer: Layer, descriptor: TemplateDescriptor
    ) -> GeneratedArtifact:
        """Render *descriptor* for *spec* without touching the file system.

        Raises:
            UnresolvedPlaceholderError: If the path or body uses an unknown
                placeholder.
            EmitError: For any other render failure or an unsafe output path.
        """
        if descriptor.layer is not layer:
            raise EmitError(
                f"template belongs to layer {descriptor.layer.value!r}, not {layer.value!r}",
                template_id=descriptor.id,
            )
        path_template, body_template = self.catalog.compiled(descriptor.id)
        context = self.build_context(spec, descriptor)
        try:
            raw_path = self.catalog.renderer.render(path_template, context)
            content = self.catalog.renderer.render(body_template, context)
        except UndefinedError as exc:
            raise UnresolvedPlaceholderError(
                f"unresolved placeholder in {descriptor.id!r}: {exc.message}",
                template_id=descriptor.id,
            ) from exc
        except TemplateError as exc:
            raise EmitError(
                f"failed to render {descriptor.id!r}: {exc}", template_id=descriptor.id
            ) from exc

        path = _normalise_output_path(raw_path, descriptor.id)
        return GeneratedArtifact(
            path=path,
            layer=layer,
            content=content,
            content_hash=content_hash(content) or "",
            collision_policy=descriptor.collision_policy,
            template_id=descriptor.id,
            extension_point=descriptor.extension_point,
        )

    # -- Emission ------------------------------------------------------------

    async def emit(
        self, spec: FeatureSpec, layer: Layer, descriptor: TemplateDescriptor
    ) -> EmitOutcome:
        """Render and write a single artifact.

        Raises:
            EmitError: Or one of its subclasses, on failure.
        """
        artifact = await asyncio.to_thread(self.render, spec, layer, descriptor)
        self.claim(artifact)
        snapshots = {artifact.path: await self._read(artifact)}
        return await self._write(artifact, snapshots)

    async def emit_layer(
        self,
        spec: FeatureSpec,
        layer: Layer,
        descriptors: Iterable[TemplateDescriptor],
    ) -> LayerResult:
        """Emit every descriptor of one layer, collecting per-artifact failures.

        Rendering runs concurrently; path claims are taken in catalog order so
        the first template to resolve a path always wins.
        """
        descriptors = list(descriptors)
        result = LayerResult(layer=layer)
        semaphore = asyncio.Semaphore(self.max_parallel_renders)

        async def _render(descriptor: TemplateDescriptor) -> GeneratedArtifact:
            async with semaphore:
                return await asyncio.to_thread(self.render, spec, layer, descriptor)

        rendered = await asyncio.gather(
            *(_render(d) for d in descriptors), return_exceptions=True
        )

        claimed: list[GeneratedArtifact] = []
        for item in rendered:
            if isinstance(item, EmitError):
                result.failures.append(item)
                continue
            if isinstance(item, BaseException):
                raise item
            try:
                self.claim(item)
            except PathCollisionError as exc:
                result.failures.append(exc)
                continue
            claimed.append(item)

        # Planning-time snapshot; each write re-checks against it.
        snapshots: dict[str, Optional[str]] = {}
        readable: list[GeneratedArtifact] = []
        for artifact in claimed:
            try:
                if artifact.path not in snapshots:
                    snapshots[artifact.path] = await self._read(artifact)
            except EmitError as exc:
                result.failures.append(exc)
                continue
            readable.append(artifact)

        written = await asyncio.gather(
            *(self._write(a, snapshots) for a in readable),
            return_exceptions=True,
        )
        for item in written:
            if isinstance(item, EmitError):
                result.failures.append(item)
            elif isinstance(item, BaseException):
                raise item
            else:
                result.outcomes.append(item)
        return result

    def claim(self, artifact: GeneratedArtifact) -> None:
        """Record that *artifact*'s template owns its output path.

        Raises:
            PathCollisionError: If another template already claimed the path.
        """
        owner = self._claims.get(artifact.path)
        if owner is None:
            self._claims[artifact.path] = artifact
            return
        if owner.template_id == artifact.template_id:
            return
        if (
            owner.collision_policy is CollisionPolicy.MERGE_GUARDED
            and artifact.collision_policy is CollisionPolicy.MERGE_GUARDED
        ):
            return
        raise PathCollisionError(
            artifact.path, template_id=artifact.template_id, claimed_by=owner.template_id
        )

    @property
    def claims(self) -> dict[str, str]:
        """Output path -> id of the template that claimed it."""
        return {path: a.template_id for path, a in self._claims.items()}

    # -- Collision policies --------------------------------------------------

    def apply_policy(
        self, artifact: GeneratedArtifact, existing: Optional[str]
    ) -> tuple[EmitStatus, Optional[str], list[str]]:
        """Decide what to do with *artifact* given the target's current content.

        Returns ``(status, content_to_write, warnings)``; ``content_to_write``
        is ``None`` when nothing should be written.
        """
        policy = artifact.collision_policy
        if policy is CollisionPolicy.MERGE_GUARDED:
            if existing is None:
                return (
                    EmitStatus.SKIPPED,
                    None,
                    [f"{artifact.path}: no file to merge {artifact.template_id!r} into; skipped"],
                )
            return self._merge(artifact, existing)

        if existing is None:
            return EmitStatus.WRITTEN, artifact.content, []
        if content_hash(existing) == artifact.content_hash:
            return EmitStatus.UNCHANGED, None, []
        if policy is CollisionPolicy.OVERWRITE:
            return EmitStatus.WRITTEN, artifact.content, []
        return (
            EmitStatus.SKIPPED,
            None,
            [f"{artifact.path}: exists with different content; left untouched"],
        )

    def _merge(
        self, artifact: GeneratedArtifact, existing: str
    ) -> tuple[EmitStatus, Optional[str], list[str]]:
        fragment = artifact.content.strip("\n")
        if fragment and _contains_fragment(existing, fragment):
            return EmitStatus.UNCHANGED, None, []

        token = f"{self.extension_marker}:{artifact.extension_point}"
        pattern = re.compile(re.escape(token) + r"(?![\w-])")
        lines = existing.splitlines(keepends=True)
        hits = [i for i, line in enumerate(lines) if pattern.search(line)]

        if not hits:
            return (
                EmitStatus.SKIPPED,
                None,
                [f"{artifact.path}: extension point {token!r} not found; skipped"],
            )
        if len(hits) > 1:
            if self.marker_tiebreak == "skip":
                return (
                    EmitStatus.SKIPPED,
                    None,
                    [
                        f"{artifact.path}: extension point {token!r} appears "
                        f"{len(hits)} times; skipped"
                    ],
                )
            hits = [hits[0] if self.marker_tiebreak == "first" else hits[-1]]

        index = hits[0]
        marker_line = lines[index]
        indent = marker_line[: len(marker_line) - len(marker_line.lstrip())]
        newline = "\r\n" if marker_line.endswith("\r\n") else "\n"
        inserted = [
            (indent + line if line.strip() else "") + newline for line in fragment.splitlines()
        ]
        merged = "".join(lines[:index] + inserted + lines[index:])
        return EmitStatus.MERGED, merged, []

    # -- File-system access --------------------------------------------------

    async def _read(self, artifact: GeneratedArtifact) -> Optional[str]:
        try:
            return await asyncio.to_thread(self.fs.read, artifact.path)
        except (OSError, ValueError) as exc:
            raise EmitError(
                f"cannot read {artifact.path}: {exc}",
                template_id=artifact.template_id,
                path=artifact.path,
            ) from exc

    async def _write(
        self, artifact: GeneratedArtifact, snapshots: dict[str, Optional[str]]
    ) -> EmitOutcome:
        """Apply the collision policy and write under the per-path lock.

        *snapshots* maps paths to their planning-time content and is updated
        after each write, so later writes to the same path compare against it.
        """
        lock = self._locks.setdefault(artifact.path, asyncio.Lock())
        async with lock:
            snapshot = snapshots.get(artifact.path)
            status, content, warnings = self.apply_policy(artifact, snapshot)
            if content is None:
                return EmitOutcome(artifact, status, warnings)

            current = await self._read(artifact)
            if current != snapshot:
                warnings.append(
                    f"{artifact.path}: changed since planning; collision policy re-applied"
                )
                status, content, more = self.apply_policy(artifact, current)
                warnings.extend(more)
                if content is None:
                    return EmitOutcome(artifact, status, warnings)

            try:
                await asyncio.to_thread(self.fs.write, artifact.path, content)
            except (OSError, ValueError) as exc:
                raise EmitError(
                    f"cannot write {artifact.path}: {exc}",
                    template_id=artifact.template_id,
                    path=artifact.path,
                ) from exc
            snapshots[artifact.path] = content
            return EmitOutcome(artifact, status, warnings)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _normalise_output_path(raw: str, template_id: str) -> str:
    """Validate a rendered output path and return it in POSIX form."""
    text = raw.strip().replace("\\", "/")
    if not text:
        raise EmitError("output path rendered empty", template_id=template_id)
    if "{{" in text or "}}" in text:
        raise UnresolvedPlaceholderError(
            f"output path still contains a placeholder: {text}", template_id=template_id, path=text
        )
    path = PurePosixPath(text)
    if path.is_absolute() or re.match(r"^[A-Za-z]:", text):
        raise EmitError(f"output path must be relative: {text}", template_id=template_id, path=text)
    if ".." in path.parts:
        raise EmitError(
            f"output path escapes the project root: {text}", template_id=template_id, path=text
        )
    return path.as_posix()


def _contains_fragment(existing: str, fragment: str) -> bool:
    """True when every non-blank fragment line already appears, in order, in *existing*."""
    wanted = [line.strip() for line in fragment.splitlines() if line.strip()]
    have = [line.strip() for line in existing.splitlines()]
    if not wanted:
        return True
    for start in range(len(have) - len(wanted) + 1):
        if have[start : start + len(wanted)] == wanted:
            return True
    return False

